"""Command line interface for OpenContext."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from opencontext.config import load_config
from opencontext.errors import OpenContextError, error_payload
from opencontext.index.service import IndexService

LOGGER = logging.getLogger(__name__)

console = Console()
app = typer.Typer(help="OpenContext - index and search your Markdown knowledge base")
index_app = typer.Typer(help="Build, inspect and remove the search index")
doc_app = typer.Typer(help="Stable document links")
app.add_typer(index_app, name="index")
app.add_typer(doc_app, name="doc")

FORMATS = ("table", "json")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _get_service(fmt: str = "table") -> IndexService:
    try:
        return IndexService.from_config(load_config())
    except OpenContextError as exc:
        _fail(exc, fmt)
        raise


def _check_format(fmt: str) -> None:
    if fmt not in FORMATS:
        raise typer.BadParameter(f"format must be one of {', '.join(FORMATS)}")


def _print_json(data: Any) -> None:
    typer.echo(json.dumps(data, ensure_ascii=False, indent=2))


def _fail(exc: Exception, fmt: str) -> None:
    payload = error_payload(exc)
    if fmt == "json":
        _print_json({"error": payload})
    else:
        console.print(f"[red]Error ({payload['kind']}):[/red] {payload['message']}")
    raise typer.Exit(code=1)


@index_app.command("build")
def index_build(
    folder: Optional[str] = typer.Option(None, "--folder", help="Only re-index documents under this folder"),
    force: bool = typer.Option(False, "--force", help="Re-embed every chunk"),
    fmt: str = typer.Option("table", "--format", help="Output format: table or json"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Build or incrementally update the search index."""
    _setup_logging(verbose)
    _check_format(fmt)
    service = _get_service(fmt)
    try:
        events = service.build_index(scope=folder, force=force)
        if fmt == "json":
            for event in events:
                typer.echo(json.dumps(event.to_dict(), ensure_ascii=False))
            return

        last = None
        with Progress(
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("{task.fields[detail]}"),
            console=console,
        ) as progress:
            tasks: dict[str, Any] = {}
            for event in events:
                last = event
                if event.phase == "done":
                    continue
                if event.phase not in tasks:
                    tasks[event.phase] = progress.add_task(event.phase, total=event.total or 1, detail="")
                progress.update(
                    tasks[event.phase],
                    completed=event.current if event.total else 1,
                    total=event.total or 1,
                    detail=event.message[:60],
                )
        if last is not None and last.phase == "done":
            console.print(
                f"Index ready: [bold]{last.total_chunks}[/bold] chunks (last updated {last.last_updated})"
            )
    except Exception as exc:
        if not isinstance(exc, (OpenContextError, ValueError)):
            LOGGER.debug("Index build failed unexpectedly", exc_info=True)
        _fail(exc, fmt)
    finally:
        service.close()


@index_app.command("status")
def index_status(
    fmt: str = typer.Option("table", "--format", help="Output format: table or json"),
) -> None:
    """Show whether an index exists, its size and freshness."""
    _check_format(fmt)
    service = _get_service(fmt)
    try:
        status = service.get_index_status()
    finally:
        service.close()

    if fmt == "json":
        _print_json(status.to_dict())
        return
    if not status.exists:
        console.print("[yellow]No search index. Run 'oc index build' first.[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Chunks")
    table.add_column("Last updated")
    table.add_row(str(status.total_chunks), status.last_updated or "-")
    console.print(table)


@index_app.command("clean")
def index_clean(
    fmt: str = typer.Option("table", "--format", help="Output format: table or json"),
) -> None:
    """Delete the search index."""
    _check_format(fmt)
    service = _get_service(fmt)
    try:
        service.clean_index()
    except OpenContextError as exc:
        _fail(exc, fmt)
    finally:
        service.close()
    if fmt == "json":
        _print_json({"status": "ok"})
    else:
        console.print("Search index removed.")


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Number of results to display"),
    mode: str = typer.Option("hybrid", "--mode", help="hybrid, vector or keyword"),
    aggregate_by: str = typer.Option("content", "--type", help="content, doc or folder"),
    doc_type: Optional[str] = typer.Option(None, "--doc-type", help="Restrict to doc or idea"),
    fmt: str = typer.Option("table", "--format", help="Output format: table or json"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Search the index."""
    _setup_logging(verbose)
    _check_format(fmt)
    service = _get_service(fmt)
    try:
        results = service.search(query, limit=limit, mode=mode, aggregate_by=aggregate_by, doc_type=doc_type)
    except (OpenContextError, ValueError) as exc:
        _fail(exc, fmt)
        return
    finally:
        service.close()

    if fmt == "json":
        _print_json(
            {
                "query": query,
                "count": len(results),
                "mode": mode,
                "aggregate_by": aggregate_by,
                "results": [result.to_dict() for result in results],
            }
        )
        return

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Document")
    table.add_column("Section")
    table.add_column("Match")
    table.add_column("Snippet")

    for result in results:
        snippet = result.content.replace("\n", " ")
        document = result.folder_path if result.aggregate_type == "folder" else result.file_path
        if result.hit_count:
            document = f"{document} ({result.hit_count} hits)"
        table.add_row(
            f"{result.score:.4f}",
            document or "",
            " / ".join(result.heading_path),
            result.matched_by,
            snippet[:180],
        )

    console.print(table)


@app.command()
def manifest(
    folder: str = typer.Argument(".", help="Folder relative to the contexts root ('.' for everything)"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum number of documents"),
    fmt: str = typer.Option("table", "--format", help="Output format: table or json"),
) -> None:
    """List documents in a folder without using the search index."""
    _check_format(fmt)
    service = _get_service(fmt)
    try:
        entries = service.manifest(folder, limit)
    except (OpenContextError, ValueError) as exc:
        _fail(exc, fmt)
        return
    finally:
        service.close()

    if fmt == "json":
        _print_json({"folder": folder, "count": len(entries), "documents": entries})
        return
    if not entries:
        console.print("[yellow]No documents found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Document")
    table.add_column("Type")
    table.add_column("Description")
    table.add_column("Citation")
    for entry in entries:
        table.add_row(entry["rel_path"], entry["doc_type"], entry["description"], entry["citation"])
    console.print(table)


@doc_app.command("resolve")
def doc_resolve(
    stable_id: str = typer.Argument(..., help="Stable document id"),
    fmt: str = typer.Option("table", "--format", help="Output format: table or json"),
) -> None:
    """Print the current path of a document."""
    _check_format(fmt)
    service = _get_service(fmt)
    try:
        document = service.resolve(stable_id)
    except OpenContextError as exc:
        _fail(exc, fmt)
        return
    finally:
        service.close()
    if fmt == "json":
        _print_json(
            {
                "stable_id": document.stable_id,
                "file_path": document.rel_path,
                "description": document.description,
                "doc_type": document.doc_type,
            }
        )
    else:
        typer.echo(document.rel_path)


@doc_app.command("link")
def doc_link(
    doc_path: str = typer.Argument(..., help="Document path relative to the contexts root"),
    label: Optional[str] = typer.Option(None, "--label", help="Link label"),
    fmt: str = typer.Option("table", "--format", help="Output format: table or json"),
) -> None:
    """Print a stable Markdown link for a document."""
    _check_format(fmt)
    service = _get_service(fmt)
    try:
        link = service.get_link(doc_path, label)
    except OpenContextError as exc:
        _fail(exc, fmt)
        return
    finally:
        service.close()
    if fmt == "json":
        _print_json(link)
    else:
        typer.echo(link["markdown"])


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
) -> None:
    """Start the web API."""
    import uvicorn

    from opencontext.web.app import app as web_app

    console.print(f"Starting OpenContext API on http://{host}:{port}")
    uvicorn.run(
        web_app,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )
