"""FastAPI application exposing the OpenContext index."""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Iterator, Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from opencontext import __version__
from opencontext.config import load_config
from opencontext.errors import OpenContextError, error_payload
from opencontext.index.service import IndexService
from opencontext.models import ProgressEvent

LOGGER = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "index_not_available": 404,
    "concurrent_build_rejected": 409,
    "embedding_failure": 502,
    "document_vanished": 404,
    "configuration": 500,
    "build_cancelled": 409,
    "embedding_mismatch": 409,
}

app = FastAPI(title="OpenContext API", version=__version__)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class SearchPayload(BaseModel):
    query: str
    limit: int | None = Field(default=None, ge=1)
    mode: Literal["hybrid", "vector", "keyword"] = "hybrid"
    type: Literal["content", "doc", "folder"] = "content"
    doc_type: Literal["doc", "idea"] | None = None


class IndexPayload(BaseModel):
    folder: str | None = None
    force: bool = False


@lru_cache(maxsize=1)
def get_service() -> IndexService:
    return IndexService.from_config(load_config())


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.exception_handler(OpenContextError)
async def opencontext_error_handler(request: Request, exc: OpenContextError) -> JSONResponse:
    status = STATUS_BY_KIND.get(exc.kind, 500)
    LOGGER.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"error": exc.to_payload()})


@app.post("/search")
def search_documents(payload: SearchPayload, service: IndexService = Depends(get_service)) -> dict[str, Any]:
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Empty query")

    limit = payload.limit
    if limit is not None:
        limit = min(limit, service.config.search.max_limit)
    results = service.search(
        query,
        limit=limit,
        mode=payload.mode,
        aggregate_by=payload.type,
        doc_type=payload.doc_type,
    )
    return {
        "query": query,
        "count": len(results),
        "mode": payload.mode,
        "aggregate_by": payload.type,
        "results": [result.to_dict() for result in results],
    }


def _ndjson(events: Iterator[ProgressEvent]) -> Iterator[str]:
    try:
        for event in events:
            yield json.dumps(event.to_dict(), ensure_ascii=False) + "\n"
    except OpenContextError as exc:
        LOGGER.error("Index build failed: %s", exc.message)
        yield json.dumps({"error": exc.to_payload()}, ensure_ascii=False) + "\n"
    except Exception as exc:
        LOGGER.exception("Index build failed unexpectedly")
        yield json.dumps({"error": error_payload(exc)}, ensure_ascii=False) + "\n"


@app.post("/index")
def build_index(payload: IndexPayload, service: IndexService = Depends(get_service)) -> StreamingResponse:
    folder = payload.folder.strip() if payload.folder else None
    # raises ConcurrentBuildRejected (409) before any byte is streamed
    events = service.build_index(scope=folder or None, force=payload.force)
    return StreamingResponse(_ndjson(events), media_type="application/x-ndjson")


@app.get("/index/status")
def index_status(service: IndexService = Depends(get_service)) -> dict[str, Any]:
    return service.get_index_status().to_dict()


@app.delete("/index")
def clean_index(service: IndexService = Depends(get_service)) -> dict[str, Any]:
    service.clean_index()
    return {"status": "ok"}


@app.get("/docs/{stable_id}")
def resolve_document(stable_id: str, service: IndexService = Depends(get_service)) -> dict[str, Any]:
    document = service.resolve(stable_id)
    link = service.get_link(document.rel_path)
    return {
        "stable_id": document.stable_id,
        "file_path": document.rel_path,
        "display_name": document.display_name,
        "description": document.description,
        "doc_type": document.doc_type,
        "updated_at": document.updated_at,
        "citation": link["citation"],
        "markdown": link["markdown"],
    }


@app.get("/manifest")
def document_manifest(
    folder: str = Query("."),
    limit: int | None = Query(None, ge=1),
    service: IndexService = Depends(get_service),
) -> dict[str, Any]:
    entries = service.manifest(folder, limit)
    return {"folder": folder, "count": len(entries), "documents": entries}
