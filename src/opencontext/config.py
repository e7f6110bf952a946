"""Application configuration defaults and TOML loading."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from opencontext.embedding.client import EmbeddingConfig
from opencontext.errors import ConfigurationError
from opencontext.index.search import SearchConfig

CONFIG_FILENAME = "config.toml"


def _default_home() -> Path:
    env_home = os.environ.get("OPENCONTEXT_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".opencontext"


@dataclass(slots=True)
class AppConfig:
    home: Path = field(default_factory=_default_home)
    contexts_root: Path | None = None
    index_dir: Path | None = None
    registry_path: Path | None = None
    chunk_chars: int = 1200
    overlap: int = 200
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    def __post_init__(self) -> None:
        self.home = Path(self.home).expanduser()
        self.contexts_root = self._resolve(self.contexts_root, "contexts")
        self.index_dir = self._resolve(self.index_dir, "index")
        self.registry_path = self._resolve(self.registry_path, "registry.db")
        if self.chunk_chars <= 0:
            raise ConfigurationError("chunk_chars must be positive")
        if not 0 <= self.overlap < self.chunk_chars:
            raise ConfigurationError("overlap must be >= 0 and smaller than chunk_chars")

    def _resolve(self, value: Path | str | None, default: str) -> Path:
        if value is None:
            return self.home / default
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return self.home / path


def _apply(target: Any, table: Mapping[str, Any], section: str) -> None:
    known = {item.name for item in fields(target)}
    for key, value in table.items():
        if key not in known:
            raise ConfigurationError(f"Unknown configuration key [{section}] {key}")
        setattr(target, key, value)


def load_config(path: Path | None = None, *, env: Mapping[str, str] | None = None) -> AppConfig:
    """Build an :class:`AppConfig` from defaults, a TOML file and the environment.

    The file is ``path``, else ``$OPENCONTEXT_CONFIG``, else
    ``<home>/config.toml`` when it exists. Environment variables win over
    the file.
    """
    env = os.environ if env is None else env
    home = Path(env["OPENCONTEXT_HOME"]).expanduser() if env.get("OPENCONTEXT_HOME") else _default_home()

    if path is None and env.get("OPENCONTEXT_CONFIG"):
        path = Path(env["OPENCONTEXT_CONFIG"]).expanduser()
    if path is None:
        candidate = home / CONFIG_FILENAME
        path = candidate if candidate.exists() else None

    data: dict[str, Any] = {}
    if path is not None:
        try:
            with open(path, "rb") as handle:
                data = tomllib.load(handle)
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Config file not found: {path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"Invalid config file {path}: {exc}") from exc

    unknown = set(data) - {"index", "embedding", "search"}
    if unknown:
        raise ConfigurationError(f"Unknown configuration section(s): {', '.join(sorted(unknown))}")

    embedding = EmbeddingConfig()
    _apply(embedding, data.get("embedding", {}), "embedding")
    if env.get("OPENAI_API_KEY"):
        embedding.api_key = env["OPENAI_API_KEY"]
    if env.get("OPENAI_BASE_URL"):
        embedding.api_base = env["OPENAI_BASE_URL"]
    if embedding.provider not in ("openai", "local"):
        raise ConfigurationError(f"Unknown embedding provider: {embedding.provider!r}")

    search = SearchConfig()
    _apply(search, data.get("search", {}), "search")

    index_table = dict(data.get("index", {}))
    allowed = {"contexts_root", "index_dir", "registry_path", "chunk_chars", "overlap"}
    for key in index_table:
        if key not in allowed:
            raise ConfigurationError(f"Unknown configuration key [index] {key}")

    return AppConfig(home=home, embedding=embedding, search=search, **index_table)
