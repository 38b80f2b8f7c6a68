"""Configuration for the insert pipeline, loaded from TOML."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError
from .retry import RetryPolicy


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class LoggingConfig(_Section):
    level: str = "info"


class PathsConfig(_Section):
    chunk_root: Path
    report_path: Optional[Path] = None


class MetadataConfig(_Section):
    """Which metadata keys are copied into sink payloads."""
    include_source_path: bool = True
    include_calibre_id: bool = True
    include_title: bool = True
    include_authors: bool = True
    include_published: bool = True
    include_language: bool = True

    def allows(self, key: str) -> bool:
        if key in ("source_path", "source_rel"):
            return self.include_source_path
        flag = {
            "calibre_id": self.include_calibre_id,
            "title": self.include_title,
            "authors": self.include_authors,
            "published": self.include_published,
            "language": self.include_language,
        }.get(key)
        return True if flag is None else flag


class VectorStoreConfig(_Section):
    backend: Literal["qdrant", "faiss"] = "qdrant"
    url: str = "http://localhost:6333"
    collection: str = "chunks"
    distance: Literal["Cosine", "Dot", "Euclid"] = "Cosine"
    vector_size: int = Field(gt=0)
    create_collection: bool = True
    api_key: Optional[str] = None
    path: Optional[Path] = None
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _faiss_needs_path(self) -> "VectorStoreConfig":
        if self.backend == "faiss" and self.path is None:
            raise ValueError("faiss backend requires 'path'")
        return self


class SearchIndexConfig(_Section):
    url: str = "http://localhost:7280"
    index_id: str = "chunks"
    commit_mode: Literal["immediate", "deferred"] = "immediate"
    commit_timeout_seconds: int = Field(default=30, ge=0)
    replace_existing: bool = True
    request_timeout_seconds: float = Field(default=60.0, gt=0)


class EmbeddingsConfig(_Section):
    provider: Literal["ollama"] = "ollama"
    base_url: str = "http://localhost:11434"
    model: str
    request_timeout_seconds: float = Field(default=60.0, gt=0)
    max_concurrency: int = Field(default=4, ge=1)
    global_max_concurrency: int = Field(default=8, ge=1)
    request_batch_size: int = Field(default=16, ge=1)
    max_input_chars: int = Field(default=8000, ge=1)
    cache_max_entries: int = Field(default=100_000, ge=1)


class InsertConfig(_Section):
    batch_size: int = Field(default=64, ge=1)
    retry_max: int = Field(default=5, ge=0)
    retry_backoff_ms: int = Field(default=500, ge=0)
    max_parallel_files: int = Field(default=4, ge=1)
    max_pending_batches: int = Field(default=2, ge=1)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    vector_store: VectorStoreConfig = Field(validation_alias=AliasChoices("vector_store", "qdrant"))
    search_index: SearchIndexConfig = Field(validation_alias=AliasChoices("search_index", "quickwit"))
    embeddings: EmbeddingsConfig

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(retry_max=self.retry_max, backoff_ms=self.retry_backoff_ms)


class Config(_Section):
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig
    insert: InsertConfig


def _describe_errors(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error["loc"]) or "<root>"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


def parse_config(data: dict) -> Config:
    """Validate an already-parsed mapping."""
    try:
        return Config.model_validate(data)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"invalid config: {_describe_errors(exc)}") from exc


def load(path: Union[str, Path]) -> Config:
    """
    Load and validate a TOML config file.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    config_path = Path(path)
    try:
        with open(config_path, "rb") as handle:
            data = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"config file not found: {config_path}") from exc
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"cannot read config {config_path}: {exc}") from exc
    return parse_config(data)
