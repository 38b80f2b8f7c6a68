"""Data schemas for KB Ingest."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .utils import chunk_id, fingerprint


class ChunkRecord(BaseModel):
    """A single chunk produced by the chunker; the unit of work."""

    model_config = ConfigDict(frozen=True)

    text: str
    source_path: str
    document_id: str
    index: int = Field(ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        """Storage key shared by both sinks, stable across runs."""
        return chunk_id(self.document_id, self.index)

    @property
    def fingerprint(self) -> str:
        """Embedding cache key."""
        return fingerprint(self.text)


@dataclass(frozen=True)
class Batch:
    """Ordered group of records from one file, retried as a whole per sink."""
    source_path: str
    ordinal: int
    records: Tuple[ChunkRecord, ...]

    @property
    def chunk_ids(self) -> List[str]:
        return [record.chunk_id for record in self.records]

    def __len__(self) -> int:
        return len(self.records)


class WriteStatus(str, enum.Enum):
    COMMITTED = "committed"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass(frozen=True)
class WriteOutcome:
    """Result of writing one batch to one sink.

    A final outcome is either ``COMMITTED`` or ``FATAL_FAILURE``. The
    ``RETRYABLE_FAILURE`` outcomes met on the way are kept in ``failures``.
    """
    sink: str
    status: WriteStatus
    attempts: int = 0
    cause: Optional[str] = None
    failures: Tuple["WriteOutcome", ...] = field(default=())

    @property
    def committed(self) -> bool:
        return self.status is WriteStatus.COMMITTED

    @classmethod
    def retryable(cls, sink: str, attempt: int, cause: BaseException) -> "WriteOutcome":
        return cls(sink=sink, status=WriteStatus.RETRYABLE_FAILURE, attempts=attempt, cause=describe_error(cause))


def describe_error(exc: BaseException) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class FileStatus(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    PARTIAL = "partial"
    ABANDONED = "abandoned"


class AbandonedBatch(BaseModel):
    """A batch not committed to one or both sinks, kept for a later re-run."""
    ordinal: int
    chunk_ids: List[str]
    vector_store: Optional[str] = None
    search_index: Optional[str] = None
    reason: Optional[str] = None


class FileReport(BaseModel):
    """Per-file counters for one run."""
    path: str
    status: FileStatus = FileStatus.PENDING
    chunks_read: int = 0
    malformed_records: int = 0
    cache_hits: int = 0
    embedded: int = 0
    vectors_committed: int = 0
    documents_committed: int = 0
    batches_completed: int = 0
    abandoned: List[AbandonedBatch] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def abandoned_chunk_ids(self) -> List[str]:
        return [cid for batch in self.abandoned for cid in batch.chunk_ids]


class RunReport(BaseModel):
    """Insert run summary, written to ``paths.report_path``."""
    started_at: str
    finished_at: Optional[str] = None
    duration_seconds: float = 0.0
    embedding_model: str
    vector_backend: str
    collection: str
    index_id: str
    stopped: bool = False
    search_commit_error: Optional[str] = None
    files: List[FileReport] = Field(default_factory=list)

    @computed_field
    @property
    def files_completed(self) -> int:
        return sum(1 for item in self.files if item.status is FileStatus.COMPLETED)

    @computed_field
    @property
    def files_partial(self) -> int:
        return sum(1 for item in self.files if item.status is FileStatus.PARTIAL)

    @computed_field
    @property
    def files_abandoned(self) -> int:
        return sum(1 for item in self.files if item.status is FileStatus.ABANDONED)

    @computed_field
    @property
    def chunks_read(self) -> int:
        return sum(item.chunks_read for item in self.files)

    @computed_field
    @property
    def cache_hits(self) -> int:
        return sum(item.cache_hits for item in self.files)

    @computed_field
    @property
    def embedded(self) -> int:
        return sum(item.embedded for item in self.files)

    @computed_field
    @property
    def vectors_committed(self) -> int:
        return sum(item.vectors_committed for item in self.files)

    @computed_field
    @property
    def documents_committed(self) -> int:
        return sum(item.documents_committed for item in self.files)

    @computed_field
    @property
    def abandoned_chunk_ids(self) -> List[str]:
        return [cid for item in self.files for cid in item.abandoned_chunk_ids]

    @property
    def ok(self) -> bool:
        return not self.stopped and self.search_commit_error is None and all(item.status is FileStatus.COMPLETED for item in self.files)
