"""Dual-sink writer: one batch, two independent upserts."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import MetadataConfig
from .errors import ValidationError, is_retryable
from .logging_config import LogOp, log_extra
from .retry import RetryExhausted, RetryPolicy, call_with_retry
from .schemas import Batch, ChunkRecord, WriteOutcome, WriteStatus, describe_error
from .sinks import VectorPoint

logger = logging.getLogger(__name__)

VECTOR_SINK = "vector_store"
SEARCH_SINK = "search_index"


class DualSinkWriter:
    """
    Commits batches to a vector store and a search index.

    ``write_vectors`` and ``write_documents`` share nothing but their retry
    policy, so they can run concurrently for the same batch and a failure on
    one never changes the outcome of the other. Both are upserts keyed by
    ``ChunkRecord.chunk_id``.

    With ``commit_mode="deferred"`` documents are appended without a commit
    and ``finish`` issues a single commit at the end of the run.
    """

    def __init__(
        self,
        vector_store,
        search_index,
        vector_size: int,
        retry_policy: RetryPolicy,
        metadata_policy: Optional[MetadataConfig] = None,
        commit_mode: str = "immediate",
        sleep: Callable[[float], None] = time.sleep,
        should_stop: Optional[Callable[[], bool]] = None,
    ):
        if commit_mode not in ("immediate", "deferred"):
            raise ValueError(f"unknown commit_mode: {commit_mode}")
        self.vector_store = vector_store
        self.search_index = search_index
        self.vector_size = vector_size
        self.retry_policy = retry_policy
        self.metadata_policy = metadata_policy or MetadataConfig()
        self.commit_mode = commit_mode
        self._sleep = sleep
        self._should_stop = should_stop

    def prepare(self) -> None:
        """Run each sink's one-time readiness step (may raise ConfigurationError)."""
        self.vector_store.ensure_ready()
        self.search_index.ensure_ready()

    def payload(self, record: ChunkRecord) -> Dict[str, Any]:
        """Metadata stored with a chunk, filtered by the inclusion policy."""
        payload = {
            key: value
            for key, value in record.metadata.items()
            if self.metadata_policy.allows(key)
        }
        payload["document_id"] = record.document_id
        payload["chunk_index"] = record.index
        if self.metadata_policy.include_source_path:
            payload.setdefault("source_path", record.source_path)
        return payload

    def _write(self, sink: str, batch: Batch, fn: Callable[[], None], op: LogOp) -> WriteOutcome:
        failures: List[WriteOutcome] = []
        label = f"{sink} batch {batch.ordinal} of {batch.source_path}"

        def on_failure(attempt: int, exc: BaseException) -> None:
            if is_retryable(exc):
                failures.append(WriteOutcome.retryable(sink, attempt, exc))

        try:
            _, attempts = call_with_retry(
                fn,
                self.retry_policy,
                sleep=self._sleep,
                on_failure=on_failure,
                should_stop=self._should_stop,
                label=label,
            )
        except RetryExhausted as exc:
            logger.error(
                "%s failed after %d attempt(s): %s",
                label,
                exc.attempts,
                exc.cause,
                extra=log_extra(batch.source_path, op),
            )
            return WriteOutcome(
                sink=sink,
                status=WriteStatus.FATAL_FAILURE,
                attempts=exc.attempts,
                cause=describe_error(exc.cause),
                failures=tuple(failures),
            )
        logger.debug("%s committed (%d chunks)", label, len(batch), extra=log_extra(batch.source_path, op))
        return WriteOutcome(sink=sink, status=WriteStatus.COMMITTED, attempts=attempts, failures=tuple(failures))

    def _invalid(self, sink: str, batch: Batch, exc: ValidationError, op: LogOp) -> WriteOutcome:
        logger.error(
            "%s batch %d of %s rejected: %s",
            sink,
            batch.ordinal,
            batch.source_path,
            exc,
            extra=log_extra(batch.source_path, op),
        )
        return WriteOutcome(sink=sink, status=WriteStatus.FATAL_FAILURE, attempts=0, cause=describe_error(exc))

    def validate_vectors(self, batch: Batch, vectors: Sequence[Sequence[float]]) -> None:
        """
        Raises:
            ValidationError: On a count or dimensionality mismatch
        """
        if len(vectors) != len(batch):
            raise ValidationError(f"{len(vectors)} vector(s) for {len(batch)} chunk(s)")
        for record, vector in zip(batch.records, vectors):
            if len(vector) != self.vector_size:
                raise ValidationError(
                    f"chunk {record.chunk_id} has dimension {len(vector)}, expected {self.vector_size}"
                )

    def write_vectors(self, batch: Batch, vectors: Sequence[Sequence[float]]) -> WriteOutcome:
        """Upsert the batch's vectors; a dimensionality mismatch is never retried."""
        try:
            self.validate_vectors(batch, vectors)
        except ValidationError as exc:
            return self._invalid(VECTOR_SINK, batch, exc, LogOp.VECTOR)
        points = [
            VectorPoint(id=record.chunk_id, vector=list(vector), payload=self.payload(record))
            for record, vector in zip(batch.records, vectors)
        ]
        return self._write(VECTOR_SINK, batch, lambda: self.vector_store.upsert(points), LogOp.VECTOR)

    def write_documents(self, batch: Batch) -> WriteOutcome:
        """Upsert the batch's text and metadata into the search index."""
        documents = [
            {"id": record.chunk_id, "text": record.text, "metadata": self.payload(record)}
            for record in batch.records
        ]
        commit = self.commit_mode == "immediate"
        return self._write(
            SEARCH_SINK,
            batch,
            lambda: self.search_index.ingest(documents, commit=commit),
            LogOp.SEARCH,
        )

    def finish(self) -> Optional[WriteOutcome]:
        """
        End-of-run step: deferred commit, then flush local stores.

        Returns:
            The outcome of the deferred commit, or None in immediate mode
        """
        outcome = None
        if self.commit_mode == "deferred":
            try:
                _, attempts = call_with_retry(
                    self.search_index.commit,
                    self.retry_policy,
                    sleep=self._sleep,
                    label="search index commit",
                )
                outcome = WriteOutcome(sink=SEARCH_SINK, status=WriteStatus.COMMITTED, attempts=attempts)
            except RetryExhausted as exc:
                logger.error("search index commit failed after %d attempt(s): %s", exc.attempts, exc.cause)
                outcome = WriteOutcome(
                    sink=SEARCH_SINK,
                    status=WriteStatus.FATAL_FAILURE,
                    attempts=exc.attempts,
                    cause=describe_error(exc.cause),
                )
        self.vector_store.flush()
        self.search_index.flush()
        return outcome

    def close(self) -> None:
        self.vector_store.close()
        self.search_index.close()
