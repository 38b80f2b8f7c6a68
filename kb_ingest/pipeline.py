"""Insert pre-chunked records into a vector store and a search index."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

from tqdm import tqdm

from .cache import EmbeddingCache
from .config import Config
from .embeddings import EmbeddingClient, build_provider
from .errors import ConfigurationError, EmbeddingFailed, IngestError
from .logging_config import LogOp, log_extra
from .schemas import (
    AbandonedBatch,
    Batch,
    ChunkRecord,
    FileReport,
    FileStatus,
    RunReport,
    WriteOutcome,
    describe_error,
)
from .sinks import build_search_index, build_vector_store
from .source import ChunkFile, scan_chunk_files
from .utils import iter_chunked
from .writer import DualSinkWriter

logger = logging.getLogger(__name__)

Vector = List[float]


@dataclass
class _PendingWrite:
    batch: Batch
    vectors: Future
    documents: Future


class Pipeline:
    """
    Drives chunk files through cache lookup, embedding and the dual write.

    Up to ``max_parallel_files`` files are processed at once. Batches of one
    file are embedded in order; the two writes of a batch run on a writer
    pool while the next batch is embedded, with at most
    ``max_pending_batches`` batches of a file awaiting their writes.

    The cache, the embedding client (and its semaphore) and the writer are
    shared by all files and passed in, never created here.
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        cache: EmbeddingCache,
        writer,
        batch_size: int = 64,
        max_parallel_files: int = 4,
        max_pending_batches: int = 2,
        stop_event: Optional[threading.Event] = None,
        wait_timeout: float = 600.0,
        progress: bool = False,
    ):
        self.embedder = embedder
        self.cache = cache
        self.writer = writer
        self.batch_size = max(1, batch_size)
        self.max_parallel_files = max(1, max_parallel_files)
        self.max_pending_batches = max(1, max_pending_batches)
        self.stop_event = stop_event or threading.Event()
        self.wait_timeout = wait_timeout
        self.progress = progress

    def stop(self) -> None:
        """Stop admitting files and batches; in-flight writes finish."""
        if not self.stop_event.is_set():
            logger.warning("stop requested; finishing in-flight batches")
        self.stop_event.set()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def prepare(self) -> None:
        """
        Check the embedding provider and both sinks before any file is read.

        Raises:
            ConfigurationError: If the provider or a sink is unusable
        """
        ensure_provider = getattr(self.embedder.provider, "ensure_ready", None)
        if ensure_provider is not None:
            ensure_provider()
        self.writer.prepare()

    def close(self) -> None:
        """Release the sinks' and the provider's connections."""
        self.writer.close()
        close_provider = getattr(self.embedder.provider, "close", None)
        if close_provider is not None:
            close_provider()

    # -- embedding ---------------------------------------------------------

    def resolve_vectors(self, batch: Batch, report: FileReport) -> Tuple[Optional[List[Vector]], Optional[str]]:
        """
        Find a vector for every record, embedding only cache misses.

        Identical texts share one computation, within the batch and with
        batches of other files in flight.

        Returns:
            (vectors, None) on success, (None, reason) when any record could
            not be embedded
        """
        file_key = batch.source_path
        keys = [record.fingerprint for record in batch.records]
        texts: Dict[str, str] = {}
        for key, record in zip(keys, batch.records):
            texts.setdefault(key, record.text)

        hits, owned, waiting = self.cache.reserve(keys)
        resolved: Dict[str, Vector] = dict(hits)
        error: Optional[str] = None
        pending_owned = set(owned)
        try:
            if owned:
                results = self.embedder.embed_groups([texts[key] for key in owned], file_key=file_key)
                for result in results:
                    group_keys = owned[result.start : result.start + result.size]
                    if result.ok:
                        for key, vector in zip(group_keys, result.vectors or []):
                            self.cache.insert(key, vector)
                            resolved[key] = vector
                            pending_owned.discard(key)
                    else:
                        for key in group_keys:
                            self.cache.release(key, result.error)
                            pending_owned.discard(key)
                        error = error or str(result.error)
            for key, future in waiting.items():
                try:
                    resolved[key] = future.result(timeout=self.wait_timeout)
                except EmbeddingFailed as exc:
                    error = error or str(exc)
                except FutureTimeout:
                    error = error or f"timed out waiting for a shared embedding ({key[:12]})"
        finally:
            for key in pending_owned:
                self.cache.release(key, EmbeddingFailed(f"embedding for {key[:12]} not computed", attempts=0))

        computed: Set[str] = set()
        for key in keys:
            if key in owned and key not in computed and key in resolved:
                computed.add(key)
                report.embedded += 1
            elif key in resolved:
                report.cache_hits += 1

        if error is not None:
            logger.error(
                "batch %d of %s not embedded: %s",
                batch.ordinal,
                file_key,
                error,
                extra=log_extra(file_key, LogOp.EMBED),
            )
            return None, error
        return [resolved[key] for key in keys], None

    # -- writing -----------------------------------------------------------

    def _settle(self, pending: _PendingWrite, report: FileReport) -> None:
        vector_outcome: WriteOutcome = pending.vectors.result()
        document_outcome: WriteOutcome = pending.documents.result()
        batch = pending.batch
        if vector_outcome.committed:
            report.vectors_committed += len(batch)
        if document_outcome.committed:
            report.documents_committed += len(batch)
        if vector_outcome.committed and document_outcome.committed:
            report.batches_completed += 1
            return
        report.abandoned.append(
            AbandonedBatch(
                ordinal=batch.ordinal,
                chunk_ids=batch.chunk_ids,
                vector_store=None if vector_outcome.committed else vector_outcome.cause,
                search_index=None if document_outcome.committed else document_outcome.cause,
            )
        )
        logger.warning(
            "batch %d of %s abandoned (vector_store=%s, search_index=%s)",
            batch.ordinal,
            batch.source_path,
            vector_outcome.status.value,
            document_outcome.status.value,
            extra=log_extra(batch.source_path),
        )

    # -- files -------------------------------------------------------------

    def _records(self, chunk_file: ChunkFile, only_ids: Optional[Set[str]]) -> Iterator[ChunkRecord]:
        for record in chunk_file:
            if only_ids is None or record.chunk_id in only_ids:
                yield record

    def process_file(
        self,
        chunk_file: ChunkFile,
        writer_pool: ThreadPoolExecutor,
        report: Optional[FileReport] = None,
        only_ids: Optional[Set[str]] = None,
    ) -> FileReport:
        """Process one file's batches in order and return its report."""
        if report is None:
            report = FileReport(path=chunk_file.relpath)
        if self.stopping:
            return report
        report.status = FileStatus.IN_FLIGHT
        pending: Deque[_PendingWrite] = deque()
        interrupted = False
        logger.debug("processing %s", chunk_file.relpath, extra=log_extra(chunk_file.relpath))
        try:
            for ordinal, records in enumerate(iter_chunked(self._records(chunk_file, only_ids), self.batch_size)):
                if self.stopping:
                    interrupted = True
                    break
                batch = Batch(source_path=chunk_file.relpath, ordinal=ordinal, records=tuple(records))
                report.chunks_read += len(batch)
                vectors, reason = self.resolve_vectors(batch, report)
                if vectors is None:
                    report.abandoned.append(
                        AbandonedBatch(ordinal=ordinal, chunk_ids=batch.chunk_ids, reason=f"embedding failed: {reason}")
                    )
                    continue
                pending.append(
                    _PendingWrite(
                        batch=batch,
                        vectors=writer_pool.submit(self.writer.write_vectors, batch, vectors),
                        documents=writer_pool.submit(self.writer.write_documents, batch),
                    )
                )
                while len(pending) >= self.max_pending_batches:
                    self._settle(pending.popleft(), report)
        except OSError as exc:
            report.error = f"cannot read {chunk_file.relpath}: {describe_error(exc)}"
            logger.error(report.error, extra=log_extra(chunk_file.relpath))
        finally:
            while pending:
                self._settle(pending.popleft(), report)
        report.malformed_records = chunk_file.malformed
        if interrupted:
            report.error = "stopped before end of file"
        report.status = _file_status(report)
        return report

    def run(
        self,
        files: Sequence[Union[str, ChunkFile]],
        chunk_root: Optional[str] = None,
        only_ids: Optional[Iterable[str]] = None,
        run_report: Optional[RunReport] = None,
    ) -> RunReport:
        """
        Process ``files`` and return the run report.

        Args:
            files: Chunk file paths (or ChunkFile objects)
            chunk_root: Root the reported paths are relative to
            only_ids: Restrict the run to these chunk ids (re-run of abandoned chunks)
            run_report: Report to fill in; a bare one is created when omitted
        """
        start = time.perf_counter()
        chunk_files = [f if isinstance(f, ChunkFile) else ChunkFile(f, chunk_root) for f in files]
        wanted = set(only_ids) if only_ids is not None else None
        report = run_report or RunReport(
            started_at=_utc_now(),
            embedding_model="",
            vector_backend="",
            collection="",
            index_id="",
        )
        file_reports = [FileReport(path=chunk_file.relpath) for chunk_file in chunk_files]
        report.files = file_reports

        writer_workers = 2 * self.max_parallel_files * self.max_pending_batches
        with ThreadPoolExecutor(max_workers=self.max_parallel_files, thread_name_prefix="file") as file_pool, \
                ThreadPoolExecutor(max_workers=writer_workers, thread_name_prefix="write") as writer_pool:
            futures: Dict[Future, int] = {
                file_pool.submit(self.process_file, chunk_file, writer_pool, file_reports[idx], wanted): idx
                for idx, chunk_file in enumerate(chunk_files)
            }
            # disable=None lets tqdm turn itself off when stderr is not a terminal
            disable = None if self.progress else True
            with tqdm(total=len(chunk_files), desc="Inserting chunk files", disable=disable) as progress:
                for future in as_completed(futures):
                    idx = futures[future]
                    try:
                        future.result()
                    except Exception as exc:
                        logger.exception("unexpected failure in %s", chunk_files[idx].relpath)
                        file_reports[idx].error = describe_error(exc)
                        file_reports[idx].status = FileStatus.ABANDONED
                    progress.set_postfix_str(chunk_files[idx].relpath)
                    progress.update(1)

        commit = self.writer.finish()
        if commit is not None and not commit.committed:
            report.search_commit_error = commit.cause
        report.stopped = self.stopping
        report.finished_at = _utc_now()
        report.duration_seconds = round(time.perf_counter() - start, 3)
        return report


def _file_status(report: FileReport) -> FileStatus:
    if not report.abandoned and report.error is None:
        return FileStatus.COMPLETED
    if report.batches_completed > 0:
        return FileStatus.PARTIAL
    return FileStatus.ABANDONED


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_pipeline(
    config: Config,
    progress: bool = False,
    stop_event: Optional[threading.Event] = None,
    transports: Optional[dict] = None,
) -> Pipeline:
    """
    Wire a Pipeline from config.

    Args:
        config: Loaded configuration
        progress: Show a tqdm bar over files
        stop_event: Shared stop flag (the CLI sets it on SIGINT)
        transports: Optional httpx transports keyed by ``embeddings``,
            ``vector_store`` and ``search_index`` (tests)
    """
    transports = transports or {}
    insert = config.insert
    stop_event = stop_event or threading.Event()
    policy = insert.retry_policy()

    semaphore = threading.BoundedSemaphore(insert.embeddings.global_max_concurrency)
    embedder = EmbeddingClient(
        provider=build_provider(insert.embeddings, transport=transports.get("embeddings")),
        semaphore=semaphore,
        retry_policy=policy,
        request_batch_size=insert.embeddings.request_batch_size,
        max_input_chars=insert.embeddings.max_input_chars,
        max_concurrency=insert.embeddings.max_concurrency,
        should_stop=stop_event.is_set,
    )

    writer = DualSinkWriter(
        vector_store=build_vector_store(insert.vector_store, transport=transports.get("vector_store")),
        search_index=build_search_index(insert.search_index, transport=transports.get("search_index")),
        vector_size=insert.vector_store.vector_size,
        retry_policy=policy,
        metadata_policy=insert.metadata,
        commit_mode=insert.search_index.commit_mode,
        should_stop=stop_event.is_set,
    )
    return Pipeline(
        embedder=embedder,
        cache=EmbeddingCache(insert.embeddings.cache_max_entries),
        writer=writer,
        batch_size=insert.batch_size,
        max_parallel_files=insert.max_parallel_files,
        max_pending_batches=insert.max_pending_batches,
        stop_event=stop_event,
        progress=progress,
    )


def write_report(report: RunReport, path: str) -> None:
    """Write the run report as JSON, creating parent directories."""
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(report.model_dump(mode="json"), handle, ensure_ascii=False, indent=2)


def load_abandoned_ids(path: str) -> Set[str]:
    """Chunk ids a previous run abandoned, read from its report."""
    with open(path, "r", encoding="utf-8") as handle:
        report = RunReport.model_validate(json.load(handle))
    return set(report.abandoned_chunk_ids)


def log_summary(report: RunReport) -> None:
    logger.info(
        "insert summary: files=%d completed=%d partial=%d abandoned=%d",
        len(report.files),
        report.files_completed,
        report.files_partial,
        report.files_abandoned,
    )
    logger.info(
        "insert summary: chunks=%d cache_hits=%d embedded=%d vectors_committed=%d documents_committed=%d",
        report.chunks_read,
        report.cache_hits,
        report.embedded,
        report.vectors_committed,
        report.documents_committed,
    )
    abandoned = report.abandoned_chunk_ids
    if abandoned:
        logger.warning("insert summary: %d chunk(s) abandoned", len(abandoned))
        for item in report.files:
            for batch in item.abandoned:
                logger.warning(
                    "abandoned %s batch %d: %s",
                    item.path,
                    batch.ordinal,
                    ", ".join(batch.chunk_ids),
                )
    if report.search_commit_error:
        logger.error("insert summary: deferred search index commit failed: %s", report.search_commit_error)
    logger.info("insert summary: duration=%.1fs", report.duration_seconds)


def ingest(
    config: Config,
    only_ids: Optional[Iterable[str]] = None,
    progress: bool = True,
    stop_event: Optional[threading.Event] = None,
    transports: Optional[dict] = None,
) -> RunReport:
    """
    Insert every chunk file under ``config.paths.chunk_root``.

    Args:
        config: Loaded configuration
        only_ids: Restrict the run to these chunk ids
        progress: Show a progress bar
        stop_event: Set it to stop admitting new work
        transports: httpx transports for tests, see ``build_pipeline``

    Returns:
        RunReport with per-file and aggregate counts

    Raises:
        ConfigurationError: If the chunk root or a sink is unusable; raised
            before anything is written
    """
    chunk_root = str(config.paths.chunk_root)
    if not os.path.isdir(chunk_root):
        raise ConfigurationError(f"chunk_root is not a directory: {chunk_root}")

    pipeline = build_pipeline(config, progress=progress, stop_event=stop_event, transports=transports)
    try:
        pipeline.prepare()
        included, skipped = scan_chunk_files(chunk_root)
        logger.info("scan summary: included=%d, skipped=%d", len(included), len(skipped))
        for item in skipped:
            logger.debug("skipped %s (%s)", item["path"], item["reason"])

        report = RunReport(
            started_at=_utc_now(),
            embedding_model=config.insert.embeddings.model,
            vector_backend=config.insert.vector_store.backend,
            collection=config.insert.vector_store.collection,
            index_id=config.insert.search_index.index_id,
        )
        report = pipeline.run(included, chunk_root=chunk_root, only_ids=only_ids, run_report=report)
        try:
            logger.info("vector store holds %d point(s)", pipeline.writer.vector_store.count())
        except IngestError as exc:
            logger.warning("could not count vector store points: %s", exc)
    finally:
        pipeline.close()

    logger.info("embedding cache: %s", pipeline.cache.stats())
    log_summary(report)
    if config.paths.report_path is not None:
        write_report(report, str(config.paths.report_path))
        logger.info("report written to %s", config.paths.report_path)
    return report
