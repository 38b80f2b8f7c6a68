"""Shared fixtures: in-memory provider and sinks, chunk file writer."""

import json
import threading
import time

import pytest
from langchain_core.embeddings import Embeddings

from kb_ingest.cache import EmbeddingCache
from kb_ingest.embeddings import EmbeddingClient
from kb_ingest.errors import TransientIOError
from kb_ingest.pipeline import Pipeline
from kb_ingest.retry import RetryPolicy
from kb_ingest.writer import DualSinkWriter

DIM = 4


def no_sleep(_seconds):
    pass


def fake_vector(text, dimension=DIM):
    """Deterministic vector for ``text``."""
    seed = sum(ord(ch) for ch in text)
    return [float((seed * (i + 1)) % 97) + 1.0 for i in range(dimension)]


class FakeProvider(Embeddings):
    """Records every request; can fail, stall or return the wrong dimension."""

    def __init__(self, dimension=DIM, delay=0.0):
        self.dimension = dimension
        self.delay = delay
        self.fail_times = 0
        self.error = TransientIOError("provider unavailable")
        self.calls = []
        self.in_flight = 0
        self.peak = 0
        self.on_call = None
        self._lock = threading.Lock()

    def embed_documents(self, texts):
        with self._lock:
            self.calls.append(list(texts))
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            fail = self.fail_times > 0
            if fail:
                self.fail_times -= 1
        try:
            if self.on_call is not None:
                self.on_call(texts)
            if self.delay:
                time.sleep(self.delay)
            if fail:
                raise self.error
            return [fake_vector(text, self.dimension) for text in texts]
        finally:
            with self._lock:
                self.in_flight -= 1

    def embed_query(self, text):
        return self.embed_documents([text])[0]

    @property
    def embedded_texts(self):
        return [text for call in self.calls for text in call]


class FakeVectorStore:
    name = "vector_store"

    def __init__(self):
        self.points = {}
        self.upserts = []
        self.attempts = 0
        self.fail_times = 0
        self.error = TransientIOError("vector store unavailable")
        self.ready = False
        self.flushed = 0
        self.closed = False
        self._lock = threading.Lock()

    def ensure_ready(self):
        self.ready = True

    def upsert(self, points):
        with self._lock:
            self.attempts += 1
            if self.fail_times > 0:
                self.fail_times -= 1
                raise self.error
            self.upserts.append([point.id for point in points])
            for point in points:
                self.points[point.id] = (list(point.vector), dict(point.payload))

    def flush(self):
        self.flushed += 1

    def close(self):
        self.closed = True


class FakeSearchIndex:
    name = "search_index"

    def __init__(self):
        self.documents = {}
        self.ingests = []
        self.attempts = 0
        self.commits = 0
        self.fail_times = 0
        self.error = TransientIOError("search index unavailable")
        self.ready = False
        self.flushed = 0
        self.closed = False
        self._lock = threading.Lock()

    def ensure_ready(self):
        self.ready = True

    def ingest(self, documents, commit=True):
        with self._lock:
            self.attempts += 1
            if self.fail_times > 0:
                self.fail_times -= 1
                raise self.error
            self.ingests.append(([doc["id"] for doc in documents], commit))
            for doc in documents:
                self.documents[doc["id"]] = doc

    def commit(self):
        self.commits += 1

    def flush(self):
        self.flushed += 1

    def close(self):
        self.closed = True


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def vector_store():
    return FakeVectorStore()


@pytest.fixture
def search_index():
    return FakeSearchIndex()


@pytest.fixture
def make_writer(vector_store, search_index):
    def factory(retry_max=3, vector_size=DIM, commit_mode="immediate", should_stop=None, metadata_policy=None):
        return DualSinkWriter(
            vector_store,
            search_index,
            vector_size=vector_size,
            retry_policy=RetryPolicy(retry_max=retry_max, backoff_ms=1),
            metadata_policy=metadata_policy,
            commit_mode=commit_mode,
            sleep=no_sleep,
            should_stop=should_stop,
        )

    return factory


@pytest.fixture
def make_pipeline(provider, make_writer):
    def factory(
        batch_size=64,
        retry_max=3,
        cache_max_entries=100,
        max_parallel_files=2,
        max_pending_batches=2,
        global_max_concurrency=4,
        max_concurrency=2,
        request_batch_size=16,
        vector_size=DIM,
        commit_mode="immediate",
    ):
        stop_event = threading.Event()
        policy = RetryPolicy(retry_max=retry_max, backoff_ms=1)
        embedder = EmbeddingClient(
            provider,
            threading.BoundedSemaphore(global_max_concurrency),
            policy,
            request_batch_size=request_batch_size,
            max_concurrency=max_concurrency,
            sleep=no_sleep,
            should_stop=stop_event.is_set,
        )
        writer = make_writer(
            retry_max=retry_max,
            vector_size=vector_size,
            commit_mode=commit_mode,
            should_stop=stop_event.is_set,
        )
        return Pipeline(
            embedder,
            EmbeddingCache(cache_max_entries),
            writer,
            batch_size=batch_size,
            max_parallel_files=max_parallel_files,
            max_pending_batches=max_pending_batches,
            stop_event=stop_event,
        )

    return factory


@pytest.fixture
def write_chunks(tmp_path):
    """Write a JSONL chunk file under tmp_path; returns its path."""

    def factory(relpath, texts, document_id=None, extra_lines=()):
        path = tmp_path / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        doc_id = document_id or relpath.rsplit(".", 1)[0]
        with open(path, "w", encoding="utf-8") as handle:
            for idx, text in enumerate(texts):
                record = {
                    "text": text,
                    "source_path": f"books/{relpath}",
                    "document_id": doc_id,
                    "index": idx,
                    "metadata": {"title": doc_id},
                }
                handle.write(json.dumps(record) + "\n")
            for line in extra_lines:
                handle.write(line + "\n")
        return str(path)

    return factory
