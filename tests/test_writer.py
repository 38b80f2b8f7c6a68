"""Tests for the dual-sink writer."""

from kb_ingest.config import MetadataConfig
from kb_ingest.errors import RequestRejectedError
from kb_ingest.schemas import Batch, ChunkRecord, WriteStatus


def make_batch(count=2, dimension=4):
    records = tuple(
        ChunkRecord(
            text=f"text {i}",
            source_path="books/a.epub",
            document_id="a",
            index=i,
            metadata={"title": "A", "authors": ["X"], "source_rel": "a.epub", "calibre_id": 7},
        )
        for i in range(count)
    )
    vectors = [[float(i)] * dimension for i in range(count)]
    return Batch(source_path="a.jsonl", ordinal=0, records=records), vectors


def test_prepare_checks_both_sinks(vector_store, search_index, make_writer):
    """Test prepare runs readiness on both sinks."""
    make_writer().prepare()
    assert vector_store.ready
    assert search_index.ready


def test_write_vectors_commits(vector_store, make_writer):
    """Test vectors are upserted keyed by chunk id."""
    batch, vectors = make_batch()
    outcome = make_writer().write_vectors(batch, vectors)

    assert outcome.status is WriteStatus.COMMITTED
    assert outcome.attempts == 1
    assert sorted(vector_store.points) == sorted(batch.chunk_ids)


def test_write_vectors_retries_transient(vector_store, make_writer):
    """Test two transient failures are recorded before the commit."""
    batch, vectors = make_batch()
    vector_store.fail_times = 2

    outcome = make_writer(retry_max=5).write_vectors(batch, vectors)

    assert outcome.committed
    assert outcome.attempts == 3
    assert [failure.status for failure in outcome.failures] == [WriteStatus.RETRYABLE_FAILURE] * 2
    assert [failure.attempts for failure in outcome.failures] == [1, 2]


def test_write_vectors_gives_up(vector_store, make_writer):
    """Test retries stop after retry_max retries."""
    batch, vectors = make_batch()
    vector_store.fail_times = 10

    outcome = make_writer(retry_max=2).write_vectors(batch, vectors)

    assert outcome.status is WriteStatus.FATAL_FAILURE
    assert outcome.attempts == 3
    assert vector_store.attempts == 3


def test_rejected_request_not_retried(vector_store, make_writer):
    """Test a non-retryable error fails on the first attempt."""
    batch, vectors = make_batch()
    vector_store.error = RequestRejectedError("bad request", 400)
    vector_store.fail_times = 1

    outcome = make_writer(retry_max=5).write_vectors(batch, vectors)

    assert outcome.status is WriteStatus.FATAL_FAILURE
    assert outcome.attempts == 1
    assert outcome.failures == ()


def test_dimension_mismatch(vector_store, make_writer):
    """Test wrong-sized vectors fail with zero attempts."""
    batch, vectors = make_batch(dimension=3)

    outcome = make_writer(vector_size=4).write_vectors(batch, vectors)

    assert outcome.status is WriteStatus.FATAL_FAILURE
    assert outcome.attempts == 0
    assert vector_store.attempts == 0


def test_vector_count_mismatch(vector_store, make_writer):
    """Test a missing vector fails the batch."""
    batch, vectors = make_batch()

    outcome = make_writer().write_vectors(batch, vectors[:1])

    assert outcome.status is WriteStatus.FATAL_FAILURE
    assert vector_store.attempts == 0


def test_write_documents(search_index, make_writer):
    """Test documents carry id, text and metadata."""
    batch, _ = make_batch()

    outcome = make_writer().write_documents(batch)

    assert outcome.committed
    doc = search_index.documents[batch.chunk_ids[0]]
    assert doc["text"] == "text 0"
    assert doc["metadata"]["document_id"] == "a"
    assert doc["metadata"]["chunk_index"] == 0
    assert search_index.ingests[0][1] is True


def test_payload_metadata_policy(make_writer):
    """Test include_* flags filter payload keys."""
    batch, _ = make_batch()
    policy = MetadataConfig(include_source_path=False, include_authors=False)

    payload = make_writer(metadata_policy=policy).payload(batch.records[0])

    assert "authors" not in payload
    assert "source_path" not in payload
    assert "source_rel" not in payload
    assert payload["title"] == "A"
    assert payload["calibre_id"] == 7


def test_payload_keeps_source_path(make_writer):
    """Test source_path is added by default."""
    batch, _ = make_batch()
    payload = make_writer().payload(batch.records[0])
    assert payload["source_path"] == "books/a.epub"


def test_stop_prevents_retry(vector_store, make_writer):
    """Test no retry is scheduled once stop is requested."""
    batch, vectors = make_batch()
    vector_store.fail_times = 5

    outcome = make_writer(retry_max=5, should_stop=lambda: True).write_vectors(batch, vectors)

    assert outcome.status is WriteStatus.FATAL_FAILURE
    assert vector_store.attempts == 1


def test_finish_deferred_commit(search_index, vector_store, make_writer):
    """Test finish commits once in deferred mode and flushes both sinks."""
    writer = make_writer(commit_mode="deferred")
    batch, _ = make_batch()
    writer.write_documents(batch)

    outcome = writer.finish()

    assert outcome.committed
    assert search_index.ingests[0][1] is False
    assert search_index.commits == 1
    assert vector_store.flushed == 1
    assert search_index.flushed == 1


def test_finish_immediate(search_index, make_writer):
    """Test finish has no commit outcome in immediate mode."""
    assert make_writer().finish() is None
    assert search_index.commits == 0
