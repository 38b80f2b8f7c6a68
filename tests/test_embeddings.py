"""Tests for the embedding provider and client."""

import json
import threading

import httpx
import pytest

from conftest import FakeProvider, no_sleep
from kb_ingest.config import EmbeddingsConfig
from kb_ingest.embeddings import EmbeddingClient, OllamaEmbeddings, build_provider
from kb_ingest.errors import ConfigurationError, EmbeddingFailed, MalformedResponseError, TransientIOError
from kb_ingest.retry import RetryPolicy


def ollama(handler):
    return OllamaEmbeddings("nomic-embed-text", "http://ollama:11434", transport=httpx.MockTransport(handler))


def test_ollama_request_shape():
    """Test the batch request body and parsed vectors."""
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})

    vectors = ollama(handler).embed_documents(["a", "b"])

    assert seen["path"] == "/api/embed"
    assert seen["body"] == {"model": "nomic-embed-text", "input": ["a", "b"]}
    assert vectors == [[0.1, 0.2], [0.3, 0.4]]


@pytest.mark.parametrize("status", [400, 404, 500, 503])
def test_ollama_http_errors_are_transient(status):
    """Test every non-2xx provider answer is retryable."""
    provider = ollama(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(TransientIOError):
        provider.embed_documents(["a"])


@pytest.mark.parametrize(
    "payload",
    [
        {"embedding": [0.1]},
        {"embeddings": "x"},
        {"embeddings": [[]]},
        {"embeddings": [["a", "b"]]},
        ["not", "a", "dict"],
    ],
)
def test_ollama_malformed_bodies(payload):
    """Test unusable bodies raise MalformedResponseError."""
    provider = ollama(lambda request: httpx.Response(200, json=payload))
    with pytest.raises(MalformedResponseError):
        provider.embed_documents(["a"])


def test_ollama_connect_error():
    """Test transport failures become TransientIOError."""
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientIOError):
        ollama(handler).embed_query("a")


def test_ollama_ensure_ready(caplog):
    """Test the readiness check queries the model list and accepts a listed model."""
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json={"models": [{"name": "nomic-embed-text:latest"}]})

    ollama(handler).ensure_ready()

    assert seen == [("GET", "/api/tags")]
    assert "not listed" not in caplog.text


def test_ollama_ensure_ready_unlisted_model(caplog):
    """Test a model missing from the list only warns; Ollama may still pull it."""
    provider = ollama(lambda request: httpx.Response(200, json={"models": [{"name": "llama3:latest"}]}))
    provider.ensure_ready()
    assert "embedding model nomic-embed-text is not listed" in caplog.text


@pytest.mark.parametrize("status", [404, 500])
def test_ollama_ensure_ready_http_error(status):
    """Test an error answer from Ollama is a configuration error."""
    provider = ollama(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(ConfigurationError, match=f"HTTP {status}"):
        provider.ensure_ready()


def test_ollama_ensure_ready_unreachable():
    """Test an unreachable Ollama is a configuration error."""
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ConfigurationError, match="ollama unreachable"):
        ollama(handler).ensure_ready()


def test_build_provider():
    """Test the provider is built from config."""
    provider = build_provider(EmbeddingsConfig(model="m", base_url="http://x:1"))
    assert isinstance(provider, OllamaEmbeddings)
    assert provider.model == "m"
    provider.close()


def client(provider, semaphore=None, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy(retry_max=2, backoff_ms=1))
    return EmbeddingClient(provider, semaphore or threading.BoundedSemaphore(4), sleep=no_sleep, **kwargs)


def test_client_splits_requests():
    """Test texts are sent in groups of request_batch_size, in order."""
    provider = FakeProvider()
    texts = [f"t{i}" for i in range(5)]

    vectors = client(provider, request_batch_size=2, max_concurrency=2).embed(texts)

    assert len(vectors) == 5
    assert sorted(len(call) for call in provider.calls) == [1, 2, 2]
    assert sorted(provider.embedded_texts) == sorted(texts)
    assert vectors[4] == FakeProvider().embed_query("t4")


def test_client_truncates_long_input():
    """Test inputs longer than max_input_chars are cut."""
    provider = FakeProvider()
    client(provider, max_input_chars=5).embed(["abcdefghij"])
    assert provider.calls == [["abcde"]]


def test_client_retries_then_succeeds():
    """Test a transient provider failure is retried."""
    provider = FakeProvider()
    provider.fail_times = 2
    vectors = client(provider).embed(["a"])
    assert len(vectors) == 1
    assert len(provider.calls) == 3


def test_client_gives_up():
    """Test EmbeddingFailed after retries are exhausted."""
    provider = FakeProvider()
    provider.fail_times = 10
    with pytest.raises(EmbeddingFailed) as info:
        client(provider).embed(["a"])
    assert info.value.attempts == 3


def test_client_group_failure_is_isolated():
    """Test one failed group does not fail its siblings."""
    provider = FakeProvider()
    provider.fail_times = 1
    embedder = client(provider, retry_policy=RetryPolicy(retry_max=0), request_batch_size=1)

    results = embedder.embed_groups(["a", "b"])

    assert [result.ok for result in results] == [False, True]
    assert results[1].vectors == [FakeProvider().embed_query("b")]


def test_client_count_mismatch_is_malformed():
    """Test a provider returning too few vectors is retried as malformed."""
    class ShortProvider(FakeProvider):
        def embed_documents(self, texts):
            return super().embed_documents(texts)[:-1]

    provider = ShortProvider()
    with pytest.raises(EmbeddingFailed) as info:
        client(provider).embed(["a", "b"])
    assert isinstance(info.value.cause, MalformedResponseError)
    assert len(provider.calls) == 3


def test_semaphore_bounds_clients():
    """Test clients sharing a semaphore stay under its limit."""
    provider = FakeProvider(delay=0.01)
    semaphore = threading.BoundedSemaphore(2)
    clients = [client(provider, semaphore, request_batch_size=1, max_concurrency=4) for _ in range(3)]

    threads = [
        threading.Thread(target=c.embed, args=([f"{n}-{i}" for i in range(6)],))
        for n, c in enumerate(clients)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert provider.peak <= 2
    assert len(provider.calls) == 18
