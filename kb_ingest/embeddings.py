"""Embedding provider and the concurrency-bounded embedding client."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import httpx
from langchain_core.embeddings import Embeddings

from .errors import ConfigurationError, EmbeddingFailed, MalformedResponseError, TransientIOError
from .http_client import build_client, check_status, send
from .logging_config import LogOp, log_extra
from .retry import RetryExhausted, RetryPolicy, call_with_retry
from .utils import iter_batches, truncate_text

logger = logging.getLogger(__name__)

Vector = List[float]


class OllamaEmbeddings(Embeddings):
    """LangChain embeddings backed by Ollama's batch ``/api/embed`` endpoint.

    Every non-2xx status, timeout and unusable body raises a retryable error;
    retrying is the caller's job.
    """

    def __init__(
        self,
        model: str,
        base_url: str = "http://localhost:11434",
        timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.model = model
        self.base_url = base_url
        self._client = build_client(base_url, timeout, transport=transport)

    def ensure_ready(self) -> None:
        """
        Check that Ollama answers before any work is admitted.

        Raises:
            ConfigurationError: If Ollama is unreachable or answers with an error
        """
        try:
            response = send(self._client, "GET", "/api/tags", label="ollama tags")
        except TransientIOError as exc:
            raise ConfigurationError(f"ollama unreachable at {self.base_url}: {exc}") from exc
        if not response.is_success:
            raise ConfigurationError(f"ollama at {self.base_url} answered HTTP {response.status_code}")
        try:
            names = {item.get("name") for item in response.json().get("models", [])}
        except (ValueError, AttributeError):
            names = set()
        if self.model not in names and f"{self.model}:latest" not in names:
            logger.warning("embedding model %s is not listed by ollama at %s", self.model, self.base_url)

    def embed_documents(self, texts: List[str]) -> List[Vector]:
        response = send(
            self._client,
            "POST",
            "/api/embed",
            label="ollama embed",
            json={"model": self.model, "input": list(texts)},
        )
        check_status(response, "ollama embed", retry_any_failure=True)
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"ollama embed: invalid JSON: {exc}") from exc
        embeddings = payload.get("embeddings") if isinstance(payload, dict) else None
        if not isinstance(embeddings, list):
            raise MalformedResponseError("ollama embed: missing 'embeddings' in response")
        vectors: List[Vector] = []
        for item in embeddings:
            if not isinstance(item, list) or not item:
                raise MalformedResponseError("ollama embed: embedding is not a non-empty list")
            try:
                vectors.append([float(value) for value in item])
            except (TypeError, ValueError) as exc:
                raise MalformedResponseError(f"ollama embed: non-numeric embedding: {exc}") from exc
        return vectors

    def embed_query(self, text: str) -> Vector:
        return self.embed_documents([text])[0]

    def close(self) -> None:
        self._client.close()


def build_provider(config, transport: Optional[httpx.BaseTransport] = None) -> Embeddings:
    """Create the provider named by an ``EmbeddingsConfig``."""
    if config.provider == "ollama":
        return OllamaEmbeddings(
            model=config.model,
            base_url=config.base_url,
            timeout=config.request_timeout_seconds,
            transport=transport,
        )
    raise ValueError(f"unknown embedding provider: {config.provider}")


@dataclass
class GroupResult:
    """Outcome of one embedding request (sub-batch)."""
    start: int
    size: int
    vectors: Optional[List[Vector]] = None
    error: Optional[EmbeddingFailed] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EmbeddingClient:
    """
    Sends texts to an embedding provider in bounded requests.

    ``semaphore`` caps in-flight requests across the whole process; pass the
    same instance to every client that shares a provider. A single call
    splits its texts into requests of ``request_batch_size`` and runs up to
    ``max_concurrency`` of them at once. The client does not cache.
    """

    def __init__(
        self,
        provider: Embeddings,
        semaphore: threading.Semaphore,
        retry_policy: RetryPolicy,
        request_batch_size: int = 16,
        max_input_chars: int = 8000,
        max_concurrency: int = 1,
        sleep: Callable[[float], None] = time.sleep,
        should_stop: Optional[Callable[[], bool]] = None,
    ):
        self.provider = provider
        self.semaphore = semaphore
        self.retry_policy = retry_policy
        self.request_batch_size = max(1, request_batch_size)
        self.max_input_chars = max_input_chars
        self.max_concurrency = max(1, max_concurrency)
        self._sleep = sleep
        self._should_stop = should_stop
        self._lock = threading.Lock()
        self.requests = 0
        self.in_flight = 0
        self.peak_in_flight = 0

    def _prepare(self, texts: Sequence[str], file_key: Optional[str]) -> List[str]:
        prepared: List[str] = []
        for text in texts:
            cut, truncated = truncate_text(text, self.max_input_chars)
            if truncated:
                logger.info(
                    "truncated embedding input from %d to %d chars",
                    len(text),
                    len(cut),
                    extra=log_extra(file_key or "", LogOp.EMBED),
                )
            prepared.append(cut)
        return prepared

    def _request(self, texts: List[str]) -> List[Vector]:
        with self.semaphore:
            with self._lock:
                self.requests += 1
                self.in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                vectors = self.provider.embed_documents(texts)
            finally:
                with self._lock:
                    self.in_flight -= 1
        if len(vectors) != len(texts):
            raise MalformedResponseError(
                f"embedding request returned {len(vectors)} vector(s) for {len(texts)} text(s)"
            )
        return vectors

    def _embed_group(self, start: int, texts: List[str], file_key: Optional[str]) -> GroupResult:
        label = f"embed[{file_key or '-'}@{start}+{len(texts)}]"
        try:
            vectors, attempts = call_with_retry(
                lambda: self._request(texts),
                self.retry_policy,
                sleep=self._sleep,
                should_stop=self._should_stop,
                label=label,
            )
        except RetryExhausted as exc:
            logger.error(
                "%s gave up after %d attempt(s): %s",
                label,
                exc.attempts,
                exc.cause,
                extra=log_extra(file_key or "", LogOp.EMBED),
            )
            failure = EmbeddingFailed(f"{label}: {exc.cause}", attempts=exc.attempts, cause=exc.cause)
            return GroupResult(start=start, size=len(texts), error=failure)
        if attempts > 1:
            logger.info("%s succeeded on attempt %d", label, attempts, extra=log_extra(file_key or "", LogOp.EMBED))
        return GroupResult(start=start, size=len(texts), vectors=vectors)

    def embed_groups(self, texts: Sequence[str], file_key: Optional[str] = None) -> List[GroupResult]:
        """
        Embed ``texts`` as independent requests of ``request_batch_size``.

        A failed request only fails its own group.

        Returns:
            One GroupResult per request, in input order
        """
        prepared = self._prepare(texts, file_key)
        groups = []
        start = 0
        for group in iter_batches(prepared, self.request_batch_size):
            groups.append((start, group))
            start += len(group)
        if not groups:
            return []
        if len(groups) == 1 or self.max_concurrency == 1:
            return [self._embed_group(offset, group, file_key) for offset, group in groups]
        workers = min(self.max_concurrency, len(groups))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embed") as pool:
            futures = [pool.submit(self._embed_group, offset, group, file_key) for offset, group in groups]
            return [future.result() for future in futures]

    def embed(self, texts: Sequence[str], file_key: Optional[str] = None) -> List[Vector]:
        """
        Embed ``texts``, returning vectors in the same order.

        Raises:
            EmbeddingFailed: If any request exhausted its retries
        """
        vectors: List[Vector] = []
        for result in self.embed_groups(texts, file_key=file_key):
            if result.error is not None:
                raise result.error
            vectors.extend(result.vectors or [])
        return vectors
