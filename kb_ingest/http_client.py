"""Thin httpx helpers shared by the embedding provider and the sinks.

Transport problems and retryable statuses become ``TransientIOError``; other
4xx answers become ``RequestRejectedError``. Retrying is left to callers.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from .errors import RequestRejectedError, TransientIOError

RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


def build_client(
    base_url: str,
    timeout: float,
    headers: Optional[Dict[str, str]] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    """httpx client with a per-request timeout; ``transport`` is for tests."""
    return httpx.Client(
        base_url=base_url.rstrip("/"),
        timeout=httpx.Timeout(timeout),
        headers=headers or {},
        transport=transport,
    )


def send(client: httpx.Client, method: str, url: str, label: str, **kwargs: Any) -> httpx.Response:
    """Issue one request, mapping transport failures to ``TransientIOError``."""
    try:
        return client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientIOError(f"{label}: timed out ({exc})") from exc
    except httpx.TransportError as exc:
        raise TransientIOError(f"{label}: {exc}") from exc


def _body_excerpt(response: httpx.Response, limit: int = 200) -> str:
    try:
        text = response.text
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return ""
    text = " ".join(text.split())
    return text[:limit]


def check_status(response: httpx.Response, label: str, retry_any_failure: bool = False) -> httpx.Response:
    """
    Raise for a non-2xx response.

    Args:
        response: The response to check
        label: Operation name for messages
        retry_any_failure: Treat every non-2xx status as transient

    Raises:
        TransientIOError: For retryable statuses
        RequestRejectedError: For other client errors
    """
    if response.is_success:
        return response
    status = response.status_code
    message = f"{label} failed: HTTP {status} {_body_excerpt(response)}".rstrip()
    if retry_any_failure or status in RETRYABLE_STATUS or status >= 500:
        raise TransientIOError(message)
    raise RequestRejectedError(message, status)
