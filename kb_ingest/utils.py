"""Utility functions for chunk ingestion."""

from __future__ import annotations

import hashlib
import os
import uuid
from typing import Iterable, List, Sequence, Tuple, TypeVar

T = TypeVar("T")

# Namespace for chunk point ids; changing it re-keys every stored chunk.
CHUNK_ID_NAMESPACE = uuid.UUID("6f1c1d52-0b7e-4d55-9a4c-3c1f6a0d2e91")


def sha1_text(text: str) -> str:
    """Calculate SHA1 hash of a text string."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def normalize_text(text: str) -> str:
    """Normalize whitespace in text."""
    return " ".join(text.replace("\u00a0", " ").split())


def fingerprint(text: str) -> str:
    """Cache key for a chunk: SHA1 of its whitespace-normalized text."""
    return sha1_text(normalize_text(text))


def chunk_id(document_id: str, index: int) -> str:
    """Deterministic storage key for chunk ``index`` of ``document_id``."""
    return str(uuid.uuid5(CHUNK_ID_NAMESPACE, f"{document_id}:{index}"))


def safe_relpath(path: str, base: str) -> str:
    """Get relative path, falling back to absolute on error."""
    try:
        return os.path.relpath(path, base)
    except ValueError:
        return path


def truncate_text(text: str, max_chars: int) -> Tuple[str, bool]:
    """Cut ``text`` to its first ``max_chars`` characters.

    Returns:
        (text, truncated) where ``truncated`` tells whether anything was cut.
    """
    if max_chars <= 0 or len(text) <= max_chars:
        return text, False
    return text[:max_chars], True


def iter_batches(items: Sequence[T], batch_size: int) -> Iterable[List[T]]:
    """Yield batches of items."""
    for start in range(0, len(items), batch_size):
        yield list(items[start : start + batch_size])


def iter_chunked(items: Iterable[T], batch_size: int) -> Iterable[List[T]]:
    """Yield batches from an iterator without materializing it."""
    batch: List[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


def color_for_key(key: str) -> int:
    """Stable xterm-256 colour (16..231) for ``key`` using FNV-1a."""
    value = 0xCBF29CE484222325
    for byte in key.encode("utf-8"):
        value ^= byte
        value = (value * 0x100000001B3) & 0xFFFFFFFFFFFFFFFF
    return 16 + value % 216


def color_block(color: int) -> str:
    """ANSI-coloured block glyph."""
    return f"\x1b[38;5;{color}m█\x1b[0m"
