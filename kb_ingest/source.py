"""Read chunk records from the chunker's JSONL output."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .logging_config import log_extra
from .schemas import ChunkRecord
from .utils import safe_relpath

logger = logging.getLogger(__name__)

CHUNK_EXTENSIONS = {".jsonl"}


def scan_chunk_files(chunk_root: str) -> Tuple[List[str], List[Dict[str, str]]]:
    """
    Scan directory for chunk files.

    Returns:
        (included_files, skipped_files_with_reasons), both sorted by path
    """
    included: List[str] = []
    skipped: List[Dict[str, str]] = []

    for root, _, files in os.walk(chunk_root):
        for filename in files:
            path = os.path.join(root, filename)
            ext = os.path.splitext(filename)[1].lower()
            if ext not in CHUNK_EXTENSIONS:
                skipped.append({"path": path, "reason": "unsupported_extension"})
                continue
            try:
                if os.path.getsize(path) == 0:
                    skipped.append({"path": path, "reason": "empty_file"})
                    continue
            except OSError:
                skipped.append({"path": path, "reason": "stat_failed"})
                continue
            included.append(path)

    included.sort()
    skipped.sort(key=lambda item: item["path"])
    return included, skipped


def parse_record(raw: Any, source_path: str, default_document_id: str, ordinal: int) -> ChunkRecord:
    """
    Build a ChunkRecord from one decoded JSON line.

    Accepts the canonical shape (``text``, ``source_path``, ``document_id``,
    ``index``, ``metadata``) as well as the chunker's ``{id, text, metadata}``
    lines, where position and provenance live in ``metadata``.

    Raises:
        ValidationError: If the record cannot be used
    """
    if not isinstance(raw, Mapping):
        raise ValidationError(f"expected a JSON object, got {type(raw).__name__}")
    text = raw.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("missing or empty 'text'")
    metadata = raw.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise ValidationError("'metadata' must be an object")

    document_id = raw.get("document_id")
    if document_id is None:
        document_id = default_document_id

    index = raw.get("index")
    if index is None:
        index = metadata.get("chunk_index", ordinal)

    try:
        return ChunkRecord(
            text=text,
            source_path=str(raw.get("source_path") or metadata.get("source_path") or source_path),
            document_id=str(document_id),
            index=index,
            metadata=dict(metadata),
        )
    except PydanticValidationError as exc:
        raise ValidationError(str(exc)) from exc


class ChunkFile:
    """
    One chunk file, replayable: every iteration re-reads it from disk.

    Malformed lines (invalid UTF-8 or JSON, unusable records) are logged and
    skipped; ``malformed`` counts them for the most recent pass.
    """

    def __init__(self, path: str, chunk_root: Optional[str] = None):
        self.path = path
        self.chunk_root = chunk_root or os.path.dirname(path)
        self.relpath = safe_relpath(path, self.chunk_root)
        self.malformed = 0

    @property
    def document_id(self) -> str:
        """Fallback document id: the file path relative to the chunk root."""
        return os.path.splitext(self.relpath)[0]

    def __iter__(self) -> Iterator[ChunkRecord]:
        self.malformed = 0
        ordinal = 0
        with open(self.path, "rb") as handle:
            for line_no, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                position = ordinal
                ordinal += 1
                try:
                    raw = json.loads(line.decode("utf-8"))
                    record = parse_record(raw, self.path, self.document_id, position)
                except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
                    self.malformed += 1
                    logger.warning(
                        "skipping malformed record %s:%d: %s",
                        self.relpath,
                        line_no,
                        exc,
                        extra=log_extra(self.relpath),
                    )
                    continue
                yield record
