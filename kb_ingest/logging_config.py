"""
Logging configuration for kb-ingest.

Log lines go through ``tqdm.write`` so they do not break the progress bar.
Pipeline records may carry ``file_key``/``op`` extras, rendered as coloured
markers on a terminal so interleaved files are easy to tell apart.
"""

import enum
import logging
import sys
from typing import Dict, Optional

from tqdm import tqdm

from .utils import color_block, color_for_key

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_NOISY_LOGGERS = ("httpx", "httpcore", "faiss", "faiss.loader")


class LogOp(enum.Enum):
    EMBED = 39
    VECTOR = 82
    SEARCH = 220


def log_extra(file_key: str, op: Optional[LogOp] = None) -> Dict[str, object]:
    """``extra=`` mapping tagging a record with its file and operation."""
    return {"file_key": file_key, "op": op}


class TqdmHandler(logging.Handler):
    """Logging handler that writes above an active tqdm bar."""

    def __init__(self, stream=None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            tqdm.write(self.format(record), file=self.stream)
        except Exception:
            self.handleError(record)


class ColorPrefixFormatter(logging.Formatter):
    def __init__(self, fmt: str = LOG_FORMAT, color: bool = True):
        super().__init__(fmt)
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        file_key = getattr(record, "file_key", None)
        if not self.color or not file_key:
            return line
        prefix = color_block(color_for_key(file_key)) + " "
        op = getattr(record, "op", None)
        if op is not None:
            prefix += color_block(op.value) + " "
        head, sep, message = line.partition(": ")
        if not sep:
            return prefix + line
        return f"{head}: {prefix}{message}"


def configure_logging(level: str = "info", stream=None) -> logging.Handler:
    """
    Install the kb-ingest handler on the root logger.

    Args:
        level: Level name (case-insensitive); unknown names fall back to INFO
        stream: Output stream, defaults to stderr

    Returns:
        The installed handler, so callers can remove it again
    """
    stream = stream or sys.stderr
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, TqdmHandler):
            root.removeHandler(existing)

    handler = TqdmHandler(stream)
    handler.setFormatter(ColorPrefixFormatter(color=getattr(stream, "isatty", lambda: False)()))
    root.addHandler(handler)
    root.setLevel(resolved)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
    return handler
