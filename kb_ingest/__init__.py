"""KB Ingest - insert pre-chunked text into a vector store and a search index."""

from .cache import EmbeddingCache
from .config import Config, load as load_config
from .embeddings import EmbeddingClient, OllamaEmbeddings
from .pipeline import Pipeline, build_pipeline, ingest
from .schemas import ChunkRecord, FileStatus, RunReport, WriteOutcome, WriteStatus
from .writer import DualSinkWriter

__version__ = "0.1.0"

__all__ = [
    "ingest",
    "build_pipeline",
    "load_config",
    "Config",
    "Pipeline",
    "EmbeddingCache",
    "EmbeddingClient",
    "OllamaEmbeddings",
    "DualSinkWriter",
    "ChunkRecord",
    "FileStatus",
    "RunReport",
    "WriteOutcome",
    "WriteStatus",
]
