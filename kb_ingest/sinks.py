"""Vector store and search index backends.

Every backend write is an upsert keyed by the chunk id, so replaying a batch
leaves the stored state unchanged.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import faiss
import httpx
import numpy as np

from .errors import ConfigurationError, IngestError, MalformedResponseError, TransientIOError
from .http_client import build_client, check_status, send

logger = logging.getLogger(__name__)


@dataclass
class VectorPoint:
    id: str
    vector: List[float]
    payload: Dict[str, Any] = field(default_factory=dict)


class QdrantVectorStore:
    """Qdrant collection accessed over its REST API."""

    name = "vector_store"

    def __init__(self, config, transport: Optional[httpx.BaseTransport] = None):
        self.collection = config.collection
        self.vector_size = config.vector_size
        self.distance = config.distance
        self.create_collection = config.create_collection
        headers = {"api-key": config.api_key} if config.api_key else None
        self._client = build_client(config.url, config.request_timeout_seconds, headers=headers, transport=transport)

    @property
    def _collection_path(self) -> str:
        return f"/collections/{self.collection}"

    def ensure_ready(self) -> None:
        """
        Create the collection when configured to, then check its vector size.

        Raises:
            ConfigurationError: If Qdrant is unreachable, the collection is
                missing or its vector size differs from the config
        """
        try:
            if self.create_collection:
                self._create()
            response = send(self._client, "GET", self._collection_path, label="qdrant get collection")
        except TransientIOError as exc:
            raise ConfigurationError(f"qdrant unreachable: {exc}") from exc
        if response.status_code == 404:
            raise ConfigurationError(f"qdrant collection {self.collection!r} does not exist")
        try:
            check_status(response, "qdrant get collection")
        except IngestError as exc:
            raise ConfigurationError(str(exc)) from exc
        size = _qdrant_vector_size(response.json())
        if size is not None and size != self.vector_size:
            raise ConfigurationError(
                f"qdrant collection {self.collection!r} has vector size {size}, config says {self.vector_size}"
            )

    def _create(self) -> None:
        body = {"vectors": {"size": self.vector_size, "distance": self.distance}}
        response = send(self._client, "PUT", self._collection_path, label="qdrant create collection", json=body)
        if response.is_success:
            logger.info("created qdrant collection %s (size=%d, distance=%s)", self.collection, self.vector_size, self.distance)
        elif response.status_code in (400, 409) and "already exists" in response.text:
            logger.debug("qdrant collection %s already exists", self.collection)
        else:
            logger.warning("qdrant collection create failed: HTTP %d", response.status_code)

    def upsert(self, points: Sequence[VectorPoint]) -> None:
        body = {
            "points": [
                {"id": point.id, "vector": point.vector, "payload": point.payload}
                for point in points
            ]
        }
        response = send(
            self._client,
            "PUT",
            f"{self._collection_path}/points",
            label="qdrant upsert",
            params={"wait": "true"},
            json=body,
        )
        check_status(response, "qdrant upsert")

    def count(self) -> int:
        response = send(
            self._client,
            "POST",
            f"{self._collection_path}/points/count",
            label="qdrant count",
            json={"exact": True},
        )
        check_status(response, "qdrant count")
        try:
            return int(response.json()["result"]["count"])
        except (ValueError, KeyError, TypeError) as exc:
            raise MalformedResponseError(f"qdrant count: unexpected response: {exc}") from exc

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self._client.close()


def _qdrant_vector_size(payload: Any) -> Optional[int]:
    try:
        vectors = payload["result"]["config"]["params"]["vectors"]
    except (KeyError, TypeError):
        return None
    if isinstance(vectors, dict) and "size" in vectors:
        return int(vectors["size"])
    return None


def faiss_id(chunk_id: str) -> int:
    """Map a chunk UUID onto FAISS's signed 64-bit id space."""
    return uuid.UUID(chunk_id).int & 0x7FFFFFFFFFFFFFFF


class FaissVectorStore:
    """
    Local FAISS index persisted as ``index.faiss`` plus ``points.jsonl``.

    Upserts remove any previous vector for the same id before adding, so
    ``ntotal`` never grows on replay. State reaches disk on ``flush``.
    """

    name = "vector_store"

    INDEX_FILE = "index.faiss"
    POINTS_FILE = "points.jsonl"

    def __init__(self, path, vector_size: int, distance: str = "Cosine"):
        self.path = Path(path)
        self.vector_size = vector_size
        self.distance = distance
        self._lock = threading.Lock()
        self._index: Optional[faiss.Index] = None
        self._points: Dict[int, Dict[str, Any]] = {}

    def _new_index(self) -> faiss.Index:
        if self.distance == "Euclid":
            base = faiss.IndexFlatL2(self.vector_size)
        else:
            base = faiss.IndexFlatIP(self.vector_size)
        return faiss.IndexIDMap2(base)

    def ensure_ready(self) -> None:
        """
        Load a previously flushed index, or start an empty one.

        Raises:
            ConfigurationError: If the directory is unusable or the stored
                index has a different dimension
        """
        with self._lock:
            try:
                self.path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ConfigurationError(f"cannot create faiss store {self.path}: {exc}") from exc
            index_file = self.path / self.INDEX_FILE
            points_file = self.path / self.POINTS_FILE
            if not index_file.exists():
                self._index = self._new_index()
                self._points = {}
                return
            index = faiss.read_index(str(index_file))
            if index.d != self.vector_size:
                raise ConfigurationError(
                    f"faiss store {self.path} has dimension {index.d}, config says {self.vector_size}"
                )
            points: Dict[int, Dict[str, Any]] = {}
            if points_file.exists():
                with open(points_file, "r", encoding="utf-8") as handle:
                    for line in handle:
                        if line.strip():
                            item = json.loads(line)
                            points[int(item["faiss_id"])] = item
            self._index = index
            self._points = points
            logger.info("loaded faiss store %s (%d vectors)", self.path, index.ntotal)

    def upsert(self, points: Sequence[VectorPoint]) -> None:
        if not points:
            return
        # last write wins for ids repeated within one call
        points = list({point.id: point for point in points}.values())
        ids = np.array([faiss_id(point.id) for point in points], dtype=np.int64)
        matrix = np.ascontiguousarray(np.array([point.vector for point in points], dtype="float32"))
        if self.distance == "Cosine":
            faiss.normalize_L2(matrix)
        with self._lock:
            if self._index is None:
                raise IngestError("faiss store used before ensure_ready()")
            self._index.remove_ids(ids)
            self._index.add_with_ids(matrix, ids)
            for fid, point in zip(ids.tolist(), points):
                self._points[fid] = {"faiss_id": fid, "id": point.id, "payload": point.payload}

    def count(self) -> int:
        with self._lock:
            return 0 if self._index is None else int(self._index.ntotal)

    def payload(self, chunk_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._points.get(faiss_id(chunk_id))
        return None if item is None else item["payload"]

    def flush(self) -> None:
        """Write index and points to disk, replacing the previous files."""
        with self._lock:
            if self._index is None:
                return
            index_tmp = self.path / (self.INDEX_FILE + ".tmp")
            points_tmp = self.path / (self.POINTS_FILE + ".tmp")
            faiss.write_index(self._index, str(index_tmp))
            with open(points_tmp, "w", encoding="utf-8") as handle:
                for item in self._points.values():
                    handle.write(json.dumps(item, ensure_ascii=True))
                    handle.write("\n")
            os.replace(index_tmp, self.path / self.INDEX_FILE)
            os.replace(points_tmp, self.path / self.POINTS_FILE)

    def close(self) -> None:
        pass


class QuickwitSearchIndex:
    """
    Quickwit index fed through the NDJSON ingest API.

    Quickwit only appends, so with ``replace_existing`` every ingest is
    preceded by a delete task for the batch's ids; documents ingested after
    the task are not affected by it, which gives upsert semantics.
    """

    name = "search_index"

    def __init__(self, config, transport: Optional[httpx.BaseTransport] = None):
        self.index_id = config.index_id
        self.commit_timeout_seconds = config.commit_timeout_seconds
        self.replace_existing = config.replace_existing
        self._client = build_client(config.url, config.request_timeout_seconds, transport=transport)

    def ensure_ready(self) -> None:
        """
        Raises:
            ConfigurationError: If Quickwit is unreachable or the index is missing
        """
        try:
            response = send(self._client, "GET", f"/api/v1/indexes/{self.index_id}", label="quickwit get index")
        except TransientIOError as exc:
            raise ConfigurationError(f"quickwit unreachable: {exc}") from exc
        if response.status_code == 404:
            raise ConfigurationError(f"quickwit index {self.index_id!r} does not exist")
        try:
            check_status(response, "quickwit get index")
        except IngestError as exc:
            raise ConfigurationError(str(exc)) from exc

    def delete_ids(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        query = "id:IN [" + " ".join(ids) + "]"
        response = send(
            self._client,
            "POST",
            f"/api/v1/{self.index_id}/delete-tasks",
            label="quickwit delete",
            json={"query": query, "search_field": ["id"]},
        )
        check_status(response, "quickwit delete")

    def ingest(self, documents: Sequence[Dict[str, Any]], commit: bool = True) -> None:
        if not documents:
            return
        if self.replace_existing:
            self.delete_ids([doc["id"] for doc in documents])
        body = "".join(json.dumps(doc, ensure_ascii=False) + "\n" for doc in documents)
        self._post_ingest(body, "force" if commit else "auto")

    def commit(self) -> None:
        """Force a commit of everything ingested with ``commit=False``."""
        self._post_ingest("", "force")

    def _post_ingest(self, body: str, commit: str) -> None:
        response = send(
            self._client,
            "POST",
            f"/api/v1/{self.index_id}/ingest",
            label="quickwit ingest",
            params={"commit": commit, "commit_timeout_seconds": str(self.commit_timeout_seconds)},
            content=body.encode("utf-8"),
            headers={"content-type": "application/json"},
        )
        check_status(response, "quickwit ingest")

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self._client.close()


def build_vector_store(config, transport: Optional[httpx.BaseTransport] = None):
    """Create the vector store named by ``VectorStoreConfig.backend``."""
    if config.backend == "faiss":
        return FaissVectorStore(config.path, config.vector_size, config.distance)
    return QdrantVectorStore(config, transport=transport)


def build_search_index(config, transport: Optional[httpx.BaseTransport] = None):
    return QuickwitSearchIndex(config, transport=transport)

