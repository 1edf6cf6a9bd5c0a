"""
Vector store adapter.

`VectorStore` is the narrow interface the pipeline needs: upsert a record,
check existence by id, and run a nearest-neighbour query with equality
filters. `ChromaVectorStore` implements it on a persistent ChromaDB
collection using cosine distance.
"""

import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .types import Level, RawSearchResult, VectorRecord

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "recall_embeddings"

# Filter keys understood by query()
FILTER_KEYS = ("level", "session_id", "cycle_id", "column")


@runtime_checkable
class VectorStore(Protocol):
    """Nearest-neighbour store of embedded records."""

    def upsert(self, record: VectorRecord) -> None:
        """Insert or replace the record with the same id."""
        ...

    def exists(self, id: str) -> bool:
        ...

    def query(
        self,
        vector: list[float],
        filters: dict[str, Any] | None = None,
        limit: int = 10,
    ) -> list[RawSearchResult]:
        """
        Return up to `limit` rows nearest to `vector`, closest first.

        `filters` maps keys from FILTER_KEYS to required values.
        """
        ...

    def count(self) -> int:
        ...


def record_metadata(record: VectorRecord) -> dict[str, Any]:
    """Flatten a record to store metadata. Chroma rejects None values."""
    meta: dict[str, Any] = {
        "level": Level(record.level).value,
        "session_id": record.session_id,
        "version": record.version,
        "created_at": record.created_at,
    }
    if record.cycle_id:
        meta["cycle_id"] = record.cycle_id
    if record.column:
        meta["column"] = record.column
    if record.field_label:
        meta["field_label"] = record.field_label
    return meta


def build_where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    """Translate equality filters into a Chroma where clause."""
    if not filters:
        return None
    clauses = []
    for key, value in filters.items():
        if key not in FILTER_KEYS:
            raise ValueError(f"Unsupported vector filter: {key}")
        if value is None:
            continue
        if isinstance(value, Level):
            value = value.value
        clauses.append({key: value})
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def result_from_row(id: str, document: str | None, meta: dict | None, distance: float) -> RawSearchResult:
    meta = meta or {}
    return RawSearchResult(
        id=id,
        level=Level(meta.get("level", "field")),
        session_id=str(meta.get("session_id", "")),
        text=document or "",
        distance=float(distance),
        cycle_id=meta.get("cycle_id"),
        column=meta.get("column"),
        field_label=meta.get("field_label"),
        created_at=meta.get("created_at"),
    )


class ChromaVectorStore:
    """
    Persistent ChromaDB collection holding one record per job id.

    Args:
        store_path: Directory for the Chroma database
        collection: Collection name; use a different one per embedding model
    """

    def __init__(self, store_path: Path, collection: str = DEFAULT_COLLECTION):
        try:
            import chromadb
            from chromadb.config import Settings
        except ImportError:
            raise RuntimeError("ChromaVectorStore requires 'chromadb' library")

        self._store_path = Path(store_path)
        self._store_path.mkdir(parents=True, exist_ok=True)
        self._client = chromadb.PersistentClient(
            path=str(self._store_path),
            settings=Settings(anonymized_telemetry=False, allow_reset=True),
        )
        self._collection = self._client.get_or_create_collection(
            name=collection,
            metadata={"hnsw:space": "cosine"},
        )
        logger.debug("Chroma collection %s opened with %d vectors",
                     collection, self._collection.count())

    def upsert(self, record: VectorRecord) -> None:
        self._collection.upsert(
            ids=[record.id],
            embeddings=[list(record.vector)],
            documents=[record.text],
            metadatas=[record_metadata(record)],
        )

    def exists(self, id: str) -> bool:
        result = self._collection.get(ids=[id], include=[])
        return bool(result.get("ids"))

    def get(self, id: str) -> RawSearchResult | None:
        result = self._collection.get(ids=[id], include=["documents", "metadatas"])
        if not result.get("ids"):
            return None
        return result_from_row(
            result["ids"][0], result["documents"][0], result["metadatas"][0], 0.0,
        )

    def delete(self, id: str) -> None:
        self._collection.delete(ids=[id])

    def query(
        self,
        vector: list[float],
        filters: dict[str, Any] | None = None,
        limit: int = 10,
    ) -> list[RawSearchResult]:
        total = self._collection.count()
        if total == 0 or limit <= 0:
            return []
        results = self._collection.query(
            query_embeddings=[list(vector)],
            n_results=min(limit, total),
            where=build_where(filters),
            include=["documents", "metadatas", "distances"],
        )
        ids = (results.get("ids") or [[]])[0]
        documents = (results.get("documents") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]
        return [
            result_from_row(id, documents[i], metadatas[i], distances[i])
            for i, id in enumerate(ids)
        ]

    def count(self) -> int:
        return self._collection.count()
