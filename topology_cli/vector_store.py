"""Nearest-neighbour storage for file embeddings.

Three interchangeable backends share the :class:`VectorStore` interface:

- ``sqlite`` -- the local embedding cache, scanned brute force.
- ``pinecone`` -- hosted index (:mod:`topology_cli.pinecone_store`).
- ``pgvector`` -- PostgreSQL extension (:mod:`topology_cli.pgvector_store`).

Remote backends are imported only when selected, so their client libraries
stay optional.  A missing client surfaces as
:class:`BackendUnavailableError` rather than a crash.

``namespace`` on :meth:`VectorStore.query` follows one rule everywhere:
omitted means the store's configured namespace, ``""`` or ``None`` means
every namespace (cross-repository search), any other string selects that
namespace.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional, Sequence

from .config_manager import ConfigurationError, VectorStoreConfig
from .models import SimilarResult, VectorMetadata, VectorRecord
from .storage import CacheDb, EmbeddingCache

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class BackendUnavailableError(ImportError):
    """The selected vector backend's client library is not installed."""


def dot(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity for unit vectors; 0.0 for mismatched lengths."""
    if len(a) != len(b):
        return 0.0
    return sum(x * y for x, y in zip(a, b))


# ===================================================================
# Interface
# ===================================================================

class VectorStore(ABC):
    provider: str = ""
    namespace: Optional[str] = None

    @abstractmethod
    def init(self) -> None:
        """Connect / create tables; must be called before any other method."""

    @abstractmethod
    def upsert(self, records: Sequence[VectorRecord]) -> None: ...

    @abstractmethod
    def delete(self, ids: Sequence[str]) -> None: ...

    @abstractmethod
    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        namespace: Any = UNSET,
    ) -> List[SimilarResult]: ...

    @abstractmethod
    def fetch(self, ids: Sequence[str]) -> List[VectorRecord]:
        """Stored records for *ids* with their metadata; unknown ids are skipped."""

    @abstractmethod
    def prune(self, live_ids: Iterable[str]) -> int:
        """Delete records whose id is not in *live_ids*; return the count."""

    def close(self) -> None:
        return None

    def _namespace_for(self, namespace: Any) -> Optional[str]:
        if namespace is UNSET:
            return self.namespace
        return namespace or None


# ===================================================================
# SQLite (local cache)
# ===================================================================

def _row_metadata(row: Any) -> VectorMetadata:
    # the local cache keeps no repo or language columns
    return VectorMetadata(
        content_hash=row["content_hash"],
        model_id=row["model_id"],
        updated_at=row["cached_at"],
    )


class SqliteVectorStore(VectorStore):
    """Wraps the ``embeddings`` table of the local cache; holds no state."""

    provider = "sqlite"

    def __init__(self, cache_db: CacheDb, model_id: Optional[str] = None) -> None:
        self.cache = EmbeddingCache(cache_db)
        self.model_id = model_id

    def init(self) -> None:
        if self.cache.db.conn is None:
            raise RuntimeError("Cache database must be opened before the sqlite vector store")

    def upsert(self, records: Sequence[VectorRecord]) -> None:
        self.cache.set_batch([
            (r.id, r.metadata.content_hash, list(r.embedding), r.metadata.model_id)
            for r in records
        ])

    def delete(self, ids: Sequence[str]) -> None:
        self.cache.delete(ids)

    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        namespace: Any = UNSET,
    ) -> List[SimilarResult]:
        results: List[SimilarResult] = []
        for row in self.cache.all_rows(self.model_id):
            embedding = json.loads(row["embedding_json"])
            results.append(SimilarResult(
                id=row["file_path"],
                score=dot(vector, embedding),
                metadata=_row_metadata(row),
            ))
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:top_k]

    def fetch(self, ids: Sequence[str]) -> List[VectorRecord]:
        rows = {row["file_path"]: row for row in self.cache.all_rows(self.model_id)}
        return [
            VectorRecord(
                id=file_path,
                embedding=json.loads(rows[file_path]["embedding_json"]),
                metadata=_row_metadata(rows[file_path]),
            )
            for file_path in ids
            if file_path in rows
        ]

    def prune(self, live_ids: Iterable[str]) -> int:
        return self.cache.prune(live_ids)


# ===================================================================
# Factory
# ===================================================================

def create_vector_store(
    config: VectorStoreConfig,
    cache_db: Optional[CacheDb] = None,
    model_id: Optional[str] = None,
) -> VectorStore:
    """Instantiate and initialise the backend selected by ``config.provider``."""
    if config.provider == "pinecone":
        if config.pinecone is None:
            raise ConfigurationError("Pinecone config (api_key, index_name) is required when provider=pinecone")
        from .pinecone_store import PineconeVectorStore

        store: VectorStore = PineconeVectorStore(config.pinecone)
    elif config.provider == "pgvector":
        if config.pgvector is None:
            raise ConfigurationError("pgvector config (connection_string) is required when provider=pgvector")
        from .pgvector_store import PgvectorStore

        store = PgvectorStore(config.pgvector)
    elif config.provider == "sqlite":
        if cache_db is None:
            raise ConfigurationError("An open cache database is required for the sqlite vector store")
        store = SqliteVectorStore(cache_db, model_id=model_id)
    else:
        raise ConfigurationError(f"Unknown vector provider '{config.provider}'")

    store.init()
    logger.debug("Vector store ready: %s", store.provider)
    return store
