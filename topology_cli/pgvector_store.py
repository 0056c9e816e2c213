"""PostgreSQL + pgvector backed vector store (SQLAlchemy engine).

SQLAlchemy is imported in :meth:`PgvectorStore.init`, so it is only required
when this provider is selected.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Sequence

from .config_manager import PGVECTOR_TABLE_RE, ConfigurationError, PgvectorConfig
from .models import SimilarResult, VectorMetadata, VectorRecord
from .vector_store import UNSET, BackendUnavailableError, VectorStore

logger = logging.getLogger(__name__)

EMBEDDING_DIM = 384
DEFAULT_NAMESPACE = "default"


def to_vector_literal(values: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(v)) for v in values) + "]"


def parse_vector_literal(raw: str) -> List[float]:
    """Parse pgvector's text form ``[0.1,0.2,...]``."""
    body = raw.strip().strip("[]")
    if not body:
        return []
    return [float(v) for v in body.split(",")]


def _row_metadata(row: Any) -> VectorMetadata:
    return VectorMetadata.from_dict({
        "contentHash": row.content_hash,
        "modelId": row.model_id,
        "updatedAt": row.updated_at,
        "repoId": row.repo_id,
        "language": row.language,
    })


class PgvectorStore(VectorStore):
    provider = "pgvector"

    def __init__(self, config: PgvectorConfig) -> None:
        if not PGVECTOR_TABLE_RE.match(config.table_name):
            raise ConfigurationError(f"Invalid pgvector table name: {config.table_name!r}")
        self.config = config
        self.table = config.table_name
        self.namespace = config.namespace or DEFAULT_NAMESPACE
        self._engine: Any = None
        self._text: Any = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self) -> None:
        try:
            from sqlalchemy import create_engine, text
        except ImportError as exc:
            raise BackendUnavailableError(
                "SQLAlchemy not installed. Install with: pip install topology-cli[pgvector]"
            ) from exc

        self._text = text
        self._engine = create_engine(self.config.connection_string, pool_pre_ping=True)
        with self._engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.execute(text(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id           TEXT   NOT NULL,
                    namespace    TEXT   NOT NULL DEFAULT '{DEFAULT_NAMESPACE}',
                    embedding    vector({EMBEDDING_DIM}) NOT NULL,
                    content_hash TEXT   NOT NULL,
                    model_id     TEXT   NOT NULL,
                    repo_id      TEXT,
                    language     TEXT,
                    updated_at   BIGINT NOT NULL,
                    PRIMARY KEY (id, namespace)
                )
            """))
            conn.execute(text(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.table}_embedding
                ON {self.table}
                USING ivfflat (embedding vector_cosine_ops)
                WITH (lists = 100)
            """))
        logger.info("pgvector table '%s' ready (namespace=%s)", self.table, self.namespace)

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, records: Sequence[VectorRecord]) -> None:
        if self._engine is None or not records:
            return
        sql = self._text(f"""
            INSERT INTO {self.table}
                (id, namespace, embedding, content_hash, model_id, repo_id, language, updated_at)
            VALUES (:id, :ns, CAST(:embedding AS vector), :content_hash, :model_id,
                    :repo_id, :language, :updated_at)
            ON CONFLICT (id, namespace) DO UPDATE SET
                embedding    = EXCLUDED.embedding,
                content_hash = EXCLUDED.content_hash,
                model_id     = EXCLUDED.model_id,
                repo_id      = EXCLUDED.repo_id,
                language     = EXCLUDED.language,
                updated_at   = EXCLUDED.updated_at
        """)
        params = [
            {
                "id": r.id,
                "ns": self.namespace,
                "embedding": to_vector_literal(r.embedding),
                "content_hash": r.metadata.content_hash,
                "model_id": r.metadata.model_id,
                "repo_id": r.metadata.repo_id,
                "language": r.metadata.language,
                "updated_at": r.metadata.updated_at,
            }
            for r in records
        ]
        with self._engine.begin() as conn:
            conn.execute(sql, params)

    def delete(self, ids: Sequence[str]) -> None:
        if self._engine is None or not ids:
            return
        with self._engine.begin() as conn:
            conn.execute(
                self._text(f"DELETE FROM {self.table} WHERE namespace = :ns AND id = :id"),
                [{"ns": self.namespace, "id": i} for i in ids],
            )

    def prune(self, live_ids: Iterable[str]) -> int:
        if self._engine is None:
            return 0
        live = set(live_ids)
        with self._engine.begin() as conn:
            rows = conn.execute(
                self._text(f"SELECT id FROM {self.table} WHERE namespace = :ns"),
                {"ns": self.namespace},
            ).fetchall()
            stale = [row.id for row in rows if row.id not in live]
            if stale:
                conn.execute(
                    self._text(f"DELETE FROM {self.table} WHERE namespace = :ns AND id = :id"),
                    [{"ns": self.namespace, "id": i} for i in stale],
                )
        return len(stale)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        namespace: Any = UNSET,
    ) -> List[SimilarResult]:
        if self._engine is None:
            return []
        target = self._namespace_for(namespace)
        where = "WHERE namespace = :ns" if target else ""
        sql = self._text(f"""
            SELECT id, 1 - (embedding <=> CAST(:q AS vector)) AS score,
                   content_hash, model_id, repo_id, language, updated_at
            FROM {self.table}
            {where}
            ORDER BY embedding <=> CAST(:q AS vector)
            LIMIT :k
        """)
        params: Dict[str, Any] = {"q": to_vector_literal(vector), "k": top_k}
        if target:
            params["ns"] = target
        with self._engine.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            SimilarResult(id=row.id, score=float(row.score), metadata=_row_metadata(row))
            for row in rows
        ]

    def fetch(self, ids: Sequence[str]) -> List[VectorRecord]:
        if self._engine is None or not ids:
            return []
        sql = self._text(f"""
            SELECT id, embedding::text AS embedding,
                   content_hash, model_id, repo_id, language, updated_at
            FROM {self.table}
            WHERE namespace = :ns AND id = ANY(:ids)
        """)
        with self._engine.connect() as conn:
            rows = conn.execute(sql, {"ns": self.namespace, "ids": list(ids)}).fetchall()
        by_id = {row.id: row for row in rows}
        return [
            VectorRecord(
                id=vid,
                embedding=parse_vector_literal(by_id[vid].embedding),
                metadata=_row_metadata(by_id[vid]),
            )
            for vid in ids
            if vid in by_id
        ]
