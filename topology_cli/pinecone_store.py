"""Pinecone-backed vector store.

The ``pinecone`` SDK is imported in :meth:`PineconeVectorStore.init`, so it is
only required when this provider is selected.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config_manager import PineconeConfig
from .models import SimilarResult, VectorMetadata, VectorRecord
from .vector_store import UNSET, BackendUnavailableError, VectorStore

logger = logging.getLogger(__name__)

# Pinecone accepts at most 100 vectors per upsert request
PINECONE_BATCH_SIZE = 100


def _metadata_from(raw: Optional[Dict[str, Any]]) -> Optional[VectorMetadata]:
    return VectorMetadata.from_dict(dict(raw)) if raw else None


class PineconeVectorStore(VectorStore):
    provider = "pinecone"

    def __init__(self, config: PineconeConfig) -> None:
        self.config = config
        self.namespace = config.namespace or None
        self._index: Any = None

    def init(self) -> None:
        try:
            from pinecone import Pinecone
        except ImportError as exc:
            raise BackendUnavailableError(
                "Pinecone SDK not installed. Install with: pip install topology-cli[pinecone]"
            ) from exc
        client = Pinecone(api_key=self.config.api_key)
        self._index = client.Index(self.config.index_name)
        logger.info(
            "Connected to Pinecone index '%s' (namespace=%s)",
            self.config.index_name, self.namespace or "<default>",
        )

    def _ns_kwargs(self, namespace: Optional[str]) -> Dict[str, str]:
        return {"namespace": namespace} if namespace else {}

    def upsert(self, records: Sequence[VectorRecord]) -> None:
        if self._index is None or not records:
            return
        for start in range(0, len(records), PINECONE_BATCH_SIZE):
            batch = records[start:start + PINECONE_BATCH_SIZE]
            vectors = [
                {
                    "id": r.id,
                    "values": list(r.embedding),
                    "metadata": {
                        "contentHash": r.metadata.content_hash,
                        "modelId": r.metadata.model_id,
                        "repoId": r.metadata.repo_id or "",
                        "language": r.metadata.language or "",
                        "updatedAt": r.metadata.updated_at,
                    },
                }
                for r in batch
            ]
            self._index.upsert(vectors=vectors, **self._ns_kwargs(self.namespace))

    def delete(self, ids: Sequence[str]) -> None:
        if self._index is None or not ids:
            return
        self._index.delete(ids=list(ids), **self._ns_kwargs(self.namespace))

    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        namespace: Any = UNSET,
    ) -> List[SimilarResult]:
        if self._index is None:
            return []
        target = self._namespace_for(namespace)
        response = self._index.query(
            vector=list(vector),
            top_k=top_k,
            include_metadata=True,
            **self._ns_kwargs(target),
        )
        return [
            SimilarResult(id=m.id, score=float(m.score), metadata=_metadata_from(m.metadata))
            for m in (response.matches or [])
        ]

    def fetch(self, ids: Sequence[str]) -> List[VectorRecord]:
        if self._index is None or not ids:
            return []
        response = self._index.fetch(ids=list(ids), **self._ns_kwargs(self.namespace))
        found = response.vectors or {}
        records: List[VectorRecord] = []
        for vid in ids:
            vec = found.get(vid)
            if vec is None:
                continue
            records.append(VectorRecord(
                id=vid,
                embedding=list(vec.values),
                metadata=VectorMetadata.from_dict(dict(getattr(vec, "metadata", None) or {})),
            ))
        return records

    def prune(self, live_ids: Iterable[str]) -> int:
        # Listing every id is not available on all index types; stale vectors
        # are overwritten on upsert and removed through delete().
        return 0

    def close(self) -> None:
        self._index = None
