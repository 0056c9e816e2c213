"""Per-repository content cache.

A single SQLite database (``<repo>/.topology/cache.db``) holds three tables:

- ``parsed_files`` -- parse results keyed by path, validated by content hash.
- ``embeddings`` -- vectors keyed by path, validated by content hash and
  model id.
- ``vector_sync_state`` -- which ``(path, hash)`` pairs were pushed to a
  remote vector provider.

The schema is versioned.  Older databases are migrated step by step; a
database that cannot be opened or migrated is deleted and rebuilt, since
everything in it can be recomputed from the source tree.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .config import CACHE_DB_NAME, DEFAULT_CACHE_DIRNAME
from .models import ParsedFile, ParsedImport

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 4


def cache_root(repo_root: Path, cache_dir: Optional[Path] = None) -> Path:
    """Directory holding the cache db, downloaded models and snapshots."""
    return Path(cache_dir) if cache_dir else Path(repo_root) / DEFAULT_CACHE_DIRNAME


# ===================================================================
# Schema
# ===================================================================

_PARSED_FILES_SQL = """
    CREATE TABLE IF NOT EXISTS parsed_files (
        file_path    TEXT PRIMARY KEY,
        content_hash TEXT NOT NULL,
        language     TEXT NOT NULL,
        imports_json TEXT NOT NULL,
        export_sig   TEXT NOT NULL,
        cached_at    INTEGER NOT NULL
    )
"""

_EMBEDDINGS_SQL = """
    CREATE TABLE IF NOT EXISTS embeddings (
        file_path      TEXT PRIMARY KEY,
        content_hash   TEXT NOT NULL,
        embedding_json TEXT NOT NULL,
        model_id       TEXT NOT NULL,
        cached_at      INTEGER NOT NULL
    )
"""

_EMBEDDINGS_MODEL_INDEX_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_embeddings_model ON embeddings(model_id)"
)

_VECTOR_SYNC_SQL = """
    CREATE TABLE IF NOT EXISTS vector_sync_state (
        file_path    TEXT NOT NULL,
        provider     TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        synced_at    INTEGER NOT NULL,
        PRIMARY KEY (file_path, provider)
    )
"""


def _migrate_to_2(conn: sqlite3.Connection) -> None:
    conn.execute(_EMBEDDINGS_SQL)


def _migrate_to_3(conn: sqlite3.Connection) -> None:
    conn.execute(_EMBEDDINGS_MODEL_INDEX_SQL)


def _migrate_to_4(conn: sqlite3.Connection) -> None:
    conn.execute(_VECTOR_SYNC_SQL)


# target version -> step; every step is idempotent
MIGRATIONS: List[Tuple[int, Callable[[sqlite3.Connection], None]]] = [
    (2, _migrate_to_2),
    (3, _migrate_to_3),
    (4, _migrate_to_4),
]


def _now_ms() -> int:
    return int(time.time() * 1000)


# ===================================================================
# CacheDb
# ===================================================================

class CacheDb:
    """Owns the SQLite connection and the schema lifecycle."""

    def __init__(self, repo_root: Path, cache_dir: Optional[Path] = None) -> None:
        self.root = cache_root(repo_root, cache_dir)
        self.db_path = self.root / CACHE_DB_NAME
        self.conn: Optional[sqlite3.Connection] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "CacheDb":
        self.root.mkdir(parents=True, exist_ok=True)
        try:
            self._connect()
            self._migrate()
        except (sqlite3.DatabaseError, RuntimeError) as exc:
            logger.warning("Cache database unusable (%s); rebuilding %s", exc, self.db_path)
            self.rebuild()
        return self

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self) -> "CacheDb":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def rebuild(self) -> None:
        """Delete the database (and its WAL side files) and start fresh."""
        self.close()
        for suffix in ("", "-wal", "-shm"):
            path = Path(str(self.db_path) + suffix)
            if path.exists():
                path.unlink()
        self._connect()
        self._create_full_schema()

    def _connect(self) -> None:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA busy_timeout = 5000")
        except sqlite3.DatabaseError:
            conn.close()
            raise
        self.conn = conn

    @property
    def connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("Cache database is not open")
        return self.conn

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _create_full_schema(self) -> None:
        conn = self.connection
        with conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            conn.execute(_PARSED_FILES_SQL)
            conn.execute(_EMBEDDINGS_SQL)
            conn.execute(_EMBEDDINGS_MODEL_INDEX_SQL)
            conn.execute(_VECTOR_SYNC_SQL)
            conn.execute("DELETE FROM schema_version")
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (CURRENT_SCHEMA_VERSION,),
            )

    def schema_version(self) -> int:
        row = self.connection.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        ).fetchone()
        if row is None:
            legacy = self.connection.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='parsed_files'"
            ).fetchone()
            return 1 if legacy is not None else 0
        version = self.connection.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
        return int(version or 0)

    def _migrate(self) -> None:
        version = self.schema_version()
        if version == 0:
            self._create_full_schema()
            return
        if version > CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"schema version {version} is newer than supported {CURRENT_SCHEMA_VERSION}"
            )

        conn = self.connection
        with conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            for target, step in MIGRATIONS:
                if version < target:
                    logger.info("Migrating cache schema %d -> %d", version, target)
                    step(conn)
                    version = target
            conn.execute("DELETE FROM schema_version")
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, int]:
        conn = self.connection
        entries = conn.execute("SELECT COUNT(*) FROM parsed_files").fetchone()[0]
        embeddings = conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
        size = 0
        for suffix in ("", "-wal"):
            path = Path(str(self.db_path) + suffix)
            if path.exists():
                size += path.stat().st_size
        return {"entries": int(entries), "embeddings": int(embeddings), "size_bytes": size}

    def clear(self) -> None:
        with self.connection as conn:
            conn.execute("DELETE FROM parsed_files")
            conn.execute("DELETE FROM embeddings")
            conn.execute("DELETE FROM vector_sync_state")


def _prune_table(conn: sqlite3.Connection, table: str, live_paths: Iterable[str]) -> int:
    live = set(live_paths)
    with conn:
        rows = conn.execute(f"SELECT file_path FROM {table}").fetchall()
        stale = [(r["file_path"],) for r in rows if r["file_path"] not in live]
        if stale:
            conn.executemany(f"DELETE FROM {table} WHERE file_path = ?", stale)
    return len(stale)


# ===================================================================
# ParseCache
# ===================================================================

class ParseCache:
    def __init__(self, db: CacheDb) -> None:
        self.db = db

    def get(self, file_path: str, content_hash: str) -> Optional[ParsedFile]:
        try:
            row = self.db.connection.execute(
                "SELECT * FROM parsed_files WHERE file_path = ? AND content_hash = ?",
                (file_path, content_hash),
            ).fetchone()
        except sqlite3.DatabaseError as exc:
            logger.warning("Parse cache read failed (%s); rebuilding", exc)
            self.db.rebuild()
            return None
        if row is None:
            return None
        imports = tuple(ParsedImport.from_dict(i) for i in json.loads(row["imports_json"]))
        return ParsedFile(
            file_path=row["file_path"],
            language=row["language"],
            imports=imports,
            export_signature=row["export_sig"],
            content_hash=row["content_hash"],
        )

    def set(self, parsed: ParsedFile) -> None:
        self.set_batch([parsed])

    def set_batch(self, parsed_files: Sequence[ParsedFile]) -> None:
        if not parsed_files:
            return
        now = _now_ms()
        with self.db.connection as conn:
            conn.executemany(
                """
                INSERT INTO parsed_files
                    (file_path, content_hash, language, imports_json, export_sig, cached_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(file_path) DO UPDATE SET
                    content_hash = excluded.content_hash,
                    language     = excluded.language,
                    imports_json = excluded.imports_json,
                    export_sig   = excluded.export_sig,
                    cached_at    = excluded.cached_at
                """,
                [
                    (
                        p.file_path,
                        p.content_hash,
                        p.language,
                        json.dumps([i.to_dict() for i in p.imports]),
                        p.export_signature,
                        now,
                    )
                    for p in parsed_files
                ],
            )

    def prune(self, live_paths: Iterable[str]) -> int:
        return _prune_table(self.db.connection, "parsed_files", live_paths)


# ===================================================================
# EmbeddingCache
# ===================================================================

class EmbeddingCache:
    def __init__(self, db: CacheDb) -> None:
        self.db = db

    def get(
        self,
        file_path: str,
        content_hash: str,
        model_id: Optional[str] = None,
    ) -> Optional[List[float]]:
        """Cached vector, or ``None`` when hash or model id differ."""
        try:
            row = self.db.connection.execute(
                "SELECT embedding_json, model_id FROM embeddings "
                "WHERE file_path = ? AND content_hash = ?",
                (file_path, content_hash),
            ).fetchone()
        except sqlite3.DatabaseError as exc:
            logger.warning("Embedding cache read failed (%s); rebuilding", exc)
            self.db.rebuild()
            return None
        if row is None:
            return None
        if model_id is not None and row["model_id"] != model_id:
            return None
        return json.loads(row["embedding_json"])

    def set(self, file_path: str, content_hash: str, embedding: List[float], model_id: str) -> None:
        self.set_batch([(file_path, content_hash, embedding, model_id)])

    def set_batch(self, rows: Sequence[Tuple[str, str, List[float], str]]) -> None:
        if not rows:
            return
        now = _now_ms()
        with self.db.connection as conn:
            conn.executemany(
                """
                INSERT INTO embeddings
                    (file_path, content_hash, embedding_json, model_id, cached_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(file_path) DO UPDATE SET
                    content_hash   = excluded.content_hash,
                    embedding_json = excluded.embedding_json,
                    model_id       = excluded.model_id,
                    cached_at      = excluded.cached_at
                """,
                [(path, h, json.dumps(emb), model, now) for path, h, emb, model in rows],
            )

    def delete(self, file_paths: Iterable[str]) -> None:
        with self.db.connection as conn:
            conn.executemany(
                "DELETE FROM embeddings WHERE file_path = ?",
                [(p,) for p in file_paths],
            )

    def all_rows(self, model_id: Optional[str] = None) -> List[sqlite3.Row]:
        if model_id is None:
            return self.db.connection.execute("SELECT * FROM embeddings").fetchall()
        return self.db.connection.execute(
            "SELECT * FROM embeddings WHERE model_id = ?", (model_id,),
        ).fetchall()

    def prune(self, live_paths: Iterable[str]) -> int:
        return _prune_table(self.db.connection, "embeddings", live_paths)


# ===================================================================
# VectorSyncState
# ===================================================================

class VectorSyncState:
    """Remembers which file versions were pushed to a remote provider."""

    def __init__(self, db: CacheDb, provider: str) -> None:
        self.db = db
        self.provider = provider

    def synced_hashes(self) -> Dict[str, str]:
        rows = self.db.connection.execute(
            "SELECT file_path, content_hash FROM vector_sync_state WHERE provider = ?",
            (self.provider,),
        ).fetchall()
        return {r["file_path"]: r["content_hash"] for r in rows}

    def mark_synced(self, entries: Sequence[Tuple[str, str]]) -> None:
        if not entries:
            return
        now = _now_ms()
        with self.db.connection as conn:
            conn.executemany(
                """
                INSERT INTO vector_sync_state (file_path, provider, content_hash, synced_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(file_path, provider) DO UPDATE SET
                    content_hash = excluded.content_hash,
                    synced_at    = excluded.synced_at
                """,
                [(path, self.provider, h, now) for path, h in entries],
            )

    def prune(self, live_paths: Iterable[str]) -> int:
        live: Set[str] = set(live_paths)
        conn = self.db.connection
        with conn:
            rows = conn.execute(
                "SELECT file_path FROM vector_sync_state WHERE provider = ?",
                (self.provider,),
            ).fetchall()
            stale = [(r["file_path"], self.provider) for r in rows if r["file_path"] not in live]
            if stale:
                conn.executemany(
                    "DELETE FROM vector_sync_state WHERE file_path = ? AND provider = ?",
                    stale,
                )
        return len(stale)
