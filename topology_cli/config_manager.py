"""Configuration manager for Topology using TOML files and environment.

``~/.topology/config.toml`` holds two sections::

    [analysis]
    similarity_threshold = 0.7
    max_semantic_per_file = 3
    embedding_model = "minilm"
    embeddings = true

    [vectors]
    provider = "pgvector"
    batch_size = 100
    pgvector_url = "postgresql://..."

Vector settings resolve in the order: explicit overrides, ``TOPOLOGY_*``
environment variables, the ``[vectors]`` section, built-in defaults.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import toml

from . import config

logger = logging.getLogger(__name__)

VECTOR_PROVIDERS = ("sqlite", "pinecone", "pgvector")
DEFAULT_PGVECTOR_TABLE = "topology_embeddings"
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000
PGVECTOR_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_ANALYSIS_CONFIG: Dict[str, Any] = {
    "similarity_threshold": config.DEFAULT_SIMILARITY_THRESHOLD,
    "max_semantic_per_file": config.DEFAULT_MAX_PER_FILE,
    "embedding_model": "minilm",
    "embeddings": True,
}


class ConfigurationError(ValueError):
    """Invalid or incomplete configuration; raised before any work starts."""


# ===================================================================
# Vector store configuration
# ===================================================================

@dataclass
class PineconeConfig:
    api_key: str
    index_name: str
    namespace: Optional[str] = None


@dataclass
class PgvectorConfig:
    connection_string: str
    table_name: str = DEFAULT_PGVECTOR_TABLE
    namespace: Optional[str] = None


@dataclass
class SyncConfig:
    enabled: bool = True
    batch_size: int = 100
    use_cloud_search: bool = False


@dataclass
class VectorStoreConfig:
    provider: str = "sqlite"
    pinecone: Optional[PineconeConfig] = None
    pgvector: Optional[PgvectorConfig] = None
    sync: SyncConfig = field(default_factory=SyncConfig)

    @property
    def is_remote(self) -> bool:
        return self.provider != "sqlite"


# ===================================================================
# TOML file
# ===================================================================

def load_full_config() -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    if not config.CONFIG_FILE.exists():
        return {}
    try:
        with open(config.CONFIG_FILE, "r") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", config.CONFIG_FILE, exc)
        return {}


def _save_full_config(payload: Dict[str, Any]) -> bool:
    """Write entire config dict to TOML file, preserving all sections."""
    config.ensure_base_dirs()
    try:
        with open(config.CONFIG_FILE, "w") as f:
            toml.dump(payload, f)
        return True
    except OSError as exc:
        logger.warning("Could not write config %s: %s", config.CONFIG_FILE, exc)
        return False


def load_analysis_config() -> Dict[str, Any]:
    """``[analysis]`` merged over the defaults."""
    merged = dict(DEFAULT_ANALYSIS_CONFIG)
    merged.update(load_full_config().get("analysis", {}))
    return merged


def save_analysis_config(**values: Any) -> bool:
    full = load_full_config()
    section = full.setdefault("analysis", {})
    section.update({k: v for k, v in values.items() if v is not None})
    return _save_full_config(full)


def load_vector_section() -> Dict[str, Any]:
    return load_full_config().get("vectors", {})


def save_vector_config(**values: Any) -> bool:
    """Persist ``[vectors]`` keys; ``None`` values remove the key."""
    full = load_full_config()
    section = full.setdefault("vectors", {})
    for key, value in values.items():
        if value is None:
            section.pop(key, None)
        else:
            section[key] = value
    return _save_full_config(full)


# ===================================================================
# Resolution
# ===================================================================

def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ("false", "0", "no", "off", "")


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def resolve_vector_config(overrides: Optional[Dict[str, Any]] = None) -> VectorStoreConfig:
    """Build a validated :class:`VectorStoreConfig`.

    *overrides* uses the flat keys of the ``[vectors]`` section
    (``provider``, ``pinecone_api_key``, ``pgvector_url``, ``batch_size`` ...).

    Raises :class:`ConfigurationError` for an unknown provider, a batch size
    outside 1..1000, or missing credentials for the selected provider.
    """
    overrides = overrides or {}
    env = os.environ
    section = load_vector_section()

    def pick(key: str, env_name: str, default: Any = None) -> Any:
        value = _first(overrides.get(key), env.get(env_name), section.get(key))
        return default if value is None else value

    provider = str(pick("provider", "TOPOLOGY_VECTOR_PROVIDER", "sqlite")).lower()
    if provider not in VECTOR_PROVIDERS:
        raise ConfigurationError(
            f"Unknown vector provider '{provider}'. Available: {', '.join(VECTOR_PROVIDERS)}"
        )

    raw_batch = pick("batch_size", "TOPOLOGY_VECTOR_BATCH_SIZE", 100)
    try:
        batch_size = int(raw_batch)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Vector batch size must be an integer, got {raw_batch!r}")
    if not MIN_BATCH_SIZE <= batch_size <= MAX_BATCH_SIZE:
        raise ConfigurationError(
            f"Vector batch size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}, got {batch_size}"
        )

    sync = SyncConfig(
        enabled=_parse_bool(pick("sync", "TOPOLOGY_VECTOR_SYNC", True)),
        batch_size=batch_size,
        use_cloud_search=_parse_bool(pick("cloud_search", "TOPOLOGY_VECTOR_CLOUD_SEARCH", False)),
    )

    pinecone = None
    api_key = pick("pinecone_api_key", "TOPOLOGY_PINECONE_API_KEY")
    index_name = pick("pinecone_index", "TOPOLOGY_PINECONE_INDEX")
    if api_key and index_name:
        pinecone = PineconeConfig(
            api_key=str(api_key),
            index_name=str(index_name),
            namespace=pick("pinecone_namespace", "TOPOLOGY_PINECONE_NAMESPACE"),
        )

    pgvector = None
    url = pick("pgvector_url", "TOPOLOGY_PGVECTOR_URL")
    if url:
        table = str(pick("pgvector_table", "TOPOLOGY_PGVECTOR_TABLE", DEFAULT_PGVECTOR_TABLE))
        if not PGVECTOR_TABLE_RE.match(table):
            raise ConfigurationError(f"Invalid pgvector table name: {table!r}")
        pgvector = PgvectorConfig(
            connection_string=str(url),
            table_name=table,
            namespace=pick("pgvector_namespace", "TOPOLOGY_PGVECTOR_NAMESPACE"),
        )

    if provider == "pinecone" and pinecone is None:
        raise ConfigurationError(
            "Pinecone requires TOPOLOGY_PINECONE_API_KEY and TOPOLOGY_PINECONE_INDEX"
        )
    if provider == "pgvector" and pgvector is None:
        raise ConfigurationError("pgvector requires TOPOLOGY_PGVECTOR_URL")

    return VectorStoreConfig(provider=provider, pinecone=pinecone, pgvector=pgvector, sync=sync)


def validate_threshold(value: float) -> float:
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"Similarity threshold must be within [0, 1], got {value}")
    return value
