"""Configuration paths and analysis defaults for Topology."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("TOPOLOGY_HOME", str(Path.home() / ".topology"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"

# Per-repository working directory (cache db, models, snapshots)
DEFAULT_CACHE_DIRNAME = ".topology"
CACHE_DB_NAME = "cache.db"
SNAPSHOT_FILE_NAME = "topology-data.json"

SUPPORTED_EXTENSIONS = {".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".py"}

SKIP_DIRS = {
    "node_modules", "dist", ".git", DEFAULT_CACHE_DIRNAME, ".next",
    "coverage", "__pycache__", "venv", ".venv", "env",
}

DEFAULT_SIMILARITY_THRESHOLD = 0.7
DEFAULT_MAX_PER_FILE = 3
DEFAULT_MAX_SNAPSHOTS = 50
DEFAULT_DEBOUNCE_MS = 300

# Embeddings are switched off for very large trees
MAX_EMBEDDING_FILES = 2000


def ensure_base_dirs() -> None:
    """Create the global Topology directory if needed."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)
