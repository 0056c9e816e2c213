"""Local file embeddings.

Two embedders are available (``[analysis].embedding_model`` in config):

========== ====================================== ====== =========================
Key        Model                                  Dim    Notes
========== ====================================== ====== =========================
minilm     sentence-transformers/all-MiniLM-L6-v2  384   Default, ~90 MB download
hash       (none)                                  256   No ML, keyword-level only
========== ====================================== ====== =========================

MiniLM weights are fetched once into ``<repo>/.topology/models`` and all
inference runs on-device.  Tokenisation uses our own WordPiece tokenizer;
``transformers`` only supplies the encoder network.
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from hashlib import blake2b
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import requests

from .models import ParsedFile
from .storage import EmbeddingCache, cache_root
from .tokenizer import BertTokenizer

logger = logging.getLogger(__name__)

MINILM_MODEL_ID = "sentence-transformers/all-MiniLM-L6-v2"
MINILM_DIM = 384
EMBEDDING_MODELS = ("minilm", "hash")
MODEL_FILES = ("vocab.txt", "config.json", "model.safetensors")
HF_RESOLVE_URL = "https://huggingface.co/{model_id}/resolve/main/{filename}"

DOWNLOAD_TIMEOUT_SECONDS = 120
MAX_REDIRECTS = 5
_CHUNK_SIZE = 1 << 16

# Characters of file content fed to the encoder; the tokenizer truncates anyway
MAX_EMBED_CHARS = 4000

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class ModelDownloadError(RuntimeError):
    """Raised when model files cannot be fetched."""


# ===================================================================
# ModelManager
# ===================================================================

class ModelManager:
    """Downloads and locates the MiniLM model files."""

    def __init__(
        self,
        repo_root: Path,
        cache_dir: Optional[Path] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.model_dir = cache_root(repo_root, cache_dir) / "models" / MINILM_MODEL_ID.split("/")[-1]
        self._session = session

    def file_path(self, filename: str) -> Path:
        return self.model_dir / filename

    def is_model_downloaded(self) -> bool:
        return all(self.file_path(name).exists() for name in MODEL_FILES)

    def ensure_model(self) -> Path:
        """Download whichever model files are missing; return the model dir."""
        self.model_dir.mkdir(parents=True, exist_ok=True)
        session = self._session or requests.Session()
        session.max_redirects = MAX_REDIRECTS
        for name in MODEL_FILES:
            dest = self.file_path(name)
            if dest.exists():
                continue
            url = HF_RESOLVE_URL.format(model_id=MINILM_MODEL_ID, filename=name)
            logger.info("Downloading %s", url)
            self._download(session, url, dest)
        return self.model_dir

    @staticmethod
    def _download(session: requests.Session, url: str, dest: Path) -> None:
        tmp = dest.with_name(dest.name + ".part")
        deadline = time.monotonic() + DOWNLOAD_TIMEOUT_SECONDS
        try:
            with session.get(url, stream=True, timeout=(10, 30)) as resp:
                resp.raise_for_status()
                with open(tmp, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                        if time.monotonic() > deadline:
                            raise ModelDownloadError(
                                f"Download of {url} exceeded {DOWNLOAD_TIMEOUT_SECONDS}s"
                            )
                        if chunk:
                            fh.write(chunk)
        except requests.RequestException as exc:
            tmp.unlink(missing_ok=True)
            raise ModelDownloadError(f"Failed to download {url}: {exc}") from exc
        except ModelDownloadError:
            tmp.unlink(missing_ok=True)
            raise
        tmp.replace(dest)


# ===================================================================
# Pooling
# ===================================================================

def mean_pool(last_hidden_states: Any, attention_mask: Any) -> Any:
    """Mean over non-padding tokens; an all-zero mask yields a zero vector."""
    mask_expanded = attention_mask.unsqueeze(-1).expand(
        last_hidden_states.size()
    ).float()
    sum_embeddings = (last_hidden_states * mask_expanded).sum(dim=1)
    sum_mask = mask_expanded.sum(dim=1).clamp(min=1e-9)
    return sum_embeddings / sum_mask


def l2_normalize_tensor(embeddings: Any) -> Any:
    """Row-wise unit length; zero rows stay zero."""
    import torch.nn.functional as F

    return F.normalize(embeddings, p=2, dim=1)


def l2_normalize(vec: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    if norm < 1e-12:
        return [0.0] * len(vec)
    return [v / norm for v in vec]


# ===================================================================
# MiniLMEmbedder
# ===================================================================

class MiniLMEmbedder:
    """Sentence encoder over a locally downloaded MiniLM checkpoint."""

    model_id = MINILM_MODEL_ID
    dim = MINILM_DIM

    def __init__(self, model_dir: Path, device: str = "cpu") -> None:
        self.model_dir = Path(model_dir)
        self.device = device
        self._model: Any = None
        self._tokenizer: Optional[BertTokenizer] = None

    def _load_model(self) -> BertTokenizer:
        if self._model is not None and self._tokenizer is not None:
            return self._tokenizer
        try:
            import torch  # noqa: F401
            from transformers import AutoModel
        except ImportError:
            raise ImportError(
                "torch and transformers are required for MiniLM embeddings.\n"
                "Install with:  pip install topology-cli[embeddings]\n"
                "or select the hash model:  topo analyze --embedding-model hash"
            )

        tokenizer = BertTokenizer(self.model_dir / "vocab.txt").load()
        try:
            self._model = AutoModel.from_pretrained(str(self.model_dir))
        except Exception as exc:
            raise RuntimeError(f"Failed to load embedding model from {self.model_dir}: {exc}") from exc
        self._model.eval()
        self._model.to(self.device)
        logger.info("Loaded %s on %s", self.model_id, self.device)
        self._tokenizer = tokenizer
        return tokenizer

    def embed_text(self, text: str) -> List[float]:
        import torch

        tokenizer = self._load_model()
        encoded = tokenizer.encode(text)
        inputs = {
            "input_ids": torch.tensor([encoded.input_ids], dtype=torch.long),
            "attention_mask": torch.tensor([encoded.attention_mask], dtype=torch.long),
            "token_type_ids": torch.tensor([encoded.token_type_ids], dtype=torch.long),
        }
        inputs = {k: v.to(self.device) for k, v in inputs.items()}

        with torch.no_grad():
            outputs = self._model(**inputs)

        pooled = mean_pool(outputs.last_hidden_state, inputs["attention_mask"])
        return l2_normalize_tensor(pooled)[0].cpu().tolist()


# ===================================================================
# HashEmbeddingModel  (zero-dependency)
# ===================================================================

class HashEmbeddingModel:
    """Deterministic token-hashing embedder; keyword overlap only."""

    def __init__(self, dim: int = 256) -> None:
        self.dim = dim
        self.model_id = f"hash-{dim}"

    def embed_text(self, text: str) -> List[float]:
        vec = [0.0] * self.dim
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return vec
        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if (digest[4] & 1) == 0 else -1.0
            vec[idx] += sign
        return l2_normalize(vec)


Embedder = Union[MiniLMEmbedder, HashEmbeddingModel]


def model_id_for(model_key: str) -> str:
    """Model id recorded in the embedding cache for *model_key*."""
    if model_key == "hash":
        return HashEmbeddingModel().model_id
    return MINILM_MODEL_ID


def get_embedder(
    model_key: str,
    repo_root: Path,
    cache_dir: Optional[Path] = None,
    device: str = "cpu",
) -> Embedder:
    """Build the embedder for *model_key*, downloading weights if needed.

    Raises ``ImportError`` when torch/transformers are missing and
    :class:`ModelDownloadError` when the weights cannot be fetched.
    """
    if model_key == "hash":
        return HashEmbeddingModel()
    if model_key != "minilm":
        raise ValueError(
            f"Unknown embedding model: '{model_key}'. Available: {', '.join(EMBEDDING_MODELS)}"
        )

    import torch  # noqa: F401
    import transformers  # noqa: F401

    model_dir = ModelManager(repo_root, cache_dir).ensure_model()
    return MiniLMEmbedder(model_dir, device=device)


# ===================================================================
# Batch generation with cache reuse
# ===================================================================

@dataclass
class EmbeddingRun:
    embeddings: Dict[str, List[float]] = field(default_factory=dict)
    new_rows: List[Tuple[str, str, List[float], str]] = field(default_factory=list)
    cached: int = 0
    failed: int = 0

    @property
    def computed(self) -> int:
        return len(self.new_rows)


def embedding_text(file_path: str, content: str) -> str:
    return f"{file_path}\n{content[:MAX_EMBED_CHARS]}"


def generate_embeddings(
    files: Sequence[ParsedFile],
    read_content: Callable[[str], str],
    embedder: Embedder,
    cache: Optional[EmbeddingCache] = None,
) -> EmbeddingRun:
    """Embed every file, reusing cached vectors for unchanged content.

    A failure on one file is logged and that file skipped.  New vectors are
    written to *cache* in a single batch at the end.
    """
    run = EmbeddingRun()
    model_id = embedder.model_id

    for parsed in files:
        if cache is not None:
            hit = cache.get(parsed.file_path, parsed.content_hash, model_id)
            if hit is not None:
                run.embeddings[parsed.file_path] = hit
                run.cached += 1
                continue
        try:
            vector = embedder.embed_text(embedding_text(parsed.file_path, read_content(parsed.file_path)))
        except Exception as exc:
            logger.warning("Embedding failed for %s: %s", parsed.file_path, exc)
            run.failed += 1
            continue
        run.embeddings[parsed.file_path] = vector
        run.new_rows.append((parsed.file_path, parsed.content_hash, vector, model_id))

    if cache is not None and run.new_rows:
        cache.set_batch(run.new_rows)

    logger.info(
        "Embeddings: %d cached, %d computed, %d failed",
        run.cached, run.computed, run.failed,
    )
    return run
