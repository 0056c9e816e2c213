"""Tests for embedders, model download and cached batch generation."""

import math
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from topology_cli.embeddings import (
    MINILM_MODEL_ID,
    MODEL_FILES,
    HashEmbeddingModel,
    ModelDownloadError,
    MiniLMEmbedder,
    ModelManager,
    embedding_text,
    generate_embeddings,
    get_embedder,
    l2_normalize,
    model_id_for,
)
from topology_cli.storage import CacheDb, EmbeddingCache

from conftest import make_parsed


class FakeResponse:
    def __init__(self, body=b"data", status=200):
        self.body = body
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def iter_content(self, chunk_size=1):
        yield self.body


class FakeSession:
    def __init__(self, status=200):
        self.status = status
        self.urls = []
        self.max_redirects = None

    def get(self, url, stream=False, timeout=None):
        self.urls.append(url)
        return FakeResponse(body=url.encode(), status=self.status)


class TestHashEmbeddingModel:
    """Tests for the keyword-hashing embedder."""

    def test_unit_length_and_deterministic(self):
        model = HashEmbeddingModel()
        vec = model.embed_text("export function formatDate(date) { return date; }")

        assert len(vec) == 256
        assert math.isclose(sum(v * v for v in vec), 1.0, rel_tol=1e-9)
        assert vec == HashEmbeddingModel().embed_text("export function formatDate(date) { return date; }")

    def test_empty_text_is_zero_vector(self):
        assert HashEmbeddingModel(dim=8).embed_text("  ... ") == [0.0] * 8

    def test_shared_vocabulary_is_closer(self):
        model = HashEmbeddingModel()
        a = model.embed_text("format date string timezone")
        b = model.embed_text("format date string locale")
        c = model.embed_text("render button click handler")

        def dot(x, y):
            return sum(i * j for i, j in zip(x, y))

        assert dot(a, b) > dot(a, c)

    def test_model_id(self):
        assert HashEmbeddingModel(dim=64).model_id == "hash-64"
        assert model_id_for("hash") == "hash-256"
        assert model_id_for("minilm") == MINILM_MODEL_ID


class TestHelpers:
    """Tests for normalisation and text preparation."""

    def test_l2_normalize(self):
        assert l2_normalize([3.0, 4.0]) == [0.6, 0.8]
        assert l2_normalize([0.0, 0.0]) == [0.0, 0.0]

    def test_embedding_text_prefixes_path_and_truncates(self):
        text = embedding_text("src/a.ts", "x" * 10000)
        assert text.startswith("src/a.ts\n")
        assert len(text) == len("src/a.ts\n") + 4000

    def test_get_embedder(self, temp_dir: Path):
        assert isinstance(get_embedder("hash", temp_dir), HashEmbeddingModel)
        with pytest.raises(ValueError, match="Unknown embedding model"):
            get_embedder("word2vec", temp_dir)

    def test_mean_pool_ignores_padding(self):
        torch = pytest.importorskip("torch")
        from topology_cli.embeddings import l2_normalize_tensor, mean_pool

        hidden = torch.tensor([[[1.0, 1.0], [3.0, 3.0], [100.0, 100.0]]])
        mask = torch.tensor([[1, 1, 0]])
        pooled = mean_pool(hidden, mask)
        assert pooled.tolist() == [[2.0, 2.0]]

        zero = mean_pool(hidden, torch.tensor([[0, 0, 0]]))
        assert zero.tolist() == [[0.0, 0.0]]
        assert l2_normalize_tensor(zero).tolist() == [[0.0, 0.0]]

    def test_mean_pool_full_mask_is_plain_mean(self):
        torch = pytest.importorskip("torch")
        from topology_cli.embeddings import mean_pool

        hidden = torch.tensor([[[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]])
        pooled = mean_pool(hidden, torch.tensor([[1, 1, 1]]))
        assert pooled.tolist() == [[3.0, 4.0]]
        assert torch.allclose(pooled, hidden.mean(dim=1))

    def test_l2_normalize_tensor_unit_rows(self):
        torch = pytest.importorskip("torch")
        from topology_cli.embeddings import l2_normalize_tensor

        rows = l2_normalize_tensor(torch.tensor([[3.0, 4.0], [1.0, -2.0]]))
        assert rows[0].tolist() == pytest.approx([0.6, 0.8])
        for row in rows:
            assert torch.linalg.norm(row).item() == pytest.approx(1.0)


class TestMiniLMEmbedder:
    """Tests for MiniLMEmbedder with a stand-in encoder."""

    def _loaded(self, temp_dir: Path, model=None):
        tokenizer = MagicMock()
        tokenizer.encode.return_value = SimpleNamespace(
            input_ids=[101, 7, 102], attention_mask=[1, 1, 1], token_type_ids=[0, 0, 0],
        )
        embedder = MiniLMEmbedder(temp_dir)
        embedder._tokenizer = tokenizer
        embedder._model = model or object()
        return embedder, tokenizer

    def test_loaded_model_returns_its_tokenizer(self, temp_dir: Path):
        embedder, tokenizer = self._loaded(temp_dir)
        assert embedder._load_model() is tokenizer

    def test_embed_text_pools_and_normalises(self, temp_dir: Path):
        torch = pytest.importorskip("torch")

        def model(**inputs):
            assert inputs["input_ids"].tolist() == [[101, 7, 102]]
            return SimpleNamespace(last_hidden_state=torch.tensor([[[3.0, 4.0]] * 3]))

        embedder, tokenizer = self._loaded(temp_dir, model)
        assert embedder.embed_text("x") == pytest.approx([0.6, 0.8])
        tokenizer.encode.assert_called_once_with("x")


class TestModelManager:
    """Tests for model file download."""

    def test_downloads_missing_files(self, temp_dir: Path):
        session = FakeSession()
        manager = ModelManager(temp_dir, session=session)
        assert not manager.is_model_downloaded()

        model_dir = manager.ensure_model()

        assert manager.is_model_downloaded()
        assert model_dir == temp_dir / ".topology" / "models" / "all-MiniLM-L6-v2"
        assert len(session.urls) == len(MODEL_FILES)
        assert session.max_redirects == 5

        manager.ensure_model()
        assert len(session.urls) == len(MODEL_FILES)

    def test_http_error(self, temp_dir: Path):
        manager = ModelManager(temp_dir, session=FakeSession(status=404))

        with pytest.raises(ModelDownloadError):
            manager.ensure_model()
        assert not list(manager.model_dir.glob("*.part"))
        assert not manager.is_model_downloaded()


class TestGenerateEmbeddings:
    """Tests for generate_embeddings."""

    FILES = [make_parsed("src/a.ts", digest="h1"), make_parsed("src/b.ts", digest="h2")]

    def test_cache_reuse(self, temp_dir: Path):
        """Unchanged files are served from the cache on the second run."""
        model = HashEmbeddingModel()
        with CacheDb(temp_dir) as db:
            cache = EmbeddingCache(db)
            first = generate_embeddings(self.FILES, lambda p: f"content of {p}", model, cache)
            second = generate_embeddings(self.FILES, lambda p: f"content of {p}", model, cache)

        assert (first.computed, first.cached) == (2, 0)
        assert (second.computed, second.cached) == (0, 2)
        assert second.embeddings == first.embeddings

    def test_changed_hash_recomputes(self, temp_dir: Path):
        model = HashEmbeddingModel()
        with CacheDb(temp_dir) as db:
            cache = EmbeddingCache(db)
            generate_embeddings(self.FILES, lambda p: "x", model, cache)
            changed = [make_parsed("src/a.ts", digest="h1-new"), self.FILES[1]]
            run = generate_embeddings(changed, lambda p: "x", model, cache)

        assert (run.computed, run.cached) == (1, 1)
        assert run.new_rows[0][:2] == ("src/a.ts", "h1-new")

    def test_failures_are_skipped(self):
        def read(path):
            if path == "src/a.ts":
                raise OSError("gone")
            return "content"

        run = generate_embeddings(self.FILES, read, HashEmbeddingModel())
        assert run.failed == 1
        assert list(run.embeddings) == ["src/b.ts"]
