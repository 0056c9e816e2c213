"""Tests for the WordPiece tokenizer."""

from pathlib import Path

import pytest

from topology_cli.tokenizer import MAX_WORD_LEN, BertTokenizer

VOCAB = ["[PAD]", "[UNK]", "[CLS]", "[SEP]", "hello", "world", "un", "##aff", "##able"]


@pytest.fixture
def tokenizer():
    return BertTokenizer.from_vocab(VOCAB, max_length=8)


class TestBertTokenizer:
    """Tests for BertTokenizer."""

    def test_special_ids_come_from_vocab(self, tokenizer):
        assert (tokenizer.pad_id, tokenizer.unk_id, tokenizer.cls_id, tokenizer.sep_id) == (0, 1, 2, 3)

    def test_lowercases_and_splits_on_whitespace(self, tokenizer):
        assert tokenizer.tokenize("Hello   WORLD") == [4, 5]

    def test_greedy_longest_match(self, tokenizer):
        """Continuation pieces carry the ## prefix."""
        assert tokenizer.tokenize("unaffable") == [6, 7, 8]

    def test_unknown_characters(self, tokenizer):
        assert tokenizer.tokenize("hellox") == [4, 1]

    def test_overlong_word_is_single_unk(self, tokenizer):
        assert tokenizer.tokenize("a" * (MAX_WORD_LEN + 1)) == [1]

    def test_encode_pads(self, tokenizer):
        out = tokenizer.encode("hello world")
        assert out.input_ids == [2, 4, 5, 3, 0, 0, 0, 0]
        assert out.attention_mask == [1, 1, 1, 1, 0, 0, 0, 0]
        assert out.token_type_ids == [0] * 8

    def test_encode_truncates_body(self):
        tokenizer = BertTokenizer.from_vocab(VOCAB, max_length=4)
        out = tokenizer.encode("hello world hello world")
        assert out.input_ids == [2, 4, 5, 3]
        assert out.attention_mask == [1, 1, 1, 1]

    @pytest.mark.parametrize("max_length", [0, 1])
    def test_max_length_must_fit_markers(self, max_length):
        with pytest.raises(ValueError, match="max_length"):
            BertTokenizer.from_vocab(VOCAB, max_length=max_length)

    def test_shortest_encoding_is_markers_only(self):
        out = BertTokenizer.from_vocab(VOCAB, max_length=2).encode("hello world")
        assert out.input_ids == [2, 3]
        assert out.attention_mask == [1, 1]

    def test_encode_requires_vocab(self, temp_dir: Path):
        with pytest.raises(RuntimeError):
            BertTokenizer(temp_dir / "vocab.txt").encode("hello")

    def test_load_from_file(self, temp_dir: Path):
        vocab_file = temp_dir / "vocab.txt"
        vocab_file.write_text("\n".join(VOCAB) + "\n", encoding="utf-8")

        tokenizer = BertTokenizer(vocab_file, max_length=6).load()
        assert tokenizer.encode("world").input_ids == [2, 5, 3, 0, 0, 0]
