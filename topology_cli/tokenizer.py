"""WordPiece tokenizer for BERT-family sentence encoders.

Reads a plain ``vocab.txt`` (one token per line, line index = token id) and
produces fixed-length ``input_ids`` / ``attention_mask`` / ``token_type_ids``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_WORD_LEN = 200
DEFAULT_MAX_LENGTH = 256

UNK_TOKEN = "[UNK]"
CLS_TOKEN = "[CLS]"
SEP_TOKEN = "[SEP]"
PAD_TOKEN = "[PAD]"


@dataclass
class TokenizerOutput:
    input_ids: List[int]
    attention_mask: List[int]
    token_type_ids: List[int]


class BertTokenizer:
    def __init__(self, vocab_path: Path, max_length: int = DEFAULT_MAX_LENGTH) -> None:
        if max_length < 2:
            raise ValueError(f"max_length must leave room for [CLS] and [SEP], got {max_length}")
        self.vocab_path = Path(vocab_path)
        self.max_length = max_length
        self.vocab: Dict[str, int] = {}
        self.unk_id = 100
        self.cls_id = 101
        self.sep_id = 102
        self.pad_id = 0

    @classmethod
    def from_vocab(cls, tokens: List[str], max_length: int = DEFAULT_MAX_LENGTH) -> "BertTokenizer":
        tokenizer = cls(Path("<memory>"), max_length=max_length)
        tokenizer._set_vocab(tokens)
        return tokenizer

    def load(self) -> "BertTokenizer":
        lines = self.vocab_path.read_text(encoding="utf-8").splitlines()
        self._set_vocab(lines)
        logger.debug("Loaded %d WordPiece tokens from %s", len(self.vocab), self.vocab_path)
        return self

    def _set_vocab(self, tokens: List[str]) -> None:
        self.vocab = {}
        for idx, token in enumerate(tokens):
            token = token.strip()
            if token and token not in self.vocab:
                self.vocab[token] = idx
        self.unk_id = self.vocab.get(UNK_TOKEN, 100)
        self.cls_id = self.vocab.get(CLS_TOKEN, 101)
        self.sep_id = self.vocab.get(SEP_TOKEN, 102)
        self.pad_id = self.vocab.get(PAD_TOKEN, 0)

    # ------------------------------------------------------------------
    # Tokenisation
    # ------------------------------------------------------------------

    def _wordpiece(self, word: str) -> List[int]:
        if len(word) > MAX_WORD_LEN:
            return [self.unk_id]

        ids: List[int] = []
        start = 0
        while start < len(word):
            end = len(word)
            match: Optional[int] = None
            while start < end:
                piece = word[start:end]
                if start > 0:
                    piece = "##" + piece
                if piece in self.vocab:
                    match = self.vocab[piece]
                    break
                end -= 1
            if match is None:
                ids.append(self.unk_id)
                start += 1
            else:
                ids.append(match)
                start = end
        return ids

    def tokenize(self, text: str) -> List[int]:
        """Token ids without special markers or padding."""
        ids: List[int] = []
        for word in text.lower().split():
            ids.extend(self._wordpiece(word))
        return ids

    def encode(self, text: str) -> TokenizerOutput:
        if not self.vocab:
            raise RuntimeError("Vocabulary not loaded; call load() first")

        body = self.tokenize(text)[: self.max_length - 2]
        ids = [self.cls_id] + body + [self.sep_id]
        mask = [1] * len(ids)

        pad = self.max_length - len(ids)
        if pad > 0:
            ids += [self.pad_id] * pad
            mask += [0] * pad

        return TokenizerOutput(
            input_ids=ids,
            attention_mask=mask,
            token_type_ids=[0] * self.max_length,
        )
