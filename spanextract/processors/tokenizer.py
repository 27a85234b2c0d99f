"""Tokenizers whose tokens cover every character of the input exactly once."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Protocol

from spanextract.ai.types import CharInterval
from spanextract.exceptions import ConfigurationError

try:
    import tiktoken
    TIKTOKEN_AVAILABLE = True
except ImportError:  # pragma: no cover
    tiktoken = None
    TIKTOKEN_AVAILABLE = False


class TokenType(str, Enum):
    WORD = "word"
    NUMBER = "number"
    WHITESPACE = "whitespace"
    PUNCTUATION = "punctuation"


@dataclass(frozen=True)
class Token:
    index: int
    kind: TokenType
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass
class TokenizedText:
    text: str
    tokens: List[Token] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.tokens)

    def char_interval(self, start_token: int, end_token: int) -> CharInterval:
        """Character span of tokens ``[start_token, end_token)``."""
        if not self.tokens or start_token >= end_token:
            pos = self.tokens[start_token].start if start_token < len(self.tokens) else len(self.text)
            return CharInterval(pos, pos)
        return CharInterval(self.tokens[start_token].start, self.tokens[end_token - 1].end)

    def token_text(self, index: int) -> str:
        token = self.tokens[index]
        return self.text[token.start:token.end]

    def words(self) -> List[Token]:
        return [tok for tok in self.tokens if tok.kind in (TokenType.WORD, TokenType.NUMBER)]


class Tokenizer(Protocol):
    def tokenize(self, text: str) -> TokenizedText:
        ...


# Numbers come before words so "3.5" and "1,250" stay whole.
_TOKEN_PATTERN = re.compile(
    r"(?P<number>\d+(?:[.,]\d+)*)"
    r"|(?P<word>[^\W\d_]+(?:['’][^\W\d_]+)*|_+)"
    r"|(?P<whitespace>\s+)"
    r"|(?P<punctuation>.)",
    re.DOTALL,
)

_KINDS = {
    "number": TokenType.NUMBER,
    "word": TokenType.WORD,
    "whitespace": TokenType.WHITESPACE,
    "punctuation": TokenType.PUNCTUATION,
}


class RegexTokenizer:
    """Default tokenizer: words, numbers, whitespace runs and single punctuation marks."""

    def tokenize(self, text: str) -> TokenizedText:
        if not isinstance(text, str):
            raise TypeError(f"tokenize expects str, got {type(text).__name__}")
        tokens: List[Token] = []
        for match in _TOKEN_PATTERN.finditer(text):
            tokens.append(Token(len(tokens), _KINDS[match.lastgroup], match.start(), match.end()))
        return TokenizedText(text=text, tokens=tokens)


_default_tokenizer = RegexTokenizer()


def default_tokenizer() -> RegexTokenizer:
    return _default_tokenizer


def _classify(piece: str) -> TokenType:
    if piece.isspace():
        return TokenType.WHITESPACE
    core = piece.strip()
    if core.replace(",", "").replace(".", "").isdigit():
        return TokenType.NUMBER
    if any(ch.isalpha() for ch in core):
        return TokenType.WORD
    return TokenType.PUNCTUATION


class TiktokenTokenizer:
    """
    Model-vocabulary tokens from a tiktoken encoding, so ``size_unit="tokens"``
    budgets count what the model counts.

    Byte-level pieces that split a character share its start offset in
    ``decode_with_offsets``; they are merged so each character still belongs to
    exactly one token.
    """

    def __init__(self, encoding_name: str = "cl100k_base", encoding=None):
        if encoding is None:
            if not TIKTOKEN_AVAILABLE:
                raise ConfigurationError("tiktoken is not installed.", field="chunking.tokenizer", value="tiktoken")
            encoding = tiktoken.get_encoding(encoding_name)
        self.encoding = encoding

    def tokenize(self, text: str) -> TokenizedText:
        if not isinstance(text, str):
            raise TypeError(f"tokenize expects str, got {type(text).__name__}")
        if not text:
            return TokenizedText(text=text)
        ids = self.encoding.encode(text, disallowed_special=())
        _, offsets = self.encoding.decode_with_offsets(ids)
        starts = sorted({0} | {offset for offset in offsets if 0 <= offset < len(text)})
        tokens: List[Token] = []
        for position, start in enumerate(starts):
            end = starts[position + 1] if position + 1 < len(starts) else len(text)
            tokens.append(Token(len(tokens), _classify(text[start:end]), start, end))
        return TokenizedText(text=text, tokens=tokens)


def build_tokenizer(name: str = "regex", encoding_name: str = "cl100k_base") -> Tokenizer:
    """Return the tokenizer registered under ``name``."""
    key = (name or "regex").strip().lower()
    if key == "regex":
        return default_tokenizer()
    if key == "tiktoken":
        return TiktokenTokenizer(encoding_name)
    raise ConfigurationError(f"Unknown tokenizer '{name}'", field="chunking.tokenizer", value=name)


__all__ = [
    "RegexTokenizer",
    "TIKTOKEN_AVAILABLE",
    "TiktokenTokenizer",
    "Token",
    "TokenType",
    "TokenizedText",
    "Tokenizer",
    "build_tokenizer",
    "default_tokenizer",
]
