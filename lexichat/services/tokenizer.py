"""Split message content into reveal units for the word-by-word animation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TokenKind(Enum):
    WORD = "word"
    WHITESPACE = "whitespace"
    CITATION = "citation"


@dataclass(frozen=True, slots=True)
class Token:
    text: str
    kind: TokenKind

    @property
    def is_whitespace(self) -> bool:
        return self.kind is TokenKind.WHITESPACE


def _scan_bracket(text: str, start: int) -> int:
    """Return the index just past the ``]`` closing the ``[`` at ``start``, or -1."""

    close = text.find("]", start + 1)
    return -1 if close < 0 else close + 1


def tokenize(text: str) -> list[Token]:
    """Return the tokens of ``text``; joining their ``text`` reproduces the input.

    Bracketed markers such as ``[1]`` become :attr:`TokenKind.CITATION` tokens
    and adjacent markers (``[1][2][3]``) are emitted back to back without a word
    token in between. A ``[`` with no closing bracket is ordinary word text. Runs of
    whitespace collapse into a single :attr:`TokenKind.WHITESPACE` token.
    """

    tokens: list[Token] = []
    word: list[str] = []
    space: list[str] = []
    index = 0
    length = len(text)

    def flush_word() -> None:
        if word:
            tokens.append(Token("".join(word), TokenKind.WORD))
            word.clear()

    def flush_space() -> None:
        if space:
            tokens.append(Token("".join(space), TokenKind.WHITESPACE))
            space.clear()

    while index < length:
        char = text[index]
        if char.isspace():
            flush_word()
            space.append(char)
            index += 1
            continue
        flush_space()
        if char == "[":
            end = _scan_bracket(text, index)
            if end < 0:
                # Unterminated: keep the bracket as part of the current word.
                word.append(char)
                index += 1
                continue
            flush_word()
            tokens.append(Token(text[index:end], TokenKind.CITATION))
            index = end
            while index < length and text[index] == "[":
                end = _scan_bracket(text, index)
                if end < 0:
                    break
                tokens.append(Token(text[index:end], TokenKind.CITATION))
                index = end
        else:
            word.append(char)
            index += 1

    flush_word()
    flush_space()
    return tokens


def join_tokens(tokens: list[Token]) -> str:
    return "".join(token.text for token in tokens)


__all__ = ["Token", "TokenKind", "join_tokens", "tokenize"]
