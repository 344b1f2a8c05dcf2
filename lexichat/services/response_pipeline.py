"""Turn a raw model answer into citation-consistent message content.

The pipeline runs ``derive_sources`` (only when the model returned no
structured sources), :func:`sanitize`, and :func:`inject_citations`. Every step
is a total function over strings: malformed input degrades to a best-effort
result instead of raising.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Sequence

from ..logging import log_call
from .sources import Source, derive_sources


logger = logging.getLogger(__name__)

MIN_WORDS = 60
MIN_SENTENCES = 3

_SOURCES_TRAILER_RE = re.compile(
    r"(?:^|\n)[ \t]*(?:\n[ \t]*)?sources?[ \t]*:?[ \t]*(?=\n|\Z)[\s\S]*\Z",
    re.IGNORECASE,
)
_SOURCES_WORD_RE = re.compile(r"\bsources\b:?", re.IGNORECASE)
_URL_UNAVAILABLE_RE = re.compile(r"\(?[ \t]*url unavailable[ \t]*\)?", re.IGNORECASE)
_URL_LABEL_RE = re.compile(r"\bURL:\s*", re.IGNORECASE)
_SPACE_RUN_RE = re.compile(r" {2,}")
_NEWLINE_RUN_RE = re.compile(r"\n{3,}")
_CITATION_RE = re.compile(r"\[\d+\]")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]")
_SENTENCE_TERMINATORS = ".!?"


@dataclass(frozen=True, slots=True)
class RawAnswer:
    """Answer exactly as the model client returned it."""

    text: str
    structured_sources: tuple[Source, ...] = ()
    follow_ups: tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        text: str,
        sources: Sequence[Source] | None = None,
        follow_ups: Sequence[str] | None = None,
    ) -> "RawAnswer":
        return cls(
            text=text or "",
            structured_sources=tuple(sources or ()),
            follow_ups=tuple(follow_ups or ()),
        )


@dataclass(frozen=True, slots=True)
class FinalizedMessage:
    """Assistant message content ready for display and storage."""

    content: str
    sources: tuple[Source, ...] = field(default_factory=tuple)
    follow_ups: tuple[str, ...] = field(default_factory=tuple)


def _sanitize_pass(text: str) -> str:
    result = _SOURCES_TRAILER_RE.sub("", text, count=1)

    match = _SOURCES_WORD_RE.search(result)
    if match:
        start = match.start()
        if start > 0 and result[start - 1] == "\n":
            start -= 1
        result = result[:start]

    result = _URL_UNAVAILABLE_RE.sub("", result)
    result = _URL_LABEL_RE.sub("", result)
    result = _SPACE_RUN_RE.sub(" ", result)
    result = _NEWLINE_RUN_RE.sub("\n\n", result)
    return result.strip()


def sanitize(text: str, has_structured_sources: bool = False) -> str:
    """Strip a trailing ``Sources`` section and placeholder residue from ``text``.

    ``has_structured_sources`` is accepted for callers that know whether the
    model supplied sources; the trailer is removed either way because the
    sources are rendered separately from the message body.

    Passes repeat until the text stops changing so that removing one fragment
    can never expose another (``sanitize`` is idempotent).
    """

    if not text:
        return ""
    result = text
    while True:
        cleaned = _sanitize_pass(result)
        if cleaned == result:
            break
        result = cleaned
    if result != text:
        logger.debug(
            "Sanitized answer text",
            extra={
                "removed_chars": len(text) - len(result),
                "has_structured_sources": has_structured_sources,
            },
        )
    return result


def has_citation_markers(text: str) -> bool:
    return bool(_CITATION_RE.search(text or ""))


def _markers(start: int, end: int) -> str:
    return "".join(f"[{index + 1}]" for index in range(start, end))


def inject_citations(text: str, sources: Sequence[Source]) -> str:
    """Spread ``[n]`` markers across paragraphs that carry no citation yet.

    This is an approximation: markers land after the last ``.``, ``!`` or ``?``
    of a paragraph, not next to the claim a source supports. Terminators
    outside ASCII are not recognised and such paragraphs get their markers
    appended at the end.
    """

    if not sources:
        return text

    total = len(sources)
    paragraphs = [part for part in text.split("\n\n") if part.strip()]
    if not paragraphs:
        return text + _markers(0, total)

    per_paragraph = max(1, total // len(paragraphs))
    cursor = 0
    annotated: list[str] = []
    for paragraph in paragraphs:
        if _CITATION_RE.search(paragraph):
            annotated.append(paragraph)
            continue
        end = min(cursor + per_paragraph, total)
        markers = _markers(cursor, end)
        if markers:
            insert_at = max(paragraph.rfind(char) for char in _SENTENCE_TERMINATORS)
            if insert_at >= 0:
                paragraph = paragraph[: insert_at + 1] + markers + paragraph[insert_at + 1 :]
            else:
                paragraph += markers
            cursor = end
        annotated.append(paragraph)

    result = "\n\n".join(annotated)
    if cursor < total:
        result += _markers(cursor, total)
    logger.debug(
        "Injected citation markers",
        extra={"paragraphs": len(paragraphs), "sources": total},
    )
    return result


def is_response_too_short(
    text: str,
    *,
    min_words: int = MIN_WORDS,
    min_sentences: int = MIN_SENTENCES,
) -> bool:
    """Return ``True`` when ``text`` has too few words or sentences to be useful."""

    word_count = len(text.split())
    sentence_count = sum(1 for piece in _SENTENCE_SPLIT_RE.split(text) if piece)
    return word_count < min_words or sentence_count < min_sentences


@log_call(logger=logger)
def finalize_response(raw: RawAnswer) -> FinalizedMessage | None:
    """Run the finalization pipeline, returning ``None`` for an empty answer."""

    sources = list(raw.structured_sources)
    if not sources:
        sources = derive_sources(raw.text)

    content = sanitize(raw.text, has_structured_sources=bool(sources))
    if sources and not has_citation_markers(content):
        content = inject_citations(content, sources)

    if not content.strip():
        fallback = raw.text.strip()
        if fallback:
            logger.info("Sanitization emptied the answer; keeping raw text")
            content = fallback

    if not content.strip():
        return None
    return FinalizedMessage(
        content=content,
        sources=tuple(sources),
        follow_ups=tuple(raw.follow_ups),
    )


def share_text(content: str, sources: Sequence[Source]) -> str:
    """Render ``content`` followed by a numbered ``Sources:`` list for sharing."""

    text = content or ""
    if sources:
        text += "\n\nSources:\n"
        for index, source in enumerate(sources, start=1):
            text += f"[{index}] {source.title}: {source.url}\n"
    return text


__all__ = [
    "FinalizedMessage",
    "MIN_SENTENCES",
    "MIN_WORDS",
    "RawAnswer",
    "finalize_response",
    "has_citation_markers",
    "inject_citations",
    "is_response_too_short",
    "sanitize",
    "share_text",
]
