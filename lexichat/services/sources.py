"""Citation sources and the resolver that recovers them from raw answer text."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Sequence
from urllib.parse import quote, urlsplit


logger = logging.getLogger(__name__)

_TRAILING_PUNCTUATION = ".,);]"
_URL_RE = re.compile(r"https?://[A-Za-z0-9.\-/_?=#%&+:;,]+[A-Za-z0-9/#]")
_BARE_DOMAIN_RE = re.compile(r"\b([A-Za-z0-9-]+\.[A-Za-z0-9.-]{2,})\b")
FAVICON_SERVICE = "https://www.google.com/s2/favicons?domain={domain}&sz=64"

EXCLUDED_SOURCE_PATTERNS = (
    "dr.oracle",
    "oracle.ai",
    "oracle.com",
    "google.com/search",
    "google.com/url",
    "internal",
    "tool",
    "generated",
)


def _host_of(url: str) -> str | None:
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    return host or None


@dataclass(frozen=True, slots=True)
class Source:
    """A cited web page referenced by a ``[n]`` marker in an answer."""

    title: str
    url: str
    snippet: str | None = None
    favicon: str | None = None

    def normalized_url(self) -> str:
        """Return the identity key: trimmed URL with a lowercase scheme and host."""

        trimmed = self.url.strip().rstrip(_TRAILING_PUNCTUATION)
        try:
            parts = urlsplit(trimmed)
        except ValueError:
            return trimmed.lower()
        if not parts.scheme or not parts.netloc:
            return trimmed.lower()
        return parts._replace(
            scheme=parts.scheme.lower(), netloc=parts.netloc.lower()
        ).geturl()

    @property
    def domain(self) -> str:
        host = _host_of(self.url)
        if not host:
            return self.url
        return host.replace("www.", "")

    @property
    def favicon_url(self) -> str:
        if self.favicon:
            return self.favicon
        return FAVICON_SERVICE.format(domain=quote(self.domain, safe=".-"))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Source | None":
        url = data.get("url") if isinstance(data, dict) else None
        if not isinstance(url, str) or not url.strip():
            return None
        title = data.get("title")
        snippet = data.get("snippet")
        favicon = data.get("favicon")
        return cls(
            title=str(title) if title else url,
            url=url,
            snippet=str(snippet) if snippet else None,
            favicon=str(favicon) if favicon else None,
        )


def dedupe_sources(sources: Iterable[Source]) -> list[Source]:
    """Return ``sources`` without repeats, keeping the first occurrence of each URL."""

    seen: set[str] = set()
    unique: list[Source] = []
    for source in sources:
        key = source.normalized_url()
        if key in seen:
            continue
        seen.add(key)
        unique.append(source)
    return unique


def derive_sources(text: str) -> list[Source]:
    """Recover citation sources from ``text`` when the model returned none.

    Absolute URLs are collected first, then bare domain names that were not
    already captured are promoted to ``https://`` URLs. Results keep scan order
    and are de-duplicated on the normalized URL, so host case and trailing
    punctuation do not produce duplicates.
    """

    if not text:
        return []

    seen: set[str] = set()
    sources: list[Source] = []
    remaining = list(text)

    for match in _URL_RE.finditer(text):
        # Hosts inside captured URLs must not resurface as bare domains.
        remaining[match.start() : match.end()] = " " * (match.end() - match.start())
        url = match.group(0).strip(_TRAILING_PUNCTUATION)
        if not url:
            continue
        source = Source(title=_host_of(url) or url, url=url)
        key = source.normalized_url()
        if key in seen:
            continue
        seen.add(key)
        sources.append(source)

    for match in _BARE_DOMAIN_RE.finditer("".join(remaining)):
        domain = match.group(1).strip(_TRAILING_PUNCTUATION)
        if not domain:
            continue
        normalized = domain.lower()
        url = f"https://{normalized}"
        if url in seen:
            continue
        seen.add(url)
        sources.append(Source(title=normalized, url=url))

    if sources:
        logger.debug("Derived sources from answer text", extra={"count": len(sources)})
    return sources


def should_exclude_source(url: str, title: str | None = None) -> bool:
    url_lower = url.lower()
    title_lower = (title or "").lower()
    return any(
        pattern in url_lower or pattern in title_lower
        for pattern in EXCLUDED_SOURCE_PATTERNS
    )


def filter_excluded_sources(sources: Sequence[Source]) -> list[Source]:
    """Drop sources pointing at search redirects, internal tools and similar noise."""

    kept = [source for source in sources if not should_exclude_source(source.url, source.title)]
    if len(kept) != len(sources):
        logger.debug(
            "Filtered excluded sources",
            extra={"before": len(sources), "after": len(kept)},
        )
    return kept


def sources_to_json(sources: Sequence[Source]) -> str:
    return json.dumps([source.to_dict() for source in sources])


def sources_from_json(payload: str | None) -> list[Source]:
    if not payload:
        return []
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed stored sources payload")
        return []
    if not isinstance(data, list):
        return []
    return [source for source in (Source.from_dict(item) for item in data) if source]


__all__ = [
    "EXCLUDED_SOURCE_PATTERNS",
    "Source",
    "dedupe_sources",
    "derive_sources",
    "filter_excluded_sources",
    "should_exclude_source",
    "sources_from_json",
    "sources_to_json",
]
