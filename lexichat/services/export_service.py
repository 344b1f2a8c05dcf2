"""Render stored conversations to Markdown, plain text or HTML for sharing."""

from __future__ import annotations

import datetime as _dt
import html
import logging
import re
import textwrap
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Sequence

from ..logging import log_call
from .sources import Source

if TYPE_CHECKING:
    from ..storage.database import StoredMessage


logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Legal Conversation"
_CITATION_MARKER_RE = re.compile(r"\[(\d+)\](?!\()")


class ExportService:
    """Render conversation history in export-friendly formats."""

    EXPORTERS = ("markdown", "text", "html")

    def __init__(self, *, clock=None) -> None:
        self._clock = clock or (lambda: _dt.datetime.now(_dt.UTC))

    def _timestamp(self) -> str:
        return self._clock().strftime("%Y-%m-%d %H:%M:%SZ")

    @log_call(logger=logger)
    def conversation_to_markdown(
        self,
        messages: Sequence["StoredMessage"] | Iterable["StoredMessage"],
        *,
        title: str | None = None,
    ) -> str:
        lines: list[str] = [f"# {title or DEFAULT_TITLE}", ""]
        lines.append(f"**Date:** {self._timestamp()}")
        lines.extend(["", "---", ""])
        for message in messages:
            heading = "## Question" if message.role == "user" else "## Response"
            lines.extend([heading, ""])
            lines.append(self._linkify_markdown(message.content.strip(), message.sources))
            lines.append("")
            if message.sources:
                lines.extend(["### Sources", ""])
                for index, source in enumerate(message.sources, start=1):
                    lines.append(f"{index}. [{self._escape_label(source.title)}]({source.url})")
                lines.append("")
            lines.extend(["---", ""])
        return "\n".join(lines).strip() + "\n"

    @log_call(logger=logger)
    def conversation_to_text(
        self,
        messages: Sequence["StoredMessage"] | Iterable["StoredMessage"],
        *,
        title: str | None = None,
    ) -> str:
        heading = title or DEFAULT_TITLE
        lines: list[str] = [heading, "=" * len(heading), "", f"Date: {self._timestamp()}", ""]
        for message in messages:
            role = "QUESTION" if message.role == "user" else "RESPONSE"
            lines.extend(["", role, "-" * len(role), "", message.content.strip(), ""])
            if message.sources:
                lines.append("Sources:")
                for index, source in enumerate(message.sources, start=1):
                    lines.append(f"  [{index}] {source.title}")
                    lines.append(f"      {source.url}")
                lines.append("")
        return "\n".join(lines).strip() + "\n"

    @log_call(logger=logger)
    def conversation_to_html(
        self,
        messages: Sequence["StoredMessage"] | Iterable["StoredMessage"],
        *,
        title: str | None = None,
    ) -> str:
        heading = html.escape(title or DEFAULT_TITLE)
        head = textwrap.dedent(
            f"""
            <!DOCTYPE html>
            <html lang=\"en\">
              <head>
                <meta charset=\"utf-8\" />
                <title>{heading}</title>
                <style>
                  body {{ font-family: Arial, sans-serif; margin: 1.5em; }}
                  h1 {{ border-bottom: 1px solid #999; padding-bottom: 0.3em; }}
                  .meta {{ color: #555; margin-bottom: 1em; }}
                  .sources li {{ margin-bottom: 0.2em; }}
                </style>
              </head>
              <body>
            """
        ).strip("\n")
        parts: list[str] = [head, f"<h1>{heading}</h1>"]
        parts.append(f"<div class='meta'><strong>Date:</strong> {self._timestamp()}</div>")
        for message in messages:
            role = "Question" if message.role == "user" else "Response"
            body = self._linkify_html(message.content.strip(), message.sources)
            parts.append(f"<h2>{role}</h2>")
            parts.append(f"<p>{body}</p>")
            if message.sources:
                items = "".join(
                    f"<li><a href=\"{html.escape(source.url, quote=True)}\">"
                    f"{html.escape(source.title)}</a></li>"
                    for source in message.sources
                )
                parts.append(f"<ol class='sources'>{items}</ol>")
        parts.append("  </body>\n</html>")
        return "\n".join(parts)

    @log_call(logger=logger, include_result=True)
    def write_text(self, destination: str | Path, content: str) -> Path:
        path = Path(destination)
        if not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("Wrote export", extra={"destination": str(path), "bytes": path.stat().st_size})
        return path

    def export_conversation(
        self,
        destination: str | Path,
        messages: Sequence["StoredMessage"] | Iterable["StoredMessage"],
        *,
        title: str | None = None,
        format: str = "markdown",
    ) -> Path:
        renderers = {
            "markdown": self.conversation_to_markdown,
            "text": self.conversation_to_text,
            "html": self.conversation_to_html,
        }
        renderer = renderers.get(format)
        if renderer is None:
            raise ValueError(f"Unsupported export format: {format}")
        return self.write_text(destination, renderer(list(messages), title=title))

    # ------------------------------------------------------------------
    @staticmethod
    def _escape_label(text: str) -> str:
        return text.replace("[", "\\[").replace("]", "\\]")

    @staticmethod
    def _source_url(index: int, sources: Sequence[Source]) -> str | None:
        if 1 <= index <= len(sources):
            return sources[index - 1].url
        return None

    def _linkify_markdown(self, text: str, sources: Sequence[Source]) -> str:
        def _replacement(match: re.Match[str]) -> str:
            index = int(match.group(1))
            url = self._source_url(index, sources)
            if url is None:
                return match.group(0)
            return f"[\\[{index}\\]]({url.replace(')', '%29')})"

        return _CITATION_MARKER_RE.sub(_replacement, text)

    def _linkify_html(self, text: str, sources: Sequence[Source]) -> str:
        parts: list[str] = []
        last = 0
        for match in _CITATION_MARKER_RE.finditer(text):
            parts.append(html.escape(text[last : match.start()]))
            index = int(match.group(1))
            url = self._source_url(index, sources)
            if url is None:
                parts.append(html.escape(match.group(0)))
            else:
                href = html.escape(url, quote=True)
                parts.append(f"<a href=\"{href}\" class='citation-ref'>[{index}]</a>")
            last = match.end()
        parts.append(html.escape(text[last:]))
        return "".join(parts).replace("\n", "<br/>")


__all__ = ["ExportService"]
