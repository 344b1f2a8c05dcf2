"""Extract plain text from documents attached to a chat message."""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Callable

from ..errors import ExtractionFailure


logger = logging.getLogger(__name__)

DOCUMENT_CHAR_LIMIT = 25_000
TEXT_SUFFIXES = frozenset({".txt", ".text", ".md", ".markdown", ".html", ".htm", ".csv"})

DocumentExtractor = Callable[[Path], str]


def _extract_pdf(path: Path) -> str:
    try:
        import fitz  # type: ignore[import-untyped]
    except ImportError as exc:  # pragma: no cover - PyMuPDF is a runtime dependency
        raise ExtractionFailure("PyMuPDF is required to read PDF documents.") from exc

    try:
        document = fitz.open(path)  # type: ignore[arg-type]
    except (fitz.FileDataError, RuntimeError) as exc:
        raise ExtractionFailure("The selected file could not be opened as a PDF.") from exc

    try:
        pages = [page.get_text("text") for page in document]
    finally:
        document.close()
    text = "\n".join(page for page in pages if page).strip()
    if not text:
        raise ExtractionFailure(
            "No readable text found in the PDF. It may be image-based (scanned); "
            "attach a photo of the pages instead."
        )
    return text


def _extract_docx(path: Path) -> str:
    try:
        from docx import Document  # type: ignore[import-untyped]
        from docx.opc.exceptions import PackageNotFoundError  # type: ignore[import-untyped]
    except ImportError as exc:  # pragma: no cover - python-docx is a runtime dependency
        raise ExtractionFailure("python-docx is required to read Word documents.") from exc

    try:
        document = Document(str(path))
    except (PackageNotFoundError, zipfile.BadZipFile, ValueError, KeyError, OSError) as exc:
        raise ExtractionFailure("The selected file could not be opened as a Word document.") from exc
    return "\n".join(
        paragraph.text.rstrip() for paragraph in document.paragraphs if paragraph.text.strip()
    ).strip()


def _extract_plain_text(path: Path) -> str:
    raw = path.read_bytes()
    try:
        return raw.decode("utf-8").strip()
    except UnicodeDecodeError as exc:
        raise ExtractionFailure("The document is not valid UTF-8 text.") from exc


_EXTRACTORS: dict[str, Callable[[Path], str]] = {
    ".pdf": _extract_pdf,
    ".docx": _extract_docx,
    **{suffix: _extract_plain_text for suffix in TEXT_SUFFIXES},
}


def extract_document_text(path: str | Path, *, limit: int = DOCUMENT_CHAR_LIMIT) -> str:
    """Return the readable text of ``path``, truncated to ``limit`` characters.

    Raises :class:`~lexichat.errors.ExtractionFailure` when the file is missing,
    of an unsupported type, or contains no readable text.
    """

    resolved = Path(path)
    if not resolved.is_file():
        raise ExtractionFailure(f"Attached document not found: {resolved.name}")
    extractor = _EXTRACTORS.get(resolved.suffix.lower())
    if extractor is None:
        raise ExtractionFailure(f"Unsupported document type: {resolved.suffix or resolved.name}")

    text = extractor(resolved)
    if not text:
        raise ExtractionFailure()
    if len(text) > limit:
        logger.info(
            "Truncating attached document",
            extra={"document": resolved.name, "chars": len(text), "limit": limit},
        )
        text = text[:limit]
    logger.debug(
        "Extracted attached document",
        extra={"document": resolved.name, "chars": len(text)},
    )
    return text


def compose_document_prompt(question: str, document_name: str, document_text: str) -> str:
    """Combine the user's question with the extracted document for the model."""

    question = question.strip() or "Summarize and analyze this document."
    return (
        f"{question}\n\n"
        f"Attached document ({document_name}):\n"
        f"\"\"\"\n{document_text}\n\"\"\""
    )


__all__ = [
    "DOCUMENT_CHAR_LIMIT",
    "DocumentExtractor",
    "compose_document_prompt",
    "extract_document_text",
]
