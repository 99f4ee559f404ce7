"""
Text Extraction  —  Media-Type Dispatch
════════════════════════════════════════

One strategy per supported media type:

  application/pdf                       → pypdf text layer
  application/vnd.openxmlformats-...    → python-docx paragraphs
  text/plain, text/markdown             → UTF-8 (latin-1 fallback)

Anything else fails immediately with UnsupportedType. There is no OCR
fallback: a PDF whose text layer yields fewer than MIN_PDF_TEXT_CHARS
characters is reported as EmptyOrImageOnly so the operator sees why the
document failed instead of getting a near-empty chunk set.

Every failure raised here is an ExtractionFailure and is terminal for the
given bytes; the pipeline records it on the document and never retries.
"""

from __future__ import annotations

import io
import logging
import mimetypes
import re
import time
import unicodedata
from dataclasses import dataclass
from typing import Callable

from policy_rag.core.errors import (
    CorruptFile,
    EmptyOrImageOnly,
    ExtractionFailure,
    UnsupportedType,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Media types
# ---------------------------------------------------------------------------

PDF_MEDIA_TYPE      = "application/pdf"
DOCX_MEDIA_TYPE     = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
LEGACY_DOC_TYPE     = "application/msword"
TEXT_MEDIA_TYPE     = "text/plain"
MARKDOWN_MEDIA_TYPE = "text/markdown"

SUPPORTED_MEDIA_TYPES = frozenset({
    PDF_MEDIA_TYPE,
    DOCX_MEDIA_TYPE,
    TEXT_MEDIA_TYPE,
    MARKDOWN_MEDIA_TYPE,
})

# Below this many characters a PDF is treated as scanned / image-only
MIN_PDF_TEXT_CHARS = 10

# Magic byte signatures, checked against the head of the file
_MAGIC_BYTES: dict[bytes, str] = {
    b"%PDF":                              PDF_MEDIA_TYPE,
    b"PK\x03\x04":                        DOCX_MEDIA_TYPE,
    b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1": LEGACY_DOC_TYPE,   # OLE2, not supported
}

_EXTENSION_TYPES: dict[str, str] = {
    ".pdf":      PDF_MEDIA_TYPE,
    ".docx":     DOCX_MEDIA_TYPE,
    ".txt":      TEXT_MEDIA_TYPE,
    ".md":       MARKDOWN_MEDIA_TYPE,
    ".markdown": MARKDOWN_MEDIA_TYPE,
}


def get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def detect_media_type(filename: str, file_head: bytes) -> str:
    """
    Detect the media type from magic bytes first, falling back to the
    extension. Never trusts the client-supplied Content-Type.
    """
    for magic, media_type in _MAGIC_BYTES.items():
        if file_head.startswith(magic):
            return media_type

    # Plain text / markdown have no reliable magic bytes
    ext = get_extension(filename)
    if ext in (".txt", ".md", ".markdown"):
        return _EXTENSION_TYPES[ext]

    # A .pdf / .docx without its signature is not what it claims to be
    if ext in (".pdf", ".docx"):
        return "application/octet-stream"

    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text       : normalized full text; this is what gets chunked
    strategy   : "pdf" | "docx" | "text"
    page_count : PDF pages; 1 for DOCX / text
    elapsed_ms : extraction wall time
    """
    text:       str
    strategy:   str
    page_count: int
    elapsed_ms: float = 0.0

    @property
    def total_chars(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def _extract_pdf(data: bytes) -> tuple[str, int]:
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    text = normalize_text("\n\n".join(p for p in pages if p.strip()))

    if len(text) < MIN_PDF_TEXT_CHARS:
        raise EmptyOrImageOnly(
            "Extracted text is too short or empty. "
            "The PDF may be scanned or contain only images."
        )
    return text, len(pages)


def _extract_docx(data: bytes) -> tuple[str, int]:
    import docx

    document = docx.Document(io.BytesIO(data))
    text = normalize_text("\n".join(p.text for p in document.paragraphs if p.text.strip()))
    if not text:
        raise EmptyOrImageOnly("The Word document contains no extractable text.")
    return text, 1


def _extract_plain(data: bytes) -> tuple[str, int]:
    try:
        decoded = data.decode("utf-8")
    except UnicodeDecodeError:
        decoded = data.decode("latin-1", errors="replace")
    text = normalize_text(decoded)
    if not text:
        raise EmptyOrImageOnly("The text file is empty.")
    return text, 1


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class TextExtractor:
    """
    Stateless dispatcher from media type to extraction strategy.

    Usage:
        result = TextExtractor().extract(file_bytes, document.media_type)
    """

    _STRATEGIES: dict[str, tuple[str, Callable[[bytes], tuple[str, int]]]] = {
        PDF_MEDIA_TYPE:      ("pdf",  _extract_pdf),
        DOCX_MEDIA_TYPE:     ("docx", _extract_docx),
        TEXT_MEDIA_TYPE:     ("text", _extract_plain),
        MARKDOWN_MEDIA_TYPE: ("text", _extract_plain),
    }

    def extract(self, data: bytes, media_type: str) -> ExtractionResult:
        """
        Raises:
            UnsupportedType:  no strategy for ``media_type``
            EmptyOrImageOnly: the file parsed but yielded no usable text
            CorruptFile:      the bytes could not be parsed as ``media_type``
        """
        entry = self._STRATEGIES.get(media_type)
        if entry is None:
            raise UnsupportedType(f"Unsupported media type: {media_type}")
        strategy, handler = entry

        t0 = time.monotonic()
        try:
            text, page_count = handler(data)
        except ExtractionFailure:
            raise
        except Exception as exc:
            logger.warning("Extraction failed | type=%s error=%s", media_type, exc)
            raise CorruptFile(f"The file could not be read as {strategy.upper()}: {exc}") from exc

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Extraction | strategy=%s pages=%d chars=%d elapsed_ms=%.0f",
            strategy, page_count, len(text), elapsed_ms,
        )
        return ExtractionResult(
            text=text,
            strategy=strategy,
            page_count=page_count,
            elapsed_ms=elapsed_ms,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_text(text: str) -> str:
    """
    Normalize Unicode, replace invisible spacing characters, collapse runs of
    blank lines and strip trailing whitespace per line.
    """
    text = unicodedata.normalize("NFC", text)
    text = re.sub(r"[\u00a0\u200b\u200c\u200d\ufeff]", " ", text)
    text = text.replace("\x00", "")
    lines = [line.rstrip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
