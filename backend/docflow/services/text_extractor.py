"""Plain-text extraction from uploaded documents (PDF via PyMuPDF)."""

from __future__ import annotations

import logging
import mimetypes
import re
from dataclasses import dataclass
from typing import Optional

import fitz  # PyMuPDF

from docflow.core.errors import TextExtractionError

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF"
PNG_SIGNATURE = b"\x89PNG"
JPEG_SIGNATURE = b"\xff\xd8\xff"
GIF_SIGNATURES = (b"GIF87a", b"GIF89a")
WEBP_SIGNATURE = b"WEBP"
TIFF_SIGNATURES = (b"II*\x00", b"MM\x00*")


@dataclass(frozen=True)
class ExtractedText:
    text: str
    page_count: int


def sniff_mime_type(content: bytes) -> Optional[str]:
    """Detect the MIME type from the file signature, or ``None``."""
    if content.startswith(PDF_SIGNATURE):
        return "application/pdf"
    if content.startswith(PNG_SIGNATURE):
        return "image/png"
    if content.startswith(JPEG_SIGNATURE):
        return "image/jpeg"
    if content.startswith(GIF_SIGNATURES):
        return "image/gif"
    if content[:4] == b"RIFF" and content[8:12] == WEBP_SIGNATURE:
        return "image/webp"
    if content.startswith(TIFF_SIGNATURES):
        return "image/tiff"
    return None


def detect_mime_type(content: bytes, mime_type: Optional[str] = None, filename: str = "") -> str:
    """Signature first, then the declared type, then the file extension."""
    sniffed = sniff_mime_type(content)
    if sniffed:
        return sniffed
    if mime_type:
        return mime_type.split(";", 1)[0].strip().lower()
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or "application/octet-stream"


def _clean(text: str) -> str:
    text = text.replace("\x00", "")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


class PdfTextExtractor:
    """Turns a document file into plain text plus a page count."""

    def extract(self, content: bytes, mime_type: Optional[str] = None, filename: str = "") -> ExtractedText:
        mime = detect_mime_type(content, mime_type, filename)
        if mime == "application/pdf":
            return self._extract_pdf(content, filename)
        if mime.startswith("text/"):
            text = _clean(content.decode("utf-8", errors="replace"))
            if not text:
                raise TextExtractionError(f"{filename or 'document'} contains no text")
            return ExtractedText(text=text, page_count=1)
        raise TextExtractionError(f"Cannot extract text from {mime}")

    def _extract_pdf(self, content: bytes, filename: str) -> ExtractedText:
        try:
            with fitz.open(stream=content, filetype="pdf") as pdf:
                page_count = pdf.page_count
                pages = [page.get_text("text") for page in pdf]
        except (RuntimeError, ValueError) as exc:
            raise TextExtractionError(f"Unreadable PDF {filename or ''}".strip()) from exc

        text = _clean("\n\n".join(p for p in pages if p.strip()))
        if not text:
            # Scanned PDFs have no text layer.
            raise TextExtractionError(f"{filename or 'PDF'} has no extractable text")

        logger.info("Extracted %d chars from %d PDF pages", len(text), page_count)
        return ExtractedText(text=text, page_count=max(1, page_count))
