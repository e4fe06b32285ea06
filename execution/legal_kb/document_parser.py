"""
Text extraction for PDF, DOCX, HTML and plain-text sources.

PDF pages are extracted with PyMuPDF and joined in page order, DOCX paragraphs
with python-docx, and HTML body text with BeautifulSoup after dropping
<script> and <style>. Every failure surfaces as ExtractionError.
"""

import io
import re
import logging
from pathlib import Path
from typing import Union

from bs4 import BeautifulSoup

from .errors import ExtractionError

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = ("pdf", "docx", "html", "txt")

_EXTENSION_TYPES = {
    ".pdf": "pdf",
    ".docx": "docx",
    ".doc": "doc",
    ".html": "html",
    ".htm": "html",
    ".txt": "txt",
}

Source = Union[str, Path, bytes]


def detect_file_type(file_name: str) -> str:
    """Map a file name to a parser type by extension."""
    ext = Path(file_name).suffix.lower()
    file_type = _EXTENSION_TYPES.get(ext)
    if file_type is None:
        raise ExtractionError(
            "Unsupported file type. Only PDF and DOCX files are supported.",
            file_type=ext.lstrip(".") or None,
        )
    return file_type


def _read_bytes(source: Source) -> bytes:
    if isinstance(source, bytes):
        return source
    return Path(source).read_bytes()


def _extract_pdf(data: bytes) -> str:
    import fitz  # PyMuPDF

    pages = []
    with fitz.open(stream=data, filetype="pdf") as doc:
        for page in doc:
            pages.append(page.get_text())
    return "\n".join(pages)


def _extract_docx(data: bytes) -> str:
    from docx import Document

    doc = Document(io.BytesIO(data))
    return "\n".join(para.text for para in doc.paragraphs)


def extract_html_text(html: str) -> str:
    """Body text of an HTML page with scripts/styles removed and whitespace collapsed."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    root = soup.body or soup
    return re.sub(r"\s+", " ", root.get_text(" ")).strip()


def extract_text(source: Source, file_type: str) -> str:
    """
    Extract plain text from a file path or raw bytes.

    Args:
        source: Path to the file, or its contents
        file_type: One of "pdf", "docx", "html", "txt"

    Returns:
        Extracted text

    Raises:
        ExtractionError: unsupported type, unreadable file, or parser failure
    """
    file_type = (file_type or "").lower().lstrip(".")
    if file_type not in SUPPORTED_TYPES:
        raise ExtractionError(
            "Unsupported file type. Only PDF and DOCX files are supported.",
            file_type=file_type,
        )

    try:
        data = _read_bytes(source)
        if file_type == "pdf":
            text = _extract_pdf(data)
        elif file_type == "docx":
            text = _extract_docx(data)
        elif file_type == "html":
            text = extract_html_text(data.decode("utf-8", errors="replace"))
        else:
            text = data.decode("utf-8", errors="replace")
    except ExtractionError:
        raise
    except Exception as e:
        logger.error(f"{file_type.upper()} extraction failed: {type(e).__name__}: {e}")
        raise ExtractionError(f"Failed to extract text from {file_type}: {e}", file_type=file_type) from e

    logger.debug(f"Extracted {len(text)} chars from {file_type}")
    return text
