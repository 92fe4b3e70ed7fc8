"""
Source text extraction.

Turns a file on disk (txt, md, html, pdf) or a fetched HTML page into plain
text for chunking. PDFs are read with PyMuPDF, HTML with BeautifulSoup.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from bs4 import BeautifulSoup
from loguru import logger

from nuggets.exceptions import NotFoundError, ValidationError

PLAIN_TEXT_EXTENSIONS = {".txt", ".md", ".markdown"}
HTML_EXTENSIONS = {".html", ".htm"}
PDF_EXTENSIONS = {".pdf"}
SUPPORTED_EXTENSIONS = PLAIN_TEXT_EXTENSIONS | HTML_EXTENSIONS | PDF_EXTENSIONS

_BLANK_LINES = re.compile(r"\n\s*\n+")
_SPACES = re.compile(r"[ \t\f\v]+")


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces and keep single blank lines between paragraphs."""
    lines = [_SPACES.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()


def extract_html(html: str, selector: str | None = None) -> str:
    """
    Extract visible text from an HTML document.

    Args:
        html: Raw HTML
        selector: Optional CSS selector; matching elements are joined.
            Falls back to ``<body>`` (or the whole document).
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    if selector:
        parts = [el.get_text("\n") for el in soup.select(selector)]
        return normalize_whitespace("\n\n".join(parts))

    root = soup.body or soup
    return normalize_whitespace(root.get_text("\n"))


def _read_pdf(path: Path) -> str:
    import fitz  # PyMuPDF

    pages: list[str] = []
    with fitz.open(str(path)) as doc:
        for page in doc:
            pages.append(page.get_text())
    return normalize_whitespace("\n\n".join(pages))


def _read_file(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in PDF_EXTENSIONS:
        return _read_pdf(path)
    raw = path.read_text(encoding="utf-8", errors="replace")
    if suffix in HTML_EXTENSIONS:
        return extract_html(raw)
    return normalize_whitespace(raw)


async def extract_file(path: str | Path) -> str:
    """
    Extract plain text from a supported file.

    Raises:
        NotFoundError: file does not exist
        ValidationError: unsupported extension
    """
    path = Path(path)
    if path.suffix.lower() not in SUPPORTED_EXTENSIONS:
        raise ValidationError(f"Unsupported file type: {path.suffix or path.name}")
    if not path.is_file():
        raise NotFoundError("File", str(path))

    text = await asyncio.to_thread(_read_file, path)
    logger.debug("Extracted {} characters from {}", len(text), path.name)
    return text
