"""Text extraction strategies keyed by file extension."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Callable

import pdfplumber
from bs4 import BeautifulSoup

from connectors.errors import ExtractionError, ExtractionUnavailableError
from connectors.utils import collapse_whitespace

MARKDOWN_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"```[\s\S]*?```"), ""),
    (re.compile(r"`[^`]+`"), ""),
    (re.compile(r"!\[([^\]]*)\]\([^)]+\)"), ""),
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"^#{1,6}\s+", re.MULTILINE), ""),
    (re.compile(r"(\*\*|__)(.*?)\1"), r"\2"),
    (re.compile(r"(\*|_)(.*?)\1"), r"\2"),
    (re.compile(r"^[-*_]{3,}\s*$", re.MULTILINE), ""),
    (re.compile(r"\n{3,}"), "\n\n"),
)
MARKDOWN_HEADING_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
HTML_NOISE_TAGS = ("script", "style", "nav", "header", "footer", "aside", "noscript")


def strip_markdown(text: str) -> str:
    for pattern, replacement in MARKDOWN_RULES:
        text = pattern.sub(replacement, text)
    return text.strip()


def markdown_heading(text: str) -> str | None:
    match = MARKDOWN_HEADING_RE.search(text)
    return match.group(1).strip() if match else None


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for node in soup.find_all(HTML_NOISE_TAGS):
        node.decompose()
    root = soup.body or soup
    return collapse_whitespace(root.get_text(" "))


def html_title(html: str) -> str | None:
    soup = BeautifulSoup(html, "html.parser")
    if soup.title and soup.title.get_text(strip=True):
        return collapse_whitespace(soup.title.get_text())
    return None


def read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


def extract_markdown(path: Path) -> str:
    return strip_markdown(read_text(path))


def extract_html(path: Path) -> str:
    return html_to_text(read_text(path))


def extract_pdf(path: Path) -> str:
    try:
        with pdfplumber.open(path) as pdf:
            return "\n".join(page.extract_text() or "" for page in pdf.pages)
    except OSError:
        raise
    except Exception as exc:
        # pdfminer raises a family of parser errors with no common base.
        raise ExtractionError(f"Failed to parse PDF: {exc}") from exc


def extract_docx(path: Path) -> str:
    try:
        import docx
    except ImportError as exc:
        raise ExtractionUnavailableError(
            "DOCX support not available. Install python-docx."
        ) from exc
    try:
        document = docx.Document(str(path))
    except OSError:
        raise
    except Exception as exc:
        raise ExtractionError(f"Failed to parse DOCX: {exc}") from exc
    return "\n".join(paragraph.text for paragraph in document.paragraphs)


EXTRACTORS: dict[str, Callable[[Path], str]] = {
    ".txt": read_text,
    ".md": extract_markdown,
    ".html": extract_html,
    ".htm": extract_html,
    ".pdf": extract_pdf,
    ".docx": extract_docx,
}


def extract_file(path: Path, extension: str | None = None) -> str:
    """Extract plain text from ``path`` using the strategy for its extension."""
    suffix = (extension or path.suffix).lower()
    try:
        extractor = EXTRACTORS[suffix]
    except KeyError as exc:
        raise ExtractionError(f"Unsupported file type: {suffix}") from exc
    return extractor(path)
