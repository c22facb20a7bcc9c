"""Utilities shared across connector implementations."""

from __future__ import annotations

import base64
import re
from urllib.parse import unquote, urlsplit

from connectors.base import MAX_CONTENT_CHARS

WHITESPACE_RE = re.compile(r"\s+")
WORD_START_RE = re.compile(r"\b\w")
SEPARATOR_RE = re.compile(r"[-_]+")


def encode_external_id(value: str) -> str:
    """Derive a stable, reversible identifier from a URL or absolute path."""
    return base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")


def decode_external_id(external_id: str) -> str:
    padding = "=" * (-len(external_id) % 4)
    return base64.urlsafe_b64decode(external_id + padding).decode("utf-8")


def collapse_whitespace(text: str | None) -> str:
    if not text:
        return ""
    return WHITESPACE_RE.sub(" ", text).strip()


def truncate_content(text: str) -> str:
    return text[:MAX_CONTENT_CHARS]


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a glob with * and ? wildcards into an anchored regex."""
    escaped = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{escaped}$", re.IGNORECASE)


def title_from_filename(stem: str) -> str:
    words = SEPARATOR_RE.sub(" ", stem).strip()
    return WORD_START_RE.sub(lambda match: match.group(0).upper(), words)


def title_from_url(url: str) -> str:
    """Fallback title for a page: its last path segment, else its host."""
    parts = urlsplit(url)
    segments = [segment for segment in parts.path.split("/") if segment]
    if segments:
        return title_from_filename(unquote(segments[-1]).rsplit(".", 1)[0]) or parts.hostname or url
    return parts.hostname or url
