"""Text helpers handed to every plugin through its environment."""

import html
import json
import re
from typing import Any

_WHITESPACE_RE = re.compile(r"[ \t]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def clean_text(text: str) -> str:
    """Unescape HTML entities and collapse runs of whitespace."""
    if not text:
        return ""

    cleaned = html.unescape(text).replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _WHITESPACE_RE.sub(" ", cleaned)
    cleaned = _BLANK_LINES_RE.sub("\n\n", cleaned)
    return cleaned.strip()


def truncate(text: str, limit: int = 100, suffix: str = "...") -> str:
    """Cut text to at most ``limit`` characters, marking the cut with ``suffix``."""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(suffix))] + suffix


def pretty_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)
