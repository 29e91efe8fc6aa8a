"""
Shared utility functions for parsing and text handling

Provides common helpers for:
- String parsing: Environment variable conversion (parse_bool, parse_int, parse_float)
- Display text: Word wrapping for the glasses text wall and query truncation
- Server URLs: Converting the session websocket URL into an HTTPS API base

These utilities are used throughout Mira for configuration parsing and rendering.
"""

from __future__ import annotations

import re


def strip_or_none(value: str | None) -> str | None:
    """Trim a string, treating empty or whitespace-only values as absent."""
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Interpret env-style booleans."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(value: str | None, default: int) -> int:
    """Best-effort int parser with fallback."""
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_float(value: str | None, default: float) -> float:
    """Best-effort float parser with fallback."""
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def wrap_text(text: str, width: int = 30) -> str:
    """Word-wrap text into lines of at most ``width`` characters.

    Words longer than the width are hard-split. Existing newlines are kept.
    """
    if width <= 0:
        raise ValueError("Wrap width must be positive")
    wrapped: list[str] = []
    for paragraph in (text or "").split("\n"):
        line = ""
        for word in paragraph.split():
            while len(word) > width:
                if line:
                    wrapped.append(line)
                    line = ""
                wrapped.append(word[:width])
                word = word[width:]
            if not line:
                line = word
            elif len(line) + 1 + len(word) <= width:
                line = f"{line} {word}"
            else:
                wrapped.append(line)
                line = word
        wrapped.append(line)
    return "\n".join(wrapped)


def truncate_text(text: str, limit: int) -> str:
    """Shorten text to ``limit`` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit].strip() + " ..."


_WS_SCHEME = re.compile(r"^wss?://", re.IGNORECASE)


def clean_server_url(raw_url: str | None) -> str:
    """Convert ``wss://host/app-ws`` style session URLs into ``https://host``."""
    if not raw_url:
        return ""
    url = raw_url.strip()
    if _WS_SCHEME.match(url):
        url = _WS_SCHEME.sub("", url)
        url = re.sub(r"/app-ws/?$", "", url)
        return f"https://{url}"
    return url.rstrip("/")
