#!/usr/bin/env python3
"""
Utility functions for the feed poller.

This module contains the item text sanitizer used by the reader and exporter,
URL validation, and the small formatting helpers shared by logging, the status
command and item views.
"""

from datetime import datetime, timezone
from html import escape, unescape
from time import time
from typing import Optional
import re
from urllib.parse import urlparse

# Anything that looks like a tag, even across newlines and even if unbalanced
_TAG_RE = re.compile(r'<.*?>', re.DOTALL)
_WHITESPACE_RE = re.compile(r'\s+')
_URL_RE = re.compile(r"\b(https?://[A-Za-z0-9\-._~:/?#\[\]@!$&'()*+,;=]+)")


def sanitize_item_text(text: Optional[str]) -> str:
    """Turn feed-supplied HTML-ish text into plain readable text.

    Tags are stripped first and entities decoded afterwards, so encoded markup
    such as ``&lt;p&gt;`` comes out as a literal ``<p>`` rather than vanishing.
    Runs of whitespace, newlines included, collapse to a single space.

    Args:
        text: Title or description as found in the feed

    Returns:
        The cleaned text (empty string for empty input)
    """
    if not text:
        return ""
    stripped = _TAG_RE.sub("", text)
    decoded = unescape(stripped)
    return _WHITESPACE_RE.sub(" ", decoded).strip()


def html_description(text: Optional[str]) -> str:
    """Escape plain text for HTML and turn bare http(s) URLs into links."""
    if not text:
        return ""
    escaped = escape(text)
    return _URL_RE.sub(r'<a href="\1">\1</a>', escaped)


def validate_url(url: str) -> bool:
    """Validate that a string is an absolute http(s) URL with a host.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def safe_filename(filename: str, max_length: int = 255) -> str:
    """Filesystem-safe name for exported feed files ("untitled" if nothing survives)."""
    if not filename:
        return "untitled"

    safe_name = re.sub(r'[<>:"/\\|?*\s]', '_', filename)
    safe_name = re.sub(r'[\x00-\x1f\x7f-\x9f]', '', safe_name)
    safe_name = safe_name.strip('. ')

    if not safe_name:
        return "untitled"

    if len(safe_name) > max_length:
        safe_name = safe_name[:max_length].rstrip('. ')

    return safe_name


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut text to max_length characters, suffix included."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a compact string such as "1h 23m 45s"."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def format_timestamp(timestamp: Optional[int]) -> str:
    """Return a human-readable UTC timestamp for diagnostics."""
    if timestamp is None:
        return "n/a"
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
    except (OSError, OverflowError, ValueError, TypeError):
        return str(timestamp)


def _pluralize(count: int, unit: str) -> str:
    return f"1 {unit}" if count == 1 else f"{count} {unit}s"


def update_frequency_for_display(update_frequency_seconds: int) -> str:
    """Rough update frequency, e.g. "3 hours" or "15 minutes".

    Whole hours win over minutes; "1 hour 30 minutes" is reported as "1 hour".
    """
    minutes = int(update_frequency_seconds) // 60
    hours = minutes // 60
    if hours > 0:
        return _pluralize(hours, "hour")
    return _pluralize(minutes, "minute")


def duration_since_update_for_display(last_poll_time: Optional[int], now: Optional[float] = None) -> str:
    """How long ago a feed was last polled, e.g. "2 hours"."""
    if last_poll_time is None:
        return "never"
    current = time() if now is None else now
    difference = max(current - last_poll_time, 0)
    hours = int(difference // 3600)
    if hours > 0:
        return _pluralize(hours, "hour")
    return _pluralize(int(difference // 60), "minute")


def duration_until_next_update_for_display(last_poll_time: Optional[int], update_frequency_seconds: int,
                                           now: Optional[float] = None) -> str:
    """How long until a feed is due again; overdue or never-polled feeds are due at "the next update"."""
    if last_poll_time is None:
        return "the next update"
    current = time() if now is None else now
    remaining = update_frequency_seconds - (current - last_poll_time)
    if remaining < 0:
        return "the next update"
    hours = int(remaining // 3600)
    if hours > 0:
        return _pluralize(hours, "hour")
    return _pluralize(int(remaining // 60), "minute")
