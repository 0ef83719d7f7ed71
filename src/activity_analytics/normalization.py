"""Utilities to normalize page URLs into stable identity keys."""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

UNKNOWN_DOMAIN = "unknown"

_TRACKED_SCHEMES = frozenset({"http", "https"})


def normalize_url(url: str) -> str:
    """Drop the query string and fragment, keeping scheme, host and path."""
    cleaned = url.strip()
    try:
        parts = urlsplit(cleaned)
    except ValueError:
        return cleaned
    if not parts.scheme or not parts.netloc:
        return cleaned
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", "", ""))


def extract_domain(url: str) -> str:
    try:
        hostname = urlsplit(url.strip()).hostname
    except ValueError:
        return UNKNOWN_DOMAIN
    return hostname or UNKNOWN_DOMAIN


def is_trackable_url(url: str | None) -> bool:
    """Only regular web pages are measured; browser-internal pages are skipped."""
    if not url:
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme.lower() in _TRACKED_SCHEMES and bool(parts.netloc)
