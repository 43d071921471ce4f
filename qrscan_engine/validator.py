from __future__ import annotations

import re
from urllib.parse import urlparse

from .errors import InvalidContentError

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE = re.compile(r"^[\+]?[\d\s\-\(\)]{7,}$")
_PRINTABLE = re.compile(r"^[\x20-\x7E\u00A0-\U0010FFFF]*$")

MAX_CONTENT_LENGTH = 4000


def is_url(content: str) -> bool:
    s = content.strip()
    return s.startswith("http://") or s.startswith("https://")


def _is_valid_url(s: str) -> bool:
    try:
        parsed = urlparse(s)
        # accessing .port validates the netloc
        _ = parsed.port
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)


def is_valid_content(content: str, *, max_length: int = MAX_CONTENT_LENGTH) -> bool:
    """Accept payloads that look like URLs, emails, phone numbers or printable text."""
    if not isinstance(content, str) or not content.strip():
        return False
    if len(content) > max_length:
        return False
    if _CONTROL_CHARS.search(content):
        return False

    s = content.strip()
    if is_url(s):
        return _is_valid_url(s)
    if "@" in s and "." in s:
        return bool(_EMAIL.match(s))
    if _PHONE.match(s):
        return True
    return bool(_PRINTABLE.match(s))


def ensure_valid_content(content: str, *, max_length: int = MAX_CONTENT_LENGTH) -> str:
    """Return ``content`` unchanged or raise InvalidContentError."""
    if not is_valid_content(content, max_length=max_length):
        raise InvalidContentError(content)
    return content


def content_kind(content: str) -> str:
    """Coarse payload class: url|email|phone|text."""
    s = (content or "").strip()
    if is_url(s):
        return "url"
    if "@" in s and "." in s and _EMAIL.match(s):
        return "email"
    if _PHONE.match(s):
        return "phone"
    return "text"
