from __future__ import annotations

import os

from .constants import IDENTITY_MAX_CHARS
from .errors import ValidationError


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def _clean_text(value) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    # Embedded newlines or NUL frequently cause UI/log formatting issues.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def normalize_identity(value, *, max_chars: int = IDENTITY_MAX_CHARS) -> str:
    """Return a usable identity string or raise ValidationError."""
    s = _clean_text(value)
    if s is None:
        raise ValidationError("identity must be a non-empty string")
    if max_chars > 0 and len(s) > int(max_chars):
        raise ValidationError("identity too long")
    return s


def normalize_username(value, *, max_chars: int = 32) -> str:
    s = _clean_text(value)
    if s is None:
        raise ValidationError("username must be a non-empty string")
    if max_chars > 0 and len(s) > int(max_chars):
        raise ValidationError("username too long")
    return s


def validate_content(value, *, max_bytes: int) -> str:
    if not isinstance(value, str):
        raise ValidationError("content must be a string")
    if not value.strip():
        raise ValidationError("content must not be empty")
    try:
        size = len(value.encode("utf-8", "strict"))
    except UnicodeError as e:
        raise ValidationError("content must be valid UTF-8") from e
    if max_bytes > 0 and size > int(max_bytes):
        raise ValidationError(f"message too long: {size} > {max_bytes} bytes")
    return value
