from __future__ import annotations

import os

from .constants import USERNAME_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_username(value, *, max_chars: int = USERNAME_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Control characters break presence lists and log lines.
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in s):
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s
