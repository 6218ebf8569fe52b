"""Identifier helpers."""

from __future__ import annotations

import secrets
from typing import Any, Iterable, List, Optional

# URL-safe alphabet used for generated names and object keys
ALPHABET = "useandom-26T198340PX75pxJACKVERYMINDBUSHWOLF_GQZbfghjklqvwyzrict"


def short_id(size: int = 10) -> str:
    """Return a random URL-safe identifier of ``size`` characters."""
    return "".join(secrets.choice(ALPHABET) for _ in range(size))


def to_string_id(value: Any) -> Optional[str]:
    """Normalise a remote id to a non-empty string, or ``None``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value == value and value not in (float("inf"), float("-inf")):
        return str(int(value)) if value.is_integer() else str(value)
    return None


def collect_ids(candidate: Any, keys: Iterable[str]) -> List[str]:
    """Return the string ids found under ``keys`` of a mapping."""
    if not isinstance(candidate, dict):
        return []
    found = []
    for key in keys:
        value = to_string_id(candidate.get(key))
        if value:
            found.append(value)
    return found
