"""Input normalisation shared by the curriculum services.

Each helper trims and validates one value and raises `BadRequest` with a
stable code (e.g. ``invalid_title``) that the web adapter passes through.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..errors import BadRequest


_UNSET = object()


def normalize_title(value: object, *, code: str = "invalid_title", max_len: int = 200) -> str:
    if value is None or not isinstance(value, str):
        raise BadRequest(code)
    trimmed = value.strip()
    if not trimmed or len(trimmed) > max_len:
        raise BadRequest(code)
    return trimmed


def normalize_optional_text(value: object, *, code: str, max_len: Optional[int] = None) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise BadRequest(code)
    trimmed = value.strip()
    if max_len is not None and len(trimmed) > max_len:
        raise BadRequest(code)
    return trimmed or None


def normalize_text(value: object, *, code: str) -> str:
    """Like `normalize_optional_text` but keeps whitespace and maps None to ""."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise BadRequest(code)
    return value


def require_choice(value: object, choices: Iterable[str], *, code: str) -> str:
    if not isinstance(value, str) or value not in set(choices):
        raise BadRequest(code)
    return value


def normalize_optional_int(value: object, *, code: str, minimum: int = 0) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise BadRequest(code)
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise BadRequest(code) from exc
    if number < minimum:
        raise BadRequest(code)
    return number


def normalize_dict_list(value: object, *, code: str) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise BadRequest(code)
    items: List[Dict[str, Any]] = []
    for item in value:
        if not isinstance(item, dict):
            raise BadRequest(code)
        items.append(dict(item))
    return items


__all__ = [
    "_UNSET",
    "normalize_title",
    "normalize_optional_text",
    "normalize_text",
    "require_choice",
    "normalize_optional_int",
    "normalize_dict_list",
]
