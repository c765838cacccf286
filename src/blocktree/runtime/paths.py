"""
Path and slot utilities.

Block payloads and bindings address data with loose JSON-path-like
strings: ``$.items[2]``, ``$.data/customer/name``, ``#/data/total`` or a
bare ``customer.name``. These helpers turn them into slot keys and
segment lists and read or write values through them.
"""

from __future__ import annotations

import re
from typing import Any

DEFAULT_SLOT = "items"

_INDEX_SUFFIX = re.compile(r"\[(\d+)\]$")
_INDEX_ANYWHERE = re.compile(r"\[(\d+)\]")
_SEGMENT_SPLIT = re.compile(r"[./]")


def slot_key_from_path(path: str | None) -> str:
    """
    Derive a slot key from a path.

    The key is the last segment after splitting on "/" and ".", with any
    trailing "[n]" index removed.

    >>> slot_key_from_path("$.items[3]")
    'items'
    >>> slot_key_from_path("$.data/clients[0]")
    'clients'
    """
    if not path:
        return DEFAULT_SLOT
    segments = [s for s in _SEGMENT_SPLIT.split(path.strip()) if s and s not in ("$", "#")]
    if not segments:
        return DEFAULT_SLOT
    key = _INDEX_SUFFIX.sub("", segments[-1])
    return key or DEFAULT_SLOT


def item_path(list_path: str, index: int) -> str:
    """Path of the index-th row of a reference list."""
    return f"{list_path}[{index}]"


def split_item_path(path: str) -> tuple[str, int | None]:
    """Split ``$.items[3]`` into ``("$.items", 3)``; paths without an index give None."""
    match = _INDEX_SUFFIX.search(path)
    if match is None:
        return path, None
    return path[: match.start()], int(match.group(1))


# =============================================================================
# Pointer Resolution
# =============================================================================


def path_segments(path: str) -> list[str | int]:
    """
    Normalise a binding path into segments rooted at the render context.

    - ``#/a/b`` and ``/a/b`` are pointers taken as written
    - ``$.a.b`` and ``$.a/b`` drop the ``$`` root
    - a bare ``a.b`` is relative to ``data``

    List indices (``items[0]``) become int segments.
    """
    raw = path.strip()
    relative_to_data = False
    if raw.startswith("#/"):
        raw = raw[2:]
    elif raw.startswith("/"):
        raw = raw[1:]
    elif raw.startswith("$"):
        raw = raw[1:].lstrip(".").lstrip("/")
    else:
        relative_to_data = True

    segments: list[str | int] = ["data"] if relative_to_data else []
    for part in _SEGMENT_SPLIT.split(raw):
        if not part:
            continue
        name = _INDEX_ANYWHERE.sub("", part)
        if name:
            segments.append(name.replace("~1", "/").replace("~0", "~"))
        segments.extend(int(i) for i in _INDEX_ANYWHERE.findall(part))
    return segments


def get_by_path(root: Any, path: str) -> Any:
    """Read a value through a binding path; missing segments give None."""
    current = root
    for segment in path_segments(path):
        if isinstance(segment, int):
            if isinstance(current, list) and -len(current) <= segment < len(current):
                current = current[segment]
            else:
                return None
        elif isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        else:
            return None
    return current


def set_deep(target: dict[str, Any], dotted: str, value: Any) -> dict[str, Any]:
    """
    Write ``value`` at a dot path, creating intermediate dicts.

    An intermediate that already holds a non-dict value is left alone and
    the write is skipped.
    """
    keys = [k for k in dotted.split(".") if k]
    if not keys:
        return target
    current = target
    for key in keys[:-1]:
        nxt = current.get(key)
        if nxt is None:
            nxt = {}
            current[key] = nxt
        elif not isinstance(nxt, dict):
            return target
        current = nxt
    current[keys[-1]] = value
    return target


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` updated with ``patch``; nested dicts merge, other values replace."""
    merged = dict(base)
    for key, value in patch.items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged[key] = deep_merge(existing, value)
        else:
            merged[key] = value
    return merged
