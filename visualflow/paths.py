from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any

_SEGMENT_SPLIT = re.compile(r"[.\[\]]")


def split_path(path: str) -> list[str]:
    return [segment for segment in _SEGMENT_SPLIT.split(path) if segment]


def get_path(data: Any, path: str) -> Any:
    """Read ``path`` (``a.b[0].c``) out of nested mappings and sequences.

    Returns ``None`` as soon as a segment cannot be resolved.
    """
    current = data
    for segment in split_path(path):
        if current is None:
            return None
        if isinstance(current, Mapping):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            if not segment.isdecimal():
                return None
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def set_path(data: dict[str, Any], path: str, value: Any) -> dict[str, Any]:
    """Assign ``value`` at a dot separated ``path``, creating dicts on the way."""
    segments = [segment for segment in path.split(".") if segment]
    if not segments:
        raise ValueError("set_path requires a non-empty path")

    current = data
    for segment in segments[:-1]:
        child = current.get(segment)
        if not isinstance(child, dict):
            child = {}
            current[segment] = child
        current = child
    current[segments[-1]] = value
    return data
