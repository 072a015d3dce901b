"""
Path addressing for nested context data.

Paths use dots for keys and brackets for list positions, e.g. ``order.items[0].sku``.
A leading ``$`` is accepted and ignored so ``$order.total`` and ``order.total`` are equal.
"""
import re
from typing import Any, List, Union

_SEGMENT = re.compile(r"([^.\[\]]+)|\[(-?\d+)\]")

_MISSING = object()

PathPart = Union[str, int]


def split_path(path: str) -> List[PathPart]:
    """Split a path expression into key and index parts"""
    if path.startswith("$"):
        path = path[1:]
    parts: List[PathPart] = []
    for key, index in _SEGMENT.findall(path):
        parts.append(int(index) if index else key)
    return parts


def get_path(data: Any, path: Union[str, List[PathPart]], default: Any = None) -> Any:
    """Resolve ``path`` against nested dicts and lists"""
    parts = split_path(path) if isinstance(path, str) else path
    current = data
    for part in parts:
        if isinstance(current, dict):
            current = current.get(part if isinstance(part, str) else str(part), _MISSING)
        elif isinstance(current, list) and isinstance(part, int):
            current = current[part] if -len(current) <= part < len(current) else _MISSING
        elif isinstance(current, list) and isinstance(part, str) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def has_path(data: Any, path: str) -> bool:
    return get_path(data, path, _MISSING) is not _MISSING


def set_path(data: dict, path: Union[str, List[PathPart]], value: Any) -> None:
    """Write ``value`` at ``path``, creating intermediate dicts as needed"""
    parts = split_path(path) if isinstance(path, str) else path
    if not parts:
        raise ValueError("Empty path")
    current: Any = data
    for part, following in zip(parts, parts[1:]):
        if isinstance(current, list) and isinstance(part, int):
            current = current[part]
            continue
        nxt = current.get(part) if isinstance(current, dict) else None
        if not isinstance(nxt, (dict, list)):
            nxt = [] if isinstance(following, int) else {}
            current[part] = nxt
        current = nxt
    last = parts[-1]
    if isinstance(current, list) and isinstance(last, int):
        if last == len(current):
            current.append(value)
        else:
            current[last] = value
    else:
        current[last] = value


def delete_path(data: dict, path: str) -> bool:
    parts = split_path(path)
    parent = get_path(data, parts[:-1]) if len(parts) > 1 else data
    if isinstance(parent, dict) and parts[-1] in parent:
        del parent[parts[-1]]
        return True
    return False
