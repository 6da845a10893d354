"""
Dot-notation access into nested dictionaries and lists.

``user.addresses.0.city`` walks dictionary keys and list indices alike.
"""

from typing import Any, List


class _Missing:
    """Sentinel for a path that does not resolve."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def _segments(path: str) -> List[str]:
    return path.split(".")


def _index(container: list, segment: str):
    if segment.lstrip("-").isdigit():
        idx = int(segment)
        if -len(container) <= idx < len(container):
            return idx
    return None


def _step(node: Any, segment: str) -> Any:
    if isinstance(node, dict):
        if segment in node:
            return node[segment]
        return MISSING
    if isinstance(node, list):
        idx = _index(node, segment)
        if idx is not None:
            return node[idx]
    return MISSING


def get(data: Any, path: str, default: Any = MISSING) -> Any:
    """Resolve ``path`` in ``data``, returning ``default`` when any segment is absent."""
    if not path:
        return default
    node = data
    for segment in _segments(path):
        node = _step(node, segment)
        if node is MISSING:
            return default
    return node


def has(data: Any, path: str) -> bool:
    """Whether ``path`` resolves, even to ``None``."""
    return get(data, path) is not MISSING


def set(data: dict, path: str, value: Any) -> None:
    """Write ``value`` at ``path``, creating intermediate dictionaries as needed.

    A scalar sitting on the way is replaced by a dictionary.
    """
    segments = _segments(path)
    node = data
    for position, segment in enumerate(segments[:-1]):
        child = _step(node, segment)
        following = segments[position + 1]
        if not isinstance(child, (dict, list)) or (isinstance(child, list) and not following.isdigit()):
            child = {}
            _assign(node, segment, child)
        node = child
    _assign(node, segments[-1], value)


def _assign(node: Any, segment: str, value: Any) -> None:
    if isinstance(node, list) and segment.isdigit():
        idx = int(segment)
        if idx >= len(node):
            node.extend([None] * (idx + 1 - len(node)))
        node[idx] = value
        return
    node[segment] = value


def delete(data: Any, path: str) -> bool:
    """Remove ``path`` from ``data``. Returns False when there was nothing to remove."""
    segments = _segments(path)
    parent = get(data, ".".join(segments[:-1])) if len(segments) > 1 else data
    last = segments[-1]
    if isinstance(parent, dict) and last in parent:
        del parent[last]
        return True
    if isinstance(parent, list):
        idx = _index(parent, last)
        if idx is not None:
            del parent[idx]
            return True
    return False
