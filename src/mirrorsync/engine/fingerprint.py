"""
Content fingerprints used to detect unchanged objects.
"""

import hashlib
import json
from typing import Any, Optional, Set

from ..exceptions import FingerprintError, NotSortableError


def is_sortable(value: Any) -> bool:
    """Only maps and lists can be canonicalized."""
    return isinstance(value, (dict, list))


def sort_nested(value: Any, _seen: Optional[Set[int]] = None) -> Any:
    """
    Return a copy of ``value`` with the keys of every map sorted alphabetically.

    Lists keep their order. Scalars are returned as they are.

    Raises:
        FingerprintError: If the structure references itself
    """
    if not isinstance(value, (dict, list)):
        return value

    seen = _seen if _seen is not None else set()
    marker = id(value)
    if marker in seen:
        raise FingerprintError("Cannot fingerprint a circular structure")
    seen.add(marker)
    try:
        if isinstance(value, dict):
            return {key: sort_nested(value[key], seen) for key in sorted(value, key=str)}
        return [sort_nested(item, seen) for item in value]
    finally:
        seen.discard(marker)


def fingerprint(value: Any) -> str:
    """
    SHA-256 of the canonical JSON form of a map or list.

    Raises:
        NotSortableError: If ``value`` is not a map or list
        FingerprintError: If ``value`` is circular
    """
    if not is_sortable(value):
        raise NotSortableError(f"Cannot fingerprint a {type(value).__name__}, a map or list is required")

    canonical = sort_nested(value)
    serialized = json.dumps(canonical, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
