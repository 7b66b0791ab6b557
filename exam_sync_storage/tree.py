"""Nested record tree helpers.

Both the local snapshot and the in-memory remote store keep records as one
nested mapping addressed by path segments. Writing a parent replaces the
whole subtree, writing a child updates a single leaf.
"""

from __future__ import annotations

import copy
from typing import Any


def get_in(root: dict[str, Any], segments: list[str]) -> Any:
    """Value at ``segments`` (deep-copied), or None if absent."""
    node: Any = root
    for segment in segments:
        if not isinstance(node, dict) or segment not in node:
            return None
        node = node[segment]
    return copy.deepcopy(node)


def set_in(root: dict[str, Any], segments: list[str], value: Any) -> None:
    """Store a deep copy of ``value`` at ``segments``.

    Intermediate mappings are created as needed; a non-mapping found on the
    way is replaced, the same way a parent write would replace it.
    """
    node = root
    for segment in segments[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = {}
            node[segment] = child
        node = child
    node[segments[-1]] = copy.deepcopy(value)


def remove_in(root: dict[str, Any], segments: list[str]) -> bool:
    """Remove the value at ``segments``. Returns True if something was removed."""
    node: Any = root
    for segment in segments[:-1]:
        if not isinstance(node, dict) or segment not in node:
            return False
        node = node[segment]
    if not isinstance(node, dict) or segments[-1] not in node:
        return False
    del node[segments[-1]]
    return True
