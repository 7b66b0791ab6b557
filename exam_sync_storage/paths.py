"""Path and ID utilities shared by the local snapshot and remote stores.

Centralizes the path format knowledge so callers never need to split
or join record paths by hand.

Paths: "students", "students/<id>", "exams/<id>/questions"
Push IDs: 20 characters, time-ordered (8 timestamp chars + 12 random chars)
Provisional IDs: "local:<epoch-ms>-<random>", created while offline
"""

from __future__ import annotations

import secrets
import time
from typing import Any

from .exceptions import InvalidPathError

PATH_SEPARATOR = "/"
FORBIDDEN_CHARACTERS = frozenset(".#$[]")

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

PROVISIONAL_PREFIX = "local:"


def normalize_path(path: str) -> str:
    """Return the canonical form of a path.

    Leading and trailing separators are stripped. Raises InvalidPathError
    for empty paths, empty segments and forbidden characters.
    """
    if not isinstance(path, str):
        raise InvalidPathError(str(path), "path must be a string")

    stripped = path.strip(PATH_SEPARATOR)
    if not stripped:
        raise InvalidPathError(path, "path is empty")

    for segment in stripped.split(PATH_SEPARATOR):
        if not segment:
            raise InvalidPathError(path, "empty path segment")
        bad = FORBIDDEN_CHARACTERS.intersection(segment)
        if bad:
            raise InvalidPathError(path, f"forbidden characters {''.join(sorted(bad))}")

    return stripped


def split_path(path: str) -> list[str]:
    """Split a path into its segments."""
    return normalize_path(path).split(PATH_SEPARATOR)


def join_path(*parts: str) -> str:
    """Join path fragments into one normalized path."""
    return normalize_path(PATH_SEPARATOR.join(p.strip(PATH_SEPARATOR) for p in parts if p))


def parent_path(path: str) -> str | None:
    """Parent of a path, or None for a top-level collection."""
    segments = split_path(path)
    if len(segments) == 1:
        return None
    return PATH_SEPARATOR.join(segments[:-1])


def last_segment(path: str) -> str:
    """Final segment of a path (the record key for record paths)."""
    return split_path(path)[-1]


def is_ancestor(ancestor: str, path: str) -> bool:
    """True if ``ancestor`` is a strict ancestor of ``path``."""
    a = split_path(ancestor)
    p = split_path(path)
    return len(a) < len(p) and p[: len(a)] == a


def paths_overlap(a: str, b: str) -> bool:
    """True if two paths are equal or one contains the other."""
    sa = split_path(a)
    sb = split_path(b)
    n = min(len(sa), len(sb))
    return sa[:n] == sb[:n]


class PushIdGenerator:
    """Generates time-ordered, collision resistant record keys.

    Keys sort lexicographically by creation time. Two keys created in the
    same millisecond stay ordered because the random tail is incremented
    instead of regenerated.
    """

    def __init__(self) -> None:
        self._last_time = -1
        self._last_random = [0] * 12

    def generate(self, now_ms: int | None = None) -> str:
        now = int(time.time() * 1000) if now_ms is None else now_ms
        duplicate = now == self._last_time
        self._last_time = now

        time_chars = []
        for _ in range(8):
            time_chars.append(PUSH_CHARS[now % 64])
            now //= 64
        time_chars.reverse()

        if not duplicate:
            self._last_random = [secrets.randbelow(64) for _ in range(12)]
        else:
            # Increment the random tail, carrying into earlier positions
            i = 11
            while i >= 0 and self._last_random[i] == 63:
                self._last_random[i] = 0
                i -= 1
            if i >= 0:
                self._last_random[i] += 1

        return "".join(time_chars) + "".join(PUSH_CHARS[r] for r in self._last_random)


_push_ids = PushIdGenerator()


def generate_push_id(now_ms: int | None = None) -> str:
    """Generate a push ID using the process-wide generator."""
    return _push_ids.generate(now_ms)


def generate_provisional_id(now_ms: int | None = None) -> str:
    """Generate a provisional ID for a record created while offline."""
    now = int(time.time() * 1000) if now_ms is None else now_ms
    return f"{PROVISIONAL_PREFIX}{now}-{secrets.token_hex(4)}"


def is_provisional_id(value: Any) -> bool:
    """True if ``value`` is a provisional (not yet synced) ID."""
    return isinstance(value, str) and value.startswith(PROVISIONAL_PREFIX)


def replace_in_path(path: str, old: str, new: str) -> str:
    """Replace every path segment equal to ``old`` with ``new``."""
    return PATH_SEPARATOR.join(new if s == old else s for s in split_path(path))


def replace_references(value: Any, old: str, new: str) -> Any:
    """Return a deep copy of ``value`` with references to ``old`` replaced.

    Every string equal to ``old`` and every mapping key equal to ``old``
    is replaced by ``new``. Other values are copied unchanged.
    """
    if isinstance(value, str):
        return new if value == old else value
    if isinstance(value, dict):
        return {
            (new if k == old else k): replace_references(v, old, new) for k, v in value.items()
        }
    if isinstance(value, list):
        return [replace_references(v, old, new) for v in value]
    return value


def contains_reference(value: Any, ref: str) -> bool:
    """True if ``ref`` appears as a string value or mapping key in ``value``."""
    if isinstance(value, str):
        return value == ref
    if isinstance(value, dict):
        return any(k == ref or contains_reference(v, ref) for k, v in value.items())
    if isinstance(value, list):
        return any(contains_reference(v, ref) for v in value)
    return False
