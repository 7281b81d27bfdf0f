# -*- encoding: utf-8 -*-
"""
Keys, key ranges, key paths and cursor directions.

Key ordering follows IndexedDB: numbers < dates < strings < binary < arrays,
arrays compared element by element. ``sort_key`` maps a valid key to a
Python value with that ordering so plain ``sorted``/``bisect`` work on it.
"""

from __future__ import annotations

import datetime
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence, Union

from .errors import IndexedDBRequestError

KeyPath = Union[str, Sequence[str], None]

_NUMBER, _DATE, _STRING, _BINARY, _ARRAY = range(5)


class Direction(Enum):
    """Cursor directions accepted by scans."""

    ASC = "next"
    ASC_UNIQUE = "nextunique"
    DESC = "prev"
    DESC_UNIQUE = "prevunique"

    @property
    def unique(self) -> bool:
        return self in (Direction.ASC_UNIQUE, Direction.DESC_UNIQUE)

    @property
    def descending(self) -> bool:
        return self in (Direction.DESC, Direction.DESC_UNIQUE)

    @property
    def base(self) -> "Direction":
        """Same direction without the uniqueness variant."""
        return Direction.DESC if self.descending else Direction.ASC

    @classmethod
    def coerce(cls, value: Union["Direction", str]) -> "Direction":
        if isinstance(value, Direction):
            return value
        for member in cls:
            if value in (member.value, member.name, member.name.lower()):
                return member
        raise ValueError(f"Unknown cursor direction {value!r}")


def data_error(message: str) -> IndexedDBRequestError:
    return IndexedDBRequestError(message, name="DataError")


def is_valid_key(key: Any) -> bool:
    try:
        sort_key(key)
    except IndexedDBRequestError:
        return False
    return True


def sort_key(key: Any) -> tuple:
    """
    Return an orderable tuple for an IndexedDB key.

    Raises:
        IndexedDBRequestError: DataError when ``key`` is not a valid key.
    """
    if isinstance(key, bool) or key is None:
        raise data_error(f"{key!r} is not a valid key")
    if isinstance(key, (int, float)):
        if isinstance(key, float) and math.isnan(key):
            raise data_error("NaN is not a valid key")
        return (_NUMBER, key)
    if isinstance(key, datetime.datetime):
        return (_DATE, key.timestamp())
    if isinstance(key, datetime.date):
        return (_DATE, datetime.datetime(key.year, key.month, key.day).timestamp())
    if isinstance(key, str):
        return (_STRING, key)
    if isinstance(key, (bytes, bytearray, memoryview)):
        return (_BINARY, bytes(key))
    if isinstance(key, (list, tuple)):
        return (_ARRAY, tuple(sort_key(item) for item in key))
    raise data_error(f"{type(key).__name__} is not a valid key type")


def compare(a: Any, b: Any) -> int:
    """indexedDB.cmp equivalent: -1, 0 or 1."""
    ka, kb = sort_key(a), sort_key(b)
    return (ka > kb) - (ka < kb)


def normalize_key(key: Any) -> Any:
    """Copy a key into its canonical stored form (tuples become lists)."""
    if isinstance(key, (list, tuple)):
        return [normalize_key(item) for item in key]
    if isinstance(key, (bytearray, memoryview)):
        return bytes(key)
    return key


@dataclass(frozen=True)
class KeyRange:
    """
    IDBKeyRange equivalent. A bound of ``None`` is open-ended.

    Usage:
        KeyRange.only("Alex")
        KeyRange.bound("A", "B", upper_open=True)
        KeyRange.lower_bound(10)
    """

    lower: Any = None
    upper: Any = None
    lower_open: bool = False
    upper_open: bool = False

    def __post_init__(self):
        if self.lower is not None:
            sort_key(self.lower)
        if self.upper is not None:
            sort_key(self.upper)
        if self.lower is not None and self.upper is not None:
            cmp = compare(self.lower, self.upper)
            if cmp > 0 or (cmp == 0 and (self.lower_open or self.upper_open)):
                raise data_error("The lower bound is greater than the upper bound")

    @classmethod
    def only(cls, value: Any) -> "KeyRange":
        return cls(value, value)

    @classmethod
    def lower_bound(cls, lower: Any, open: bool = False) -> "KeyRange":
        return cls(lower=lower, lower_open=open)

    @classmethod
    def upper_bound(cls, upper: Any, open: bool = False) -> "KeyRange":
        return cls(upper=upper, upper_open=open)

    @classmethod
    def bound(
        cls,
        lower: Any,
        upper: Any,
        lower_open: bool = False,
        upper_open: bool = False,
    ) -> "KeyRange":
        return cls(lower, upper, lower_open, upper_open)

    def includes(self, key: Any) -> bool:
        if self.lower is not None:
            cmp = compare(key, self.lower)
            if cmp < 0 or (cmp == 0 and self.lower_open):
                return False
        if self.upper is not None:
            cmp = compare(key, self.upper)
            if cmp > 0 or (cmp == 0 and self.upper_open):
                return False
        return True


def coerce_range(query: Any) -> Optional[KeyRange]:
    """Accept a KeyRange, a bare key (exact match) or None."""
    if query is None or isinstance(query, KeyRange):
        return query
    return KeyRange.only(query)


def evaluate_key_path(value: Any, key_path: KeyPath) -> Any:
    """
    Extract the key at ``key_path`` from ``value``.

    Dotted paths walk nested mappings; a sequence of paths builds an array
    key. Returns None when any step is missing.
    """
    if key_path is None:
        return None
    if not isinstance(key_path, str):
        parts = [evaluate_key_path(value, path) for path in key_path]
        return None if any(part is None for part in parts) else parts
    if key_path == "":
        return value
    current = value
    for step in key_path.split("."):
        if isinstance(current, dict) and step in current:
            current = current[step]
        else:
            return None
    return current


def inject_key(value: Any, key_path: str, key: Any) -> None:
    """Write a generated key into ``value`` at a dotted key path."""
    steps = key_path.split(".")
    current = value
    for step in steps[:-1]:
        if not isinstance(current, dict):
            raise data_error(f"Cannot inject key at {key_path!r}")
        current = current.setdefault(step, {})
    if not isinstance(current, dict):
        raise data_error(f"Cannot inject key at {key_path!r}")
    current[steps[-1]] = key
