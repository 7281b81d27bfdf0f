# -*- encoding: utf-8 -*-
"""
test_keys.py - key ordering, key ranges and key paths.
"""

import datetime

import pytest

from idbstore import Direction, IndexedDBRequestError, KeyRange
from idbstore.keys import (
    coerce_range,
    compare,
    evaluate_key_path,
    inject_key,
    is_valid_key,
    normalize_key,
    sort_key,
)


def test_type_order():
    ordered = [-5, 0.5, 3, datetime.datetime(1999, 1, 1), "", "Z", "a", b"", b"\x01", [], [0], ["a"]]
    assert sorted(reversed(ordered), key=sort_key) == ordered


def test_compare():
    assert compare(1, 2) == -1
    assert compare("b", "a") == 1
    assert compare([1, "x"], (1, "x")) == 0
    assert compare(10**6, "0") == -1


@pytest.mark.parametrize("key", [None, True, float("nan"), {"a": 1}, {1, 2}, [1, None]])
def test_invalid_keys(key):
    assert not is_valid_key(key)
    with pytest.raises(IndexedDBRequestError) as excinfo:
        sort_key(key)
    assert excinfo.value.name == "DataError"


def test_normalize_key():
    assert normalize_key((1, ("a", bytearray(b"x")))) == [1, ["a", b"x"]]
    assert normalize_key("plain") == "plain"


def test_key_range_includes():
    assert KeyRange.only("Alex").includes("Alex")
    assert not KeyRange.only("Alex").includes("Alexa")

    closed = KeyRange.bound(1, 5)
    assert closed.includes(1) and closed.includes(5)
    half_open = KeyRange.bound(1, 5, lower_open=True, upper_open=True)
    assert not half_open.includes(1) and not half_open.includes(5)
    assert half_open.includes(3)

    assert KeyRange.lower_bound("m").includes("z")
    assert not KeyRange.lower_bound("m", open=True).includes("m")
    assert KeyRange.upper_bound(0).includes(-100)
    # numbers sort before strings
    assert not KeyRange.upper_bound(0).includes("a")


def test_key_range_rejects_inverted_bounds():
    with pytest.raises(IndexedDBRequestError):
        KeyRange.bound(5, 1)
    with pytest.raises(IndexedDBRequestError):
        KeyRange.bound(1, 1, lower_open=True)
    with pytest.raises(IndexedDBRequestError):
        KeyRange.only({"not": "a key"})


def test_coerce_range():
    assert coerce_range(None) is None
    rng = KeyRange.bound("a", "b")
    assert coerce_range(rng) is rng
    assert coerce_range("a") == KeyRange.only("a")


def test_evaluate_key_path():
    value = {"id": 3, "contact": {"email": "e@x"}, "tags": ["a"]}
    assert evaluate_key_path(value, "id") == 3
    assert evaluate_key_path(value, "contact.email") == "e@x"
    assert evaluate_key_path(value, "contact.phone") is None
    assert evaluate_key_path(value, ["id", "contact.email"]) == [3, "e@x"]
    assert evaluate_key_path(value, ["id", "missing"]) is None
    assert evaluate_key_path("scalar", "") == "scalar"
    assert evaluate_key_path(value, None) is None


def test_inject_key():
    value = {"word": "x"}
    inject_key(value, "meta.id", 4)
    assert value == {"word": "x", "meta": {"id": 4}}
    with pytest.raises(IndexedDBRequestError):
        inject_key("scalar", "id", 1)


def test_direction_coerce():
    assert Direction.coerce("prevunique") is Direction.DESC_UNIQUE
    assert Direction.coerce("ASC") is Direction.ASC
    assert Direction.coerce("desc") is Direction.DESC
    assert Direction.coerce(Direction.ASC_UNIQUE) is Direction.ASC_UNIQUE
    with pytest.raises(ValueError):
        Direction.coerce("sideways")


def test_direction_properties():
    assert Direction.DESC_UNIQUE.unique and Direction.DESC_UNIQUE.descending
    assert Direction.DESC_UNIQUE.base is Direction.DESC
    assert Direction.ASC_UNIQUE.base is Direction.ASC
    assert not Direction.ASC.unique and not Direction.ASC.descending
