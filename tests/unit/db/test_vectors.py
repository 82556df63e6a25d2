"""Tests for vector encoding helpers."""

from __future__ import annotations

import math

import pytest
from sqlite_vec import serialize_float32

from contextkit.db.vectors import encode_vector


def test_encode_vector_matches_sqlite_vec():
    assert encode_vector([0.5, 1.0, -2.0]) == serialize_float32([0.5, 1.0, -2.0])


def test_encode_vector_is_four_bytes_per_dimension():
    assert len(encode_vector([1.0] * 16)) == 64


def test_encode_vector_accepts_ints():
    assert encode_vector([1, 0, 0]) == serialize_float32([1.0, 0.0, 0.0])


@pytest.mark.parametrize(
    "vector",
    [[], [0.0, 0.0], [1.0, math.nan], [math.inf, 1.0]],
    ids=["empty", "zero", "nan", "inf"],
)
def test_encode_vector_rejects_invalid(vector):
    with pytest.raises(ValueError):
        encode_vector(vector)
