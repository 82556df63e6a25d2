"""Embedding vector helpers for the sqlite-vec backed index."""

from __future__ import annotations

import math

from sqlite_vec import serialize_float32


def encode_vector(vector: list[float]) -> bytes:
    """Validate *vector* and pack it as a sqlite-vec float32 blob.

    Raises:
        ValueError: If the vector is empty, contains non-finite values, or has
            zero magnitude (cosine similarity is undefined for it).
    """
    if not vector:
        raise ValueError("embedding vector must not be empty")
    if not all(math.isfinite(v) for v in vector):
        raise ValueError("embedding vector contains non-finite values")
    if not any(v != 0.0 for v in vector):
        raise ValueError("embedding vector has zero magnitude")
    return serialize_float32([float(v) for v in vector])
