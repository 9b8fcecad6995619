"""Vector serialisation and similarity helpers."""

from __future__ import annotations

from typing import Sequence

import numpy as np

SIMILARITY_METRICS = ("cosine", "l2", "inner_product")


def serialise_vector(vector: Sequence[float] | np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def deserialise_vector(payload: bytes, dim: int | None = None) -> np.ndarray:
    arr = np.frombuffer(payload, dtype=np.float32)
    if dim and arr.size != dim:
        raise ValueError(f"Stored vector has {arr.size} values, expected {dim}")
    return arr


def l2_normalise(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def similarity_scores(matrix: np.ndarray, query: np.ndarray, metric: str) -> np.ndarray:
    """Score every row of *matrix* against *query*; higher is always better.

    cosine: cosine similarity in [-1, 1].
    l2: negative Euclidean distance.
    inner_product: raw dot product.
    """

    if matrix.size == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    rows = matrix.astype(np.float64, copy=False)
    q = np.asarray(query, dtype=np.float64)
    if metric == "cosine":
        q_norm = np.linalg.norm(q)
        row_norms = np.linalg.norm(rows, axis=1)
        denom = row_norms * q_norm
        dots = rows @ q
        return np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)
    if metric == "l2":
        return -np.linalg.norm(rows - q, axis=1)
    if metric == "inner_product":
        return rows @ q
    raise ValueError(f"Unknown similarity metric: {metric}")


def vector_variance(vector: Sequence[float] | np.ndarray) -> float:
    arr = np.asarray(vector, dtype=np.float64)
    if arr.size == 0:
        return 0.0
    return float(arr.var())
