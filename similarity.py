"""
Vector similarity helpers shared by clustering and coherence scoring.
"""

from __future__ import annotations

from typing import Any, Sequence

import numpy as np


def _as_vector(v: Any) -> np.ndarray:
    arr = np.asarray(v, dtype=float)
    if arr.ndim != 1:
        raise ValueError(f"Expected a 1-D vector, got shape {arr.shape}")
    return arr


def magnitude(vector: Any) -> float:
    """L2 norm."""
    return float(np.linalg.norm(_as_vector(vector)))


def _cosine_from_parts(dot: float, norm_a: float, norm_b: float) -> float:
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    sim = dot / (norm_a * norm_b)
    # Rounding can push |sim| just past 1
    return float(min(1.0, max(-1.0, sim)))


def cosine_similarity(a: Any, b: Any) -> float:
    """
    dot(a, b) / (|a| * |b|), or 0.0 when either vector has zero norm.

    Raises ValueError on a dimension mismatch; vectors are never truncated or padded.
    """
    va = _as_vector(a)
    vb = _as_vector(b)
    if va.shape[0] != vb.shape[0]:
        raise ValueError(f"Dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    return _cosine_from_parts(float(np.dot(va, vb)), float(np.linalg.norm(va)), float(np.linalg.norm(vb)))


def cosine_similarity_optimized(emb_a: Any, emb_b: Any) -> float:
    """
    Same formula as `cosine_similarity`, but reuses the norms stored on each `Embedding`.
    """
    if emb_a.dimensions != emb_b.dimensions:
        raise ValueError(f"Dimension mismatch: {emb_a.dimensions} vs {emb_b.dimensions}")
    dot = float(np.dot(emb_a.vector, emb_b.vector))
    return _cosine_from_parts(dot, emb_a.precomputed_norm, emb_b.precomputed_norm)


def calculate_centroid(vectors: Sequence[Any]) -> np.ndarray:
    """Elementwise mean of equally sized vectors."""
    if vectors is None or len(vectors) == 0:
        raise ValueError("Cannot compute the centroid of an empty set of vectors")
    arrs = [_as_vector(v) for v in vectors]
    dim = arrs[0].shape[0]
    for i, a in enumerate(arrs):
        if a.shape[0] != dim:
            raise ValueError(f"Dimension mismatch at index {i}: expected {dim}, got {a.shape[0]}")
    return np.mean(np.vstack(arrs), axis=0)


def normalize_rows(matrix: Any) -> np.ndarray:
    """Unit-normalize each row; zero rows stay zero."""
    m = np.asarray(matrix, dtype=float)
    norms = np.linalg.norm(m, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    return m / safe


def pairwise_cosine_matrix(matrix: Any) -> np.ndarray:
    """Full n x n cosine similarity matrix, clipped to [-1, 1]."""
    unit = normalize_rows(matrix)
    return np.clip(unit @ unit.T, -1.0, 1.0)
