"""Vector helpers for face signatures."""
from __future__ import annotations

import numpy as np

EPS = 1e-12


def as_signature(vec) -> np.ndarray:
    """Flatten a `(D,)` or `(1, D)` array-like into a contiguous float32 vector.

    Raises ValueError for anything that is not a single row of numbers.
    """
    arr = np.asarray(vec, dtype=np.float32)
    if arr.ndim == 2 and arr.shape[0] == 1:
        arr = arr.reshape(-1)
    if arr.ndim != 1:
        raise ValueError(f"expected a 1-D signature, got shape {arr.shape}")
    return np.ascontiguousarray(arr)


def l2_normalize(vec, eps: float = EPS) -> np.ndarray:
    """Unit-length copy of a signature, or of every row of a signature matrix.

    All-zero rows come back unchanged.
    """
    arr = np.asarray(vec, dtype=np.float32)
    if arr.ndim not in (1, 2):
        raise ValueError(f"expected a signature or a signature matrix, got shape {arr.shape}")
    norms = np.linalg.norm(arr, axis=-1, keepdims=True)
    return np.where(norms < eps, arr, arr / np.maximum(norms, eps)).astype(np.float32, copy=False)


def cosine_similarity(a, b, eps: float = EPS) -> float:
    """Cosine of the angle between two signatures; 0.0 when either one is all zeros."""
    va = as_signature(a)
    vb = as_signature(b)
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na < eps or nb < eps:
        return 0.0
    return float(np.dot(va, vb)) / (na * nb)
