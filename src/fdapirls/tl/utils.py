"""Utility functions."""

from __future__ import annotations

from typing import List, Sequence

import numpy as np


def _gcv(residual: float, dof: float, n: int, inflation: float = 1.0) -> float:
    """Generalized cross-validation score ``n * residual / (n - inflation * dof)^2``.

    Parameters
    ----------
    residual : float
        Residual sum of squares or deviance of the fit.
    dof : float
        Effective degrees of freedom (NaN when not evaluated).
    n : int
        Number of observations.
    inflation : float
        GCV inflation factor applied to the degrees of freedom.

    Returns
    -------
    float
        The GCV value, NaN when ``dof`` is unavailable or the denominator vanishes.
    """
    if not np.isfinite(dof):
        return np.nan
    den = (n - inflation * dof) ** 2
    if den <= 0.0:
        return np.nan
    return float(n * residual / den)


def _group_permutation(
    group_sizes: Sequence[int], permutation: Sequence[int] | None = None
) -> List[np.ndarray]:
    """Split a model-to-solver permutation into per-group global index arrays.

    Parameters
    ----------
    group_sizes : sequence of int
        Number of observations of each group, in model order.
    permutation : sequence of int, optional
        ``permutation[k]`` is the global (solver) index of the ``k``-th observation
        in model order. Identity when omitted.

    Returns
    -------
    list of np.ndarray
        One index array per group.

    Raises
    ------
    ValueError
        If the permutation is not a bijection of ``range(sum(group_sizes))``.
    """
    sizes = np.asarray(group_sizes, dtype=int)
    if sizes.ndim != 1 or sizes.size == 0 or (sizes <= 0).any():
        raise ValueError("group_sizes must be a non-empty sequence of positive integers.")
    n = int(sizes.sum())
    if permutation is None:
        perm = np.arange(n)
    else:
        perm = np.asarray(permutation, dtype=int)
        if perm.shape != (n,) or not np.array_equal(np.sort(perm), np.arange(n)):
            raise ValueError(f"permutation must be a bijection of range({n}).")
    bounds = np.concatenate([[0], np.cumsum(sizes)])
    return [perm[bounds[i] : bounds[i + 1]].copy() for i in range(sizes.size)]


def vector_indexing(big_vector: np.ndarray, ids: np.ndarray) -> np.ndarray:
    """Gather the entries ``ids`` of a global-ordering vector."""
    return np.asarray(big_vector)[ids]


def matrix_indexing(big_matrix: np.ndarray, ids: np.ndarray) -> np.ndarray:
    """Gather the rows ``ids`` of a global-ordering matrix."""
    return np.asarray(big_matrix)[ids, :]


def scatter_groups(pieces: Sequence[np.ndarray], ids: Sequence[np.ndarray], n: int) -> np.ndarray:
    """Inverse of :func:`vector_indexing`: write group-local vectors into global ordering."""
    out = np.empty(n, dtype=float)
    for piece, idx in zip(pieces, ids):
        out[idx] = piece
    return out
