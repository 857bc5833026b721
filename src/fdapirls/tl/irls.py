"""Penalized weighted least squares kernel used by the reference regression solver."""

from __future__ import annotations

from typing import Optional, Union

import numpy as np
from scipy import sparse
from scipy.sparse import linalg as spla

WeightsLike = Union[np.ndarray, sparse.spmatrix]


def _weight_matrix(w: WeightsLike) -> sparse.csr_matrix:
    """Return W as a sparse matrix, given either as its diagonal or as a (sparse) matrix."""
    if sparse.issparse(w):
        return sparse.csr_matrix(w, dtype=float)
    w = np.asarray(w, dtype=float)
    if w.ndim == 1:
        return sparse.diags(w, format="csr")
    return sparse.csr_matrix(w)


def solve_penalized_wls(
    X,
    z: np.ndarray,
    w: WeightsLike,
    S,
    rhs_shift: Optional[np.ndarray] = None,
) -> tuple[np.ndarray, spla.SuperLU, sparse.csc_matrix]:
    """Solve (X^T W X + S) beta = X^T W z + rhs_shift with a sparse LU factorization.

    Parameters
    ----------
    X : (n, p) design matrix, dense or sparse
        Design matrix of predictors.
    z : (n,) pseudo-response vector
        Pseudo-observations for the current iteration.
    w : (n,) weights vector or (n, n) weight matrix
        Diagonal weights, or a full/block-diagonal (possibly sparse) weight matrix.
    S : (p, p) penalty matrix, dense or sparse
        Penalty matrix (already multiplied by its smoothing parameters).
    rhs_shift : (p,) array, optional
        Additional forcing contribution to the right-hand side.

    Returns
    -------
    beta : (p,) estimated coefficients
    factor : scipy.sparse.linalg.SuperLU
        LU factorization of ``X^T W X + S``.
    XtWX : (p, p) sparse matrix
        The weighted cross-product, reused for degrees-of-freedom evaluation.

    Raises
    ------
    numpy.linalg.LinAlgError
        If the penalized system is singular.
    """
    X = sparse.csc_matrix(X, dtype=float)
    WX = _weight_matrix(w) @ X
    XtWX = sparse.csc_matrix(X.T @ WX)
    XtWz = np.asarray(WX.T @ np.asarray(z, dtype=float)).ravel()
    if rhs_shift is not None:
        XtWz = XtWz + rhs_shift
    A = XtWX + sparse.csc_matrix(S, dtype=float)
    A = sparse.csc_matrix(0.5 * (A + A.T))
    try:
        factor = spla.splu(A)
    except RuntimeError as err:
        # SuperLU reports an exactly singular factor as RuntimeError
        raise np.linalg.LinAlgError(f"Penalized system is singular: {err}") from err
    beta = factor.solve(XtWz)
    if not np.isfinite(beta).all():
        raise np.linalg.LinAlgError("Penalized system is singular: non-finite solution.")
    return beta, factor, XtWX


def exact_dof(factor: spla.SuperLU, XtWX) -> float:
    """Trace of the smoother matrix: tr((X^T W X + S)^{-1} X^T W X)."""
    if sparse.issparse(XtWX):
        XtWX = XtWX.toarray()
    return float(np.trace(factor.solve(np.asarray(XtWX, dtype=float))))


def stochastic_dof(
    X,
    w: WeightsLike,
    factor: spla.SuperLU,
    n_realizations: int = 100,
    seed: int = 0,
) -> float:
    """Hutchinson estimate of the smoother trace with Rademacher probes.

    Parameters
    ----------
    X : (n, p) design matrix, dense or sparse
    w : weights vector or weight matrix
    factor : scipy.sparse.linalg.SuperLU
        LU factorization of the penalized system.
    n_realizations : int
        Number of random probe vectors.
    seed : int
        Seed of the probe generator; fixed seeds make the estimate reproducible.

    Returns
    -------
    float
        Estimated trace of ``H = X (X^T W X + S)^{-1} X^T W``.
    """
    rng = np.random.default_rng(seed)
    X = sparse.csc_matrix(X, dtype=float)
    n = X.shape[0]
    U = rng.choice([-1.0, 1.0], size=(n, int(n_realizations)))
    WU = np.asarray(_weight_matrix(w) @ U)
    HU = np.asarray(X @ factor.solve(np.asarray(X.T @ WU)))
    return float(np.mean(np.sum(U * HU, axis=0)))
