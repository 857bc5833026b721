"""Weighted penalized regression: reference solver and the f-PIRLS adapter around it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
from scipy import sparse

from .tl.irls import WeightsLike, exact_dof, solve_penalized_wls, stochastic_dof

logger = logging.getLogger(__name__)

DofEvaluation = Literal["exact", "stochastic", "not_required"]


# ======================
# Solver output
# ======================


@dataclass
class RegressionSolution:
    coefficients: np.ndarray  # (K,) basis coefficients of the fitted function
    fitted: np.ndarray  # (n,) linear predictor at the observation locations
    dof: float  # NaN when not evaluated
    penalty: float  # lambda_s f^T R f + lambda_t f^T R_t f
    beta: Optional[np.ndarray] = None  # (p,) covariate coefficients
    diagnostics: dict = field(default_factory=dict)


@runtime_checkable
class RegressionSolver(Protocol):
    """What f-PIRLS needs from a weighted penalized-regression solver."""

    n_observations: int
    n_lambda_s: int
    n_lambda_t: int
    covariates: Optional[np.ndarray]

    def solve(
        self,
        observations: np.ndarray,
        weights: WeightsLike,
        lambda_s_index: int,
        lambda_t_index: int,
        forcing_term: Optional[np.ndarray] = None,
    ) -> RegressionSolution: ...

    def evaluate(self, coefficients: np.ndarray, basis=None) -> np.ndarray: ...


def _as_sparse(M) -> sparse.csr_matrix:
    return sparse.csr_matrix(M, dtype=float)


# ============================
# Reference solver
# ============================


@dataclass
class PenalizedRegressionSolver:
    """Sparse reference solver for the penalized weighted regression problem.

    Minimizes ``(z - X beta - Psi f)^T W (z - X beta - Psi f) + lambda_s f^T R f
    + lambda_t f^T R_t f - 2 lambda_s f^T u`` for every pair of grid indices.

    Parameters
    ----------
    basis : (n, K) array or sparse matrix
        Finite-element basis evaluated at the observation locations.
    penalty : (K, K) array or sparse matrix
        Spatial regularization operator.
    lambda_s : sequence of float
        Spatial smoothing parameters.
    lambda_t : sequence of float, optional
        Temporal smoothing parameters (a single zero when omitted).
    time_penalty : (K, K) array or sparse matrix, optional
        Temporal regularization operator; required when ``lambda_t`` is given.
    covariates : (n, p) array, optional
        Unpenalized covariates.
    dof_evaluation : {"exact", "stochastic", "not_required"}
        How the degrees of freedom are obtained.
    n_realizations : int
        Probe count of the stochastic estimator.
    seed : int
        Seed of the stochastic estimator.
    dof_matrix : (nS, nT) array, optional
        User-supplied degrees of freedom; overrides ``dof_evaluation``.
    """

    basis: np.ndarray
    penalty: np.ndarray
    lambda_s: Sequence[float]
    lambda_t: Optional[Sequence[float]] = None
    time_penalty: Optional[np.ndarray] = None
    covariates: Optional[np.ndarray] = None
    dof_evaluation: DofEvaluation = "exact"
    n_realizations: int = 100
    seed: int = 0
    dof_matrix: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.basis = _as_sparse(self.basis)
        self.penalty = _as_sparse(self.penalty)
        n, K = self.basis.shape
        if self.penalty.shape != (K, K):
            raise ValueError(f"penalty must be ({K}, {K}), got {self.penalty.shape}.")

        self.lambda_s = np.atleast_1d(np.asarray(self.lambda_s, dtype=float))
        if self.lambda_s.size == 0:
            raise ValueError("lambda_s must contain at least one value.")
        if self.lambda_t is None:
            self.lambda_t = np.zeros(1)
            self.time_penalty = sparse.csr_matrix((K, K))
        else:
            self.lambda_t = np.atleast_1d(np.asarray(self.lambda_t, dtype=float))
            if self.time_penalty is None:
                raise ValueError("time_penalty is required when lambda_t is given.")
            self.time_penalty = _as_sparse(self.time_penalty)
            if self.time_penalty.shape != (K, K):
                raise ValueError(f"time_penalty must be ({K}, {K}).")
        if (self.lambda_s < 0).any() or (self.lambda_t < 0).any():
            raise ValueError("Smoothing parameters must be non-negative.")

        if self.covariates is not None:
            X = np.asarray(self.covariates, dtype=float)
            if X.ndim == 1:
                X = X[:, None]
            if X.shape[0] != n:
                raise ValueError(f"covariates must have {n} rows, got {X.shape[0]}.")
            self.covariates = X
        if self.dof_evaluation not in {"exact", "stochastic", "not_required"}:
            raise ValueError("dof_evaluation must be 'exact', 'stochastic', or 'not_required'.")
        if self.dof_matrix is not None:
            self.dof_matrix = np.asarray(self.dof_matrix, dtype=float).reshape(
                self.n_lambda_s, self.n_lambda_t
            )

    # --- sizes ---
    @property
    def n_observations(self) -> int:
        return int(self.basis.shape[0])

    @property
    def n_nodes(self) -> int:
        return int(self.basis.shape[1])

    @property
    def n_lambda_s(self) -> int:
        return int(self.lambda_s.size)

    @property
    def n_lambda_t(self) -> int:
        return int(self.lambda_t.size)

    @property
    def n_covariates(self) -> int:
        return 0 if self.covariates is None else int(self.covariates.shape[1])

    def design(self) -> sparse.csc_matrix:
        """Full sparse design ``[X | Psi]`` (covariates first)."""
        if self.covariates is None:
            return self.basis.tocsc()
        return sparse.hstack([_as_sparse(self.covariates), self.basis], format="csc")

    def penalty_matrix(self, lambda_s_index: int, lambda_t_index: int) -> sparse.csc_matrix:
        """Penalty on the full coefficient vector; covariates are unpenalized."""
        S = (
            self.lambda_s[lambda_s_index] * self.penalty
            + self.lambda_t[lambda_t_index] * self.time_penalty
        )
        if self.n_covariates:
            S = sparse.block_diag((sparse.csr_matrix((self.n_covariates,) * 2), S))
        return sparse.csc_matrix(S)

    def solve(
        self,
        observations: np.ndarray,
        weights: WeightsLike,
        lambda_s_index: int,
        lambda_t_index: int,
        forcing_term: Optional[np.ndarray] = None,
    ) -> RegressionSolution:
        """Solve the weighted problem at grid position ``(lambda_s_index, lambda_t_index)``."""
        z = np.asarray(observations, dtype=float)
        if z.shape != (self.n_observations,):
            raise ValueError(f"observations must have shape ({self.n_observations},).")
        M = self.design()
        p, K = self.n_covariates, self.n_nodes
        S = self.penalty_matrix(lambda_s_index, lambda_t_index)

        shift = None
        if forcing_term is not None:
            u = np.asarray(forcing_term, dtype=float)
            if u.shape != (K,):
                raise ValueError(f"forcing_term must have shape ({K},).")
            shift = np.zeros(p + K)
            shift[p:] = self.lambda_s[lambda_s_index] * u

        coef, factor, XtWX = solve_penalized_wls(M, z, weights, S, rhs_shift=shift)
        f = coef[p:]
        beta = coef[:p] if p else None

        if self.dof_matrix is not None:
            dof = float(self.dof_matrix[lambda_s_index, lambda_t_index])
        elif self.dof_evaluation == "exact":
            dof = exact_dof(factor, XtWX)
        elif self.dof_evaluation == "stochastic":
            dof = stochastic_dof(M, weights, factor, self.n_realizations, self.seed)
        else:
            dof = np.nan

        penalty = float(
            self.lambda_s[lambda_s_index] * f @ (self.penalty @ f)
            + self.lambda_t[lambda_t_index] * f @ (self.time_penalty @ f)
        )
        return RegressionSolution(
            coefficients=f,
            fitted=np.asarray(M @ coef).ravel(),
            dof=dof,
            penalty=penalty,
            beta=beta,
            diagnostics={
                "lambda_s": float(self.lambda_s[lambda_s_index]),
                "lambda_t": float(self.lambda_t[lambda_t_index]),
            },
        )

    def evaluate(self, coefficients: np.ndarray, basis=None) -> np.ndarray:
        """Evaluate the fitted function at the observation locations (or at ``basis`` rows)."""
        B = self.basis if basis is None else _as_sparse(basis)
        return np.asarray(B @ np.asarray(coefficients, dtype=float)).ravel()


# ============================
# f-PIRLS adapter
# ============================


class WeightedRegressionAdapter:
    """Translate the current weights and pseudo-data into a solver call.

    The adapter owns nothing but the solver reference and the forcing term of the
    current ``apply`` call; solver failures propagate unchanged.
    """

    def __init__(self, solver: RegressionSolver) -> None:
        self.solver = solver
        self.forcing_term: Optional[np.ndarray] = None

    @property
    def n_observations(self) -> int:
        return int(self.solver.n_observations)

    @property
    def covariates(self) -> Optional[np.ndarray]:
        return getattr(self.solver, "covariates", None)

    def solve(
        self,
        pseudo_observations: np.ndarray,
        weights: WeightsLike,
        lambda_s_index: int,
        lambda_t_index: int,
    ) -> RegressionSolution:
        logger.debug(
            "Weighted regression at (%d, %d) with %s weights",
            lambda_s_index,
            lambda_t_index,
            "block" if (sparse.issparse(weights) or np.ndim(weights) == 2) else "diagonal",
        )
        return self.solver.solve(
            pseudo_observations,
            weights,
            lambda_s_index,
            lambda_t_index,
            forcing_term=self.forcing_term,
        )

    def evaluate(self, coefficients: np.ndarray) -> np.ndarray:
        return self.solver.evaluate(coefficients)
