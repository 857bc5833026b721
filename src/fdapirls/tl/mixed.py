"""Mixed-effects f-PIRLS: group random effects estimated with an EM scheme."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import scipy.linalg as sla
from scipy import sparse

from .models import ModelState, ResponseModel
from .utils import _gcv, _group_permutation, matrix_indexing, scatter_groups, vector_indexing

logger = logging.getLogger(__name__)


@dataclass
class MixedEffectsState(ModelState):
    D: Optional[np.ndarray] = None  # (q,) diagonal of the relative precision matrix
    ZtildeTZtilde: List[tuple] = field(default_factory=list)  # Cholesky factor per group
    W_blocks: List[np.ndarray] = field(default_factory=list)  # (n_i, n_i) per group
    b_hat: List[np.ndarray] = field(default_factory=list)  # (q,) per group
    sigma_sq_hat: float = np.nan
    LTL: Optional[tuple] = None  # Cholesky factor of sum_i X_i^T W_i X_i
    A: Optional[List[np.ndarray]] = None  # (q, p) per group
    weighted_rss: float = np.nan
    Sigma_b: Optional[np.ndarray] = None  # (q,) diagonal of sigma^2 D^{-1}


class MixedEffects(ResponseModel):
    """Gaussian response with one block of random effects per group.

    The model is ``y_i = X_i beta + f(p_i) + Z_i b_i + eps_i`` with
    ``b_i ~ N(0, sigma^2 D^{-1})`` and ``D`` diagonal. Integrating the random
    effects out turns the problem into a weighted regression with block weights
    ``W_i = (I + Z_i D^{-1} Z_i^T)^{-1} = I - Z_i (Z_i^T Z_i + D)^{-1} Z_i^T``
    (Woodbury identity), so each group only needs a ``q x q`` Cholesky solve.

    Parameters
    ----------
    random_effects : (n, q) array
        Random-effects design, rows in model (group-by-group) order.
    group_sizes : sequence of int
        Number of observations per group.
    permutation : sequence of int, optional
        ``permutation[k]`` is the solver (global) index of the ``k``-th observation in
        model order. Identity when omitted. Fixed for the lifetime of the model.
    """

    name = "mixed_effects"

    def __init__(
        self,
        random_effects: np.ndarray,
        group_sizes: Sequence[int],
        permutation: Optional[Sequence[int]] = None,
    ) -> None:
        super().__init__()
        Z = np.asarray(random_effects, dtype=float)
        if Z.ndim == 1:
            Z = Z[:, None]
        self.random_effects = Z
        self.group_sizes = [int(s) for s in group_sizes]
        self.ids_perm = _group_permutation(self.group_sizes, permutation)
        if Z.shape[0] != sum(self.group_sizes):
            raise ValueError(
                f"random_effects has {Z.shape[0]} rows but group sizes sum to "
                f"{sum(self.group_sizes)}."
            )
        self.Z_: List[np.ndarray] = []
        self.ZTZ_: List[np.ndarray] = []
        self.D0: Optional[np.ndarray] = None

    @property
    def q(self) -> int:
        return int(self.random_effects.shape[1])

    @property
    def n_groups(self) -> int:
        return len(self.group_sizes)

    def setup(self, observations, adapter):
        super().setup(observations, adapter)
        if self.random_effects.shape[0] != self.n_observations:
            raise ValueError(
                f"random_effects has {self.random_effects.shape[0]} rows, expected "
                f"{self.n_observations}."
            )
        self.initialize_matrices()

    # ----------------------- construction -----------------------
    def initialize_matrices(self) -> None:
        """Per-group ``Z_i``, ``Z_i^T Z_i`` and the initial precision guess ``D``.

        The initial relative precision factor follows Pinheiro & Bates (2000):
        ``Delta_k = 0.375 * sqrt(sum_i ||Z_i[:, k]||^2 / m)`` and ``D = Delta^2``.
        """
        bounds = np.concatenate([[0], np.cumsum(self.group_sizes)])
        self.Z_ = [self.random_effects[bounds[i] : bounds[i + 1]] for i in range(self.n_groups)]
        self.ZTZ_ = [Zi.T @ Zi for Zi in self.Z_]
        col_norms = np.sum([np.diag(ZtZ) for ZtZ in self.ZTZ_], axis=0)
        delta = 0.375 * np.sqrt(col_norms / self.n_groups)
        self.D0 = delta**2

    def new_state(self) -> MixedEffectsState:
        return MixedEffectsState(D=self.D0.copy())

    def _covariates_of(self, i: int) -> Optional[np.ndarray]:
        X = self.adapter.covariates
        return None if X is None else matrix_indexing(X, self.ids_perm[i])

    # ----------------------- step 1 -----------------------
    def compute_ZtildeTZtilde(self, state: MixedEffectsState) -> None:
        """Factor ``Z_i^T Z_i + D`` for every group."""
        state.ZtildeTZtilde = [
            sla.cho_factor(ZtZ + np.diag(state.D), lower=True) for ZtZ in self.ZTZ_
        ]

    def compute_weights(self, state: MixedEffectsState) -> sparse.csr_matrix:
        """Block weights in solver ordering, one small solve per group."""
        state.W_blocks = [
            np.eye(Zi.shape[0]) - Zi @ sla.cho_solve(fac, Zi.T)
            for Zi, fac in zip(self.Z_, state.ZtildeTZtilde)
        ]
        W = sparse.block_diag(state.W_blocks, format="csr")
        inv = np.argsort(np.concatenate(self.ids_perm))
        state.weights = W[inv][:, inv]
        return state.weights

    def prepare_weighted_regression(self, state):
        self.compute_ZtildeTZtilde(state)
        self.compute_weights(state)
        state.pseudo_observations = self.observations
        return state.pseudo_observations, state.weights

    # ----------------------- step 3 (EM) -----------------------
    def compute_bhat(self, state: MixedEffectsState) -> None:
        """E-step: ``b_i = (Z_i^T Z_i + D)^{-1} Z_i^T r_i``."""
        r = self.observations - state.fitted
        state.b_hat = [
            sla.cho_solve(fac, Zi.T @ vector_indexing(r, ids))
            for Zi, fac, ids in zip(self.Z_, state.ZtildeTZtilde, self.ids_perm)
        ]

    def compute_sigma_sq_hat(self, state: MixedEffectsState, dof: float) -> None:
        """Residual variance from the weighted residual sum of squares.

        ``r_i^T W_i r_i = ||r_i - Z_i b_i||^2 + b_i^T D b_i``, divided by
        ``n - dof``.
        """
        r = self.observations - state.fitted
        rss = 0.0
        for Zi, bi, ids in zip(self.Z_, state.b_hat, self.ids_perm):
            e = vector_indexing(r, ids) - Zi @ bi
            rss += float(e @ e + bi @ (state.D * bi))
        state.weighted_rss = rss
        n = self.n_observations
        den = n - dof if np.isfinite(dof) and n > dof else n
        state.sigma_sq_hat = rss / den

    def build_LTL(self, state: MixedEffectsState) -> None:
        """Factor ``sum_i X_i^T W_i X_i`` (skipped without covariates)."""
        if self.adapter.covariates is None:
            state.LTL = None
            return
        LTL = 0.0
        for i, (Zi, fac) in enumerate(zip(self.Z_, state.ZtildeTZtilde)):
            Xi = self._covariates_of(i)
            WXi = Xi - Zi @ sla.cho_solve(fac, Zi.T @ Xi)
            LTL = LTL + Xi.T @ WXi
        state.LTL = sla.cho_factor(0.5 * (LTL + LTL.T), lower=True)

    def compute_A(self, state: MixedEffectsState) -> None:
        """Cache ``A_i = (Z_i^T Z_i + D)^{-1} Z_i^T X_i`` for the M-step."""
        if state.LTL is None:
            state.A = None
            return
        state.A = [
            sla.cho_solve(fac, Zi.T @ self._covariates_of(i))
            for i, (Zi, fac) in enumerate(zip(self.Z_, state.ZtildeTZtilde))
        ]

    def update_D(self, state: MixedEffectsState) -> None:
        """M-step for the diagonal precision ``D``.

        ``D_k^{-1} = mean_i [ b_ik^2 / sigma^2 + ((Z_i^T Z_i + D)^{-1})_kk
        + (A_i LTL^{-1} A_i^T)_kk ]``.
        """
        sigma2 = state.sigma_sq_hat
        if not sigma2 > 0:
            raise np.linalg.LinAlgError(
                "Residual variance estimate is not positive; the random-effects "
                "variance components cannot be updated."
            )
        eye = np.eye(self.q)
        psi = np.zeros(self.q)
        for i, (bi, fac) in enumerate(zip(state.b_hat, state.ZtildeTZtilde)):
            C = np.diag(sla.cho_solve(fac, eye)).copy()
            if state.A is not None:
                Ai = state.A[i]
                C += np.einsum("kp,pk->k", Ai, sla.cho_solve(state.LTL, Ai.T))
            psi += bi**2 / sigma2 + C
        psi /= self.n_groups
        state.D = 1.0 / psi

    def update_parameters(self, state, solution):
        state.fitted = solution.fitted
        self.compute_bhat(state)
        self.compute_sigma_sq_hat(state, solution.dof)
        self.build_LTL(state)
        self.compute_A(state)
        self.update_D(state)

    # ----------------------- functional & GCV -----------------------
    def compute_J_parametric(self, state, solution):
        return state.weighted_rss

    def random_effects_dof(self, state: MixedEffectsState) -> float:
        """Degrees of freedom spent by the random effects: ``sum_i tr((Z_i^T Z_i + D)^{-1} Z_i^T Z_i)``."""
        return float(
            sum(
                np.trace(sla.cho_solve(fac, ZtZ))
                for ZtZ, fac in zip(self.ZTZ_, state.ZtildeTZtilde)
            )
        )

    def random_effects_fit(self, state: MixedEffectsState) -> np.ndarray:
        """``Z_i b_i`` of every group, scattered back into solver ordering."""
        pieces = [Zi @ bi for Zi, bi in zip(self.Z_, state.b_hat)]
        return scatter_groups(pieces, self.ids_perm, self.n_observations)

    def finalize_state(self, state, solution):
        """Refactor ``Z_i^T Z_i + D`` and redo the E-step with the last M-step's ``D``.

        GCV, the random-effects dof, ``b_hat`` and ``Sigma_b`` then all refer to
        the same precision matrix.
        """
        self.compute_ZtildeTZtilde(state)
        self.compute_bhat(state)

    def compute_GCV(self, state, solution, inflation=1.0):
        e = self.observations - state.fitted - self.random_effects_fit(state)
        dof = solution.dof + self.random_effects_dof(state)
        return _gcv(float(e @ e), dof, self.n_observations, inflation)

    def additional_estimates(self, state, solution):
        state.variance_est = state.sigma_sq_hat
        state.Sigma_b = state.sigma_sq_hat / state.D
        logger.debug("Random-effects variances %s", np.array2string(state.Sigma_b, precision=4))
