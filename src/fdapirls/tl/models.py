"""Response-model strategies plugged into the f-PIRLS driver."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ..backend import RegressionSolution, WeightedRegressionAdapter
from .irls import WeightsLike
from .utils import _gcv


@dataclass
class ModelState:
    """Per-grid-point state shared by all response models."""

    pseudo_observations: Optional[np.ndarray] = None
    weights: Optional[WeightsLike] = None
    fitted: Optional[np.ndarray] = None  # linear predictor at the locations
    variance_est: float = np.nan


class ResponseModel:
    """Step 1 / Step 3 strategy of f-PIRLS.

    A response model is bound once to the observations and to the regression
    adapter (:meth:`setup`) and then creates one independent state per grid point.
    Everything grid-point specific lives in that state; the model itself is
    read-only during ``apply``.
    """

    name: str = "base"

    def __init__(self) -> None:
        self.observations: Optional[np.ndarray] = None
        self.adapter: Optional[WeightedRegressionAdapter] = None

    @property
    def n_observations(self) -> int:
        return int(self.observations.size)

    def setup(self, observations: np.ndarray, adapter: WeightedRegressionAdapter) -> None:
        y = np.asarray(observations, dtype=float).ravel()
        if y.size != adapter.n_observations:
            raise ValueError(
                f"Got {y.size} observations but the solver expects {adapter.n_observations}."
            )
        self.observations = y
        self.adapter = adapter

    def new_state(self) -> ModelState:
        return ModelState()

    def prepare_weighted_regression(self, state: ModelState) -> Tuple[np.ndarray, WeightsLike]:
        raise NotImplementedError

    def update_parameters(self, state: ModelState, solution: RegressionSolution) -> None:
        raise NotImplementedError

    def compute_J_parametric(self, state: ModelState, solution: RegressionSolution) -> float:
        raise NotImplementedError

    def finalize_state(self, state: ModelState, solution: RegressionSolution) -> None:
        """Bring the state in line with the last parameter update before GCV (no-op by default)."""

    def compute_GCV(
        self, state: ModelState, solution: RegressionSolution, inflation: float = 1.0
    ) -> float:
        """Default GCV: parametric functional against the solver's degrees of freedom."""
        return _gcv(
            self.compute_J_parametric(state, solution),
            solution.dof,
            self.n_observations,
            inflation,
        )

    def additional_estimates(self, state: ModelState, solution: RegressionSolution) -> None:
        """Model-specific post-convergence estimates (no-op by default)."""


class StandardRegression(ResponseModel):
    """Gaussian response with identity link: a single weighted regression per iteration.

    Parameters
    ----------
    weights : (n,) array, optional
        Prior observation weights (ones when omitted).
    """

    name = "regression"

    def __init__(self, weights: Optional[np.ndarray] = None) -> None:
        super().__init__()
        self.weights = None if weights is None else np.asarray(weights, dtype=float)
        self.prior_weights: Optional[np.ndarray] = None

    def setup(self, observations, adapter):
        super().setup(observations, adapter)
        if self.weights is None:
            w = np.ones(self.n_observations)
        elif self.weights.shape != (self.n_observations,):
            raise ValueError(f"weights must have shape ({self.n_observations},).")
        elif (self.weights < 0).any():
            raise ValueError("weights must be non-negative.")
        else:
            w = self.weights
        self.prior_weights = w

    def prepare_weighted_regression(self, state):
        state.pseudo_observations = self.observations
        state.weights = self.prior_weights
        return state.pseudo_observations, state.weights

    def update_parameters(self, state, solution):
        state.fitted = solution.fitted

    def compute_J_parametric(self, state, solution):
        r = self.observations - state.fitted
        return float(np.sum(self.prior_weights * r * r))

    def additional_estimates(self, state, solution):
        n = self.n_observations
        if np.isfinite(solution.dof) and n > solution.dof:
            state.variance_est = self.compute_J_parametric(state, solution) / (n - solution.dof)
