"""The f-PIRLS driver: grid search over smoothing parameters around an inner IRLS loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd

from ..config import FPIRLSConfig
from ..backend import RegressionSolution, RegressionSolver, WeightedRegressionAdapter
from .gam import GAM
from .mixed import MixedEffects
from .models import ModelState, ResponseModel, StandardRegression

logger = logging.getLogger(__name__)


class GridPoint(NamedTuple):
    """Position in the (lambda_s, lambda_t) grid."""

    s: int
    t: int = 0


@dataclass
class GridPointResult:
    """Everything f-PIRLS produces for one grid point."""

    key: GridPoint
    state: ModelState = field(repr=False)
    solution: Optional[RegressionSolution] = field(default=None, repr=False)
    J_trace: List[Tuple[float, float]] = field(default_factory=list, repr=False)
    J_final: Tuple[float, float] = (np.nan, np.nan)
    J_min: float = np.nan
    gcv: float = np.nan
    n_iterations: int = 0
    converged: bool = False
    fn_hat: Optional[np.ndarray] = field(default=None, repr=False)
    beta_hat: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def dof(self) -> float:
        return np.nan if self.solution is None else float(self.solution.dof)


class FPIRLS:
    """Functional penalized iteratively reweighted least squares.

    One driver serves standard regression, GAMs and mixed-effects models: the
    response model supplies Step 1 (weights and pseudo-data) and Step 3
    (parameter update and parametric functional), the weighted-regression
    adapter performs Step 2.

    Parameters
    ----------
    solver : RegressionSolver
        External weighted penalized-regression solver (holds the lambda grid).
    observations : (n,) array
        Observed responses, in the solver's ordering.
    model : ResponseModel, optional
        Response model; :class:`StandardRegression` when omitted.
    config : FPIRLSConfig, optional
        Threshold, iteration cap and GCV inflation factor.
    """

    def __init__(
        self,
        solver: RegressionSolver,
        observations: np.ndarray,
        model: Optional[ResponseModel] = None,
        config: Optional[FPIRLSConfig] = None,
    ) -> None:
        self.config = config if config is not None else FPIRLSConfig()
        self.adapter = WeightedRegressionAdapter(solver)
        self.model = model if model is not None else StandardRegression()
        self.model.setup(observations, self.adapter)
        self.n_lambda_s = int(solver.n_lambda_s)
        self.n_lambda_t = int(solver.n_lambda_t)
        self._results: Dict[GridPoint, GridPointResult] = {}
        self._fitted = False

    def __repr__(self) -> str:
        return (
            f"FPIRLS(model={self.model.name!r}, grid=({self.n_lambda_s}, {self.n_lambda_t}), "
            f"fitted={self._fitted})"
        )

    @property
    def grid(self) -> List[GridPoint]:
        return [GridPoint(s, t) for s in range(self.n_lambda_s) for t in range(self.n_lambda_t)]

    # ----------------------- main loop -----------------------
    def apply(
        self,
        forcing_term: Optional[np.ndarray] = None,
        order: Optional[Iterable[Tuple[int, int]]] = None,
    ) -> "FPIRLS":
        """Run f-PIRLS at every grid point.

        Parameters
        ----------
        forcing_term : (K,) array, optional
            Forcing term of the regularizing operator, forwarded to the solver.
        order : iterable of (s, t), optional
            Processing order of the grid points (row-major by default). Grid points
            are independent, so the order does not change any result.

        Returns
        -------
        FPIRLS
            ``self``, for chaining.

        Raises
        ------
        FamilyDomainError, numpy.linalg.LinAlgError
            Propagated unchanged from the response model or the solver; no
            result is reported in that case.
        """
        self._fitted = False
        self.adapter.forcing_term = forcing_term
        self._results = {key: GridPointResult(key, self.model.new_state()) for key in self.grid}

        keys = self.grid if order is None else [GridPoint(*k) for k in order]
        if sorted(keys) != self.grid:
            raise ValueError("order must visit every grid point exactly once.")

        for key in keys:
            res = self._results[key]
            while not self.stopping_criterion(key.s, key.t):
                self._iterate(res)
            self._finalize(res)

        self._fitted = True
        return self

    def _iterate(self, res: GridPointResult) -> None:
        s, t = res.key
        # Step 1
        z, w = self.model.prepare_weighted_regression(res.state)
        # Step 2
        res.solution = self.adapter.solve(z, w, s, t)
        # Step 3
        self.model.update_parameters(res.state, res.solution)
        res.J_trace.append(self.compute_J(s, t))
        res.n_iterations += 1
        logger.debug(
            "(%d, %d) iteration %d: J = %.8g + %.8g",
            s,
            t,
            res.n_iterations,
            *res.J_trace[-1],
        )

    def _finalize(self, res: GridPointResult) -> None:
        s, t = res.key
        totals = [sum(J) for J in res.J_trace]
        res.J_min = float(min(totals))
        res.J_final = res.J_trace[-1]
        res.J_trace = []
        self.model.finalize_state(res.state, res.solution)
        self.compute_GCV(s, t)
        self.additional_estimates(s, t)
        if res.converged:
            logger.info("(%d, %d) converged after %d iterations", s, t, res.n_iterations)
        else:
            logger.warning(
                "(%d, %d) reached the iteration cap (%d) without converging",
                s,
                t,
                self.config.max_iterations,
            )

    def stopping_criterion(self, s: int, t: int = 0) -> bool:
        """True when the inner loop at ``(s, t)`` must stop.

        Stops on the iteration cap, or when the relative change of the total
        functional between the last two iterations,
        ``|J_prev - J_curr| / |J_prev|``, falls below the threshold. Never true
        before one full iteration has run.
        """
        res = self._results[GridPoint(s, t)]
        if res.n_iterations == 0:
            return False
        if len(res.J_trace) >= 2:
            prev, curr = sum(res.J_trace[-2]), sum(res.J_trace[-1])
            scale = abs(prev) if prev != 0.0 else 1.0
            if abs(prev - curr) / scale < self.config.threshold:
                res.converged = True
                return True
        return res.n_iterations >= self.config.max_iterations

    def compute_J(self, s: int, t: int = 0) -> Tuple[float, float]:
        """Functional value ``(parametric, penalty)`` at the current iterate."""
        res = self._results[GridPoint(s, t)]
        parametric = self.model.compute_J_parametric(res.state, res.solution)
        return float(parametric), float(res.solution.penalty)

    def compute_GCV(self, s: int, t: int = 0) -> float:
        res = self._results[GridPoint(s, t)]
        res.gcv = float(
            self.model.compute_GCV(res.state, res.solution, self.config.gcv_inflation)
        )
        return res.gcv

    def additional_estimates(self, s: int, t: int = 0) -> None:
        """Function values and covariate coefficients at the observation locations."""
        res = self._results[GridPoint(s, t)]
        res.fn_hat = self.adapter.evaluate(res.solution.coefficients)
        res.beta_hat = None if res.solution.beta is None else res.solution.beta.copy()
        self.model.additional_estimates(res.state, res.solution)

    # ----------------------- accessors -----------------------
    def _check_fitted(self) -> None:
        if not self._fitted:
            raise RuntimeError("No results available. Call .apply() first.")

    def _grid_array(self, attr: str, dtype=float) -> np.ndarray:
        self._check_fitted()
        out = np.empty((self.n_lambda_s, self.n_lambda_t), dtype=dtype)
        for key, res in self._results.items():
            out[key] = getattr(res, attr)
        return out

    def result(self, s: int = 0, t: int = 0) -> GridPointResult:
        self._check_fitted()
        return self._results[GridPoint(s, t)]

    def solution(self, s: int = 0, t: int = 0) -> RegressionSolution:
        return self.result(s, t).solution

    @property
    def dof(self) -> np.ndarray:
        return self._grid_array("dof")

    @property
    def J_minima(self) -> np.ndarray:
        return self._grid_array("J_min")

    @property
    def gcv(self) -> np.ndarray:
        """GCV per grid point; NaN where degrees of freedom were not evaluated."""
        return self._grid_array("gcv")

    @property
    def iterations(self) -> np.ndarray:
        return self._grid_array("n_iterations", dtype=int)

    @property
    def converged(self) -> np.ndarray:
        return self._grid_array("converged", dtype=bool)

    @property
    def variance_estimates(self) -> np.ndarray:
        self._check_fitted()
        out = np.empty((self.n_lambda_s, self.n_lambda_t))
        for key, res in self._results.items():
            out[key] = res.state.variance_est
        return out

    def fn_hat(self, s: int = 0, t: int = 0) -> np.ndarray:
        return self.result(s, t).fn_hat

    def beta_hat(self, s: int = 0, t: int = 0) -> Optional[np.ndarray]:
        return self.result(s, t).beta_hat

    def fitted_values(self, s: int = 0, t: int = 0, kind: str = "response") -> np.ndarray:
        """Fitted values at the observation locations.

        Parameters
        ----------
        s, t : int
            Grid position.
        kind : {"response", "link"}
            Mean scale or linear-predictor scale (identical except for GAMs).

        Returns
        -------
        np.ndarray
            Fitted values, one per observation.
        """
        if kind not in {"response", "link"}:
            raise ValueError("kind must be 'response' or 'link'.")
        state = self.result(s, t).state
        if kind == "response" and isinstance(self.model, GAM):
            return state.mu.copy()
        return state.fitted.copy()

    @property
    def best_grid_point(self) -> GridPoint:
        """Grid point with minimal GCV, or minimal functional when GCV is unavailable."""
        gcv = self.gcv
        score = gcv if np.isfinite(gcv).any() else self.J_minima
        score = np.where(np.isfinite(score), score, np.inf)
        s, t = np.unravel_index(int(np.argmin(score)), score.shape)
        return GridPoint(int(s), int(t))

    # --- mixed effects ---
    def _require_mixed(self) -> None:
        if not isinstance(self.model, MixedEffects):
            raise TypeError("Random-effects estimates exist only for MixedEffects models.")

    @property
    def sigma_b(self) -> np.ndarray:
        """Diagonal of ``Sigma_b = sigma^2 D^{-1}`` per grid point, shape (nS, nT, q)."""
        self._require_mixed()
        self._check_fitted()
        out = np.empty((self.n_lambda_s, self.n_lambda_t, self.model.q))
        for key, res in self._results.items():
            out[key] = res.state.Sigma_b
        return out

    def b_hat(self, s: int = 0, t: int = 0) -> np.ndarray:
        """Predicted random effects at ``(s, t)``, one row per group."""
        self._require_mixed()
        return np.vstack(self.result(s, t).state.b_hat)

    def summary(self) -> pd.DataFrame:
        """One row per grid point: smoothing parameters, iterations, functional, dof, GCV."""
        self._check_fitted()
        solver = self.adapter.solver
        lam_s = getattr(solver, "lambda_s", None)
        lam_t = getattr(solver, "lambda_t", None)
        rows = []
        for key in self.grid:
            res = self._results[key]
            rows.append(
                {
                    "s": key.s,
                    "t": key.t,
                    "lambda_s": np.nan if lam_s is None else float(lam_s[key.s]),
                    "lambda_t": np.nan if lam_t is None else float(lam_t[key.t]),
                    "iterations": res.n_iterations,
                    "converged": res.converged,
                    "J_parametric": res.J_final[0],
                    "J_penalty": res.J_final[1],
                    "J_min": res.J_min,
                    "dof": res.dof,
                    "gcv": res.gcv,
                    "variance_est": res.state.variance_est,
                }
            )
        return pd.DataFrame(rows)
