"""Convenience entry points: build solver, response model and driver, then run f-PIRLS."""

from __future__ import annotations

from typing import Optional, Sequence, Union

import numpy as np

from ..config import Settings
from ..backend import PenalizedRegressionSolver
from .fam import Family
from .fpirls import FPIRLS
from .gam import GAM
from .mixed import MixedEffects
from .models import ResponseModel, StandardRegression


def _run(
    model: ResponseModel,
    basis,
    penalty,
    observations: np.ndarray,
    lambda_s: Sequence[float],
    lambda_t: Optional[Sequence[float]],
    time_penalty,
    covariates: Optional[np.ndarray],
    forcing_term: Optional[np.ndarray],
    settings: Optional[Settings],
) -> FPIRLS:
    st = settings if settings is not None else Settings()
    solver = PenalizedRegressionSolver(
        basis=basis,
        penalty=penalty,
        lambda_s=lambda_s,
        lambda_t=lambda_t,
        time_penalty=time_penalty,
        covariates=covariates,
        dof_evaluation=st.solver.dof_evaluation,
        n_realizations=st.solver.n_realizations,
        seed=st.solver.seed,
        dof_matrix=st.solver.dof_matrix,
    )
    driver = FPIRLS(solver, observations, model=model, config=st.fpirls)
    return driver.apply(forcing_term)


def fit_regression(
    basis,
    penalty,
    observations: np.ndarray,
    lambda_s: Sequence[float],
    *,
    lambda_t: Optional[Sequence[float]] = None,
    time_penalty=None,
    covariates: Optional[np.ndarray] = None,
    weights: Optional[np.ndarray] = None,
    forcing_term: Optional[np.ndarray] = None,
    settings: Optional[Settings] = None,
) -> FPIRLS:
    """Penalized (Gaussian) spatial regression over a lambda grid.

    Parameters
    ----------
    basis : (n, K) array or sparse matrix
        Finite-element basis evaluated at the observation locations.
    penalty : (K, K) array or sparse matrix
        Spatial regularization operator.
    observations : (n,) array
        Responses.
    lambda_s : sequence of float
        Spatial smoothing parameters.
    lambda_t, time_penalty : optional
        Temporal smoothing parameters and operator.
    covariates : (n, p) array, optional
        Unpenalized covariates.
    weights : (n,) array, optional
        Prior observation weights.
    forcing_term : (K,) array, optional
        Forcing term of the regularizing operator.
    settings : Settings, optional
        Loop and solver configuration (defaults plus ``FDAPIRLS_*`` environment).

    Returns
    -------
    FPIRLS
        The fitted driver.
    """
    return _run(
        StandardRegression(weights),
        basis,
        penalty,
        observations,
        lambda_s,
        lambda_t,
        time_penalty,
        covariates,
        forcing_term,
        settings,
    )


def fit_gam(
    basis,
    penalty,
    observations: np.ndarray,
    lambda_s: Sequence[float],
    family: Union[str, Family] = "poisson",
    *,
    mu0: Optional[np.ndarray] = None,
    scale_param: Optional[float] = None,
    lambda_t: Optional[Sequence[float]] = None,
    time_penalty=None,
    covariates: Optional[np.ndarray] = None,
    forcing_term: Optional[np.ndarray] = None,
    settings: Optional[Settings] = None,
) -> FPIRLS:
    """Spatial GAM for an exponential-family response; see :func:`fit_regression`.

    ``family``, ``mu0`` and ``scale_param`` are forwarded to :class:`GAM`.
    """
    return _run(
        GAM(family, mu0=mu0, scale_param=scale_param),
        basis,
        penalty,
        observations,
        lambda_s,
        lambda_t,
        time_penalty,
        covariates,
        forcing_term,
        settings,
    )


def fit_mixed_effects(
    basis,
    penalty,
    observations: np.ndarray,
    lambda_s: Sequence[float],
    random_effects: np.ndarray,
    group_sizes: Sequence[int],
    *,
    permutation: Optional[Sequence[int]] = None,
    lambda_t: Optional[Sequence[float]] = None,
    time_penalty=None,
    covariates: Optional[np.ndarray] = None,
    forcing_term: Optional[np.ndarray] = None,
    settings: Optional[Settings] = None,
) -> FPIRLS:
    """Spatial mixed-effects regression; see :func:`fit_regression` and :class:`MixedEffects`."""
    return _run(
        MixedEffects(random_effects, group_sizes, permutation),
        basis,
        penalty,
        observations,
        lambda_s,
        lambda_t,
        time_penalty,
        covariates,
        forcing_term,
        settings,
    )
