"""Model fitting tools."""

from ..backend import PenalizedRegressionSolver, RegressionSolution, WeightedRegressionAdapter
from .fam import Bernoulli, Exponential, Family, FamilyDomainError, Gamma, Poisson, get_family
from .fit import fit_gam, fit_mixed_effects, fit_regression
from .fpirls import FPIRLS, GridPoint, GridPointResult
from .gam import GAM
from .mixed import MixedEffects
from .models import ResponseModel, StandardRegression

__all__ = [
    "Bernoulli",
    "Exponential",
    "FPIRLS",
    "Family",
    "FamilyDomainError",
    "GAM",
    "Gamma",
    "GridPoint",
    "GridPointResult",
    "MixedEffects",
    "PenalizedRegressionSolver",
    "Poisson",
    "RegressionSolution",
    "ResponseModel",
    "StandardRegression",
    "WeightedRegressionAdapter",
    "fit_gam",
    "fit_mixed_effects",
    "fit_regression",
    "get_family",
]
