"""Exponential-family strategies for f-PIRLS, built on the mssm families."""

from __future__ import annotations

import warnings
from typing import Dict, Optional, Type

import mssm.models
import numpy as np
from mssm.models import LOG, Binomial, Logit
from mssm.models import Gamma as GammaFamily
from mssm.models import Poisson as PoissonFamily


class FamilyDomainError(ValueError):
    """A family function was evaluated outside the family's valid mean range."""


class NegativeReciprocal(mssm.models.Link):
    """Negative reciprocal link ``-1/mu = eta``, the canonical link of the Gamma family."""

    def f(self, mu: np.ndarray) -> np.ndarray:
        with warnings.catch_warnings():  # divide by 0
            warnings.simplefilter("ignore")
            eta = -1.0 / mu
        return eta

    def fi(self, eta: np.ndarray) -> np.ndarray:
        with warnings.catch_warnings():  # divide by 0
            warnings.simplefilter("ignore")
            mu = -1.0 / eta
        return mu

    def dy1(self, mu: np.ndarray) -> np.ndarray:
        with warnings.catch_warnings():  # divide by 0
            warnings.simplefilter("ignore")
            d = 1.0 / np.power(mu, 2)
        return d

    def dy2(self, mu: np.ndarray) -> np.ndarray:
        with warnings.catch_warnings():  # divide by 0
            warnings.simplefilter("ignore")
            d2 = -2.0 / np.power(mu, 3)
        return d2


class Family:
    """Base class for the exponential families supported by the GAM driver.

    A family wraps one :class:`mssm.models.Family` (``self.dist``) and exposes the
    vectorized capability set f-PIRLS needs: link, its derivative and inverse,
    variance function and unit deviance. Every call validates the mean against the
    family's domain first and raises :class:`FamilyDomainError` on violations.

    Parameters
    ----------
    scale : float, optional
        Known scale (dispersion) parameter. Only meaningful for families with
        ``has_scale = True``; ``None`` means it is estimated by the driver.
    """

    name: str = ""
    has_scale: bool = False

    def __init__(self, scale: Optional[float] = None) -> None:
        if scale is not None and not scale > 0:
            raise ValueError(f"scale must be positive, got {scale}.")
        self.scale = None if scale is None else float(scale)
        self.dist = self._make_dist()

    def _make_dist(self) -> mssm.models.Family:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(scale={self.scale})"

    @property
    def link_function(self) -> mssm.models.Link:
        return self.dist.link

    # --- domain checks ---
    def valid_mu(self, mu: np.ndarray) -> np.ndarray:
        """Boolean mask of means inside the family's valid range."""
        return np.asarray(mu, float) > 0.0

    def check_mu(self, mu: np.ndarray) -> np.ndarray:
        """Return ``mu`` as a float array or raise :class:`FamilyDomainError`."""
        mu = np.asarray(mu, dtype=float)
        bad = ~self.valid_mu(mu) | ~np.isfinite(mu)
        if bad.any():
            raise FamilyDomainError(
                f"{self.name}: {int(bad.sum())} mean value(s) outside the valid range "
                f"(first offending value {mu[bad].ravel()[0]!r})."
            )
        return mu

    def check_y(self, y: np.ndarray) -> np.ndarray:
        """Validate observations for this family."""
        y = np.asarray(y, dtype=float)
        if not np.isfinite(y).all():
            raise FamilyDomainError(f"{self.name}: observations must be finite.")
        return y

    # --- the capability set ---
    def link(self, mu: np.ndarray) -> np.ndarray:
        return self.link_function.f(self.check_mu(mu))

    def link_deriv(self, mu: np.ndarray) -> np.ndarray:
        return self.link_function.dy1(self.check_mu(mu))

    def inv_link(self, theta: np.ndarray) -> np.ndarray:
        return self.link_function.fi(np.asarray(theta, dtype=float))

    def var_function(self, mu: np.ndarray) -> np.ndarray:
        return self.dist.V(self.check_mu(mu))

    def dev_function(self, mu: np.ndarray, x: np.ndarray) -> np.ndarray:
        """Unit deviance ``d(x_i, mu_i)``, clipped at zero against round-off."""
        mu = self.check_mu(mu)
        x = np.asarray(x, dtype=float)
        return np.maximum(self.dist.D(x, mu), 0.0)

    # --- conveniences ---
    def deviance(self, mu: np.ndarray, x: np.ndarray) -> float:
        """Total deviance ``sum_i dev_function(mu_i, x_i)``."""
        return float(np.sum(self.dev_function(mu, x)))

    def init_mu(self, y: np.ndarray) -> np.ndarray:
        """Initial mean vector from the mssm family (which works on column vectors).

        Parameters
        ----------
        y : np.ndarray
            Observations.

        Returns
        -------
        np.ndarray
            A mean vector strictly inside the valid range.
        """
        y = self.check_y(y)
        mu = self.dist.init_mu(y.reshape(-1, 1))
        return self.check_mu(np.asarray(mu, dtype=float).ravel())


class Bernoulli(Family):
    """Bernoulli family: mssm ``Binomial`` with ``n = 1`` and the logit link."""

    name = "binomial"

    def _make_dist(self):
        return Binomial(link=Logit(), n=1)

    def valid_mu(self, mu):
        mu = np.asarray(mu, float)
        return (mu > 0.0) & (mu < 1.0)

    def check_y(self, y):
        y = super().check_y(y)
        if ((y < 0.0) | (y > 1.0)).any():
            raise FamilyDomainError("binomial: observations must lie in [0, 1].")
        return y


class Poisson(Family):
    """Poisson family with log link and variance ``mu``."""

    name = "poisson"

    def _make_dist(self):
        return PoissonFamily(link=LOG())

    def check_y(self, y):
        y = super().check_y(y)
        if (y < 0.0).any():
            raise FamilyDomainError("poisson: observations must be non-negative.")
        return y


class Exponential(Family):
    """Exponential family: mssm ``Gamma`` with unit scale and the negative reciprocal link."""

    name = "exponential"

    def _make_dist(self):
        return GammaFamily(link=NegativeReciprocal(), scale=1.0)

    def check_y(self, y):
        y = super().check_y(y)
        if (y <= 0.0).any():
            raise FamilyDomainError(f"{self.name}: observations must be strictly positive.")
        return y

    def inv_link(self, theta):
        theta = np.asarray(theta, float)
        if (theta >= 0.0).any():
            raise FamilyDomainError(
                f"{self.name}: linear predictor must be negative under the reciprocal link."
            )
        return super().inv_link(theta)


class Gamma(Exponential):
    """Gamma family: Exponential's link and variance plus a free scale parameter."""

    name = "gamma"
    has_scale = True

    def _make_dist(self):
        return GammaFamily(link=NegativeReciprocal(), scale=self.scale)


FAMILIES: Dict[str, Type[Family]] = {
    "binomial": Bernoulli,
    "bernoulli": Bernoulli,
    "poisson": Poisson,
    "exponential": Exponential,
    "gamma": Gamma,
}


def get_family(family, scale: Optional[float] = None) -> Family:
    """Resolve a family name (or pass through a :class:`Family` instance).

    Parameters
    ----------
    family : str | Family
        One of ``"binomial"``/``"bernoulli"``, ``"poisson"``, ``"exponential"``,
        ``"gamma"``, or an already constructed family.
    scale : float, optional
        Known scale parameter, forwarded to the constructor.

    Returns
    -------
    Family
        The family strategy.
    """
    if isinstance(family, Family):
        return family
    key = str(family).lower()
    if key not in FAMILIES:
        raise ValueError(f"Unknown family '{family}'. Use one of {sorted(set(FAMILIES))}.")
    cls = FAMILIES[key]
    if scale is not None and not cls.has_scale:
        raise ValueError(f"Family '{key}' has no scale parameter.")
    return cls(scale=scale)
