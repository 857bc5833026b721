"""fdapirls: functional penalized iteratively reweighted least squares for spatial GAMs and mixed-effects models."""

from importlib.metadata import version

from . import tl

__all__ = ["tl"]

__version__ = version("fdapirls")
