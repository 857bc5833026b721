"""Configuration for the project."""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env if present (FDAPIRLS_* overrides)
load_dotenv()


def _project_root() -> Path:
    """Get the project root directory."""
    # repo root = two levels up from this file (src/pkg/config.py)
    return Path(__file__).resolve().parents[2]


class Project(BaseModel):
    """Project metadata."""

    name: str = "fdapirls"
    seed: int = 42


class FPIRLSConfig(BaseModel):
    """Controls of the f-PIRLS inner loop.

    Attributes
    ----------
    threshold : float
        Relative change of the functional below which the inner loop stops.
    max_iterations : int
        Iteration cap per grid point.
    gcv_inflation : float
        Factor multiplying the degrees of freedom in the GCV denominator.
    """

    threshold: float = Field(default=0.0002, ge=0.0)
    max_iterations: int = Field(default=15, ge=1)
    gcv_inflation: float = Field(default=1.0, gt=0.0)


class SolverConfig(BaseModel):
    """Degrees-of-freedom evaluation of the weighted-regression solver."""

    dof_evaluation: Literal["exact", "stochastic", "not_required"] = "exact"
    n_realizations: int = Field(default=100, ge=1)
    seed: int = 0
    dof_matrix: Optional[List[List[float]]] = None

    @field_validator("dof_evaluation", mode="before")
    @classmethod
    def lower_case(cls, v):
        """Accept any capitalisation of the evaluation method.

        Parameters
        ----------
        v : str
            The configured method.

        Returns
        -------
        str
            The lower-cased method name.
        """
        return v.lower() if isinstance(v, str) else v


class Settings(BaseSettings):
    """Main configuration class for the project."""

    model_config = SettingsConfigDict(env_prefix="fdapirls_", env_nested_delimiter="__")
    # Example: FDAPIRLS_FPIRLS__MAX_ITERATIONS=30 overrides fpirls.max_iterations

    project: Project = Project()
    fpirls: FPIRLSConfig = FPIRLSConfig()
    solver: SolverConfig = SolverConfig()


def deep_merge(a: dict, b: dict) -> dict:
    """Recursively merge two dictionaries.

    Parameters
    ----------
    a : dict
        The first dictionary.
    b : dict
        The second dictionary.

    Returns
    -------
    dict
        A new dictionary that is the result of merging `a` and `b`.
    """
    out = dict(a)
    for k, v in b.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def load_yaml(path: Path) -> dict:
    """Load a YAML file and return its contents as a dictionary.

    Parameters
    ----------
    path : Path
        Path to the YAML file.

    Returns
    -------
    dict
        The contents of the YAML file as a dictionary. Returns an empty dict if the file does not exist or is empty.
    """
    if not path.exists():
        return {}
    return yaml.safe_load(path.read_text()) or {}


def load_settings(profile: Optional[str] = None, root: Optional[Path] = None) -> Settings:
    """Merge configs in order: base.yml -> local.yml (if present) -> {profile}.yml (if given).

    Environment variables (prefix ``FDAPIRLS_``) fill whatever the files leave unset.

    Parameters
    ----------
    profile : Optional[str], optional
        Optional profile name to load additional settings from a specific YAML file (default is None).
    root : Optional[Path], optional
        Directory holding ``configs/``; defaults to the project root.

    Returns
    -------
    Settings
        The merged and validated settings object.
    """
    root = _project_root() if root is None else Path(root)
    cfg_dir = root / "configs"

    merged = deep_merge(load_yaml(cfg_dir / "base.yml"), load_yaml(cfg_dir / "local.yml"))
    if profile is not None:
        merged = deep_merge(merged, load_yaml(cfg_dir / f"{profile}.yml"))
    return Settings(**merged)
