from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

import fdapirls.config as config


def test_deep_merge_merges_dicts():
    a = {"a": 1, "b": {"x": 1, "y": 2}}
    b = {"b": {"y": 99, "z": 3}, "c": 42}
    merged = config.deep_merge(a, b)
    assert merged == {
        "a": 1,
        "b": {"x": 1, "y": 99, "z": 3},
        "c": 42,
    }
    # inputs are untouched
    assert a == {"a": 1, "b": {"x": 1, "y": 2}}


def test_load_yaml_reads_and_returns_dict(tmp_path: Path):
    yaml_path = tmp_path / "test.yml"
    yaml_path.write_text("a: 1\nb: foo\n")
    out = config.load_yaml(yaml_path)
    assert out == {"a": 1, "b": "foo"}

    # Non-existent or empty file should return {}
    assert config.load_yaml(tmp_path / "missing.yml") == {}
    (tmp_path / "empty.yml").write_text("")
    assert config.load_yaml(tmp_path / "empty.yml") == {}


def test_defaults():
    st = config.Settings()
    assert st.fpirls.threshold == 0.0002
    assert st.fpirls.max_iterations == 15
    assert st.fpirls.gcv_inflation == 1.0
    assert st.solver.dof_evaluation == "exact"
    assert st.solver.dof_matrix is None


def test_load_settings_merges_profiles(tmp_path: Path, monkeypatch):
    # Create fake project root with configs/
    cfg_dir = tmp_path / "configs"
    cfg_dir.mkdir()

    base_cfg = {
        "project": {"name": "demo"},
        "fpirls": {"threshold": 1e-3, "max_iterations": 20},
        "solver": {"dof_evaluation": "Stochastic", "n_realizations": 50},
    }
    local_cfg = {"project": {"seed": 123}, "fpirls": {"max_iterations": 30}}
    fast_cfg = {"solver": {"dof_evaluation": "not_required"}}

    (cfg_dir / "base.yml").write_text(yaml.safe_dump(base_cfg))
    (cfg_dir / "local.yml").write_text(yaml.safe_dump(local_cfg))
    (cfg_dir / "fast.yml").write_text(yaml.safe_dump(fast_cfg))

    # Patch _project_root to point to tmp_path
    monkeypatch.setattr(config, "_project_root", lambda: tmp_path)

    st = config.load_settings()
    assert st.project.name == "demo"
    assert st.project.seed == 123  # overridden by local.yml
    assert st.fpirls.threshold == 1e-3
    assert st.fpirls.max_iterations == 30
    assert st.solver.dof_evaluation == "stochastic"
    assert st.solver.n_realizations == 50

    st = config.load_settings(profile="fast", root=tmp_path)
    assert st.solver.dof_evaluation == "not_required"
    assert st.solver.n_realizations == 50


def test_environment_fills_unset_values(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("FDAPIRLS_FPIRLS__MAX_ITERATIONS", "7")
    monkeypatch.setenv("FDAPIRLS_SOLVER__DOF_EVALUATION", "not_required")
    st = config.load_settings(root=tmp_path)
    assert st.fpirls.max_iterations == 7
    assert st.solver.dof_evaluation == "not_required"


@pytest.mark.parametrize(
    "section, values",
    [
        ("fpirls", {"threshold": -1.0}),
        ("fpirls", {"max_iterations": 0}),
        ("fpirls", {"gcv_inflation": 0.0}),
        ("solver", {"dof_evaluation": "approximate"}),
        ("solver", {"n_realizations": 0}),
    ],
)
def test_invalid_values_rejected(tmp_path: Path, section, values):
    cfg_dir = tmp_path / "configs"
    cfg_dir.mkdir()
    (cfg_dir / "base.yml").write_text(yaml.safe_dump({section: values}))
    with pytest.raises(ValidationError):
        config.load_settings(root=tmp_path)
