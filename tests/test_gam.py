import numpy as np
import pytest
from numpy.testing import assert_allclose

from fdapirls.config import FPIRLSConfig
from fdapirls.tl.fam import FamilyDomainError, Gamma
from fdapirls.tl.fit import fit_gam
from fdapirls.tl.fpirls import FPIRLS
from fdapirls.tl.gam import GAM, GAMState


def _driver(mesh, make_solver, y, model, lambda_s=(1e-1, 1.0), config=None, **solver_kw):
    return FPIRLS(make_solver(mesh, lambda_s=list(lambda_s), **solver_kw), y, model, config)


# ---------------------------
# Model setup
# ---------------------------


def test_default_mu0_from_family(mesh, poisson_data, make_solver):
    model = GAM("poisson")
    _driver(mesh, make_solver, poisson_data, model)
    assert model.mu0 is None
    assert model.initial_mu.shape == (60,)
    assert np.all(model.initial_mu > 0)
    state = model.new_state()
    assert isinstance(state, GAMState)
    state.mu[0] = -1.0
    # states never share the initial mean
    assert model.initial_mu[0] > 0


def test_model_reuse_recomputes_initial_mean(mesh, poisson_data, make_solver):
    model = GAM("poisson")
    _driver(mesh, make_solver, poisson_data, model)
    shifted = poisson_data + 5.0
    _driver(mesh, make_solver, shifted, model)
    assert_allclose(model.initial_mu, model.family.init_mu(shifted))

    # a user-supplied mu0 survives across setups
    mu0 = np.full(60, 2.0)
    model = GAM("poisson", mu0=mu0)
    _driver(mesh, make_solver, poisson_data, model)
    _driver(mesh, make_solver, shifted, model)
    assert_allclose(model.initial_mu, mu0)


def test_invalid_model_arguments(mesh, poisson_data, make_solver):
    with pytest.raises(ValueError, match="no scale"):
        GAM("poisson", scale_param=1.0)
    with pytest.raises(ValueError, match="positive"):
        GAM("gamma", scale_param=0.0)
    with pytest.raises(ValueError, match="scale_method"):
        GAM("gamma", scale_method="mle")
    with pytest.raises(ValueError, match="mu0"):
        _driver(mesh, make_solver, poisson_data, GAM("poisson", mu0=np.ones(5)))
    with pytest.raises(FamilyDomainError):
        _driver(mesh, make_solver, poisson_data, GAM("poisson", mu0=np.zeros(60)))


def test_scale_parameter_flag():
    assert GAM("gamma").scale_parameter_flag
    assert not GAM("gamma", scale_param=2.0).scale_parameter_flag
    assert not GAM(Gamma(scale=2.0)).scale_parameter_flag
    assert not GAM("poisson").scale_parameter_flag


# ---------------------------
# One IRLS step
# ---------------------------


def test_poisson_first_iteration_pseudo_data_and_weights(mesh, poisson_data, make_solver):
    mu0 = np.full(60, poisson_data.mean())
    model = GAM("poisson", mu0=mu0)
    driver = _driver(
        mesh, make_solver, poisson_data, model, lambda_s=[1e-2], config=FPIRLSConfig(max_iterations=1)
    )
    driver.apply()
    res = driver.result(0, 0)
    assert res.n_iterations == 1
    assert_allclose(res.state.pseudo_observations, np.log(mu0) + (poisson_data - mu0) / mu0)
    assert_allclose(res.state.weights, mu0)
    assert_allclose(res.state.mu, np.exp(res.solution.fitted))


# ---------------------------
# Full fits
# ---------------------------


@pytest.mark.parametrize(
    "family, data",
    [("poisson", "poisson_data"), ("binomial", "bernoulli_data"), ("gamma", "gamma_data")],
)
def test_fit_converges(mesh, make_solver, request, family, data):
    y = request.getfixturevalue(data)
    driver = _driver(mesh, make_solver, y, GAM(family)).apply()
    assert driver.converged.all()
    assert np.all(driver.iterations < 15)
    assert np.isfinite(driver.gcv).all()
    for key in driver.grid:
        res = driver.result(*key)
        assert res.J_min <= sum(res.J_final) + 1e-10
        assert np.all(driver.model.family.valid_mu(res.state.mu))


def test_gcv_uses_deviance(mesh, poisson_data, make_solver):
    driver = _driver(mesh, make_solver, poisson_data, GAM("poisson")).apply()
    res = driver.result(1, 0)
    n = 60
    deviance = driver.model.family.deviance(res.state.mu, poisson_data)
    assert_allclose(res.J_final[0], deviance)
    assert_allclose(res.gcv, n * deviance / (n - res.dof) ** 2)


def test_link_and_response_scale(mesh, poisson_data, make_solver):
    driver = _driver(mesh, make_solver, poisson_data, GAM("poisson")).apply()
    eta = driver.fitted_values(0, 0, kind="link")
    assert_allclose(driver.fitted_values(0, 0), np.exp(eta))
    with pytest.raises(ValueError, match="kind"):
        driver.fitted_values(0, 0, kind="deviance")


def test_poisson_covariate_effect(mesh, make_solver):
    r = np.random.default_rng(11)
    X = r.normal(size=(60, 1))
    mu = np.exp(1.0 + 0.5 * np.sin(2 * np.pi * mesh["x"]) + 0.3 * X[:, 0])
    y = r.poisson(mu).astype(float)
    driver = _driver(mesh, make_solver, y, GAM("poisson"), lambda_s=[1e-2], covariates=X).apply()
    assert driver.converged.all()
    assert_allclose(driver.beta_hat(0, 0), [0.3], atol=0.25)


# ---------------------------
# Scale estimation
# ---------------------------


def test_variance_estimate_without_scale(mesh, poisson_data, make_solver):
    driver = _driver(mesh, make_solver, poisson_data, GAM("poisson")).apply()
    assert_allclose(driver.variance_estimates, 1.0)


def test_gamma_scale_estimates(mesh, gamma_data, make_solver):
    pearson = _driver(mesh, make_solver, gamma_data, GAM("gamma")).apply()
    phi = pearson.variance_estimates
    assert np.all(phi > 0)
    # shape 5 gives a dispersion near 0.2
    assert np.all((phi > 0.05) & (phi < 0.6))

    res = pearson.result(0, 0)
    mu = res.state.mu
    expected = np.sum((gamma_data - mu) ** 2 / mu**2) / (60 - res.dof)
    assert_allclose(phi[0, 0], expected)

    dev = _driver(mesh, make_solver, gamma_data, GAM("gamma", scale_method="deviance")).apply()
    res = dev.result(0, 0)
    assert_allclose(
        dev.variance_estimates[0, 0],
        dev.model.family.deviance(res.state.mu, gamma_data) / (60 - res.dof),
    )

    known = _driver(mesh, make_solver, gamma_data, GAM("gamma", scale_param=2.0)).apply()
    assert_allclose(known.variance_estimates, 2.0)


# ---------------------------
# Convenience wrapper
# ---------------------------


def test_fit_gam_wrapper(mesh, bernoulli_data):
    driver = fit_gam(mesh["basis"], mesh["penalty"], bernoulli_data, [1e-1, 1.0], "binomial")
    assert isinstance(driver, FPIRLS)
    assert driver.model.family.name == "binomial"
    assert driver.gcv.shape == (2, 1)
    fitted = driver.fitted_values(*driver.best_grid_point)
    assert np.all((fitted > 0) & (fitted < 1))
