import numpy as np
import pytest

from empirical_peb import (
    EstimatorOptions,
    PEBConfig,
    Unit,
    build_second_level,
    estimate,
    extract_densities,
    reduce_rank,
    select_parameters,
)
from empirical_peb.errors import ConvergenceWarning
from empirical_peb.estimator import random_effects_precision


def _problem(config=None, n_units=8, seed=0, spread=0.5):
    rng = np.random.default_rng(seed)
    group = np.array([1.0, -0.5])
    units = []
    for _ in range(n_units):
        theta = group + spread * rng.normal(size=2)
        units.append(
            Unit.create(np.zeros(2), np.eye(2), theta + 0.1 * rng.normal(size=2), 0.01 * np.eye(2))
        )
    d = extract_densities(units)
    sel = select_parameters(units[0])
    red = reduce_rank(d, sel)
    model = build_second_level(config or PEBConfig(), red, sel, d.layout)
    return red, model


def test_free_energy_history_is_monotone():
    red, model = _problem(PEBConfig(components="all"))
    est = estimate(red, model, EstimatorOptions())

    assert est.converged
    assert est.iterations >= 1
    diffs = np.diff(est.history)
    assert np.all(diffs >= -EstimatorOptions().tol)
    assert np.isfinite(est.F)


def test_random_effects_covariance_tracks_between_unit_spread():
    tight_red, tight_model = _problem(spread=0.05, n_units=16)
    wide_red, wide_model = _problem(spread=1.0, n_units=16)
    tight = estimate(tight_red, tight_model)
    wide = estimate(wide_red, wide_model)

    assert np.trace(wide.Ce) > np.trace(tight.Ce)
    assert wide.Eh[0] < tight.Eh[0]


def test_group_mean_is_recovered():
    red, model = _problem(n_units=20, spread=0.2)
    est = estimate(red, model)
    Ep = model.U @ est.Ep

    np.testing.assert_allclose(Ep, [1.0, -0.5], atol=0.2)
    assert est.Cp.shape == (2, 2)
    assert est.Ch.shape == (1, 1)


def test_maxit_exhaustion_is_soft():
    red, model = _problem(PEBConfig(hC=4.0))
    with pytest.warns(ConvergenceWarning):
        est = estimate(red, model, EstimatorOptions(maxit=1, tol=1e-12))

    assert est.iterations == 1
    assert not est.converged
    assert np.all(np.isfinite(est.Ep))


def test_no_components_uses_prior_precision():
    red, model = _problem(PEBConfig(components="none"))
    est = estimate(red, model)

    assert est.iterations == 0
    assert est.Eh.shape == (0,)
    np.testing.assert_allclose(est.Ce, np.linalg.inv(model.pQ), rtol=1e-8)
    np.testing.assert_allclose(random_effects_precision(est.Eh, model), model.pQ)


def test_estimation_is_deterministic():
    red, model = _problem(PEBConfig(components="all"))
    a = estimate(red, model)
    b = estimate(red, model)

    np.testing.assert_array_equal(a.Ep, b.Ep)
    np.testing.assert_array_equal(a.Eh, b.Eh)
    assert a.F == b.F


def _dense_gradient_and_fisher(problem, h, s):
    model = problem.model
    Ns, r = problem.Ns, problem.r
    N = Ns * r
    K = np.zeros((N, N))
    A = problem.A.reshape(N, -1)
    K += A @ np.linalg.inv(problem.bP) @ A.T
    for i in range(Ns):
        K[i * r:(i + 1) * r, i * r:(i + 1) * r] += problem.qC[i] + s["Sigma"]
    Kinv = np.linalg.inv(K)
    y = (problem.qE - np.einsum("iam,m->ia", problem.A, problem.b0)).reshape(-1)
    a = Kinv @ y
    g = np.zeros(model.n_components)
    Ms = []
    for j in range(model.n_components):
        D = -s["Sigma"] @ (np.exp(h[j]) * model.Q[j]) @ s["Sigma"]
        Db = np.kron(np.eye(Ns), D)
        g[j] = 0.5 * (a @ Db @ a - np.trace(Kinv @ Db))
        Ms.append(Kinv @ Db)
    fisher = np.array([[0.5 * np.trace(Ma @ Mb) for Mb in Ms] for Ma in Ms])
    return g, fisher


def test_blockwise_gradient_matches_dense_marginal():
    from empirical_peb.estimator import _Problem

    rng = np.random.default_rng(5)
    units = []
    for _ in range(6):
        theta = np.array([1.0, -0.5, 0.3]) + 0.4 * rng.normal(size=3)
        qC = np.diag(rng.uniform(0.01, 0.1, size=3))
        units.append(Unit.create(np.zeros(3), np.eye(3), theta, qC))
    d = extract_densities(units)
    sel = select_parameters(units[0])
    red = reduce_rank(d, sel)
    X = np.column_stack([np.ones(6), np.linspace(-1.0, 1.0, 6)])
    model = build_second_level(PEBConfig(X=X, components="all"), red, sel, d.layout)

    problem = _Problem(red, model, EstimatorOptions())
    h = np.array([0.3, -0.2, 0.5])
    s = problem.solve(h)
    g, fisher = problem.gradient_and_fisher(h, s)
    g_ref, fisher_ref = _dense_gradient_and_fisher(problem, h, s)

    np.testing.assert_allclose(g, g_ref, rtol=1e-6, atol=1e-8)
    np.testing.assert_allclose(fisher, fisher_ref, rtol=1e-6, atol=1e-8)


def test_gradient_memory_does_not_scale_with_stacked_size():
    import tracemalloc

    from empirical_peb.estimator import _Problem

    rng = np.random.default_rng(6)
    n = 20
    units = [
        Unit.create(np.zeros(n), np.eye(n), 0.5 + 0.3 * rng.normal(size=n), 0.05 * np.eye(n))
        for _ in range(40)
    ]
    d = extract_densities(units)
    sel = select_parameters(units[0])
    red = reduce_rank(d, sel)
    model = build_second_level(PEBConfig(components="all"), red, sel, d.layout)
    problem = _Problem(red, model, EstimatorOptions())
    h = np.zeros(n)
    s = problem.solve(h)

    tracemalloc.start()
    try:
        problem.gradient_and_fisher(h, s)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()
    # one dense (Ns*r)^2 matrix is 5 MB; one per component would exceed 100 MB
    assert peak < 40e6
