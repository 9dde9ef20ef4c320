import numpy as np
import pytest

from empirical_peb import Unit, extract_densities, reduce_rank, select_parameters
from empirical_peb.errors import RankDeficiencyWarning


def _units(rng, n_units=4, n=5, prior_var=None):
    prior_var = np.ones(n) if prior_var is None else np.asarray(prior_var, dtype=float)
    units = []
    for _ in range(n_units):
        a = rng.normal(size=(n, n))
        qC = 0.05 * (a @ a.T) / n + 0.01 * np.eye(n)
        qC = qC * np.outer(prior_var > 0, prior_var > 0)
        units.append(
            Unit.create(np.zeros(n), np.diag(prior_var), rng.normal(size=n) * (prior_var > 0), qC)
        )
    return units


def _reduce(units, fields=None, **kw):
    d = extract_densities(units)
    sel = select_parameters(units[0], fields)
    return reduce_rank(d, sel, **kw)


def test_basis_is_orthonormal_and_full_rank():
    rng = np.random.default_rng(0)
    red = _reduce(_units(rng))

    assert red.U.shape == (5, 5)
    np.testing.assert_allclose(red.U.T @ red.U, np.eye(5), atol=1e-12)
    np.testing.assert_allclose(red.PC, np.eye(5))
    np.testing.assert_allclose(red.PE, np.zeros(5))


def test_posterior_covariance_is_shrunk_towards_prior():
    rng = np.random.default_rng(1)
    units = _units(rng)
    red = _reduce(units)
    raw = _reduce(units, shrinkage=0.0)

    for i in range(len(units)):
        expected = np.linalg.inv(np.linalg.inv(raw.qC[i]) + np.linalg.inv(raw.pC[i]) / 16.0)
        np.testing.assert_allclose(red.qC[i], expected, rtol=1e-8, atol=1e-12)
        # shrinking only ever adds precision
        assert np.all(np.linalg.eigvalsh(raw.qC[i] - red.qC[i]) > -1e-12)


def test_single_unit_uses_identity_and_no_shrinkage():
    rng = np.random.default_rng(2)
    units = _units(rng, n_units=1)
    red = _reduce(units, fields=[0, 2])

    np.testing.assert_allclose(red.U, np.eye(2))
    np.testing.assert_allclose(red.qC[0], units[0].post_cov[np.ix_([0, 2], [0, 2])])


def test_zero_variance_parameter_is_dropped_with_warning():
    rng = np.random.default_rng(3)
    units = _units(rng, prior_var=[1.0, 2.0, 0.0, 1.0, 1.0])

    with pytest.warns(RankDeficiencyWarning, match="P2"):
        red = _reduce(units)

    assert red.rank == 4
    np.testing.assert_allclose(red.U.T @ red.U, np.eye(4), atol=1e-12)
    # the degenerate parameter has no weight on the basis
    np.testing.assert_allclose(red.U[2], 0.0, atol=1e-12)


def test_reduction_is_invariant_to_unit_order():
    rng = np.random.default_rng(4)
    units = _units(rng, n_units=5)
    a = _reduce(units)
    b = _reduce(units[::-1])

    np.testing.assert_allclose(a.PE, b.PE, atol=1e-12)
    np.testing.assert_allclose(a.PC, b.PC, atol=1e-12)
    np.testing.assert_allclose(a.U @ a.U.T, b.U @ b.U.T, atol=1e-10)
    np.testing.assert_allclose(a.qE[::-1] @ a.U.T, b.qE @ b.U.T, atol=1e-10)
