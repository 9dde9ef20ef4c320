import numpy as np
import pytest

from empirical_peb import GroupParameter, PEBConfig, Unit, invoke


def _result():
    rng = np.random.default_rng(3)
    age = np.linspace(-1.0, 1.0, 8)
    units = []
    for a in age:
        qE = np.array([1.0 + 0.5 * a, -0.4]) + 0.1 * rng.normal(size=2)
        units.append(Unit.create(np.zeros(2), np.eye(2), qE, 0.02 * np.eye(2)))
    X = np.column_stack([np.ones_like(age), age])
    return invoke(units, PEBConfig().with_design(X, ["Mean", "Age"]))[0]


def test_group_labels_and_indexing():
    res = _result()
    assert res.group_labels == ("Mean: P0", "Mean: P1", "Age: P0", "Age: P1")

    p = res["Age: P0"]
    assert isinstance(p, GroupParameter)
    assert p.value == pytest.approx(res.Ep[2])
    assert p.stderr == pytest.approx(np.sqrt(res.Cp[2, 2]))
    assert res[2] == p
    assert p.value > 0.2
    assert p.probability > 0.95

    with pytest.raises(KeyError, match="Nope"):
        res["Nope"]


def test_effects_slice_per_covariate():
    res = _result()
    mean, cov = res.effects("Age")
    np.testing.assert_allclose(mean, res.Ep[2:])
    np.testing.assert_allclose(cov, res.Cp[2:, 2:])
    mean0, _ = res.effects(0)
    np.testing.assert_allclose(mean0, res.Ep[:2])


def test_summary_lists_parameters():
    res = _result()
    text = res.summary(digits=3)
    assert "F" in text
    for label in res.group_labels:
        assert label in text
    assert "log-precision" in text

    short = res.summary(labels=["Mean: P1"])
    assert "Mean: P1" in short
    assert "Age: P0" not in short


def test_probability_of_zero_stderr():
    assert GroupParameter("x", 0.0, 0.0).probability == 0.5
    assert GroupParameter("x", 1.0, 0.0).probability == 1.0


def test_u_uses_covariance():
    uncertainties = pytest.importorskip("uncertainties")
    res = _result()
    values = res.u
    cov = np.array(uncertainties.covariance_matrix(values), dtype=float)
    np.testing.assert_allclose(cov, res.Cp, rtol=1e-6, atol=1e-9)
    assert res["Mean: P0"].u.nominal_value == pytest.approx(res.Ep[0])
