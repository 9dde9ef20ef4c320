import numpy as np
import pytest

from empirical_peb import FieldLayout, Unit, extract_densities
from empirical_peb.errors import ParameterisationMismatchError


def _structured_unit(name=None, shift=0.0):
    pE = {"A": np.zeros((2, 2)), "C": np.zeros(3)}
    pC = {"A": np.full((2, 2), 0.5), "C": np.ones(3)}
    Ep = {"A": np.eye(2) + shift, "C": np.arange(3.0)}
    return Unit.create(pE, pC, Ep, 0.1 * np.eye(7), evidence=-10.0, name=name)


def test_layout_indices_and_labels():
    layout = FieldLayout.from_arrays({"A": np.zeros((2, 2)), "b": 0.0, "C": np.zeros(3)})

    assert layout.size == 8
    assert list(layout.indices("A")) == [0, 1, 2, 3]
    assert list(layout.indices("b")) == [4]
    assert list(layout.indices("C")) == [5, 6, 7]
    assert list(layout.indices("all")) == list(range(8))
    assert layout.label(1) == "A[0,1]"
    assert layout.label(4) == "b"
    assert layout.label(7) == "C[2]"
    with pytest.raises(KeyError, match="Unknown field"):
        layout.indices("D")


def test_structured_prior_covariance_is_materialised():
    u = _structured_unit()

    assert u.prior_cov.shape == (7, 7)
    np.testing.assert_allclose(np.diag(u.prior_cov), [0.5] * 4 + [1.0] * 3)
    assert np.count_nonzero(u.prior_cov - np.diag(np.diag(u.prior_cov))) == 0
    np.testing.assert_allclose(u.post_mean[:4], [1.0, 0.0, 0.0, 1.0])
    assert u.layout.names == ("A", "C")


def test_variance_vector_becomes_diagonal():
    u = Unit.create(np.zeros(3), np.array([1.0, 2.0, 3.0]), np.zeros(3), 0.5)
    np.testing.assert_allclose(u.prior_cov, np.diag([1.0, 2.0, 3.0]))
    np.testing.assert_allclose(u.post_cov, 0.5 * np.eye(3))


def test_create_rejects_inconsistent_shapes():
    with pytest.raises(ValueError, match="post_mean has 2 parameters"):
        Unit.create(np.zeros(3), np.eye(3), np.zeros(2), np.eye(3))
    with pytest.raises(ValueError, match="expected shape"):
        Unit.create(np.zeros(3), np.eye(2), np.zeros(3), np.eye(3))


def test_extract_densities_stacks_units():
    units = [_structured_unit(name=f"s{i}", shift=i) for i in range(3)]
    d = extract_densities(units)

    assert d.n_units == 3
    assert d.n_params == 7
    assert d.pC.shape == (3, 7, 7)
    assert d.names == ("s0", "s1", "s2")
    np.testing.assert_allclose(d.F, [-10.0] * 3)
    assert d.layout is units[0].layout


def test_extract_densities_mismatch_names_unit():
    units = [
        Unit.create(np.zeros(3), np.eye(3), np.zeros(3), np.eye(3)),
        Unit.create(np.zeros(4), np.eye(4), np.zeros(4), np.eye(4), name="bad"),
    ]
    with pytest.raises(ParameterisationMismatchError, match="bad .index 1. has 4 parameters"):
        extract_densities(units)


def test_extract_densities_rejects_non_units():
    with pytest.raises(TypeError, match="does not provide"):
        extract_densities([{"Ep": np.zeros(2)}])
    with pytest.raises(ValueError, match="At least one unit"):
        extract_densities([])
