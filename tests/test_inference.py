import numpy as np
import pytest

from empirical_peb import reduce_evidence


def test_unchanged_prior_changes_nothing():
    qE = np.array([0.5, -1.0])
    qC = np.diag([0.1, 0.2])
    pE = np.zeros(2)
    pC = np.eye(2)
    dF, sE, sC = reduce_evidence(qE, qC, pE, pC, pE, pC)
    assert dF == pytest.approx(0.0, abs=1e-10)
    np.testing.assert_allclose(sE, qE, atol=1e-10)
    np.testing.assert_allclose(sC, qC, atol=1e-10)


def test_prior_away_from_data_lowers_evidence():
    qE = np.array([2.0])
    qC = np.array([[0.1]])
    pE = np.zeros(1)
    pC = np.eye(1)
    near, _, _ = reduce_evidence(qE, qC, pE, pC, np.array([2.0]), 0.5 * np.eye(1))
    far, sE, _ = reduce_evidence(qE, qC, pE, pC, np.array([-2.0]), 0.5 * np.eye(1))
    assert near > far
    assert sE[0] < qE[0]


def test_zero_variance_directions_are_ignored():
    qE = np.array([0.5, 3.0])
    qC = np.diag([0.1, 0.0])
    pE = np.array([0.0, 3.0])
    pC = np.diag([1.0, 0.0])
    rC = np.diag([0.5, 0.0])
    dF, sE, sC = reduce_evidence(qE, qC, pE, pC, pE, rC)
    assert np.isfinite(dF)
    assert sE[1] == pytest.approx(3.0)
    assert sC[1, 1] == pytest.approx(0.0, abs=1e-12)
