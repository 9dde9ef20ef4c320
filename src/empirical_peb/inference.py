from __future__ import annotations

from typing import Tuple

import numpy as np

from .util import inv_pd, logdet_pd, orth, symmetrize


def reduce_evidence(
    qE: np.ndarray,
    qC: np.ndarray,
    pE: np.ndarray,
    pC: np.ndarray,
    rE: np.ndarray,
    rC: np.ndarray,
    *,
    regularization: float = 1e-8,
    rcond: float = 1e-12,
) -> Tuple[float, np.ndarray, np.ndarray]:
    """Bayesian model reduction of a Gaussian posterior under a new prior.

    Given the posterior ``N(qE, qC)`` obtained under the prior ``N(pE, pC)``,
    return ``(dF, sE, sC)``: the change in log evidence and the posterior
    under the reduced prior ``N(rE, rC)``, without refitting.

    Parameters with zero prior variance are held at their posterior mean;
    the reduction is computed on the support of ``pC``.
    """
    qE = np.asarray(qE, dtype=float).reshape(-1)
    pE = np.asarray(pE, dtype=float).reshape(-1)
    rE = np.asarray(rE, dtype=float).reshape(-1)

    V, _ = orth(pC, rcond=rcond)
    if V.shape[1] == 0:
        return 0.0, qE.copy(), np.zeros_like(np.asarray(qC, dtype=float))

    vq = V.T @ qE
    vp = V.T @ pE
    vr = V.T @ rE
    kw = dict(regularization=regularization)

    Pq = inv_pd(V.T @ qC @ V, what="posterior covariance", **kw)
    Pp = inv_pd(V.T @ pC @ V, what="prior covariance", **kw)
    Pr = inv_pd(V.T @ rC @ V, what="reduced prior covariance", **kw)

    sP = symmetrize(Pq + Pr - Pp)
    sC = inv_pd(sP, what="reduced posterior precision", **kw)
    sE = sC @ (Pq @ vq + Pr @ vr - Pp @ vp)

    dF = 0.5 * (
        logdet_pd(Pq, what="posterior precision", **kw)
        + logdet_pd(Pr, what="reduced prior precision", **kw)
        - logdet_pd(Pp, what="prior precision", **kw)
        - logdet_pd(sP, what="reduced posterior precision", **kw)
    ) - 0.5 * (vq @ Pq @ vq + vr @ Pr @ vr - vp @ Pp @ vp - sE @ sP @ sE)

    full_E = qE - V @ vq + V @ sE
    full_C = symmetrize(V @ sC @ V.T)
    return float(dF), full_E, full_C
