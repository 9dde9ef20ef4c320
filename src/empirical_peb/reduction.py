from __future__ import annotations

from dataclasses import dataclass
from warnings import warn

import numpy as np

from .errors import RankDeficiencyWarning
from .selection import Selection
from .units import Densities
from .util import inv_pd, orth, symmetrize

__all__ = ["ReducedDensities", "reduce_rank"]


@dataclass(frozen=True)
class ReducedDensities:
    """Unit densities projected onto the non-degenerate prior subspace."""

    pE: np.ndarray  # (Ns, r)
    pC: np.ndarray  # (Ns, r, r)
    qE: np.ndarray  # (Ns, r)
    qC: np.ndarray  # (Ns, r, r)
    U: np.ndarray  # (Np, r)
    PE: np.ndarray  # (Np,) average prior mean of the selected parameters
    PC: np.ndarray  # (Np, Np) average prior covariance
    qE_selected: np.ndarray  # (Ns, Np) unprojected posterior means

    @property
    def n_units(self) -> int:
        return int(self.qE.shape[0])

    @property
    def rank(self) -> int:
        return int(self.U.shape[1])


def reduce_rank(
    densities: Densities,
    selection: Selection,
    *,
    shrinkage: float = 16.0,
    rcond: float = 1e-6,
    regularization: float = 1e-8,
) -> ReducedDensities:
    """Average the selected priors and project every unit onto their support.

    With more than one unit, each reduced posterior covariance is shrunk
    towards its prior: ``qC <- inv(inv(qC) + inv(pC) / shrinkage)``.
    """
    q = np.asarray(selection.indices, dtype=int)
    Ns = densities.n_units
    Np = int(q.shape[0])

    pE = densities.pE[:, q]
    pC = densities.pC[:, q[:, None], q[None, :]]
    qE = densities.qE[:, q]
    qC = densities.qC[:, q[:, None], q[None, :]]

    PE = np.zeros((Np,))
    PC = np.zeros((Np, Np))
    for i in range(Ns):
        PE = PE + pE[i]
        PC = PC + pC[i]
    PE = PE / Ns
    PC = symmetrize(PC / Ns)

    if Ns == 1:
        U = np.eye(Np)
    else:
        U, _ = orth(PC, rcond=rcond)
        if U.shape[1] < Np:
            # Parameters with no weight on the retained basis are unidentifiable.
            lost = np.sum(U**2, axis=1) < 0.5
            names = [selection.labels[j] for j in np.flatnonzero(lost)]
            detail = f": {', '.join(names)}" if names else ""
            warn(
                f"Prior covariance of the selected parameters has rank {U.shape[1]} "
                f"< {Np}; analysing the reduced subspace{detail}.",
                RankDeficiencyWarning,
            )

    rpE = pE @ U
    rqE = qE @ U
    rpC = np.einsum("ji,sjk,kl->sil", U, pC, U)
    rqC = np.einsum("ji,sjk,kl->sil", U, qC, U)

    if Ns > 1 and shrinkage:
        for i in range(Ns):
            what = f"{densities.names[i] if densities.names else f'Unit {i + 1}'}"
            post_prec = inv_pd(rqC[i], regularization=regularization, what=f"{what} posterior covariance")
            prior_prec = inv_pd(rpC[i], regularization=regularization, what=f"{what} prior covariance")
            rqC[i] = inv_pd(
                post_prec + prior_prec / float(shrinkage),
                regularization=regularization,
                what=f"{what} shrunk posterior precision",
            )

    return ReducedDensities(
        pE=rpE,
        pC=np.stack([symmetrize(c) for c in rpC]),
        qE=rqE,
        qC=np.stack([symmetrize(c) for c in rqC]),
        U=U,
        PE=PE,
        PC=PC,
        qE_selected=qE,
    )
