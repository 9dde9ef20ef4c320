"""Second-level (group) estimation.

The group model for unit ``i`` is::

    qE_i = (X_i ⊗ W) β + ε_i + η_i,   ε_i ~ N(0, inv(Π(h))),   η_i ~ N(0, qC_i)
    β ~ N(bE ⊗ e_1, I ⊗ bC),           h ~ N(hE, hC)

with random-effects precision ``Π(h) = Σ_k exp(h_k) Q_k`` (plus a small
multiple of the prior precision). For fixed ``h`` the posterior over ``β`` is
Gaussian and available in closed form; ``h`` is found by Gauss-Newton
(Fisher scoring) ascent on the log joint, and the free energy adds the
Laplace term for ``h``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from warnings import warn

import numpy as np

from .design import EstimatorOptions, SecondLevelModel
from .errors import ConvergenceWarning
from .reduction import ReducedDensities
from .util import inv_pd, logdet_pd, symmetrize

__all__ = ["Estimate", "estimate", "random_effects_precision"]


@dataclass(frozen=True)
class Estimate:
    Ep: np.ndarray  # (Nx*r,) group parameters, covariate-major
    Cp: np.ndarray  # (Nx*r, Nx*r)
    Eh: np.ndarray  # (k,) log-precisions
    Ch: np.ndarray  # (k, k)
    Ce: np.ndarray  # (r, r) random-effects covariance at Eh
    F: float
    iterations: int
    converged: bool
    history: Tuple[float, ...] = ()
    stats: Dict[str, Any] = field(default_factory=dict)


def random_effects_precision(
    h: np.ndarray, model: SecondLevelModel, floor: float = 0.0
) -> np.ndarray:
    """Π(h) = Σ exp(h_k) Q_k + floor·pQ, or pQ when there are no components."""
    if model.n_components == 0:
        return model.pQ.copy()
    P = floor * model.pQ
    for k in range(model.n_components):
        P = P + np.exp(h[k]) * model.Q[k]
    return symmetrize(P)


class _Problem:
    """Closed-form group posterior and log joint for a given h."""

    def __init__(
        self, reduced: ReducedDensities, model: SecondLevelModel, options: EstimatorOptions
    ) -> None:
        self.model = model
        self.options = options
        self.kw = dict(regularization=options.regularization)

        self.qE = reduced.qE
        self.qC = reduced.qC
        Ns, r = self.qE.shape
        Nx = model.n_covariates
        self.Ns, self.r, self.Nx = Ns, r, Nx

        self.A = np.stack([np.kron(model.X[i][None, :], model.W) for i in range(Ns)])
        m = Nx * r
        self.b0 = np.zeros((m,))
        self.b0[:r] = model.bE
        B = np.kron(np.eye(Nx), model.bC)
        self.bP = inv_pd(B, what="third-level prior covariance", **self.kw)
        self.logdet_B = logdet_pd(B, what="third-level prior covariance", **self.kw)

        k = model.n_components
        if k:
            self.hP = inv_pd(model.hC, what="hyperprior covariance", **self.kw)
        else:
            self.hP = np.zeros((0, 0))

    def solve(self, h: np.ndarray) -> Dict[str, Any]:
        model = self.model
        kw = self.kw
        Pi = random_effects_precision(h, model, self.options.precision_floor)
        Sigma = inv_pd(Pi, what="random-effects precision", **kw)

        Sinv = np.empty((self.Ns, self.r, self.r))
        logdet_S = 0.0
        CpP = self.bP.copy()
        rhs = self.bP @ self.b0
        for i in range(self.Ns):
            S = self.qC[i] + Sigma
            what = f"unit {i + 1} residual covariance"
            Sinv[i] = inv_pd(S, what=what, **kw)
            logdet_S += logdet_pd(S, what=what, **kw)
            AtS = self.A[i].T @ Sinv[i]
            CpP = CpP + AtS @ self.A[i]
            rhs = rhs + AtS @ self.qE[i]

        Cp = inv_pd(CpP, what="group posterior precision", **kw)
        Ep = Cp @ rhs

        e = self.qE - np.einsum("iam,m->ia", self.A, Ep)
        d = Ep - self.b0
        L = (
            -0.5 * float(np.einsum("ia,iab,ib->", e, Sinv, e))
            - 0.5 * float(d @ self.bP @ d)
            - 0.5 * logdet_S
            - 0.5 * self.logdet_B
            + 0.5 * logdet_pd(Cp, what="group posterior covariance", **kw)
            - 0.5 * self.Ns * self.r * np.log(2.0 * np.pi)
        )
        dh = np.asarray(h, dtype=float) - model.hE
        J = L - 0.5 * float(dh @ self.hP @ dh)
        return {"Pi": Pi, "Sigma": Sigma, "Sinv": Sinv, "Cp": Cp, "Ep": Ep, "e": e, "J": float(J)}

    def gradient_and_fisher(self, h: np.ndarray, s: Dict[str, Any]) -> Tuple[np.ndarray, np.ndarray]:
        """Gradient of log p(qE | h) and its Fisher information in h.

        The inverse marginal covariance of the stacked unit means is
        ``blockdiag(S_i⁻¹) - G Cp G'`` with ``G_i = S_i⁻¹ A_i``; every trace is
        expanded over that form so only per-unit (r, r) blocks and (m, m)
        products with ``Cp`` are formed.
        """
        model = self.model
        Sinv, Cp, Sigma = s["Sinv"], s["Cp"], s["Sigma"]

        G = np.einsum("iab,ibm->iam", Sinv, self.A)
        alpha = np.einsum("iab,ib->ia", Sinv, s["e"])

        k = model.n_components
        g = np.zeros((k,))
        SD = []  # S_i⁻¹ D_j, (Ns, r, r)
        DG = []  # D_j G_i, (Ns, r, m)
        CH = []  # Cp Σ_i G_i' D_j G_i, (m, m)
        for j in range(k):
            D = -Sigma @ (np.exp(h[j]) * model.Q[j]) @ Sigma
            SDj = np.einsum("iab,bc->iac", Sinv, D)
            DGj = np.einsum("ab,ibm->iam", D, G)
            H = np.einsum("ian,iam->nm", G, DGj)
            quad = float(np.einsum("ia,ab,ib->", alpha, D, alpha))
            tr = float(np.einsum("iaa->", SDj)) - float(np.sum(Cp * H.T))
            g[j] = 0.5 * (quad - tr)
            SD.append(SDj)
            DG.append(DGj)
            CH.append(Cp @ H)

        # S⁻¹ D_b G and Cp-weighted D_a G for the cross terms
        SDG = [np.einsum("iab,ibm->iam", Sinv, DGj) for DGj in DG]
        DGC = [DGj @ Cp for DGj in DG]

        fisher = np.zeros((k, k))
        for a in range(k):
            for b in range(a, k):
                blocks = float(np.einsum("iab,iba->", SD[a], SD[b]))
                cross = float(np.sum(DGC[a] * SDG[b]))
                group = float(np.sum(CH[a] * CH[b].T))
                v = 0.5 * (blocks - 2.0 * cross + group)
                fisher[a, b] = v
                fisher[b, a] = v
        return g, fisher


def estimate(
    reduced: ReducedDensities,
    model: SecondLevelModel,
    options: Optional[EstimatorOptions] = None,
) -> Estimate:
    """Jointly estimate group parameters and log-precisions.

    Runs damped Gauss-Newton ascent on the log joint in ``h`` until the
    improvement drops below ``options.tol`` or ``options.maxit`` iterations
    have been used. Running out of iterations is not an error: the last
    iterate is returned with ``converged=False``.
    """
    if options is None:
        options = EstimatorOptions()
    problem = _Problem(reduced, model, options)
    k = model.n_components
    hP = problem.hP

    h = model.hE.astype(float).copy()
    s = problem.solve(h)
    history: List[float] = [s["J"]]
    converged = k == 0
    iterations = 0
    halvings = 0

    while not converged and iterations < int(options.maxit):
        iterations += 1
        g, fisher = problem.gradient_and_fisher(h, s)
        grad = g - hP @ (h - model.hE)
        H = fisher + hP
        step = np.linalg.solve(H + options.regularization * np.eye(k), grad)

        # Keep the step inside a trust region measured in prior s.d. of h
        norm = float(np.sqrt(max(step @ hP @ step, 0.0)))
        if norm > options.trust_radius:
            step = step * (options.trust_radius / norm)

        accepted = False
        for _ in range(int(options.max_halvings) + 1):
            h_new = h + step
            s_new = problem.solve(h_new)
            if s_new["J"] >= s["J"] - options.tol:
                accepted = True
                break
            step = 0.5 * step
            halvings += 1

        if not accepted:
            # No ascent direction within the trust region; h is at a maximum.
            converged = True
            break

        improvement = s_new["J"] - s["J"]
        h, s = h_new, s_new
        history.append(s["J"])
        if abs(improvement) < options.tol:
            converged = True

    if not converged:
        last = history[-1] - history[-2] if len(history) > 1 else float("nan")
        warn(
            f"Group estimation did not converge in {options.maxit} iterations "
            f"(last change in free energy {last:.3g}).",
            ConvergenceWarning,
        )

    if k:
        _, fisher = problem.gradient_and_fisher(h, s)
        Ch = inv_pd(fisher + hP, what="hyperparameter posterior precision", **problem.kw)
        F = s["J"] + 0.5 * (
            logdet_pd(Ch, what="hyperparameter posterior covariance", **problem.kw)
            - logdet_pd(model.hC, what="hyperprior covariance", **problem.kw)
        )
    else:
        Ch = np.zeros((0, 0))
        F = s["J"]

    return Estimate(
        Ep=s["Ep"],
        Cp=s["Cp"],
        Eh=h,
        Ch=Ch,
        Ce=s["Sigma"],
        F=float(F),
        iterations=iterations,
        converged=bool(converged),
        history=tuple(float(v) for v in history),
        stats={"halvings": halvings, "n_components": k},
    )
