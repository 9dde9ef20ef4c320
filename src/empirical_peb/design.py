from __future__ import annotations

from dataclasses import dataclass, field, replace
import math
from typing import Any, List, Mapping, Optional, Sequence, Tuple
from warnings import warn

import numpy as np

from .errors import UnknownComponentPolicyWarning
from .reduction import ReducedDensities
from .selection import Selection
from .units import FieldLayout
from .util import as_square, inv_pd, symmetrize

__all__ = [
    "COMPONENT_POLICIES",
    "EstimatorOptions",
    "PEBConfig",
    "SecondLevelModel",
    "build_second_level",
    "precision_components",
]

COMPONENT_POLICIES = ("single", "fields", "all", "none")


@dataclass(frozen=True)
class EstimatorOptions:
    """Numerical settings for the rank reducer and the hierarchical estimator."""

    maxit: int = 64
    tol: float = 1e-4
    # Gauss-Newton steps are limited to this many prior s.d. of the log-precisions
    trust_radius: float = 4.0
    max_halvings: int = 8
    # Diagonal jitter (relative to the mean diagonal) for non-PD repairs
    regularization: float = 1e-8
    shrinkage: float = 16.0
    rcond: float = 1e-6
    # Weight of the prior precision kept in the random-effects precision
    precision_floor: float = math.exp(-16)

    def __post_init__(self) -> None:
        if int(self.maxit) < 0:
            raise ValueError("maxit must be >= 0.")
        if not self.tol > 0:
            raise ValueError("tol must be > 0.")
        if not self.trust_radius > 0:
            raise ValueError("trust_radius must be > 0.")
        if int(self.max_halvings) < 0:
            raise ValueError("max_halvings must be >= 0.")
        if self.regularization < 0 or self.shrinkage < 0 or self.precision_floor < 0:
            raise ValueError("regularization, shrinkage and precision_floor must be >= 0.")
        if not 0 < self.rcond < 1:
            raise ValueError("rcond must be in (0, 1).")


@dataclass(frozen=True)
class PEBConfig:
    """Second-level configuration; builder methods return modified copies.

    X : between-unit design matrix (Ns, Nx); default: a column of ones
    W : within-unit weights, named (Np, Np) or reduced (r, r); default: identity
    alpha, beta : scale the default third-level (PC/alpha) and second-level
        (PC/beta) prior covariances; beta=0 uses the sample variance of the
        unit posterior means instead
    bE, bC, pC : explicit priors (vectors, matrices or per-field mappings)
    hE, hC : prior mean/covariance of the log-precisions, per component
        before or after zero components are dropped
    components : "single", "fields", "all", "none" or a sequence of binary masks
    """

    X: Optional[Any] = None
    W: Optional[Any] = None
    alpha: float = 1.0
    beta: float = 16.0
    bE: Optional[Any] = None
    bC: Optional[Any] = None
    pC: Optional[Any] = None
    hE: Any = 0.0
    hC: Any = 1.0 / 16.0
    covariate_names: Optional[Tuple[str, ...]] = None
    components: Any = "single"
    options: EstimatorOptions = field(default_factory=EstimatorOptions)

    def __post_init__(self) -> None:
        if not self.alpha > 0:
            raise ValueError("alpha must be > 0.")
        if self.beta < 0:
            raise ValueError("beta must be >= 0 (0 selects the sample-variance prior).")

    # ---- builders (pure; return new config) ----
    def with_design(
        self, X: Any, covariate_names: Optional[Sequence[str]] = None
    ) -> "PEBConfig":
        names = None if covariate_names is None else tuple(str(n) for n in covariate_names)
        return replace(self, X=X, covariate_names=names)

    def with_weights(self, W: Any) -> "PEBConfig":
        return replace(self, W=W)

    def with_components(self, components: Any) -> "PEBConfig":
        return replace(self, components=components)

    def with_priors(
        self,
        *,
        bE: Optional[Any] = None,
        bC: Optional[Any] = None,
        pC: Optional[Any] = None,
        alpha: Optional[float] = None,
        beta: Optional[float] = None,
    ) -> "PEBConfig":
        changes = {}
        for k, v in (("bE", bE), ("bC", bC), ("pC", pC), ("alpha", alpha), ("beta", beta)):
            if v is not None:
                changes[k] = v
        return replace(self, **changes)

    def with_hyperpriors(self, *, hE: Optional[Any] = None, hC: Optional[Any] = None) -> "PEBConfig":
        changes = {}
        if hE is not None:
            changes["hE"] = hE
        if hC is not None:
            changes["hC"] = hC
        return replace(self, **changes)

    def with_options(self, **options: Any) -> "PEBConfig":
        return replace(self, options=replace(self.options, **options))


@dataclass(frozen=True)
class SecondLevelModel:
    """Fully resolved group model; everything but pC lives in the reduced space."""

    X: np.ndarray  # (Ns, Nx)
    W: np.ndarray  # (r, r)
    Q: np.ndarray  # (k, r, r)
    bE: np.ndarray  # (r,)
    bC: np.ndarray  # (r, r)
    pC: np.ndarray  # (Np, Np) second-level prior covariance, named space
    pQ: np.ndarray  # (r, r) reduced prior precision of random effects
    hE: np.ndarray  # (k,)
    hC: np.ndarray  # (k, k)
    U: np.ndarray  # (Np, r)
    covariate_names: Tuple[str, ...]
    component_names: Tuple[str, ...]
    policy: str

    @property
    def n_covariates(self) -> int:
        return int(self.X.shape[1])

    @property
    def n_components(self) -> int:
        return int(self.Q.shape[0])


def _full_size(n: Optional[int], layout: Optional[FieldLayout]) -> Optional[int]:
    if n is not None:
        return int(n)
    return layout.size if layout is not None else None


def _selected_vector(
    value: Any, q: np.ndarray, n: Optional[int], layout: Optional[FieldLayout], what: str
) -> np.ndarray:
    """Selected entries of a prior vector.

    Mappings and vectors spanning every parameter (length ``n``) are in layout
    order and indexed by ``q``; other vectors of length ``Np`` are taken as
    already being in selection order.
    """
    Np = int(q.shape[0])
    if isinstance(value, Mapping):
        if layout is None:
            layout = FieldLayout.from_arrays(value)
        v = layout.flatten(value)
        if int(np.max(q)) >= v.shape[0]:
            raise ValueError(f"{what} covers {v.shape[0]} parameters; selection needs {int(np.max(q)) + 1}.")
        return v[q]
    v = np.asarray(value, dtype=float).reshape(-1)
    if v.shape[0] == 1 and Np != 1:
        return np.full((Np,), float(v[0]))
    if n is not None and v.shape[0] == n:
        return v[q]
    if v.shape[0] == Np:
        return v
    if n is None and v.shape[0] > Np and int(np.max(q)) < v.shape[0]:
        return v[q]
    raise ValueError(f"{what} has {v.shape[0]} entries; expected {Np} selected parameters.")


def _selected_matrix(
    value: Any, q: np.ndarray, n: Optional[int], layout: Optional[FieldLayout], what: str
) -> np.ndarray:
    Np = int(q.shape[0])
    if isinstance(value, Mapping) or np.ndim(value) <= 1:
        if np.ndim(value) == 0 and not isinstance(value, Mapping):
            return float(value) * np.eye(Np)
        return np.diag(_selected_vector(value, q, n, layout, what))
    m = as_square(value, what=what)
    if n is not None and m.shape[0] == n:
        return symmetrize(m[q[:, None], q[None, :]])
    if m.shape[0] == Np:
        return symmetrize(m)
    if n is None and m.shape[0] > Np and int(np.max(q)) < m.shape[0]:
        return symmetrize(m[q[:, None], q[None, :]])
    raise ValueError(f"{what} has shape {m.shape}; expected {(Np, Np)}.")


def _unknown_policy(components: Any) -> None:
    warn(
        f"Unknown covariance component policy {components!r}; expected one of "
        f"{COMPONENT_POLICIES} or a list of masks. Using no components.",
        UnknownComponentPolicyWarning,
    )


def _as_masks(
    components: Any, selection: Selection, n: Optional[int] = None
) -> Optional[Tuple[List[np.ndarray], List[str], str]]:
    """Translate a component policy into binary masks over the selected parameters.

    Manual masks spanning every parameter (length ``n``) are indexed by the
    selection; masks of length ``Np`` are in selection order.
    """
    Np = selection.size
    q = np.asarray(selection.indices, dtype=int)
    if isinstance(components, str):
        policy = components.lower()
        if policy == "all":
            masks = []
            for j in range(Np):
                m = np.zeros((Np,), dtype=bool)
                m[j] = True
                masks.append(m)
            return masks, list(selection.labels), "all"
        if policy == "fields":
            masks = []
            names = []
            for name, positions in selection.groups:
                m = np.zeros((Np,), dtype=bool)
                m[list(positions)] = True
                masks.append(m)
                names.append(name)
            return masks, names, "fields"
        return None

    masks = []
    for k, comp in enumerate(components):
        m = np.asarray(comp).reshape(-1)
        if n is not None and m.shape[0] == n:
            m = m[q]
        elif m.shape[0] != Np:
            if n is None and m.shape[0] > Np and int(np.max(q)) < m.shape[0]:
                m = m[q]
            else:
                raise ValueError(
                    f"Component mask {k} has {m.shape[0]} entries; expected {Np}."
                )
        masks.append(m.astype(bool))
    return masks, [f"Component {k + 1}" for k in range(len(masks))], "manual"


def precision_components(
    components: Any,
    selection: Selection,
    U: np.ndarray,
    pQ: np.ndarray,
    n: Optional[int] = None,
) -> Tuple[np.ndarray, Tuple[str, ...], str, np.ndarray]:
    """Build the second-level precision components in the reduced space.

    Returns ``(Q, names, policy, kept)`` with ``Q`` of shape (k, r, r).
    Components that vanish on the reduced basis are dropped; ``kept`` is a
    boolean mask over the candidate components marking the survivors.
    """
    r = int(U.shape[1])
    empty = np.zeros((0, r, r))
    none = np.zeros((0,), dtype=bool)

    if isinstance(components, str):
        policy = components.lower()
        if policy == "single":
            return pQ[None, :, :].copy(), ("single",), "single", np.ones((1,), dtype=bool)
        if policy == "none":
            return empty, (), "none", none
        if policy not in COMPONENT_POLICIES:
            _unknown_policy(components)
            return empty, (), "none", none
    else:
        try:
            components = list(components)
        except TypeError:
            _unknown_policy(components)
            return empty, (), "none", none

    resolved = _as_masks(components, selection, n)
    assert resolved is not None
    masks, names, policy = resolved

    # Prior precision in the named space (zero on the discarded directions)
    P = U @ pQ @ U.T
    scale = float(np.max(np.abs(pQ))) if pQ.size else 1.0
    Q = []
    kept_names = []
    kept = np.zeros((len(masks),), dtype=bool)
    for j, (mask, name) in enumerate(zip(masks, names)):
        D = np.diag(mask.astype(float))
        Qk = symmetrize(U.T @ (D @ P @ D) @ U)
        if np.all(np.abs(Qk) <= 1e-12 * scale):
            continue
        Q.append(Qk)
        kept_names.append(name)
        kept[j] = True
    if not Q:
        return empty, (), policy, kept
    return np.stack(Q), tuple(kept_names), policy, kept


def build_second_level(
    config: PEBConfig,
    reduced: ReducedDensities,
    selection: Selection,
    layout: Optional[FieldLayout] = None,
    n_params: Optional[int] = None,
) -> SecondLevelModel:
    """Resolve a configuration against the reduced densities of one hierarchy.

    ``n_params`` is the full (unselected) parameter count of the units; explicit
    priors and masks of that length are read in layout order.
    """
    opts = config.options
    n = _full_size(n_params, layout)
    Ns = reduced.n_units
    U = reduced.U
    Np, r = U.shape
    q = np.asarray(selection.indices, dtype=int)

    # ---- design -------------------------------------------------------------
    if Ns == 1:
        X = np.ones((1, 1))
    elif config.X is None:
        X = np.ones((Ns, 1))
    else:
        X = np.asarray(config.X, dtype=float)
        if X.ndim == 1:
            X = X[:, None]
        if X.ndim != 2 or X.shape[0] != Ns:
            raise ValueError(
                f"Design matrix has shape {X.shape}; expected {Ns} rows (one per unit)."
            )
    Nx = int(X.shape[1])

    names = config.covariate_names
    if names is None:
        names = tuple(f"Covariate {k + 1}" for k in range(Nx))
    elif Ns == 1:
        names = tuple(names[:1]) or ("Covariate 1",)
    if len(names) != Nx:
        raise ValueError(f"Got {len(names)} covariate names for {Nx} design columns.")

    if config.W is None:
        W = np.eye(r)
    else:
        Wf = np.asarray(config.W, dtype=float)
        if Wf.shape == (Np, Np):
            W = U.T @ Wf @ U
        elif Wf.shape == (r, r):
            W = Wf
        else:
            raise ValueError(f"W has shape {Wf.shape}; expected {(Np, Np)} or {(r, r)}.")

    # ---- priors ---------------------------------------------------------------
    if config.bE is None:
        bE_named = reduced.PE
    else:
        bE_named = _selected_vector(config.bE, q, n, layout, "bE")

    if config.bC is None:
        bC_named = reduced.PC / float(config.alpha)
    else:
        bC_named = _selected_matrix(config.bC, q, n, layout, "bC")

    if config.pC is not None:
        pC_named = _selected_matrix(config.pC, q, n, layout, "pC")
    elif config.beta:
        pC_named = reduced.PC / float(config.beta)
    else:
        if Ns < 2:
            raise ValueError("beta=0 needs at least two units to estimate a sample variance.")
        pC_named = np.diag(np.var(reduced.qE_selected, axis=0, ddof=1))

    pQ = inv_pd(
        U.T @ pC_named @ U,
        regularization=opts.regularization,
        what="second-level prior covariance",
    )

    components = "none" if Ns == 1 else config.components
    Q, component_names, policy, kept = precision_components(components, selection, U, pQ, n)
    k = int(Q.shape[0])
    # hyperpriors may be given per candidate component, before dropping
    n_candidates = int(kept.shape[0])

    hE = np.asarray(config.hE, dtype=float).reshape(-1)
    if hE.shape[0] == 1:
        hE = np.full((k,), float(hE[0]))
    elif hE.shape[0] == n_candidates:
        hE = hE[kept]
    elif hE.shape[0] != k:
        raise ValueError(
            f"hE has {hE.shape[0]} entries for {n_candidates} precision components."
        )
    hC = np.asarray(config.hC, dtype=float)
    if hC.ndim == 0 or hC.size == 1:
        hC = float(hC.reshape(-1)[0]) * np.eye(k)
    else:
        hC = as_square(hC, what="hC")
        if hC.shape == (n_candidates, n_candidates):
            hC = hC[np.ix_(kept, kept)]
        elif hC.shape != (k, k):
            raise ValueError(
                f"hC has shape {hC.shape} for {n_candidates} precision components."
            )

    return SecondLevelModel(
        X=X,
        W=W,
        Q=Q,
        bE=U.T @ bE_named,
        bC=symmetrize(U.T @ bC_named @ U),
        pC=symmetrize(pC_named),
        pQ=pQ,
        hE=hE,
        hC=hC,
        U=U,
        covariate_names=tuple(str(n) for n in names),
        component_names=component_names,
        policy=policy,
    )
