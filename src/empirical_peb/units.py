from __future__ import annotations

from dataclasses import dataclass
from typing import (
    Any,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

import numpy as np

from .errors import ParameterisationMismatchError
from .util import symmetrize

__all__ = [
    "FieldSpec",
    "FieldLayout",
    "Unit",
    "UnitLike",
    "Densities",
    "dense_covariance",
    "extract_densities",
]


@dataclass(frozen=True)
class FieldSpec:
    name: str
    shape: Tuple[int, ...]
    # Optional per-element names (PEB-shaped layouts use parameter labels here)
    element_names: Optional[Tuple[str, ...]] = None

    @property
    def size(self) -> int:
        n = 1
        for s in self.shape:
            n *= int(s)
        return int(n)


@dataclass(frozen=True)
class FieldLayout:
    """Layout of named fields inside a flattened parameter vector.

    Fields are stored in order and flattened row-major, so field ``k`` occupies
    a contiguous index range following field ``k-1``.
    """

    fields: Tuple[FieldSpec, ...]

    @staticmethod
    def from_arrays(arrays: Mapping[str, Any]) -> "FieldLayout":
        """Build a layout from a ``{name: array}`` mapping (insertion order)."""
        specs = []
        for name, value in arrays.items():
            specs.append(FieldSpec(name=str(name), shape=tuple(np.shape(value))))
        return FieldLayout(fields=tuple(specs))

    @staticmethod
    def from_names(
        fields: Sequence[str], element_names: Sequence[str]
    ) -> "FieldLayout":
        """Layout of equally sized fields sharing the same element names."""
        elems = tuple(str(e) for e in element_names)
        return FieldLayout(
            fields=tuple(
                FieldSpec(name=str(f), shape=(len(elems),), element_names=elems)
                for f in fields
            )
        )

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    @property
    def size(self) -> int:
        return int(sum(f.size for f in self.fields))

    def _offsets(self) -> Tuple[int, ...]:
        out = []
        pos = 0
        for f in self.fields:
            out.append(pos)
            pos += f.size
        return tuple(out)

    def indices(self, name: str) -> np.ndarray:
        """Index range of a field in the flattened vector ("all" = every index)."""
        if name == "all":
            return np.arange(self.size)
        for f, start in zip(self.fields, self._offsets()):
            if f.name == name:
                return np.arange(start, start + f.size)
        raise KeyError(f"Unknown field {name!r}. Available: {self.names}")

    def field_of(self, index: int) -> Tuple[FieldSpec, int]:
        """Return the field containing ``index`` and the offset inside it."""
        index = int(index)
        for f, start in zip(self.fields, self._offsets()):
            if start <= index < start + f.size:
                return f, index - start
        raise IndexError(f"Index {index} outside layout of size {self.size}.")

    def label(self, index: int) -> str:
        f, offset = self.field_of(index)
        if f.element_names is not None:
            return f"{f.name}: {f.element_names[offset]}"
        if f.shape == ():
            return f.name
        sub = np.unravel_index(offset, f.shape)
        return f"{f.name}[{','.join(str(int(s)) for s in sub)}]"

    def flatten(self, values: Mapping[str, Any]) -> np.ndarray:
        """Vectorise a ``{name: array}`` mapping in layout order."""
        missing = [f.name for f in self.fields if f.name not in values]
        if missing:
            raise KeyError(f"Missing fields: {missing}")
        parts = []
        for f in self.fields:
            a = np.asarray(values[f.name], dtype=float)
            if a.shape != f.shape:
                a = np.broadcast_to(a, f.shape)
            parts.append(a.reshape(-1))
        if not parts:
            return np.zeros((0,))
        return np.concatenate(parts)


@runtime_checkable
class UnitLike(Protocol):
    """Anything carrying a Gaussian prior/posterior summary and an evidence.

    First-level fits, ``Unit`` records and ``PEBResult`` objects all satisfy
    this protocol, which is what lets a group result be re-entered as a unit.
    """

    @property
    def prior_mean(self) -> np.ndarray: ...

    @property
    def prior_cov(self) -> np.ndarray: ...

    @property
    def post_mean(self) -> np.ndarray: ...

    @property
    def post_cov(self) -> np.ndarray: ...

    @property
    def evidence(self) -> float: ...


def dense_covariance(
    cov: Any, n: int, layout: Optional[FieldLayout] = None, *, what: str = "covariance"
) -> np.ndarray:
    """Resolve a covariance given as a matrix, variances or per-field variances.

    - (n, n) array: used as-is (symmetrised)
    - (n,) array or scalar: diagonal
    - mapping {field: variances}: flattened through ``layout`` into a diagonal
    """
    if isinstance(cov, Mapping):
        if layout is None:
            layout = FieldLayout.from_arrays(cov)
        return np.diag(layout.flatten(cov))
    a = np.asarray(cov, dtype=float)
    if a.ndim == 0:
        return float(a) * np.eye(n)
    if a.ndim == 1:
        if a.shape[0] != n:
            raise ValueError(f"{what}: expected {n} variances, got {a.shape[0]}.")
        return np.diag(a)
    if a.shape != (n, n):
        raise ValueError(f"{what}: expected shape {(n, n)}, got {a.shape}.")
    return symmetrize(a)


@dataclass(frozen=True)
class Unit:
    """A first-level model summarised by its Gaussian prior and posterior."""

    prior_mean: np.ndarray
    prior_cov: np.ndarray
    post_mean: np.ndarray
    post_cov: np.ndarray
    evidence: float = 0.0
    layout: Optional[FieldLayout] = None
    name: Optional[str] = None

    @staticmethod
    def create(
        prior_mean: Any,
        prior_cov: Any,
        post_mean: Any,
        post_cov: Any,
        evidence: float = 0.0,
        *,
        layout: Optional[FieldLayout] = None,
        name: Optional[str] = None,
    ) -> "Unit":
        """Validate inputs and resolve structured means/covariances.

        Means may be flat vectors or ``{field: array}`` mappings (which define
        the layout when none is given). Covariances may be dense matrices,
        variance vectors, scalars or ``{field: variances}`` mappings.
        """
        if isinstance(prior_mean, Mapping):
            if layout is None:
                layout = FieldLayout.from_arrays(prior_mean)
            pE = layout.flatten(prior_mean)
        else:
            pE = np.asarray(prior_mean, dtype=float).reshape(-1)
        n = int(pE.shape[0])
        if layout is not None and layout.size != n:
            raise ValueError(f"Layout describes {layout.size} parameters, prior mean has {n}.")

        if isinstance(post_mean, Mapping):
            if layout is None:
                raise ValueError("Structured post_mean requires a layout or structured prior_mean.")
            qE = layout.flatten(post_mean)
        else:
            qE = np.asarray(post_mean, dtype=float).reshape(-1)
        if qE.shape[0] != n:
            raise ValueError(f"post_mean has {qE.shape[0]} parameters, prior_mean has {n}.")

        pC = dense_covariance(prior_cov, n, layout, what="prior_cov")
        qC = dense_covariance(post_cov, n, layout, what="post_cov")
        return Unit(
            prior_mean=pE,
            prior_cov=pC,
            post_mean=qE,
            post_cov=qC,
            evidence=float(evidence),
            layout=layout,
            name=name,
        )

    @property
    def size(self) -> int:
        return int(np.asarray(self.prior_mean).shape[0])


@dataclass(frozen=True)
class Densities:
    """Stacked prior/posterior summaries of Ns units with n parameters."""

    pE: np.ndarray  # (Ns, n)
    pC: np.ndarray  # (Ns, n, n)
    qE: np.ndarray  # (Ns, n)
    qC: np.ndarray  # (Ns, n, n)
    F: np.ndarray  # (Ns,)
    names: Tuple[str, ...] = ()
    layout: Optional[FieldLayout] = None

    @property
    def n_units(self) -> int:
        return int(self.pE.shape[0])

    @property
    def n_params(self) -> int:
        return int(self.pE.shape[1])


def _unit_name(unit: Any, i: int) -> str:
    name = getattr(unit, "name", None)
    return str(name) if name else f"Unit {i + 1}"


def extract_densities(units: Sequence[Any]) -> Densities:
    """Collect prior/posterior densities and evidences from a list of units.

    Every unit must have the same number of parameters as the first one.
    """
    units = list(units)
    if not units:
        raise ValueError("At least one unit is required.")

    n = None
    pE, pC, qE, qC, F, names = [], [], [], [], [], []
    for i, u in enumerate(units):
        if not isinstance(u, UnitLike):
            raise TypeError(
                f"{_unit_name(u, i)} ({type(u).__name__}) does not provide "
                "prior_mean/prior_cov/post_mean/post_cov/evidence."
            )
        layout = getattr(u, "layout", None)
        e_prior = np.asarray(u.prior_mean, dtype=float).reshape(-1)
        k = int(e_prior.shape[0])
        if n is None:
            n = k
        elif k != n:
            raise ParameterisationMismatchError(
                f"{_unit_name(u, i)} (index {i}) has {k} parameters; "
                f"{_unit_name(units[0], 0)} has {n}."
            )
        e_post = np.asarray(u.post_mean, dtype=float).reshape(-1)
        if e_post.shape[0] != n:
            raise ParameterisationMismatchError(
                f"{_unit_name(u, i)} (index {i}) has a posterior mean of length "
                f"{e_post.shape[0]}; expected {n}."
            )
        pE.append(e_prior)
        qE.append(e_post)
        pC.append(dense_covariance(u.prior_cov, n, layout, what=f"{_unit_name(u, i)} prior_cov"))
        qC.append(dense_covariance(u.post_cov, n, layout, what=f"{_unit_name(u, i)} post_cov"))
        F.append(float(u.evidence))
        names.append(_unit_name(u, i))

    return Densities(
        pE=np.stack(pE),
        pC=np.stack(pC),
        qE=np.stack(qE),
        qC=np.stack(qC),
        F=np.asarray(F, dtype=float),
        names=tuple(names),
        layout=getattr(units[0], "layout", None),
    )
