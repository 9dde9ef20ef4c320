from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from .design import SecondLevelModel
from .units import FieldLayout
from .util import normal_cdf, uncertainty_to_string

try:
    import uncertainties
except Exception:  # pragma: no cover - optional at import time
    uncertainties = None

__all__ = ["GroupParameter", "PEBResult", "ColumnFailure"]


@dataclass(frozen=True)
class GroupParameter:
    name: str
    value: float
    stderr: float

    @property
    def probability(self) -> float:
        """Posterior probability that the parameter has the sign of its mean."""
        if self.stderr <= 0:
            return 1.0 if self.value != 0 else 0.5
        return normal_cdf(abs(self.value) / self.stderr)

    @property
    def u(self) -> Any:
        if uncertainties is None:
            raise ImportError("Install 'uncertainties' to use .u")
        return uncertainties.ufloat(self.value, self.stderr)


@dataclass(frozen=True)
class PEBResult:
    """Group-level result of one hierarchy.

    Group parameters are stored covariate-major in the named parameter space:
    ``Ep[k*Np + j]`` is the effect of covariate ``k`` on parameter ``j``.
    A PEBResult is itself a unit (prior = third-level prior, posterior =
    ``Ep, Cp``, evidence = ``F``) and can be inverted again at a higher level.
    """

    unit_labels: Tuple[str, ...]
    parameter_labels: Tuple[str, ...]
    parameter_indices: np.ndarray
    covariate_names: Tuple[str, ...]
    Ep: np.ndarray  # (Nx*Np,)
    Cp: np.ndarray  # (Nx*Np, Nx*Np)
    Eh: np.ndarray  # (k,)
    Ch: np.ndarray  # (k, k)
    Ce: np.ndarray  # (Np, Np)
    F: float
    model: SecondLevelModel
    iterations: int = 0
    converged: bool = True
    unit_evidence: Optional[np.ndarray] = None
    name: Optional[str] = None
    stats: Dict[str, Any] = field(default_factory=dict)

    # ---- unit interface (for recursion) ----
    @property
    def prior_mean(self) -> np.ndarray:
        Np = len(self.parameter_labels)
        out = np.zeros((len(self.covariate_names) * Np,))
        out[:Np] = self.model.U @ self.model.bE
        return out

    @property
    def prior_cov(self) -> np.ndarray:
        U = self.model.U
        return np.kron(np.eye(len(self.covariate_names)), U @ self.model.bC @ U.T)

    @property
    def post_mean(self) -> np.ndarray:
        return self.Ep

    @property
    def post_cov(self) -> np.ndarray:
        return self.Cp

    @property
    def evidence(self) -> float:
        return float(self.F)

    @property
    def layout(self) -> FieldLayout:
        return FieldLayout.from_names(self.covariate_names, self.parameter_labels)

    # ---- access ----
    @property
    def group_labels(self) -> Tuple[str, ...]:
        layout = self.layout
        return tuple(layout.label(i) for i in range(layout.size))

    @property
    def stderr(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.Cp), 0.0, np.inf))

    def __getitem__(self, key: Any) -> GroupParameter:
        """Group parameter by label (``"<covariate>: <parameter>"``) or position."""
        labels = self.group_labels
        if isinstance(key, str):
            try:
                i = labels.index(key)
            except ValueError:
                raise KeyError(f"Unknown group parameter {key!r}.") from None
        else:
            i = int(key)
        return GroupParameter(
            name=labels[i], value=float(self.Ep[i]), stderr=float(self.stderr[i])
        )

    def effects(self, covariate: Any = 0) -> Tuple[np.ndarray, np.ndarray]:
        """(mean, covariance) of one covariate's effect on every parameter."""
        if isinstance(covariate, str):
            covariate = self.covariate_names.index(covariate)
        Np = len(self.parameter_labels)
        sl = slice(int(covariate) * Np, (int(covariate) + 1) * Np)
        return self.Ep[sl], self.Cp[sl, sl]

    @property
    def u(self) -> Any:
        """Group parameters as correlated ``uncertainties`` values."""
        if uncertainties is None:
            raise ImportError("Install 'uncertainties' to use .u")
        return uncertainties.correlated_values(
            [float(v) for v in self.Ep], np.asarray(self.Cp, dtype=float)
        )

    def summary(self, digits: int | str = "auto", labels: Optional[Sequence[str]] = None) -> str:
        """Return a human-readable summary string for the group result."""
        lines = [
            f"PEBResult(units={len(self.unit_labels)}, parameters={len(self.parameter_labels)}, "
            f"covariates={len(self.covariate_names)}, components={self.model.policy!r})",
            f"  {'F':>24s}: {self.F:.6g}  (iterations={self.iterations})",
        ]
        names = self.group_labels if labels is None else tuple(labels)
        for name in names:
            p = self[name]
            val = uncertainty_to_string(p.value, p.stderr, precision=digits)
            lines.append(f"  {name:>24s}: {val}  Pp={p.probability:.3f}")
        for cname, h, v in zip(self.model.component_names, self.Eh, np.diag(self.Ch)):
            lines.append(
                f"  {'log-precision ' + cname:>24s}: "
                f"{uncertainty_to_string(float(h), float(np.sqrt(max(v, 0.0))), precision=digits)}"
            )
        return "\n".join(lines)


@dataclass(frozen=True)
class ColumnFailure:
    """Marker for a hierarchy (column) whose inversion raised an error."""

    column: int
    error: BaseException

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        return f"column {self.column}: {type(self.error).__name__}: {self.error}"
