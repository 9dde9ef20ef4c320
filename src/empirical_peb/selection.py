from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .units import FieldLayout

__all__ = ["Selection", "select_parameters", "parameter_label"]


@dataclass(frozen=True)
class Selection:
    """Parameters analysed at the second level.

    indices : ndarray of int, shape (Np,)
        Positions in the flattened first-level parameter vector.
    labels : tuple of str
        One display label per selected parameter.
    groups : tuple of (name, positions)
        Partition of ``range(Np)`` used by the ``"fields"`` component policy.
    """

    indices: np.ndarray
    labels: Tuple[str, ...]
    groups: Tuple[Tuple[str, Tuple[int, ...]], ...]

    @property
    def size(self) -> int:
        return int(self.indices.shape[0])


def parameter_label(layout: Optional[FieldLayout], index: int) -> str:
    if layout is None:
        return f"P{int(index)}"
    return layout.label(int(index))


def _resolve(unit: Any, fields: Any, n: int) -> List[int]:
    layout: Optional[FieldLayout] = getattr(unit, "layout", None)

    if fields is None:
        return list(range(n))

    if isinstance(fields, str):
        fields = [fields]

    items = list(np.asarray(fields).reshape(-1)) if isinstance(fields, np.ndarray) else list(fields)
    if not items:
        raise ValueError("Empty parameter selection.")

    if all(isinstance(f, str) for f in items):
        if "all" in items:
            return list(range(n))
        if layout is None:
            raise KeyError(
                f"Cannot resolve fields {items!r}: the first unit has no field layout. "
                "Pass explicit indices instead."
            )
        out: List[int] = []
        for name in items:
            out.extend(int(i) for i in layout.indices(name))
        return out

    out = []
    for f in items:
        if isinstance(f, (bool, np.bool_)) or not isinstance(f, (int, np.integer)):
            raise TypeError(
                "Parameter selection must be field names, 'all', or integer indices; "
                f"got {f!r}."
            )
        i = int(f)
        if i < 0 or i >= n:
            raise IndexError(f"Parameter index {i} out of range for {n} parameters.")
        out.append(i)
    return out


def select_parameters(unit: Any, fields: Any = None) -> Selection:
    """Resolve a field/index request against a representative unit.

    ``fields`` is None or "all" (every parameter), a field name, a list of
    field names, or a list/array of integer indices. Repeated indices are
    dropped, keeping the first occurrence.
    """
    n = int(np.asarray(unit.prior_mean).reshape(-1).shape[0])
    layout: Optional[FieldLayout] = getattr(unit, "layout", None)

    seen = set()
    q: List[int] = []
    for i in _resolve(unit, fields, n):
        if i not in seen:
            seen.add(i)
            q.append(i)

    labels = tuple(parameter_label(layout, i) for i in q)

    groups: Dict[str, List[int]] = {}
    for pos, i in enumerate(q):
        if layout is None:
            key = f"P{i}"
        else:
            key = layout.field_of(i)[0].name
        groups.setdefault(key, []).append(pos)

    return Selection(
        indices=np.asarray(q, dtype=int),
        labels=labels,
        groups=tuple((k, tuple(v)) for k, v in groups.items()),
    )
