from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
import os
from typing import Any, List, Literal, Optional, Sequence, Tuple

import numpy as np

from .design import PEBConfig, SecondLevelModel, build_second_level
from .estimator import Estimate, estimate
from .inference import reduce_evidence
from .reduction import ReducedDensities, reduce_rank
from .results import ColumnFailure, PEBResult
from .selection import Selection, select_parameters
from .sources import Converter, UnitSource, from_record, resolve_units
from .units import Densities, Unit, extract_densities
from .util import is_sequence, symmetrize

__all__ = ["invert", "invoke", "invoke_columns"]


def _empirical_prior(
    i: int,
    densities: Densities,
    selection: Selection,
    model: SecondLevelModel,
    est: Estimate,
) -> Tuple[np.ndarray, np.ndarray]:
    """Prior for unit i implied by the group fit, in the unit's full space.

    The selected block is replaced by the group prediction and the random
    effects covariance; directions outside the reduced basis, and parameters
    that were not selected, keep the unit's own prior.
    """
    q = selection.indices
    U = model.U
    A = np.kron(model.X[i][None, :], model.W)
    perp = np.eye(U.shape[0]) - U @ U.T

    pE = densities.pE[i]
    pC = densities.pC[i]
    rE = pE.copy()
    rE[q] = perp @ pE[q] + U @ (A @ est.Ep)

    rC = pC.copy()
    rC[q, :] = 0.0
    rC[:, q] = 0.0
    rC[q[:, None], q[None, :]] = U @ est.Ce @ U.T + perp @ pC[q[:, None], q[None, :]] @ perp
    return rE, symmetrize(rC)


def _update_units(
    units: Sequence[Any],
    densities: Densities,
    selection: Selection,
    model: SecondLevelModel,
    est: Estimate,
    regularization: float,
) -> Tuple[List[Unit], np.ndarray]:
    updated = []
    evidence = np.empty((densities.n_units,))
    for i, u in enumerate(units):
        rE, rC = _empirical_prior(i, densities, selection, model, est)
        dF, sE, sC = reduce_evidence(
            densities.qE[i],
            densities.qC[i],
            densities.pE[i],
            densities.pC[i],
            rE,
            rC,
            regularization=regularization,
        )
        evidence[i] = densities.F[i] + dF
        changes = dict(
            prior_mean=rE,
            prior_cov=rC,
            post_mean=sE,
            post_cov=sC,
            evidence=float(evidence[i]),
        )
        if isinstance(u, Unit):
            updated.append(replace(u, **changes))
        else:
            updated.append(
                Unit(
                    layout=getattr(u, "layout", None),
                    name=densities.names[i],
                    **changes,
                )
            )
    return updated, evidence


def invert(
    units: Sequence[Any],
    config: Optional[PEBConfig] = None,
    fields: Any = None,
) -> Tuple[PEBResult, List[Unit]]:
    """Invert one hierarchy of unit-like objects.

    Returns the group result and the units re-estimated under their
    empirical (group-informed) priors.
    """
    units = list(units)
    if config is None:
        config = PEBConfig()
    opts = config.options

    densities = extract_densities(units)
    selection = select_parameters(units[0], fields)
    reduced: ReducedDensities = reduce_rank(
        densities,
        selection,
        shrinkage=opts.shrinkage,
        rcond=opts.rcond,
        regularization=opts.regularization,
    )
    model = build_second_level(
        config, reduced, selection, densities.layout, n_params=densities.n_params
    )
    est = estimate(reduced, model, opts)

    # Back to the named parameter space for reporting
    U = model.U
    T = np.kron(np.eye(model.n_covariates), U)
    updated, unit_evidence = _update_units(
        units, densities, selection, model, est, opts.regularization
    )

    result = PEBResult(
        unit_labels=densities.names,
        parameter_labels=selection.labels,
        parameter_indices=selection.indices,
        covariate_names=model.covariate_names,
        Ep=T @ est.Ep,
        Cp=symmetrize(T @ est.Cp @ T.T),
        Eh=est.Eh,
        Ch=est.Ch,
        Ce=symmetrize(U @ est.Ce @ U.T),
        F=est.F,
        model=model,
        iterations=est.iterations,
        converged=est.converged,
        unit_evidence=unit_evidence,
        stats={
            "rank": int(U.shape[1]),
            "history": est.history,
            **est.stats,
        },
    )
    return result, updated


def _is_grid(units: Any) -> bool:
    if isinstance(units, np.ndarray):
        return units.ndim == 2 and units.dtype == object
    return isinstance(units, list) and bool(units) and all(is_sequence(row) for row in units)


def _rows(grid: Any) -> List[List[Any]]:
    if isinstance(grid, np.ndarray):
        if grid.ndim != 2:
            raise ValueError(f"Unit grid must be 2-D, got shape {grid.shape}.")
        return [list(row) for row in grid]
    rows = [list(row) for row in grid]
    if not rows:
        raise ValueError("Empty unit grid.")
    width = len(rows[0])
    for i, row in enumerate(rows):
        if len(row) != width:
            raise ValueError(f"Row {i} has {len(row)} columns; expected {width}.")
    return rows


def invoke_columns(
    grid: Any,
    config: Optional[PEBConfig] = None,
    fields: Any = None,
    *,
    source: Optional[UnitSource] = None,
    converter: Optional[Converter] = from_record,
    parallel: Optional[Literal[None, "auto"]] = None,
) -> Tuple[List[Any], List[List[Any]]]:
    """Invert each column of a (units x models) grid as its own hierarchy.

    Returns one PEBResult per column (or a ColumnFailure if that column
    raised) and the grid of updated units. Failed columns keep their
    original entries.
    """
    rows = _rows(grid)
    n_cols = len(rows[0])

    def _column(j: int) -> Tuple[Any, List[Any]]:
        column = [row[j] for row in rows]
        try:
            units = resolve_units(column, source=source, converter=converter)
            return invert(units, config, fields)
        except Exception as e:
            return ColumnFailure(column=j, error=e), column

    outcomes: List[Any] = [None] * n_cols
    if parallel == "auto" and n_cols > 1:
        workers = min(n_cols, os.cpu_count() or 1)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(_column, j): j for j in range(n_cols)}
            for future in as_completed(futures):
                outcomes[futures[future]] = future.result()
    elif parallel is None or parallel == "auto":
        for j in range(n_cols):
            outcomes[j] = _column(j)
    else:
        raise ValueError(f"parallel must be None or 'auto', got {parallel!r}.")

    results = [o[0] for o in outcomes]
    updated = [[outcomes[j][1][i] for j in range(n_cols)] for i in range(len(rows))]
    return results, updated


def invoke(
    units: Any,
    config: Optional[PEBConfig] = None,
    fields: Any = None,
    *,
    source: Optional[UnitSource] = None,
    converter: Optional[Converter] = from_record,
    parallel: Optional[Literal[None, "auto"]] = None,
) -> Tuple[Any, Any]:
    """Run parametric empirical Bayes on first-level units.

    units : sequence or 2-D grid
        A flat sequence is one hierarchy. A list of rows (or a 2-D object
        array) with units as rows and models as columns inverts every column
        independently (see ``invoke_columns``).
    config : PEBConfig, optional
        Second-level configuration; defaults to a group mean with a single
        precision component.
    fields : None, "all", field name(s) or integer indices
        Parameters taken to the second level.
    source : mapping or callable, optional
        Resolves identifiers in ``units`` to unit objects.
    converter : callable, optional
        Converts records that are not unit-like (default: ``from_record``).
    parallel : None or "auto"
        "auto" inverts grid columns on a thread pool.

    Returns
    -------
    (PEBResult, list of Unit) for a flat sequence, or
    (list of PEBResult | ColumnFailure, grid of units) for a grid.
    """
    if _is_grid(units):
        return invoke_columns(
            units, config, fields, source=source, converter=converter, parallel=parallel
        )
    resolved = resolve_units(list(units), source=source, converter=converter)
    return invert(resolved, config, fields)
