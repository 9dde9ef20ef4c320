"""empirical_peb public API."""
from .design import EstimatorOptions, PEBConfig, SecondLevelModel, build_second_level
from .estimator import Estimate, estimate
from .inference import reduce_evidence
from .peb import invert, invoke, invoke_columns
from .plotting import plot_peb
from .reduction import ReducedDensities, reduce_rank
from .results import ColumnFailure, GroupParameter, PEBResult
from .selection import Selection, select_parameters
from .sources import from_record, resolve_units
from .units import FieldLayout, Unit, UnitLike, extract_densities
from . import errors

__all__ = [
    "ColumnFailure",
    "Estimate",
    "EstimatorOptions",
    "FieldLayout",
    "GroupParameter",
    "PEBConfig",
    "PEBResult",
    "ReducedDensities",
    "SecondLevelModel",
    "Selection",
    "Unit",
    "UnitLike",
    "build_second_level",
    "errors",
    "estimate",
    "extract_densities",
    "from_record",
    "invert",
    "invoke",
    "invoke_columns",
    "plot_peb",
    "reduce_evidence",
    "reduce_rank",
    "resolve_units",
    "select_parameters",
]
