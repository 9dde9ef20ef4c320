from __future__ import annotations

from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

from .errors import LoadError, NotFoundError
from .units import FieldLayout, Unit, UnitLike

__all__ = ["UnitSource", "Converter", "from_record", "resolve_units"]

# identifier -> unit; a Mapping is looked up, a callable is called
UnitSource = Union[Mapping[Any, Any], Callable[[Any], Any]]
Converter = Callable[[Any], Any]


def _get(record: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in record:
            return record[k]
    raise KeyError(f"Record has none of the keys {keys}.")


def from_record(record: Any) -> Unit:
    """Convert a fitted-model record into a Unit.

    Records are mappings with the posterior under ``Ep``/``Cp`` (or
    ``post_mean``/``post_cov``), the prior under ``pE``/``pC`` (top level or
    inside a nested ``M`` mapping), and the free energy under ``F``. Means may
    themselves be ``{field: array}`` mappings, which define the field layout.
    """
    if not isinstance(record, Mapping):
        raise TypeError(f"Cannot convert {type(record).__name__} to a unit.")
    prior_src = record.get("M", record)
    if not isinstance(prior_src, Mapping):
        raise TypeError("Record 'M' entry must be a mapping.")

    pE = _get(prior_src, "pE", "prior_mean")
    pC = _get(prior_src, "pC", "prior_cov")
    Ep = _get(record, "Ep", "post_mean")
    Cp = _get(record, "Cp", "post_cov")
    F = record.get("F", record.get("evidence", 0.0))

    layout: Optional[FieldLayout] = None
    if isinstance(pE, Mapping):
        layout = FieldLayout.from_arrays(pE)
    return Unit.create(pE, pC, Ep, Cp, F, layout=layout, name=record.get("name"))


def _load(identifier: Any, source: UnitSource) -> Any:
    if isinstance(source, Mapping):
        try:
            return source[identifier]
        except KeyError:
            raise NotFoundError(f"No unit for identifier {identifier!r}.") from None
    try:
        return source(identifier)
    except (NotFoundError, LoadError):
        raise
    except (FileNotFoundError, KeyError) as e:
        raise NotFoundError(f"No unit for identifier {identifier!r}: {e}") from e
    except Exception as e:
        raise LoadError(f"Failed to load unit {identifier!r}: {e}") from e


def resolve_units(
    items: Sequence[Any],
    *,
    source: Optional[UnitSource] = None,
    converter: Optional[Converter] = from_record,
) -> List[Any]:
    """Turn identifiers and alternative records into unit-like objects.

    - unit-like objects pass through unchanged
    - with a ``source``, any other item is treated as an identifier and loaded
    - items that still are not unit-like are offered to ``converter``; a
      converter that rejects an item (TypeError/KeyError/ValueError) leaves it
      unchanged, and extraction reports it
    """
    out = []
    for item in items:
        if not isinstance(item, UnitLike) and source is not None and not isinstance(item, Mapping):
            item = _load(item, source)
        if not isinstance(item, UnitLike) and converter is not None:
            try:
                item = converter(item)
            except (TypeError, KeyError, ValueError):
                pass
        out.append(item)
    return out
