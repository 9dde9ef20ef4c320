import numpy as np
import pytest

from empirical_peb import FieldLayout, Unit, select_parameters


def _unit():
    pE = {"A": np.zeros((2, 2)), "B": np.zeros(2), "C": 0.0}
    return Unit.create(pE, np.eye(7), np.zeros(7), np.eye(7))


def test_select_fields_preserves_order_and_labels():
    sel = select_parameters(_unit(), ["B", "A"])

    assert list(sel.indices) == [4, 5, 0, 1, 2, 3]
    assert sel.labels == ("B[0]", "B[1]", "A[0,0]", "A[0,1]", "A[1,0]", "A[1,1]")
    assert sel.groups == (("B", (0, 1)), ("A", (2, 3, 4, 5)))
    assert len(sel.labels) == sel.size


def test_select_all_token_and_none():
    u = _unit()
    assert list(select_parameters(u, "all").indices) == list(range(7))
    assert list(select_parameters(u, None).indices) == list(range(7))
    assert select_parameters(u, "C").labels == ("C",)


def test_explicit_indices_drop_duplicates():
    sel = select_parameters(_unit(), [6, 0, 6, 1, 0])
    assert list(sel.indices) == [6, 0, 1]
    assert sel.labels == ("C", "A[0,0]", "A[0,1]")


def test_unstructured_unit_gets_synthetic_labels():
    u = Unit.create(np.zeros(4), np.eye(4), np.zeros(4), np.eye(4))
    sel = select_parameters(u, np.array([3, 1]))

    assert sel.labels == ("P3", "P1")
    assert sel.groups == (("P3", (0,)), ("P1", (1,)))


def test_invalid_requests():
    u = Unit.create(np.zeros(4), np.eye(4), np.zeros(4), np.eye(4))
    with pytest.raises(KeyError, match="no field layout"):
        select_parameters(u, ["A"])
    with pytest.raises(IndexError, match="out of range"):
        select_parameters(u, [4])
    with pytest.raises(TypeError):
        select_parameters(u, [0.5])
    with pytest.raises(KeyError, match="Unknown field"):
        select_parameters(_unit(), ["Z"])


def test_peb_shaped_layout_gives_composite_labels():
    layout = FieldLayout.from_names(["Mean", "Age"], ["A[0]", "B"])
    u = Unit.create(np.zeros(4), np.eye(4), np.zeros(4), np.eye(4), layout=layout)
    sel = select_parameters(u)

    assert sel.labels == ("Mean: A[0]", "Mean: B", "Age: A[0]", "Age: B")
    assert list(select_parameters(u, "Age").indices) == [2, 3]
