# tests/test_propagate.py
import pandas as pd
import pytest

from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import StructuralError, UnmatchedJoinError
from countypanel.transform.propagate import MembershipGraph, build_unit_regions, propagate_flags


def _flags(**columns) -> pd.DataFrame:
    df = pd.DataFrame(columns)
    df.index = pd.Index([f"E{i + 1}" for i in range(len(df))], name="entity_id")
    return df


def _graph(edges, residuals=None) -> MembershipGraph:
    assignment = pd.DataFrame(edges, columns=["entity_id", "unit_id"])
    unit_regions = build_unit_regions(assignment["unit_id"], region_prefix_len=2)
    return MembershipGraph.from_assignment(assignment, unit_regions, residuals)


def test_one_failing_unit_disqualifies_region() -> None:
    """Region of three units, one of which maps to a failing entity."""
    flags = _flags(baseline=[True, True, False])
    graph = _graph([("E1", "R1U1"), ("E2", "R1U2"), ("E3", "R1U3")])

    unit_flags, region_flags = propagate_flags(flags, graph)

    assert unit_flags["baseline"].tolist() == [True, True, False]
    assert region_flags.loc["R1", "baseline"] == False  # noqa: E712


def test_multiple_flag_columns_in_one_pass() -> None:
    flags = _flags(early=[True, True, False], late=[True, True, True])
    graph = _graph([("E1", "R1U1"), ("E2", "R1U2"), ("E3", "R2U1")])

    _, region_flags = propagate_flags(flags, graph)

    assert region_flags.to_dict("index") == {
        "R1": {"early": True, "late": True},
        "R2": {"early": False, "late": True},
    }


def test_unit_served_by_two_entities_needs_both() -> None:
    flags = _flags(baseline=[True, False])
    graph = _graph([("E1", "R1U1"), ("E2", "R1U1")])

    unit_flags, _ = propagate_flags(flags, graph)
    assert not unit_flags.loc["R1U1", "baseline"]


def test_residual_areas_are_region_constituents() -> None:
    flags = _flags(baseline=[True, False])
    residuals = pd.DataFrame({"region_id": ["R1"], "residual_id": ["X"], "entity_id": ["E2"]})
    graph = _graph([("E1", "R1U1")], residuals=residuals)

    unit_flags, region_flags = propagate_flags(flags, graph)

    assert "residual:R1:X" in unit_flags.index
    assert not region_flags.loc["R1", "baseline"]


def test_region_without_units_is_false() -> None:
    flags = _flags(baseline=[True])
    graph = _graph([("E1", "R1U1")])
    diag = DiagnosticsLog()

    _, region_flags = propagate_flags(flags, graph, regions=pd.Index(["R1", "R9"]), diagnostics=diag)

    assert region_flags["baseline"].to_dict() == {"R1": True, "R9": False}
    assert diag.get("propagate_regions", "region_without_units") == 1


def test_unknown_entity_treated_as_failing() -> None:
    flags = _flags(baseline=[True])
    graph = _graph([("E1", "R1U1"), ("E7", "R1U2")])

    _, region_flags = propagate_flags(flags, graph, tolerance=0.5)
    assert not region_flags.loc["R1", "baseline"]

    with pytest.raises(UnmatchedJoinError):
        propagate_flags(flags, graph, tolerance=0.1)


def test_unit_regions_from_membership_table() -> None:
    table = pd.DataFrame({"unit_id": ["A", "B"], "region_id": ["north", "south"]})
    out = build_unit_regions(pd.Series(["B", "A", "C"]), table)

    assert out.values.tolist()[:2] == [["A", "north"], ["B", "south"]]
    assert pd.isna(out.loc[2, "region_id"])


def test_residual_ids_reused_across_regions() -> None:
    """Residual "1" of R1 and residual "1" of R2 are different areas."""
    flags = _flags(baseline=[True, False])
    residuals = pd.DataFrame({"region_id": ["R1", "R2"], "residual_id": ["1", "1"], "entity_id": ["E1", "E2"]})
    graph = _graph([("E1", "R3U1")], residuals=residuals)
    diag = DiagnosticsLog()

    _, region_flags = propagate_flags(flags, graph, regions=pd.Index(["R1", "R2"]), diagnostics=diag)

    assert region_flags["baseline"].to_dict() == {"R1": True, "R2": False, "R3": True}
    assert diag.get("propagate_regions", "region_without_units") == 0


def test_repeated_residual_key_rejected() -> None:
    residuals = pd.DataFrame({"region_id": ["R1", "R1"], "residual_id": ["1", "1"], "entity_id": ["E1", "E2"]})
    with pytest.raises(StructuralError):
        _graph([("E1", "R1U1")], residuals=residuals)
