# tests/test_crosswalk.py
import pandas as pd
import pytest

from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import StructuralError, UnmatchedJoinError
from countypanel.transform.crosswalk import apply_crosswalk, classify_cardinality


def _pairs(rows):
    return pd.DataFrame(rows, columns=["entity_id_a", "entity_id_b"]).assign(year=2000, nominal_value=1.0)


def test_classifies_all_four_cardinalities() -> None:
    records = _pairs([
        ("A1", "B1"),  # 1:1
        ("A2", "B2"), ("A2", "B3"),  # 1:M
        ("A3", "B4"), ("A4", "B4"),  # M:1
        ("A5", "B5"), ("A5", "B6"), ("A6", "B6"),  # M:M component
    ])
    result = classify_cardinality(records)

    classes = result.pairs.set_index(["entity_id_a", "entity_id_b"])["cardinality_class"]
    assert classes[("A1", "B1")] == "1:1"
    assert classes[("A2", "B2")] == "1:M"
    assert classes[("A3", "B4")] == "M:1"
    assert classes[("A5", "B6")] == "M:M"
    assert result.class_counts["1:1"] == 1
    assert result.trusted[["entity_id_a", "entity_id_b"]].values.tolist() == [["A1", "B1"]]


def test_trusted_crosswalk_is_a_bijection() -> None:
    records = _pairs([
        ("A1", "B1"), ("A1", "B1"), ("A2", "B2"), ("A3", "B3"), ("A3", "B9"), ("A4", "B9"),
    ])
    trusted = classify_cardinality(records).trusted

    assert trusted["entity_id_a"].is_unique
    assert trusted["entity_id_b"].is_unique
    assert set(trusted["entity_id_a"]) == {"A1", "A2"}


def test_pairs_counted_across_years() -> None:
    # Same A seen with a different B in a later year is ambiguous
    records = pd.DataFrame({
        "entity_id_a": ["A1", "A1"],
        "entity_id_b": ["B1", "B2"],
        "year": [1970, 1990],
        "nominal_value": [1.0, 2.0],
    })
    result = classify_cardinality(records)
    assert result.trusted.empty
    assert result.retention_rate == 0.0


def test_retention_rate_recorded_in_diagnostics() -> None:
    records = _pairs([("A1", "B1"), ("A2", "B2"), ("A3", "B3"), ("A3", "B4")])
    diag = DiagnosticsLog()
    result = classify_cardinality(records, diag)

    assert result.retention_rate == pytest.approx(2 / 4)
    assert diag.get_metric("crosswalk", "retention_rate") == pytest.approx(0.5)
    assert diag.get("crosswalk", "cardinality_1:M") == 2


@pytest.mark.parametrize(
    "records",
    [
        pd.DataFrame(columns=["entity_id_a", "entity_id_b"]),
        pd.DataFrame({"entity_id_a": ["A1"], "year": [2000]}),
        pd.DataFrame({"entity_id_a": ["A1", "A2"], "entity_id_b": [None, None]}),
    ],
)
def test_structural_failures(records: pd.DataFrame) -> None:
    with pytest.raises(StructuralError):
        classify_cardinality(records)


def test_apply_crosswalk_resolves_single_id_records() -> None:
    records = pd.DataFrame({
        "entity_id_a": ["A1", None, "A2", None, "A3", "A3"],
        "entity_id_b": ["B1", "B1", "B2", "B2", "B3", "B4"],
        "year": [2000, 1970, 2000, 1975, 2000, 2001],
        "nominal_value": [1.0, 2.0, 3.0, 4.0, 5.0, 6.0],
    })
    diag = DiagnosticsLog()
    out = apply_crosswalk(records, classify_cardinality(records), tolerance=0.5, diagnostics=diag)

    assert out[["entity_id", "year"]].values.tolist() == [["A1", 1970], ["A1", 2000], ["A2", 1975], ["A2", 2000]]
    assert diag.get("apply_crosswalk", "cardinality_excluded") == 2
    assert diag.get("apply_crosswalk", "unmatched") == 0
    assert (out["jurisdiction_id"] == out["entity_id"].str[:2]).all()


def test_apply_crosswalk_unmatched_over_tolerance_is_fatal() -> None:
    records = pd.DataFrame({
        "entity_id_a": ["A1", None, None],
        "entity_id_b": ["B1", "B7", "B8"],
        "year": [2000, 2000, 2000],
        "nominal_value": [1.0, 1.0, 1.0],
    })
    crosswalk = classify_cardinality(records)
    with pytest.raises(UnmatchedJoinError):
        apply_crosswalk(records, crosswalk, tolerance=0.5)

    diag = DiagnosticsLog()
    out = apply_crosswalk(records, crosswalk, tolerance=0.9, diagnostics=diag)
    assert len(out) == 1
    assert diag.get("apply_crosswalk", "unmatched") == 2
