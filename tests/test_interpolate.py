# tests/test_interpolate.py
import numpy as np
import pandas as pd
import pytest

from countypanel.diagnostics import DiagnosticsLog
from countypanel.transform.interpolate import bounded_fills, fill_series, interpolate_bounded_gaps


def _series(entity: str, values: dict) -> pd.DataFrame:
    return pd.DataFrame({
        "entity_id": entity,
        "jurisdiction_id": entity[:2],
        "year": list(values),
        "real_value": list(values.values()),
    })


def test_gap_of_exactly_max_is_filled_linearly() -> None:
    out = interpolate_bounded_gaps(_series("E1", {2000: 10.0, 2003: 40.0}), max_gap=3)

    assert out["year"].tolist() == [2000, 2001, 2002, 2003]
    assert out["real_value"].tolist() == pytest.approx([10.0, 20.0, 30.0, 40.0])
    assert out["is_interpolated"].tolist() == [False, True, True, False]
    assert out["jurisdiction_id"].tolist() == ["E1"] * 4


def test_gap_beyond_max_stays_missing() -> None:
    """Observations at 2000 and 2005 with max_gap=3: nothing is interpolated."""
    diag = DiagnosticsLog()
    out = interpolate_bounded_gaps(_series("E1", {2000: 1.0, 2005: 2.0}), max_gap=3, diagnostics=diag)

    assert out["year"].tolist() == [2000, 2005]
    assert not out["is_interpolated"].any()
    assert diag.get("interpolate", "gap_too_large") == 4
    assert diag.get("interpolate", "interpolated_year") == 0


def test_no_extrapolation_past_the_ends() -> None:
    records = pd.concat([
        _series("E1", {2001: 5.0, 2002: 5.0}),
        pd.DataFrame({"entity_id": ["E1", "E1"], "jurisdiction_id": ["E1", "E1"], "year": [2000, 2003],
                      "real_value": [np.nan, np.nan]}),
    ], ignore_index=True)
    out = interpolate_bounded_gaps(records, max_gap=3)

    assert out["year"].tolist() == [2000, 2001, 2002, 2003]
    assert out.loc[out["year"].isin([2000, 2003]), "real_value"].isna().all()
    assert not out["is_interpolated"].any()


def test_observed_values_never_overwritten() -> None:
    records = _series("E1", {2000: 1.0, 2001: 100.0, 2002: 3.0})
    out = interpolate_bounded_gaps(records, max_gap=3)

    assert out["real_value"].tolist() == [1.0, 100.0, 3.0]
    assert not out["is_interpolated"].any()


def test_existing_empty_row_is_filled_in_place() -> None:
    records = _series("E1", {2000: 0.0, 2001: np.nan, 2002: 4.0})
    records["nominal_value"] = [0.0, 7.0, 4.0]
    out = interpolate_bounded_gaps(records, max_gap=3)

    assert len(out) == 3
    row = out.set_index("year").loc[2001]
    assert row["real_value"] == pytest.approx(2.0)
    assert row["nominal_value"] == 7.0
    assert bool(row["is_interpolated"])


def test_non_missing_years_are_a_superset() -> None:
    records = pd.concat([
        _series("E1", {1990: 1.0, 1992: 3.0, 2000: 5.0}),
        _series("E2", {1990: 2.0, 1991: 2.0}),
    ], ignore_index=True)
    out = interpolate_bounded_gaps(records, max_gap=2)

    before = set(map(tuple, records[["entity_id", "year"]].values.tolist()))
    after = set(map(tuple, out.loc[out["real_value"].notna(), ["entity_id", "year"]].values.tolist()))
    assert before <= after
    assert after - before == {("E1", 1991)}


def test_duplicate_entity_years_rejected() -> None:
    records = pd.concat([_series("E1", {2000: 1.0}), _series("E1", {2000: 2.0})], ignore_index=True)
    with pytest.raises(ValueError):
        interpolate_bounded_gaps(records)


def test_bounded_fills_empty_when_nothing_qualifies() -> None:
    fills = bounded_fills(_series("E1", {2000: 1.0, 2001: 2.0}), max_gap=3, value_col="real_value")
    assert fills.empty
    assert list(fills.columns) == ["entity_id", "year", "real_value"]


def test_fill_series_only_fills_short_interior_runs() -> None:
    series = pd.Series([0.0, 2.0, 5.0], index=[2000, 2002, 2010])
    filled = fill_series(series, max_gap=3)

    assert filled.index.tolist() == list(range(2000, 2011))
    assert filled[2001] == pytest.approx(1.0)
    assert filled.loc[2003:2009].isna().all()
    assert filled[[2000, 2002, 2010]].tolist() == [0.0, 2.0, 5.0]
