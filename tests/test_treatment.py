# tests/test_treatment.py
import pandas as pd
import pytest

from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import StructuralError
from countypanel.transform.treatment import merge_treatment


@pytest.fixture
def panel() -> pd.DataFrame:
    return pd.DataFrame({
        "region_id": ["01001", "01001", "02003"],
        "year": [2019, 2020, 2019],
        "real_value": [1.0, 2.0, 3.0],
    })


def test_reform_columns_joined_by_jurisdiction(panel: pd.DataFrame) -> None:
    reforms = pd.DataFrame({"jurisdiction_id": ["01"], "reform_year": [2020], "reform_type": ["equalization"]})
    diag = DiagnosticsLog()
    out = merge_treatment(panel, reforms, diagnostics=diag)

    assert len(out) == len(panel)
    assert out["reform_year"].dtype == "Int64"
    assert out.loc[out["region_id"] == "01001", "reform_type"].tolist() == ["equalization", "equalization"]
    assert out.loc[2, "reform_year"] is pd.NA
    assert diag.get("treatment", "never_reformed_region") == 1


def test_duplicate_jurisdiction_rejected(panel: pd.DataFrame) -> None:
    reforms = pd.DataFrame({
        "jurisdiction_id": ["01", "01"],
        "reform_year": [1990, 2000],
        "reform_type": ["a", "b"],
    })
    with pytest.raises(StructuralError):
        merge_treatment(panel, reforms)


def test_missing_reform_columns(panel: pd.DataFrame) -> None:
    with pytest.raises(StructuralError):
        merge_treatment(panel, pd.DataFrame({"jurisdiction_id": ["01"]}))
