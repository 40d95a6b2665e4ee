# tests/test_panel_qa.py
import numpy as np
import pandas as pd

from countypanel.manifest.vintage import panel_hash
from countypanel.qa.panel_qa import PANEL_COLUMNS, PanelQA


def _panel(**overrides) -> pd.DataFrame:
    df = pd.DataFrame({
        "region_id": ["01001", "01001", "02003"],
        "year": [2019, 2020, 2019],
        "real_value": [1.0, 2.0, 3.0],
        "population": [10.0, 10.0, 5.0],
        "quality_flag": [True, True, False],
        "is_interpolated": [False, True, False],
        "reform_year": pd.array([2020, 2020, None], dtype="Int64"),
        "reform_type": ["equalization", "equalization", None],
    })
    for col, values in overrides.items():
        df[col] = values
    return df


def test_clean_panel_passes() -> None:
    qa = PanelQA(_panel(), pd.DataFrame({"region_id": ["01001", "02003"]}), verbose=False)
    assert qa.run_all_checks()
    assert qa.summary()["status"] == "PASSED"


def test_schema_mismatch_stops_early() -> None:
    qa = PanelQA(_panel().drop(columns="reform_type"), verbose=False)
    assert not qa.run_all_checks()
    assert len(qa.issues) == 1


def test_duplicate_keys_and_bad_values() -> None:
    panel = _panel(year=[2019, 2019, 2019], real_value=[1.0, np.inf, 3.0], population=[10.0, 0.0, 5.0])
    qa = PanelQA(panel, verbose=False)

    assert not qa.run_all_checks()
    assert any("duplicated" in i for i in qa.issues)
    assert any("non-finite" in i for i in qa.issues)
    assert any("non-positive population" in i for i in qa.issues)


def test_null_flag_is_critical() -> None:
    panel = _panel(quality_flag=[True, None, False])
    qa = PanelQA(panel, verbose=False)
    assert not qa.run_all_checks()


def test_unknown_region_is_critical_absent_region_is_warning() -> None:
    reference = pd.DataFrame({"region_id": ["01001", "09009"]})
    qa = PanelQA(_panel(), reference, verbose=False)

    assert not qa.run_all_checks()
    assert any("not in region_reference" in i for i in qa.issues)
    assert any("absent from panel" in w for w in qa.warnings)


def test_write_summary(tmp_path) -> None:
    qa = PanelQA(_panel(), verbose=False)
    qa.run_all_checks()
    qa.write_summary(tmp_path / "qa" / "summary.json")
    assert (tmp_path / "qa" / "summary.json").exists()


def test_panel_hash_tracks_content() -> None:
    panel = _panel()
    assert list(panel.columns) == PANEL_COLUMNS
    assert panel_hash(panel) == panel_hash(panel.copy())
    assert panel_hash(panel) != panel_hash(_panel(real_value=[1.0, 2.0, 3.5]))
    assert len(panel_hash(panel)) == 16
