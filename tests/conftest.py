# tests/conftest.py
import pandas as pd
import pytest

from countypanel.config import ExclusionRules, PanelConfig
from countypanel.ingest.loaders import PanelInputs


def monthly_prices(start: str = "2017-01", end: str = "2021-12", value: float = 100.0) -> pd.DataFrame:
    months = pd.period_range(start, end, freq="M").astype(str)
    return pd.DataFrame({"month": months, "index_value": value})


def make_entity_records() -> pd.DataFrame:
    rows = []

    def add(a, b, values):
        for year, v in values.items():
            rows.append({"entity_id_a": a, "entity_id_b": b, "year": year, "nominal_value": v, "population": 1000})

    add("0100001", "B1", {2018: 10.0, 2019: 10.0, 2020: 10.0, 2021: 10.0})
    # 2020 missing: filled from 2019/2021
    add("0100002", "B2", {2018: 20.0, 2019: 20.0, 2021: 40.0})
    # No 2018/2019 report: fails the baseline
    add("0100003", "B3", {2020: 50.0, 2021: 50.0})
    add("0200001", "B4", {2018: 5.0, 2019: 5.0, 2020: 5.0, 2021: 5.0})
    add("0200002", "B5", {2018: 15.0, 2019: 15.0, 2020: 15.0, 2021: 15.0})
    # One A reported under two B IDs (1:M): excluded from the crosswalk
    add("0100009", "B9", {2018: 99.0})
    add("0100009", "B10", {2019: 99.0})
    return pd.DataFrame(rows)


def make_service_areas() -> pd.DataFrame:
    return pd.DataFrame([
        {"unit_id": "01001000100", "entity_id": "0100001", "service_category": "unified", "allocated_population": 100},
        {"unit_id": "01001000200", "entity_id": "0100002", "service_category": "unified", "allocated_population": 100},
        {"unit_id": "01001990000", "entity_id": "0100001", "service_category": "unified", "allocated_population": 5},
        {"unit_id": "01003000100", "entity_id": "0100003", "service_category": "unified", "allocated_population": 50},
        {"unit_id": "02003000100", "entity_id": "0200001", "service_category": "elementary", "allocated_population": 60},
        {"unit_id": "02003000100", "entity_id": "0200002", "service_category": "secondary", "allocated_population": 60},
    ])


@pytest.fixture
def panel_inputs() -> PanelInputs:
    return PanelInputs(
        entity_records=make_entity_records(),
        service_areas=make_service_areas(),
        price_index=monthly_prices(),
        fiscal_calendar=pd.DataFrame({"jurisdiction_id": ["01", "02"], "fiscal_start_month": [7, 1]}),
        reforms=pd.DataFrame({"jurisdiction_id": ["01"], "reform_year": [2020], "reform_type": ["equalization"]}),
        region_reference=pd.DataFrame({
            "region_id": ["01001", "01003", "02001", "02003"],
            "total_population": [200, 80, 40, 60],
        }),
        residual_areas=pd.DataFrame({
            "region_id": ["01003", "02001"],
            "residual_id": ["R1", "R2"],
            "entity_id": ["0100001", "0200001"],
        }),
    )


@pytest.fixture
def panel_config(tmp_path) -> PanelConfig:
    return PanelConfig(
        baseline_sets={"baseline": (2018, 2019), "baseline_late": (2020, 2021)},
        max_gap=3,
        base_year=2020,
        exclusions=ExclusionRules(ranges=(("990000", "999999"),)),
        duck_path=tmp_path / "warehouse.duckdb",
        log_dir=tmp_path / "logs",
    )
