"""
Input Table Loading

Reads the pipeline's input tables either from a directory of CSV files
(<table>.csv) or from the ``bronze`` schema of a DuckDB warehouse.
Identifier columns are always read as strings so leading zeros in FIPS
style codes survive.

Tables:
- entity_records     entity_id_a, entity_id_b, year, nominal_value, population
- service_areas      unit_id, entity_id, service_category, allocated_population
- price_index        month, index_value
- fiscal_calendar    jurisdiction_id, fiscal_start_month
- reforms            jurisdiction_id, reform_year, reform_type
- region_reference   region_id, total_population [, coverage_class]
- residual_areas     region_id, residual_id, entity_id [, population]   (optional)
- unit_regions       unit_id, region_id                                 (optional)
"""

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Optional

import duckdb
import pandas as pd

from countypanel.errors import StructuralError, require_columns

log = logging.getLogger("ingest")

TABLES = {
    "entity_records": {
        "required": True,
        "columns": ["entity_id_a", "entity_id_b", "year", "nominal_value", "population"],
        "id_columns": ["entity_id_a", "entity_id_b", "jurisdiction_id"],
    },
    "service_areas": {
        "required": True,
        "columns": ["unit_id", "entity_id", "service_category", "allocated_population"],
        "id_columns": ["unit_id", "entity_id", "service_category"],
    },
    "price_index": {
        "required": True,
        "columns": ["month", "index_value"],
        "id_columns": ["month"],
    },
    "fiscal_calendar": {
        "required": True,
        "columns": ["jurisdiction_id", "fiscal_start_month"],
        "id_columns": ["jurisdiction_id"],
    },
    "reforms": {
        "required": True,
        "columns": ["jurisdiction_id", "reform_year", "reform_type"],
        "id_columns": ["jurisdiction_id", "reform_type"],
    },
    "region_reference": {
        "required": True,
        "columns": ["region_id", "total_population"],
        "id_columns": ["region_id", "coverage_class"],
    },
    "residual_areas": {
        "required": False,
        "columns": ["region_id", "residual_id", "entity_id"],
        "id_columns": ["region_id", "residual_id", "entity_id"],
    },
    "unit_regions": {
        "required": False,
        "columns": ["unit_id", "region_id"],
        "id_columns": ["unit_id", "region_id"],
    },
}


@dataclass
class PanelInputs:
    entity_records: pd.DataFrame
    service_areas: pd.DataFrame
    price_index: pd.DataFrame
    fiscal_calendar: pd.DataFrame
    reforms: pd.DataFrame
    region_reference: pd.DataFrame
    residual_areas: Optional[pd.DataFrame] = None
    unit_regions: Optional[pd.DataFrame] = None

    def row_counts(self) -> Dict[str, int]:
        return {
            f.name: len(getattr(self, f.name))
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


def _validate(tables: Dict[str, Optional[pd.DataFrame]]) -> PanelInputs:
    for name, contract in TABLES.items():
        df = tables.get(name)
        if df is None:
            if contract["required"]:
                raise StructuralError(f"Required table missing: {name}", table=name)
            continue
        require_columns(df, contract["columns"], name)
        log.info(f"  {name:18s} {len(df):>10,} rows")
    return PanelInputs(**{name: tables.get(name) for name in TABLES})


def load_csv_inputs(input_dir: Path) -> PanelInputs:
    """Load <table>.csv files from ``input_dir``."""
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise StructuralError(f"Input directory not found: {input_dir}")

    log.info(f"Loading inputs from {input_dir}")
    tables: Dict[str, Optional[pd.DataFrame]] = {}
    for name, contract in TABLES.items():
        path = input_dir / f"{name}.csv"
        if not path.exists():
            tables[name] = None
            continue
        tables[name] = pd.read_csv(path, dtype={c: str for c in contract["id_columns"]})
    return _validate(tables)


def load_duckdb_inputs(duck_path: Path, schema: str = "bronze") -> PanelInputs:
    """Load input tables from ``<schema>.<table>`` in a DuckDB warehouse."""
    duck_path = Path(duck_path)
    if not duck_path.exists():
        raise StructuralError(f"DuckDB warehouse not found: {duck_path}")

    log.info(f"Loading inputs from {duck_path} ({schema} schema)")
    con = duckdb.connect(str(duck_path), read_only=True)
    try:
        present = set(
            con.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = ?", [schema]
            ).fetchdf()["table_name"]
        )
        tables: Dict[str, Optional[pd.DataFrame]] = {}
        for name, contract in TABLES.items():
            if name not in present:
                tables[name] = None
                continue
            df = con.execute(f"SELECT * FROM {schema}.{name}").fetchdf()
            for col in contract["id_columns"]:
                if col in df.columns:
                    df[col] = df[col].astype(object).where(df[col].isna(), df[col].astype(str))
            tables[name] = df
    finally:
        con.close()
    return _validate(tables)
