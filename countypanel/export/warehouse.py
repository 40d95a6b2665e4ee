"""
Panel Export

Persists the finished panel and its diagnostics:
- gold.county_panel              (DuckDB)
- metadata.stage_diagnostics     (DuckDB)
- <output>.csv                   (written to a temp file, then moved into place)

Nothing here runs until every stage and the QA gate have passed, so a
failed run never leaves a partial panel behind.
"""

import logging
import os
from pathlib import Path

import duckdb
import pandas as pd

log = logging.getLogger("export")

PANEL_TABLE = "gold.county_panel"
DIAGNOSTICS_TABLE = "metadata.stage_diagnostics"


def write_to_duckdb(df: pd.DataFrame, table_name: str, duck_path: Path) -> None:
    """Replace ``schema.table`` in the warehouse with ``df``."""
    schema = table_name.split(".")[0]
    duck_path = Path(duck_path)
    duck_path.parent.mkdir(parents=True, exist_ok=True)

    con = duckdb.connect(str(duck_path))
    try:
        con.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}")
        con.register("df_tmp", df)
        con.execute(f"CREATE OR REPLACE TABLE {table_name} AS SELECT * FROM df_tmp")
        con.unregister("df_tmp")
        log.info(f"✓ Wrote {len(df):,} rows to {table_name}")
    finally:
        con.close()


def read_from_duckdb(table_name: str, duck_path: Path) -> pd.DataFrame:
    con = duckdb.connect(str(duck_path), read_only=True)
    try:
        return con.execute(f"SELECT * FROM {table_name}").fetchdf()
    finally:
        con.close()


def write_csv_atomic(df: pd.DataFrame, path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    df.to_csv(tmp, index=False, lineterminator="\n")
    os.replace(tmp, path)
    log.info(f"✓ Saved CSV → {path}")


def export_panel(panel: pd.DataFrame, diagnostics: pd.DataFrame, duck_path: Path, csv_path: Path = None) -> None:
    write_to_duckdb(panel, PANEL_TABLE, duck_path)
    write_to_duckdb(diagnostics, DIAGNOSTICS_TABLE, duck_path)
    if csv_path is not None:
        write_csv_atomic(panel, csv_path)
