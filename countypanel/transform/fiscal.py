"""
Fiscal-Year Price Normalization

Converts nominal values to fixed-base real dollars using each
jurisdiction's own fiscal calendar.

Fiscal year Y for a jurisdiction starting in month s covers the 12 months
ending with month s-1 of calendar year Y (s = 7 → Jul Y-1 .. Jun Y;
s = 1 → Jan Y .. Dec Y). The monthly index is averaged over that window
only when all 12 months are present; a partial window leaves the
jurisdiction-year unconverted rather than averaging what is there.

    factor     = base_index / fiscal_year_average
    real_value = nominal_value * factor

base_reference = "fiscal"   → base_index is the jurisdiction's own fiscal
                               average for the base year, so base-year
                               values convert to themselves.
base_reference = "calendar" → base_index is the calendar-year average of
                               the base year, shared by all jurisdictions.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from countypanel.config import PanelConfig
from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import StructuralError, require_columns
from countypanel.transform.crosswalk import normalize_ids

log = logging.getLogger("fiscal")

MONTHS_PER_YEAR = 12


def monthly_index(price_index: pd.DataFrame) -> pd.DataFrame:
    """Parse the monthly series into (year, month, index_value) rows."""
    require_columns(price_index, ["month", "index_value"], "price_index")
    if price_index.empty:
        raise StructuralError("price_index is empty", table="price_index")

    stamp = pd.to_datetime(price_index["month"].astype(str), errors="coerce")
    if stamp.isna().any():
        bad = price_index.loc[stamp.isna(), "month"].head(5).tolist()
        raise StructuralError(f"price_index has unparsable months: {bad}", table="price_index")

    df = pd.DataFrame({
        "year": stamp.dt.year.astype(int),
        "month": stamp.dt.month.astype(int),
        "index_value": pd.to_numeric(price_index["index_value"], errors="coerce").values,
    })
    dupes = df.duplicated(["year", "month"])
    if dupes.any():
        raise StructuralError(f"price_index has {int(dupes.sum())} duplicated month(s)", table="price_index")

    # Non-positive index values are unusable
    df.loc[df["index_value"] <= 0, "index_value"] = np.nan
    return df.sort_values(["year", "month"], kind="mergesort").reset_index(drop=True)


def fiscal_averages(monthly: pd.DataFrame, start_month: int) -> pd.DataFrame:
    """Average index per fiscal year for one start month (NaN where the window is incomplete)."""
    if not 1 <= start_month <= 12:
        raise ValueError(f"fiscal start month out of range: {start_month}")

    fy = monthly["year"] + (monthly["month"] >= start_month).astype(int) if start_month > 1 else monthly["year"]
    grouped = monthly.assign(fiscal_year=fy).groupby("fiscal_year")["index_value"]
    out = pd.DataFrame({
        "n_months": grouped.count(),
        "fy_average": grouped.mean(),
    }).reset_index()
    out["window_ok"] = out["n_months"] == MONTHS_PER_YEAR
    out.loc[~out["window_ok"], "fy_average"] = np.nan
    out["fiscal_start_month"] = start_month
    return out


def fiscal_year_index(
    price_index: pd.DataFrame,
    calendar: pd.DataFrame,
    base_year: int,
    base_reference: str = "fiscal",
) -> pd.DataFrame:
    """
    Conversion factors per fiscal start month and fiscal year.

    Columns: fiscal_start_month, fiscal_year, n_months, fy_average,
    window_ok, base_index, price_factor.
    """
    monthly = monthly_index(price_index)
    starts = sorted(int(s) for s in calendar["fiscal_start_month"].dropna().unique())

    frames = []
    for start in starts:
        averages = fiscal_averages(monthly, start)
        if base_reference == "fiscal":
            base = averages.loc[averages["fiscal_year"] == base_year, "fy_average"]
            base_index = float(base.iloc[0]) if len(base) else np.nan
        else:
            base_index = float(fiscal_averages(monthly, 1).set_index("fiscal_year")["fy_average"].get(base_year, np.nan))
        if np.isnan(base_index):
            log.warning(f"No complete base-year ({base_year}) window for start month {start}")
        averages["base_index"] = base_index
        frames.append(averages)

    if not frames:
        return pd.DataFrame(columns=[
            "fiscal_start_month", "fiscal_year", "n_months", "fy_average", "window_ok", "base_index", "price_factor",
        ])

    out = pd.concat(frames, ignore_index=True)
    out["price_factor"] = out["base_index"] / out["fy_average"]
    cols = ["fiscal_start_month", "fiscal_year", "n_months", "fy_average", "window_ok", "base_index", "price_factor"]
    return out[cols]


def normalize_to_real(
    records: pd.DataFrame,
    price_index: pd.DataFrame,
    calendar: pd.DataFrame,
    config: PanelConfig,
    diagnostics: Optional[DiagnosticsLog] = None,
) -> pd.DataFrame:
    """Attach fiscal_start_month, price_factor, fiscal_window_ok and real_value to each record."""
    diagnostics = diagnostics or DiagnosticsLog()
    require_columns(records, ["entity_id", "jurisdiction_id", "year", "nominal_value"], "entity_records")
    require_columns(calendar, ["jurisdiction_id", "fiscal_start_month"], "fiscal_calendar")

    cal = pd.DataFrame({
        "jurisdiction_id": normalize_ids(calendar["jurisdiction_id"]),
        "fiscal_start_month": pd.to_numeric(calendar["fiscal_start_month"], errors="coerce"),
    }).dropna()
    if cal["jurisdiction_id"].duplicated().any():
        dupes = cal.loc[cal["jurisdiction_id"].duplicated(), "jurisdiction_id"].tolist()
        raise StructuralError(f"fiscal_calendar lists jurisdictions more than once: {dupes[:5]}", table="fiscal_calendar")
    cal["fiscal_start_month"] = cal["fiscal_start_month"].astype(int)

    df = records.copy()
    df["jurisdiction_id"] = normalize_ids(df["jurisdiction_id"])
    df = df.merge(cal, on="jurisdiction_id", how="left")

    no_calendar = df["fiscal_start_month"].isna()
    if config.default_fiscal_start_month is not None:
        diagnostics.count("fiscal", "default_fiscal_calendar", int(no_calendar.sum()))
        df.loc[no_calendar, "fiscal_start_month"] = config.default_fiscal_start_month
    else:
        diagnostics.check_unmatched("fiscal", int(no_calendar.sum()), len(df), config.unmatched_tolerance)

    used_starts = pd.DataFrame({"fiscal_start_month": df["fiscal_start_month"].dropna().unique()})
    factors = fiscal_year_index(price_index, used_starts, config.base_year, config.base_reference)

    df["fiscal_start_month"] = df["fiscal_start_month"].astype("Int64")
    factors["fiscal_start_month"] = factors["fiscal_start_month"].astype("Int64")
    factors = factors.rename(columns={"fiscal_year": "year"})[["fiscal_start_month", "year", "price_factor"]]
    df = df.merge(factors, on=["fiscal_start_month", "year"], how="left")

    df["fiscal_window_ok"] = df["price_factor"].notna()
    df["real_value"] = df["nominal_value"] * df["price_factor"]

    failed = df["nominal_value"].notna() & ~df["fiscal_window_ok"] & df["fiscal_start_month"].notna()
    diagnostics.count("fiscal", "insufficient_fiscal_window", int(failed.sum()))
    if failed.any():
        sample = df.loc[failed, ["jurisdiction_id", "year"]].drop_duplicates().head(5)
        log.warning(
            f"{int(failed.sum())} record(s) without a complete fiscal window, e.g. "
            f"{list(sample.itertuples(index=False, name=None))}"
        )

    df = df.sort_values(["entity_id", "year"], kind="mergesort").reset_index(drop=True)
    diagnostics.rows("fiscal", len(records), int(df["real_value"].notna().sum()))
    return df
