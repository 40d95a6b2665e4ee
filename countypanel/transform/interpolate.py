"""
Gap-Bounded Interpolation

Fills missing years of each entity's series ONLY between two observed
years, and only when those observations are at most ``max_gap`` years
apart. Wider gaps stay missing. Nothing is extrapolated before the first
or after the last observation, and observed values are never replaced.

Examples (max_gap = 3):
- observed 2000, 2003 → 2001, 2002 filled linearly
- observed 2000, 2005 → 2001-2004 left missing
"""

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import require_columns

log = logging.getLogger("interpolate")


def fill_series(series: pd.Series, max_gap: int) -> pd.Series:
    """
    Linearly fill one year-indexed series over consecutive years.

    Only holes inside a run of at most ``max_gap`` years between two
    observations are filled; every other missing year stays NaN.
    """
    years = pd.RangeIndex(int(series.index.min()), int(series.index.max()) + 1)
    full = series.reindex(years)
    filled = full.interpolate(method="linear", limit_area="inside")

    known = pd.Series(np.where(full.notna(), years, np.nan), index=years)
    span = known.bfill() - known.ffill()
    return filled.where(full.notna() | (span <= max_gap))


def bounded_fills(
    observed: pd.DataFrame,
    max_gap: int,
    value_col: str,
    group_col: str = "entity_id",
) -> pd.DataFrame:
    """
    Linear fills for every qualifying gap in ``observed`` (non-missing rows only).

    Returns rows of (group_col, year, value_col) for the filled years.
    """
    obs = observed[[group_col, "year", value_col]].sort_values([group_col, "year"], kind="mergesort")
    gap = obs.groupby(group_col, sort=False)["year"].shift(-1) - obs["year"]
    targets = obs.loc[(gap > 1) & (gap <= max_gap), group_col].unique()

    frames = []
    for entity, rows in obs[obs[group_col].isin(targets)].groupby(group_col, sort=True):
        series = rows.set_index("year")[value_col]
        filled = fill_series(series, max_gap)
        new = filled[filled.notna() & ~filled.index.isin(series.index)]
        frames.append(pd.DataFrame({group_col: entity, "year": new.index.astype(int), value_col: new.values}))

    if not frames:
        return pd.DataFrame({group_col: pd.Series(dtype=object), "year": pd.Series(dtype=int), value_col: pd.Series(dtype=float)})
    return pd.concat(frames, ignore_index=True)


def interpolate_bounded_gaps(
    records: pd.DataFrame,
    max_gap: int = 3,
    value_col: str = "real_value",
    group_col: str = "entity_id",
    carry_cols: Sequence[str] = ("jurisdiction_id",),
    diagnostics: Optional[DiagnosticsLog] = None,
) -> pd.DataFrame:
    """
    Return ``records`` with bounded gaps filled and an ``is_interpolated`` column.

    Filled years that already had a (valueless) row are filled in place;
    other filled years are appended, carrying ``carry_cols`` from the entity.
    """
    require_columns(records, [group_col, "year", value_col], "entity_series")
    if max_gap < 1:
        raise ValueError(f"max_gap must be >= 1, got {max_gap}")
    if records.duplicated([group_col, "year"]).any():
        raise ValueError(f"records must be unique on ({group_col}, year) before interpolation")

    base = records.copy()
    base["is_interpolated"] = False
    observed = base[base[value_col].notna()]

    fills = bounded_fills(observed, max_gap, value_col, group_col)
    fills["is_interpolated"] = True

    # Gaps beyond the bound, counted as missing years left unfilled
    obs = observed[[group_col, "year"]].sort_values([group_col, "year"], kind="mergesort")
    gaps = obs.groupby(group_col, sort=False)["year"].diff()
    too_wide = gaps[gaps > max_gap]
    n_unfilled = int((too_wide - 1).sum()) if len(too_wide) else 0

    # Existing rows with a missing value in a filled year are replaced by the fill
    fill_keys = pd.MultiIndex.from_frame(fills[[group_col, "year"]])
    base_keys = pd.MultiIndex.from_frame(base[[group_col, "year"]])
    holes = base[value_col].isna().values & base_keys.isin(fill_keys)
    hole_rows = base.loc[holes].drop(columns=[value_col, "is_interpolated"])
    base = base.loc[~holes]

    in_place = hole_rows.merge(fills, on=[group_col, "year"], how="inner")
    fill_keys_in_place = pd.MultiIndex.from_frame(in_place[[group_col, "year"]]) if len(in_place) else None
    appended = fills
    if fill_keys_in_place is not None:
        appended = fills.loc[~pd.MultiIndex.from_frame(fills[[group_col, "year"]]).isin(fill_keys_in_place)]

    carry = [c for c in carry_cols if c in base.columns and c != group_col]
    if carry and len(appended):
        static = records.sort_values([group_col, "year"], kind="mergesort").groupby(group_col)[carry].first()
        appended = appended.join(static, on=group_col)

    out = pd.concat([base, in_place, appended], ignore_index=True, sort=False)
    out = out.sort_values([group_col, "year"], kind="mergesort").reset_index(drop=True)
    out["is_interpolated"] = out["is_interpolated"].astype(bool)

    if diagnostics is not None:
        diagnostics.rows("interpolate", len(records), len(out))
        diagnostics.count("interpolate", "interpolated_year", len(fills))
        diagnostics.count("interpolate", "gap_too_large", n_unfilled)
    log.info(f"Filled {len(fills):,} entity-years (max_gap={max_gap}); {n_unfilled:,} years in wider gaps left missing")

    return out[list(records.columns) + ["is_interpolated"]]
