"""
Population-Weighted Region Aggregation (unit → region)

Collapses unit-level real values to one value per region-year.

Coverage classes:
  full                every resident lives in a mapped unit
  single_uncovered    no mapped units, one residual area
  multiple_uncovered  no mapped units, several residual areas
  mixed               mapped units plus residual area(s)

Residual population = region total − population of mapped units. It is
handed to the residual areas according to the configured policy for the
region's coverage class:
  direct        the single residual area takes all of it (its value is
                used as reported)
  equal         split evenly, i.e. the unweighted mean of residual values
  proportional  split by each residual area's own reported population

Invariants:
  - boundedness: a region value lies within [min, max] of its constituents;
    a breach raises BoundednessViolation
  - conservation: allocated weights sum to the region's reported total;
    a breach raises ResidualAllocationViolation
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from countypanel.config import PanelConfig
from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import BoundednessViolation, ResidualAllocationViolation, StructuralError, require_columns
from countypanel.transform.crosswalk import normalize_ids
from countypanel.transform.propagate import residual_keys

log = logging.getLogger("aggregate")

REGION_YEAR_COLUMNS = [
    "region_id",
    "year",
    "real_value",
    "population",
    "is_interpolated",
    "n_constituents",
    "coverage_class",
]


# -----------------------------
# Coverage
# -----------------------------

def load_region_reference(region_reference: pd.DataFrame) -> pd.DataFrame:
    require_columns(region_reference, ["region_id", "total_population"], "region_reference")
    ref = region_reference.copy()
    ref["region_id"] = normalize_ids(ref["region_id"])
    ref["total_population"] = pd.to_numeric(ref["total_population"], errors="coerce")
    ref = ref.dropna(subset=["region_id"])
    if ref["region_id"].duplicated().any():
        dupes = ref.loc[ref["region_id"].duplicated(), "region_id"].tolist()
        raise StructuralError(f"region_reference lists regions more than once: {dupes[:5]}", table="region_reference")
    if ref["total_population"].isna().any():
        bad = ref.loc[ref["total_population"].isna(), "region_id"].tolist()
        raise StructuralError(f"region_reference missing total_population for {bad[:5]}", table="region_reference")
    return ref.set_index("region_id").sort_index()


def classify_coverage(n_units: int, n_residuals: int) -> Optional[str]:
    if n_units and not n_residuals:
        return "full"
    if not n_units and n_residuals == 1:
        return "single_uncovered"
    if not n_units and n_residuals > 1:
        return "multiple_uncovered"
    if n_units and n_residuals:
        return "mixed"
    return None


def residual_weights(areas: pd.DataFrame, residual_pop: float, policy: str) -> pd.Series:
    """Split ``residual_pop`` across the residual areas of one region."""
    n = len(areas)
    if policy == "direct":
        if n != 1:
            raise StructuralError(f"'direct' residual policy needs exactly one residual area, got {n}")
        return pd.Series([residual_pop], index=areas.index)
    if policy == "equal":
        return pd.Series(residual_pop / n, index=areas.index)
    if policy == "proportional":
        if "population" not in areas.columns:
            raise StructuralError("'proportional' residual policy needs residual_areas.population", table="residual_areas")
        pop = pd.to_numeric(areas["population"], errors="coerce")
        if pop.isna().any() or (pop < 0).any() or pop.sum() <= 0:
            raise StructuralError(
                f"residual_areas population unusable for region {areas['region_id'].iloc[0]}",
                table="residual_areas",
            )
        return residual_pop * pop / pop.sum()
    raise ValueError(f"Unknown residual policy: {policy}")


def build_constituents(
    assignment: pd.DataFrame,
    unit_regions: pd.DataFrame,
    reference: pd.DataFrame,
    residuals: Optional[pd.DataFrame],
    config: PanelConfig,
    diagnostics: DiagnosticsLog,
) -> pd.DataFrame:
    """
    Static weight table: region_id, constituent_id, entity_id, weight, kind,
    coverage_class. Enforces population conservation.
    """
    units = assignment.groupby("unit_id", sort=True)["unit_population"].first().rename("weight").reset_index()
    units = units.merge(unit_regions, on="unit_id", how="left")

    unknown = units["region_id"].isna() | ~units["region_id"].isin(reference.index)
    diagnostics.check_unmatched("aggregate", int(unknown.sum()), len(units), config.unmatched_tolerance)
    units = units.loc[~unknown]

    if residuals is None:
        residuals = pd.DataFrame(columns=["region_id", "residual_id", "entity_id"])
    residuals = residuals.copy()
    residuals["region_id"] = normalize_ids(residuals["region_id"])
    residuals["entity_id"] = normalize_ids(residuals["entity_id"])
    residuals["residual_id"] = residuals["residual_id"].astype(str)
    residuals["constituent_id"] = residual_keys(residuals)
    orphan_resid = ~residuals["region_id"].isin(reference.index)
    diagnostics.count("aggregate", "residual_without_region", int(orphan_resid.sum()))
    residuals = residuals.loc[~orphan_resid].sort_values(["region_id", "residual_id"], kind="mergesort")

    covered = units.groupby("region_id")["weight"].sum()
    n_units = units.groupby("region_id").size()
    n_resid = residuals.groupby("region_id").size()

    given = reference["coverage_class"] if "coverage_class" in reference.columns else None
    tol = config.population_tolerance
    violations = []
    inconsistent = []
    frames = [units.assign(constituent_id=units["unit_id"], entity_id=np.nan, kind="unit")]
    classes = {}

    for region_id, total in reference["total_population"].items():
        nu, nr = int(n_units.get(region_id, 0)), int(n_resid.get(region_id, 0))
        inferred = classify_coverage(nu, nr)
        if inferred is None:
            diagnostics.count("aggregate", "region_without_constituents", 1)
            continue
        if given is not None and pd.notna(given.get(region_id)) and given[region_id] != inferred:
            inconsistent.append(f"{region_id} ({given[region_id]} vs {inferred})")
            continue
        classes[region_id] = inferred

        residual_pop = float(total) - float(covered.get(region_id, 0.0))
        if residual_pop < -tol:
            violations.append(region_id)
            continue
        if inferred == "full":
            if residual_pop > tol:
                violations.append(region_id)
            continue

        areas = residuals[residuals["region_id"] == region_id]
        policy = config.policy_for(inferred)
        weights = residual_weights(areas, max(residual_pop, 0.0), policy)
        frames.append(pd.DataFrame({
            "region_id": region_id,
            "constituent_id": areas["constituent_id"].values,
            "entity_id": areas["entity_id"].values,
            "weight": weights.values,
            "kind": "residual",
        }))

    if inconsistent:
        raise StructuralError(f"coverage_class disagrees with geography for: {inconsistent[:5]}", table="region_reference")
    if violations:
        raise ResidualAllocationViolation(
            violations, f"mapped unit population differs from reported total by more than {tol}"
        )

    constituents = pd.concat(frames, ignore_index=True, sort=False)
    constituents = constituents[constituents["region_id"].isin(list(classes))]
    constituents["coverage_class"] = constituents["region_id"].map(classes)

    # Conservation over the final weight table
    allocated = constituents.groupby("region_id")["weight"].sum()
    gap = (allocated - reference["total_population"].reindex(allocated.index)).abs()
    breach = gap[gap > tol]
    if len(breach):
        raise ResidualAllocationViolation(
            breach.index.tolist(), f"allocated weights miss reported totals by up to {breach.max():.2f}"
        )

    for cls in ("full", "single_uncovered", "multiple_uncovered", "mixed"):
        diagnostics.count("aggregate", f"coverage_{cls}", sum(1 for c in classes.values() if c == cls))

    cols = ["region_id", "constituent_id", "entity_id", "weight", "kind", "coverage_class"]
    return constituents[cols].sort_values(["region_id", "constituent_id"], kind="mergesort").reset_index(drop=True)


# -----------------------------
# Aggregation
# -----------------------------

def unit_year_values(assignment: pd.DataFrame, series: pd.DataFrame) -> pd.DataFrame:
    """Per unit-year: mean over the unit's service-category entities with a value."""
    joined = assignment[["unit_id", "entity_id"]].merge(
        series[["entity_id", "year", "real_value", "is_interpolated"]], on="entity_id", how="inner"
    ).dropna(subset=["real_value"])
    out = joined.groupby(["unit_id", "year"], as_index=False, sort=True).agg(
        real_value=("real_value", "mean"),
        is_interpolated=("is_interpolated", "any"),
    )
    return out.rename(columns={"unit_id": "constituent_id"})


def check_bounded(region_years: pd.DataFrame) -> None:
    """Each weighted mean must lie within [lo, hi] of its constituents."""
    df = region_years
    eps = 1e-9 * np.maximum(1.0, df[["lo", "hi"]].abs().max(axis=1))
    unbounded = (df["real_value"] < df["lo"] - eps) | (df["real_value"] > df["hi"] + eps)
    if unbounded.any():
        keys = df.loc[unbounded, ["region_id", "year"]].head(5)
        raise BoundednessViolation(
            [f"{r}/{y}" for r, y in keys.itertuples(index=False, name=None)], int(unbounded.sum())
        )


def aggregate_regions(
    series: pd.DataFrame,
    assignment: pd.DataFrame,
    unit_regions: pd.DataFrame,
    region_reference: pd.DataFrame,
    config: PanelConfig,
    residuals: Optional[pd.DataFrame] = None,
    diagnostics: Optional[DiagnosticsLog] = None,
) -> pd.DataFrame:
    """Weighted region-year values from interpolated entity series."""
    diagnostics = diagnostics or DiagnosticsLog()
    require_columns(series, ["entity_id", "year", "real_value", "is_interpolated"], "entity_series")
    require_columns(assignment, ["unit_id", "entity_id", "unit_population"], "assignment")
    if residuals is not None:
        require_columns(residuals, ["region_id", "residual_id", "entity_id"], "residual_areas")

    reference = load_region_reference(region_reference)
    constituents = build_constituents(assignment, unit_regions, reference, residuals, config, diagnostics)

    no_series = ~assignment["entity_id"].isin(series["entity_id"])
    diagnostics.count("aggregate", "entity_without_series", int(assignment.loc[no_series, "entity_id"].nunique()))

    unit_values = unit_year_values(assignment, series)
    resid = constituents[constituents["kind"] == "residual"][["constituent_id", "entity_id"]]
    resid_values = resid.merge(
        series[["entity_id", "year", "real_value", "is_interpolated"]], on="entity_id", how="inner"
    ).drop(columns="entity_id")

    values = pd.concat([unit_values, resid_values], ignore_index=True)
    values = values.dropna(subset=["real_value"])
    df = values.merge(
        constituents[["region_id", "constituent_id", "weight", "coverage_class"]], on="constituent_id", how="inner"
    )
    df = df[df["weight"] > 0].copy()
    df["weighted"] = df["weight"] * df["real_value"]

    grouped = df.groupby(["region_id", "year"], sort=True)
    out = grouped.agg(
        weighted=("weighted", "sum"),
        population=("weight", "sum"),
        lo=("real_value", "min"),
        hi=("real_value", "max"),
        is_interpolated=("is_interpolated", "any"),
        n_constituents=("constituent_id", "nunique"),
        coverage_class=("coverage_class", "first"),
    ).reset_index()
    out["real_value"] = out["weighted"] / out["population"]

    check_bounded(out)

    out["is_interpolated"] = out["is_interpolated"].astype(bool)
    out = out[REGION_YEAR_COLUMNS].sort_values(["region_id", "year"], kind="mergesort").reset_index(drop=True)

    diagnostics.rows("aggregate", len(values), len(out))
    log.info(
        f"Aggregated {len(values):,} constituent-years into {len(out):,} region-years "
        f"({out['region_id'].nunique():,} regions)"
    )
    return out
