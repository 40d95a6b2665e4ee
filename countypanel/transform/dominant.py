"""
Dominant Entity Assignment (unit → entity)

Each census unit can be served by several agencies, separately per service
category (e.g. an elementary and a secondary district). For every
(unit, category) the candidate with the largest allocated population wins.
Ties go to the lowest entity_id; candidates are stably sorted on explicit
keys so the result never depends on input row order.

Units matching the exclusion rules (placeholder codes, reserved ranges,
revision/sliver suffixes) are dropped before assignment.
"""

import logging
from typing import Optional

import pandas as pd

from countypanel.config import ExclusionRules
from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import StructuralError, require_columns
from countypanel.transform.crosswalk import normalize_ids

log = logging.getLogger("dominant")

SERVICE_COLUMNS = ["unit_id", "entity_id", "service_category", "allocated_population"]
ASSIGNMENT_COLUMNS = [
    "unit_id",
    "service_category",
    "entity_id",
    "allocated_population",
    "candidate_count",
    "unit_population",
]


def excluded_units(unit_ids: pd.Series, rules: ExclusionRules) -> pd.Series:
    """Boolean mask of unit IDs matched by any exclusion rule."""
    ids = unit_ids.astype(str)
    mask = ids.isin(rules.codes)
    if rules.prefixes:
        mask |= ids.str.startswith(rules.prefixes)
    if rules.suffixes:
        mask |= ids.str.endswith(rules.suffixes)
    for low, high in rules.ranges:
        tail = ids.str[-len(low):]
        mask |= (ids.str.len() >= len(low)) & (tail >= low) & (tail <= high)
    return mask


def assign_dominant_entities(
    service: pd.DataFrame,
    rules: Optional[ExclusionRules] = None,
    diagnostics: Optional[DiagnosticsLog] = None,
) -> pd.DataFrame:
    """Pick exactly one entity per retained (unit, service_category)."""
    diagnostics = diagnostics or DiagnosticsLog()
    rules = rules or ExclusionRules()
    require_columns(service, SERVICE_COLUMNS, "service_areas")
    if service.empty:
        raise StructuralError("service_areas is empty", table="service_areas")

    df = service[SERVICE_COLUMNS].copy()
    df["unit_id"] = normalize_ids(df["unit_id"])
    df["entity_id"] = normalize_ids(df["entity_id"])
    df["service_category"] = df["service_category"].fillna("all").astype(str)
    df["allocated_population"] = pd.to_numeric(df["allocated_population"], errors="coerce")
    df = df.dropna(subset=["unit_id"])
    units_in = df["unit_id"].nunique()

    # -----------------------------
    # Exclusions
    # -----------------------------
    excl = excluded_units(df["unit_id"], rules)
    n_excluded_units = df.loc[excl, "unit_id"].nunique()
    df = df.loc[~excl]
    diagnostics.count("dominant", "excluded_code", n_excluded_units)

    # -----------------------------
    # Candidate validity
    # -----------------------------
    valid = df["entity_id"].notna() & (df["allocated_population"] > 0)
    diagnostics.count("dominant", "invalid_candidate", int((~valid).sum()))

    all_units = pd.Index(df["unit_id"].unique())
    cand = df.loc[valid]

    # Multiple rows for the same candidate (e.g. split blocks) are summed
    cand = cand.groupby(["unit_id", "service_category", "entity_id"], as_index=False)["allocated_population"].sum()

    no_candidate = all_units.difference(pd.Index(cand["unit_id"].unique()))
    diagnostics.count("dominant", "no_valid_candidate", len(no_candidate))
    if len(no_candidate):
        log.warning(f"{len(no_candidate)} unit(s) have no valid candidate and are dropped")

    # -----------------------------
    # Selection
    # -----------------------------
    cand = cand.sort_values(
        ["unit_id", "service_category", "allocated_population", "entity_id"],
        ascending=[True, True, False, True],
        kind="mergesort",
    )
    group = cand.groupby(["unit_id", "service_category"], sort=False)
    counts = group["entity_id"].transform("size")
    category_pop = group["allocated_population"].transform("sum")

    cand = cand.assign(candidate_count=counts.astype(int), _category_pop=category_pop)
    ties = cand.groupby(["unit_id", "service_category"], sort=False)["allocated_population"].transform(
        lambda s: int((s == s.iloc[0]).sum())
    )
    n_ties = int(((ties > 1) & ~cand.duplicated(["unit_id", "service_category"])).sum())
    diagnostics.count("dominant", "tie_broken_by_id", n_ties)

    assigned = cand.drop_duplicates(["unit_id", "service_category"], keep="first").copy()
    unit_pop = assigned.groupby("unit_id")["_category_pop"].max()
    assigned["unit_population"] = assigned["unit_id"].map(unit_pop)
    assigned = assigned[ASSIGNMENT_COLUMNS].reset_index(drop=True)

    diagnostics.rows("dominant", units_in, assigned["unit_id"].nunique())
    log.info(
        f"Assigned {len(assigned):,} unit/category pairs across "
        f"{assigned['unit_id'].nunique():,} units ({n_ties} ties broken by entity_id)"
    )
    return assigned
