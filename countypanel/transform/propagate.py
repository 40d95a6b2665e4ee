"""
Quality Flag Propagation (entity → unit → region)

Membership is held as an explicit two-level DAG and every level is reduced
with the same operator (logical AND), so one disqualified constituent
disqualifies everything above it. Any number of flag columns move through
the graph in a single pass.

Residual areas (region area not covered by a mapped unit) are constituents
of their region too; they enter the graph as pseudo-units named
``residual:<region_id>:<residual_id>``. A residual_id is only unique
within its region, so the region is always part of the key.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import pandas as pd

from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import StructuralError, require_columns
from countypanel.transform.crosswalk import normalize_ids

log = logging.getLogger("propagate")

RESIDUAL_PREFIX = "residual:"


def residual_keys(residuals: pd.DataFrame) -> pd.Series:
    """Pseudo-unit ID per residual area; (region_id, residual_id) must be unique."""
    dupes = residuals.duplicated(["region_id", "residual_id"])
    if dupes.any():
        pairs = residuals.loc[dupes, ["region_id", "residual_id"]].head(5)
        raise StructuralError(
            f"residual_areas repeats (region_id, residual_id): {list(pairs.itertuples(index=False, name=None))}",
            table="residual_areas",
        )
    return RESIDUAL_PREFIX + residuals["region_id"].astype(str) + ":" + residuals["residual_id"].astype(str)


def build_unit_regions(
    unit_ids: pd.Series,
    unit_regions: Optional[pd.DataFrame] = None,
    region_prefix_len: int = 5,
) -> pd.DataFrame:
    """unit_id → region_id map, from a membership table or the unit ID prefix."""
    units = pd.Index(normalize_ids(pd.Series(unit_ids)).dropna().unique()).sort_values()
    if unit_regions is not None:
        require_columns(unit_regions, ["unit_id", "region_id"], "unit_regions")
        lookup = pd.DataFrame({
            "unit_id": normalize_ids(unit_regions["unit_id"]),
            "region_id": normalize_ids(unit_regions["region_id"]),
        }).dropna().drop_duplicates("unit_id")
        out = pd.DataFrame({"unit_id": units}).merge(lookup, on="unit_id", how="left")
    else:
        out = pd.DataFrame({"unit_id": units, "region_id": units.str[:region_prefix_len]})
    return out.reset_index(drop=True)


@dataclass
class MembershipGraph:
    """Edges of the entity → unit → region DAG."""

    entity_unit: pd.DataFrame  # entity_id, unit_id
    unit_region: pd.DataFrame  # unit_id, region_id

    @classmethod
    def from_assignment(
        cls,
        assignment: pd.DataFrame,
        unit_regions: pd.DataFrame,
        residuals: Optional[pd.DataFrame] = None,
    ) -> "MembershipGraph":
        entity_unit = assignment[["entity_id", "unit_id"]].drop_duplicates()
        unit_region = unit_regions[["unit_id", "region_id"]]

        if residuals is not None and not residuals.empty:
            pseudo = residual_keys(residuals)
            entity_unit = pd.concat(
                [entity_unit, pd.DataFrame({"entity_id": residuals["entity_id"].values, "unit_id": pseudo.values})],
                ignore_index=True,
            )
            unit_region = pd.concat(
                [unit_region, pd.DataFrame({"unit_id": pseudo.values, "region_id": residuals["region_id"].values})],
                ignore_index=True,
            )

        entity_unit = entity_unit.sort_values(["unit_id", "entity_id"], kind="mergesort").reset_index(drop=True)
        unit_region = unit_region.drop_duplicates("unit_id").sort_values("unit_id", kind="mergesort")
        return cls(entity_unit=entity_unit, unit_region=unit_region.reset_index(drop=True))

    @property
    def units(self) -> pd.Index:
        return pd.Index(self.entity_unit["unit_id"].unique())


def propagate_flags(
    entity_flags: pd.DataFrame,
    graph: MembershipGraph,
    regions: Optional[pd.Index] = None,
    tolerance: float = 1.0,
    diagnostics: Optional[DiagnosticsLog] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Lift every flag column of ``entity_flags`` (indexed by entity_id) to
    units and regions. Returns ``(unit_flags, region_flags)``.
    """
    diagnostics = diagnostics or DiagnosticsLog()
    flag_cols = list(entity_flags.columns)

    # -----------------------------
    # Step 1: entity → unit
    # -----------------------------
    edges = graph.entity_unit.join(entity_flags, on="entity_id")
    missing_entity = edges[flag_cols[0]].isna() if flag_cols else pd.Series(False, index=edges.index)
    n_missing = int(edges.loc[missing_entity, "entity_id"].nunique())
    diagnostics.check_unmatched(
        "propagate_units", n_missing, int(edges["entity_id"].nunique()), tolerance
    )
    edges[flag_cols] = edges[flag_cols].fillna(False).astype(bool)
    unit_flags = edges.groupby("unit_id", sort=True)[flag_cols].all()

    # -----------------------------
    # Step 2: unit → region
    # -----------------------------
    members = unit_flags.join(graph.unit_region.set_index("unit_id"), how="left")
    orphan = members["region_id"].isna()
    diagnostics.count("propagate_regions", "unit_without_region", int(orphan.sum()))
    region_flags = members.loc[~orphan].groupby("region_id", sort=True)[flag_cols].all()

    if regions is not None:
        empty = pd.Index(regions).difference(region_flags.index)
        if len(empty):
            log.warning(f"{len(empty)} region(s) have no contributing units; flags set to False")
        diagnostics.count("propagate_regions", "region_without_units", len(empty))
        region_flags = region_flags.reindex(pd.Index(regions).union(region_flags.index), fill_value=False)
        region_flags.index.name = "region_id"

    region_flags = region_flags.astype(bool)
    diagnostics.rows("propagate_units", len(edges), len(unit_flags))
    diagnostics.rows("propagate_regions", len(unit_flags), len(region_flags))
    for col in flag_cols:
        log.info(f"{col}: {int(region_flags[col].sum()):,}/{len(region_flags):,} regions pass")

    return unit_flags, region_flags
