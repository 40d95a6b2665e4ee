"""
Identifier Crosswalk (A ↔ B)

Classifies every observed (entity_id_a, entity_id_b) pair by bipartite
degree and keeps only unambiguous 1:1 links as the trusted crosswalk.

  - deg_a = distinct B values observed for an A across all years
  - deg_b = distinct A values observed for a B across all years

  1:1  deg_a == 1 and deg_b == 1   → trusted
  1:M  deg_a  > 1 and deg_b == 1   → excluded
  M:1  deg_a == 1 and deg_b  > 1   → excluded
  M:M  otherwise                   → excluded

Ambiguous pairs are not errors. Their counts and the 1:1 retention rate are
kept as diagnostics (historically about half of all pairs survive).
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import pandas as pd

from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import StructuralError, require_columns

log = logging.getLogger("crosswalk")

COL_A = "entity_id_a"
COL_B = "entity_id_b"
CARDINALITY_CLASSES = ["1:1", "1:M", "M:1", "M:M"]


@dataclass
class CrosswalkResult:
    pairs: pd.DataFrame
    trusted: pd.DataFrame
    class_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def retention_rate(self) -> float:
        total = len(self.pairs)
        return len(self.trusted) / total if total else 0.0


def normalize_ids(series: pd.Series) -> pd.Series:
    """Cast identifiers to stripped strings, leaving missing values missing."""
    out = series.astype(object)
    mask = out.notna()
    out.loc[mask] = out.loc[mask].astype(str).str.strip()
    out.loc[out == ""] = np.nan
    return out


def classify_cardinality(
    records: pd.DataFrame,
    diagnostics: Optional[DiagnosticsLog] = None,
) -> CrosswalkResult:
    """Classify all co-observed A/B pairs and extract the trusted 1:1 crosswalk."""
    require_columns(records, [COL_A, COL_B], "entity_records")
    if records.empty:
        raise StructuralError("entity_records is empty; cannot build crosswalk", table="entity_records")
    for col in (COL_A, COL_B):
        if records[col].isna().all():
            raise StructuralError(f"entity_records.{col} is entirely missing", table="entity_records", missing=[col])

    pairs = pd.DataFrame({
        COL_A: normalize_ids(records[COL_A]),
        COL_B: normalize_ids(records[COL_B]),
    }).dropna().drop_duplicates()

    if pairs.empty:
        raise StructuralError("No record carries both identifiers; crosswalk is undefined", table="entity_records")

    deg_a = pairs.groupby(COL_A)[COL_B].nunique().rename("deg_a")
    deg_b = pairs.groupby(COL_B)[COL_A].nunique().rename("deg_b")
    pairs = pairs.join(deg_a, on=COL_A).join(deg_b, on=COL_B)

    conditions = [
        (pairs["deg_a"] == 1) & (pairs["deg_b"] == 1),
        (pairs["deg_a"] > 1) & (pairs["deg_b"] == 1),
        (pairs["deg_a"] == 1) & (pairs["deg_b"] > 1),
    ]
    pairs["cardinality_class"] = np.select(conditions, CARDINALITY_CLASSES[:3], default="M:M")
    pairs = pairs.sort_values([COL_A, COL_B], kind="mergesort").reset_index(drop=True)

    trusted = pairs.loc[pairs["cardinality_class"] == "1:1", [COL_A, COL_B, "cardinality_class"]]
    trusted = trusted.reset_index(drop=True)

    counts = pairs["cardinality_class"].value_counts()
    class_counts = {cls: int(counts.get(cls, 0)) for cls in CARDINALITY_CLASSES}
    result = CrosswalkResult(pairs=pairs, trusted=trusted, class_counts=class_counts)

    log.info(f"Observed {len(pairs):,} distinct A/B pairs")
    for cls in CARDINALITY_CLASSES:
        log.info(f"  {cls:4s} {class_counts[cls]:>8,}")
    log.info(f"1:1 retention rate: {result.retention_rate:.1%}")

    if diagnostics is not None:
        diagnostics.rows("crosswalk", len(pairs), len(trusted))
        for cls in CARDINALITY_CLASSES[1:]:
            diagnostics.count("crosswalk", f"cardinality_{cls}", class_counts[cls])
        diagnostics.metric("crosswalk", "retention_rate", result.retention_rate)

    return result


def apply_crosswalk(
    records: pd.DataFrame,
    crosswalk: CrosswalkResult,
    tolerance: float,
    jurisdiction_prefix_len: int = 2,
    diagnostics: Optional[DiagnosticsLog] = None,
) -> pd.DataFrame:
    """
    Resolve each record to a single ``entity_id`` (the A identifier).

    Records are matched on B where present, otherwise on A. Records tied to
    an ambiguous pair are excluded; records whose identifiers were never
    paired count toward the unmatched-join tolerance.
    """
    diagnostics = diagnostics or DiagnosticsLog()
    require_columns(records, [COL_A, COL_B, "year", "nominal_value"], "entity_records")

    df = records.copy()
    df[COL_A] = normalize_ids(df[COL_A])
    df[COL_B] = normalize_ids(df[COL_B])

    trusted = crosswalk.trusted
    b_to_a = trusted.set_index(COL_B)[COL_A]
    trusted_a = pd.Index(trusted[COL_A])

    resolved_b = df[COL_B].map(b_to_a)
    resolved_a = df[COL_A].where(df[COL_A].isin(trusted_a))
    df["entity_id"] = resolved_b.combine_first(resolved_a)

    ambiguous = crosswalk.pairs[crosswalk.pairs["cardinality_class"] != "1:1"]
    is_ambiguous = df[COL_A].isin(ambiguous[COL_A]) | df[COL_B].isin(ambiguous[COL_B])
    unresolved = df["entity_id"].isna()

    n_excluded = int((unresolved & is_ambiguous).sum())
    n_unmatched = int((unresolved & ~is_ambiguous).sum())
    diagnostics.count("apply_crosswalk", "cardinality_excluded", n_excluded)
    diagnostics.check_unmatched("apply_crosswalk", n_unmatched, len(df), tolerance)

    out = df.loc[~unresolved].copy()
    out["year"] = pd.to_numeric(out["year"], errors="coerce")
    no_year = out["year"].isna()
    diagnostics.count("apply_crosswalk", "missing_year", int(no_year.sum()))
    out = out.loc[~no_year]
    out["year"] = out["year"].astype(int)
    out["nominal_value"] = pd.to_numeric(out["nominal_value"], errors="coerce")

    # Same entity-year reported under both identifiers: keep the first valued row
    out["_missing"] = out["nominal_value"].isna()
    out = out.sort_values(["entity_id", "year", "_missing"], kind="mergesort")
    before = len(out)
    out = out.drop_duplicates(["entity_id", "year"], keep="first").drop(columns="_missing")
    diagnostics.count("apply_crosswalk", "duplicate_entity_year", before - len(out))

    if "jurisdiction_id" not in out.columns:
        out["jurisdiction_id"] = out["entity_id"].str[:jurisdiction_prefix_len]
    else:
        out["jurisdiction_id"] = normalize_ids(out["jurisdiction_id"])

    cols = ["entity_id"] + [c for c in out.columns if c != "entity_id"]
    out = out[cols].reset_index(drop=True)
    diagnostics.rows("apply_crosswalk", len(records), len(out))
    return out
