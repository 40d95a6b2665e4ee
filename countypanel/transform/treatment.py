"""
Reform metadata join.

Attaches reform_year / reform_type to every region-year by the region's
jurisdiction (the leading characters of region_id). Regions in
never-reformed jurisdictions keep null reform columns.
"""

import logging
from typing import Optional

import pandas as pd

from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import StructuralError, require_columns
from countypanel.transform.crosswalk import normalize_ids

log = logging.getLogger("treatment")


def merge_treatment(
    panel: pd.DataFrame,
    reforms: pd.DataFrame,
    jurisdiction_prefix_len: int = 2,
    diagnostics: Optional[DiagnosticsLog] = None,
) -> pd.DataFrame:
    require_columns(reforms, ["jurisdiction_id", "reform_year", "reform_type"], "reforms")

    ref = pd.DataFrame({
        "jurisdiction_id": normalize_ids(reforms["jurisdiction_id"]),
        "reform_year": pd.to_numeric(reforms["reform_year"], errors="coerce").astype("Int64"),
        "reform_type": reforms["reform_type"].astype(object).where(reforms["reform_type"].notna()),
    }).dropna(subset=["jurisdiction_id"])
    if ref["jurisdiction_id"].duplicated().any():
        dupes = ref.loc[ref["jurisdiction_id"].duplicated(), "jurisdiction_id"].tolist()
        raise StructuralError(f"reforms lists jurisdictions more than once: {dupes[:5]}", table="reforms")

    out = panel.copy()
    out["_jurisdiction"] = out["region_id"].str[:jurisdiction_prefix_len]
    out = out.merge(ref.rename(columns={"jurisdiction_id": "_jurisdiction"}), on="_jurisdiction", how="left")
    out = out.drop(columns="_jurisdiction")
    out["reform_type"] = out["reform_type"].astype(object).where(out["reform_type"].notna(), None)

    treated = out.loc[out["reform_year"].notna(), "region_id"].nunique()
    log.info(f"Reform metadata attached: {treated:,}/{out['region_id'].nunique():,} regions ever reformed")
    if diagnostics is not None:
        diagnostics.rows("treatment", len(panel), len(out))
        diagnostics.count("treatment", "never_reformed_region", int(out.loc[out["reform_year"].isna(), "region_id"].nunique()))
    return out
