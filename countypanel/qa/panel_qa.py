"""
County Panel QA Gate
====================

Runs on the finished panel BEFORE it is persisted. Critical issues block
the write, warnings are reported only.

Checks:
  - schema: exact column set and order of the analysis panel
  - keys: (region_id, year) unique, no null keys
  - flags: quality_flag / is_interpolated boolean and never null
  - values: real_value finite, population positive
  - geography: every region present in region_reference
  - coverage: share of regions passing the quality flag (warning only)
"""

import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd

PANEL_COLUMNS = [
    "region_id",
    "year",
    "real_value",
    "population",
    "quality_flag",
    "is_interpolated",
    "reform_year",
    "reform_type",
]


class PanelQA:
    """QA checks on the county-year analysis panel."""

    def __init__(self, panel: pd.DataFrame, region_reference: Optional[pd.DataFrame] = None,
                 min_flag_share: float = 0.05, verbose: bool = True):
        self.panel = panel
        self.region_reference = region_reference
        self.min_flag_share = min_flag_share
        self.verbose = verbose
        self.issues: List[str] = []
        self.warnings: List[str] = []

    def _say(self, msg: str) -> None:
        if self.verbose:
            print(msg)

    # ==========================================================================
    # SCHEMA
    # ==========================================================================

    def check_schema(self) -> None:
        cols = list(self.panel.columns)
        if cols != PANEL_COLUMNS:
            missing = [c for c in PANEL_COLUMNS if c not in cols]
            extra = [c for c in cols if c not in PANEL_COLUMNS]
            self.issues.append(f"CRITICAL: panel columns {cols} != {PANEL_COLUMNS} (missing={missing}, extra={extra})")
            self._say(f"  ❌ Schema mismatch: missing={missing} extra={extra}")
        else:
            self._say("  ✅ Schema matches analysis panel contract")

    # ==========================================================================
    # KEYS
    # ==========================================================================

    def check_keys(self) -> None:
        df = self.panel
        null_keys = int(df[["region_id", "year"]].isna().any(axis=1).sum())
        if null_keys:
            self.issues.append(f"CRITICAL: {null_keys} rows with null region_id/year")
        dupes = int(df.duplicated(["region_id", "year"]).sum())
        if dupes:
            self.issues.append(f"CRITICAL: {dupes} duplicated region-years")
        if not null_keys and not dupes:
            self._say(f"  ✅ {len(df):,} unique region-years")

    # ==========================================================================
    # FLAGS & VALUES
    # ==========================================================================

    def check_flags(self) -> None:
        for col in ("quality_flag", "is_interpolated"):
            nulls = int(self.panel[col].isna().sum())
            if nulls:
                self.issues.append(f"CRITICAL: {nulls} null {col} values")
                self._say(f"  ❌ {col}: {nulls} nulls")
            elif self.panel[col].dtype != bool:
                self.issues.append(f"CRITICAL: {col} dtype is {self.panel[col].dtype}, expected bool")
            else:
                self._say(f"  ✅ {col}: boolean, no nulls")

        if len(self.panel) and self.panel["quality_flag"].dtype == bool:
            share = self.panel.groupby("region_id")["quality_flag"].first().mean()
            if share < self.min_flag_share:
                self.warnings.append(f"Only {share:.1%} of regions pass the quality flag")

    def check_values(self) -> None:
        values = self.panel["real_value"].to_numpy(dtype=float)
        bad = int((~np.isfinite(values)).sum())
        if bad:
            self.issues.append(f"CRITICAL: {bad} non-finite real_value entries")
        negative = int((self.panel["real_value"] < 0).sum())
        if negative:
            self.warnings.append(f"{negative} negative real_value entries")
        non_positive = int((self.panel["population"] <= 0).sum())
        if non_positive:
            self.issues.append(f"CRITICAL: {non_positive} rows with non-positive population")
        if not bad and not non_positive:
            self._say("  ✅ Values finite, populations positive")

        interp_share = self.panel["is_interpolated"].mean() if len(self.panel) else 0.0
        self._say(f"  📊 Interpolated region-years: {interp_share:.1%}")

    def check_geography(self) -> None:
        if self.region_reference is None:
            return
        known = set(self.region_reference["region_id"].astype(str))
        unknown = set(self.panel["region_id"]) - known
        if unknown:
            self.issues.append(f"CRITICAL: {len(unknown)} regions not in region_reference")
            self._say(f"  ❌ Unknown regions: {sorted(unknown)[:5]}")
        missing = known - set(self.panel["region_id"])
        if missing:
            self.warnings.append(f"{len(missing)} reference regions absent from panel")

    # ==========================================================================
    # REPORT
    # ==========================================================================

    def run_all_checks(self) -> bool:
        self._say("\n" + "=" * 70)
        self._say("COUNTY PANEL QA")
        self._say("=" * 70)
        self.check_schema()
        if self.issues:
            return False
        self.check_keys()
        self.check_flags()
        self.check_values()
        self.check_geography()

        self._say(f"\n🔍 Critical issues: {len(self.issues)}")
        for issue in self.issues[:15]:
            self._say(f"  ❌ {issue}")
        self._say(f"⚠️  Warnings: {len(self.warnings)}")
        for w in self.warnings[:10]:
            self._say(f"  ⚠️  {w}")
        return not self.issues

    def summary(self) -> dict:
        return {
            "timestamp": datetime.now().isoformat(),
            "status": "PASSED" if not self.issues else "FAILED",
            "rows": len(self.panel),
            "regions": int(self.panel["region_id"].nunique()) if "region_id" in self.panel else 0,
            "critical_issues": self.issues,
            "warnings": self.warnings,
        }

    def write_summary(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.summary(), f, indent=2)
