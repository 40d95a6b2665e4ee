"""
Pipeline error taxonomy.

Only structural and integrity failures are exceptions. Ambiguous crosswalk
pairs, missing baseline years, short fiscal windows and oversized gaps are
expected and show up as flags, omissions and diagnostic counts instead.
"""

from typing import List, Optional


class PanelError(Exception):
    """Base class for every fatal pipeline error."""

    stage: Optional[str] = None


class StructuralError(PanelError):
    """A required table or column is missing, or a key table is empty."""

    def __init__(self, message: str, table: Optional[str] = None, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.table = table
        self.missing = list(missing or [])


class UnmatchedJoinError(PanelError):
    """Unmatched rows on a tracked join exceed the configured tolerance."""

    def __init__(self, stage: str, unmatched: int, total: int, tolerance: float):
        share = unmatched / total if total else 0.0
        super().__init__(
            f"{stage}: {unmatched}/{total} rows unmatched ({share:.1%}) "
            f"exceeds tolerance {tolerance:.1%}"
        )
        self.stage = stage
        self.unmatched = unmatched
        self.total = total
        self.share = share


class ResidualAllocationViolation(PanelError):
    """Allocated population does not reproduce a region's reported total."""

    def __init__(self, region_ids: List[str], detail: str):
        preview = ", ".join(region_ids[:5])
        more = f" (+{len(region_ids) - 5} more)" if len(region_ids) > 5 else ""
        super().__init__(f"Population conservation failed for {preview}{more}: {detail}")
        self.stage = "aggregate"
        self.region_ids = list(region_ids)


class BoundednessViolation(PanelError):
    """A region-year weighted mean fell outside its constituents' range."""

    def __init__(self, region_years: List[str], count: int):
        super().__init__(f"Weighted mean outside constituent range for {count} region-year(s): {region_years}")
        self.stage = "aggregate"
        self.region_years = list(region_years)


def require_columns(df, columns, table: str) -> None:
    """Raise StructuralError if any of ``columns`` is absent from ``df``."""
    if df is None:
        raise StructuralError(f"Required table missing: {table}", table=table)
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise StructuralError(f"{table} missing columns: {missing}", table=table, missing=missing)


class QAGateError(PanelError):
    """The finished panel failed a critical QA check and was not persisted."""

    def __init__(self, issues: List[str]):
        super().__init__(f"Panel QA failed with {len(issues)} critical issue(s): {issues[:3]}")
        self.stage = "qa"
        self.issues = list(issues)
