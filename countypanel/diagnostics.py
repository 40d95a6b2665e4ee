"""
Per-stage diagnostics.

Every stage reports rows in/out plus reason-coded counts (e.g. a crosswalk
pair excluded as M:1, a unit dropped by an exclusion rule). The log is kept
in memory during a run and exported as a tidy table once the run finishes.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

from countypanel.errors import UnmatchedJoinError

log = logging.getLogger("diagnostics")

DIAGNOSTIC_COLUMNS = ["stage", "reason", "count"]


@dataclass
class StageCounts:
    stage: str
    rows_in: int = 0
    rows_out: int = 0
    reasons: Dict[str, int] = field(default_factory=dict)
    metrics: Dict[str, float] = field(default_factory=dict)


class DiagnosticsLog:
    """Collects row counts, reason codes and quality metrics by stage."""

    def __init__(self):
        self._stages: Dict[str, StageCounts] = {}

    def stage(self, name: str) -> StageCounts:
        if name not in self._stages:
            self._stages[name] = StageCounts(stage=name)
        return self._stages[name]

    def rows(self, stage: str, rows_in: int, rows_out: int) -> None:
        counts = self.stage(stage)
        counts.rows_in = int(rows_in)
        counts.rows_out = int(rows_out)
        log.info(f"{stage}: {rows_in:,} rows in → {rows_out:,} rows out")

    def count(self, stage: str, reason: str, n: int) -> None:
        """Add ``n`` to ``reason`` for ``stage``. Zero counts are still recorded."""
        counts = self.stage(stage)
        counts.reasons[reason] = counts.reasons.get(reason, 0) + int(n)
        if n:
            log.info(f"{stage}: {int(n):,} × {reason}")

    def metric(self, stage: str, name: str, value: float) -> None:
        self.stage(stage).metrics[name] = float(value)
        log.info(f"{stage}: {name} = {value:.4f}")

    def get(self, stage: str, reason: str) -> int:
        if stage not in self._stages:
            return 0
        return self._stages[stage].reasons.get(reason, 0)

    def get_metric(self, stage: str, name: str) -> Optional[float]:
        if stage not in self._stages:
            return None
        return self._stages[stage].metrics.get(name)

    def check_unmatched(self, stage: str, unmatched: int, total: int, tolerance: float) -> None:
        """Record unmatched join rows and escalate once the share exceeds ``tolerance``."""
        self.count(stage, "unmatched", unmatched)
        if total and unmatched / total > tolerance:
            raise UnmatchedJoinError(stage, unmatched, total, tolerance)
        if unmatched:
            log.warning(f"{stage}: {unmatched}/{total} unmatched rows (within tolerance {tolerance:.1%})")

    def to_frame(self) -> pd.DataFrame:
        """Tidy (stage, reason, count) table including rows_in/rows_out."""
        rows: List[dict] = []
        for name in self._stages:
            counts = self._stages[name]
            rows.append({"stage": name, "reason": "rows_in", "count": counts.rows_in})
            rows.append({"stage": name, "reason": "rows_out", "count": counts.rows_out})
            for reason in sorted(counts.reasons):
                rows.append({"stage": name, "reason": reason, "count": counts.reasons[reason]})
        if not rows:
            return pd.DataFrame(columns=DIAGNOSTIC_COLUMNS)
        return pd.DataFrame(rows, columns=DIAGNOSTIC_COLUMNS)

    def summary(self) -> dict:
        return {
            name: {
                "rows_in": c.rows_in,
                "rows_out": c.rows_out,
                "reasons": dict(sorted(c.reasons.items())),
                "metrics": dict(sorted(c.metrics.items())),
            }
            for name, c in self._stages.items()
        }
