"""
Panel Vintage Tracking

Hashes the finished panel so reruns can be compared. Identical inputs and
config must give an identical hash; a different hash means the panel
changed since the last recorded run.

Stored in metadata.panel_vintage:
- panel_name: 'county_panel'
- data_hash: SHA256 of the panel content (first 16 chars)
- previous_hash: hash recorded by the previous run
- n_rows, n_regions, min_year, max_year: basic stats
- recorded_at: timestamp
"""

import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import duckdb
import pandas as pd

log = logging.getLogger("vintage")


def _compute_hash(content: str | bytes) -> str:
    """Compute stable SHA256 hash of content."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()[:16]


def panel_hash(panel: pd.DataFrame) -> str:
    """Content hash of a panel, independent of index but sensitive to column order."""
    payload = panel.to_csv(index=False, lineterminator="\n", float_format="%.10g")
    return _compute_hash(payload)


class VintageTracker:
    """Records panel hashes in the warehouse and reports whether they changed."""

    def __init__(self, duck_path: Path):
        self.duck_path = Path(duck_path)
        self.duck_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _ensure_schema(self):
        con = duckdb.connect(str(self.duck_path))
        try:
            con.execute("CREATE SCHEMA IF NOT EXISTS metadata")
            con.execute("""
                CREATE TABLE IF NOT EXISTS metadata.panel_vintage (
                    panel_name TEXT NOT NULL,
                    data_hash TEXT NOT NULL,
                    previous_hash TEXT,
                    n_rows INTEGER,
                    n_regions INTEGER,
                    min_year INTEGER,
                    max_year INTEGER,
                    recorded_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (panel_name)
                )
            """)
        finally:
            con.close()

    def previous_hash(self, panel_name: str) -> Optional[str]:
        con = duckdb.connect(str(self.duck_path), read_only=True)
        try:
            row = con.execute(
                "SELECT data_hash FROM metadata.panel_vintage WHERE panel_name = ?", [panel_name]
            ).fetchone()
        finally:
            con.close()
        return row[0] if row else None

    def record(self, panel_name: str, panel: pd.DataFrame) -> bool:
        """
        Record the panel's hash. Returns True if it changed (or is new),
        False if identical to the previous run.
        """
        new_hash = panel_hash(panel)
        previous = self.previous_hash(panel_name)
        changed = previous != new_hash

        years = panel["year"] if len(panel) else pd.Series(dtype=int)
        con = duckdb.connect(str(self.duck_path))
        try:
            con.execute("""
                INSERT OR REPLACE INTO metadata.panel_vintage
                (panel_name, data_hash, previous_hash, n_rows, n_regions, min_year, max_year, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                panel_name,
                new_hash,
                previous,
                len(panel),
                int(panel["region_id"].nunique()) if len(panel) else 0,
                int(years.min()) if len(years) else None,
                int(years.max()) if len(years) else None,
                datetime.now(timezone.utc),
            ])
        finally:
            con.close()

        if previous is None:
            log.info(f"NEW: {panel_name} ({new_hash})")
        elif changed:
            log.info(f"CHANGED: {panel_name} ({previous} → {new_hash})")
        else:
            log.info(f"UNCHANGED: {panel_name} ({new_hash})")
        return changed
