"""
County Panel Pipeline
=====================

Runs the panel build in a fixed, deterministic order:

  crosswalk → baseline → dominant → propagate → fiscal →
  interpolate → aggregate → treatment → QA → export → vintage

Design principles:
- Every stage is a pure function of its input tables and the PanelConfig
- Fail-fast: any PanelError stops the run before anything is persisted
- Row counts and reason codes for every stage land in one DiagnosticsLog
- Stage timings and the diagnostics are saved as pipeline_summary.json
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

import pandas as pd

from countypanel.config import PanelConfig
from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import PanelError, QAGateError
from countypanel.export.warehouse import PANEL_TABLE, export_panel
from countypanel.ingest.loaders import PanelInputs
from countypanel.manifest.vintage import VintageTracker, panel_hash
from countypanel.qa.panel_qa import PANEL_COLUMNS, PanelQA
from countypanel.transform.aggregate import aggregate_regions
from countypanel.transform.baseline import tag_baseline_quality
from countypanel.transform.crosswalk import CrosswalkResult, apply_crosswalk, classify_cardinality, normalize_ids
from countypanel.transform.dominant import assign_dominant_entities
from countypanel.transform.fiscal import normalize_to_real
from countypanel.transform.interpolate import interpolate_bounded_gaps
from countypanel.transform.propagate import MembershipGraph, build_unit_regions, propagate_flags
from countypanel.transform.treatment import merge_treatment

log = logging.getLogger("pipeline")


@dataclass
class StageResult:
    name: str
    status: str  # success / failed
    duration_seconds: float
    error_message: Optional[str] = None


@dataclass
class PanelResult:
    panel: pd.DataFrame
    crosswalk: CrosswalkResult
    entity_flags: pd.DataFrame
    assignment: pd.DataFrame
    unit_flags: pd.DataFrame
    region_flags: pd.DataFrame
    entity_series: pd.DataFrame
    region_years: pd.DataFrame
    diagnostics: DiagnosticsLog = field(default_factory=DiagnosticsLog)

    @property
    def panel_hash(self) -> str:
        return panel_hash(self.panel)


def prepare_residuals(residuals: Optional[pd.DataFrame]) -> Optional[pd.DataFrame]:
    if residuals is None or residuals.empty:
        return None
    out = residuals.copy()
    for col in ("region_id", "entity_id"):
        out[col] = normalize_ids(out[col])
    out["residual_id"] = out["residual_id"].astype(str)
    return out.sort_values(["region_id", "residual_id"], kind="mergesort").reset_index(drop=True)


def assemble_panel(region_years: pd.DataFrame, region_flags: pd.DataFrame, flag: str) -> pd.DataFrame:
    """Region-years plus the configured quality flag, in panel column order (minus reform columns)."""
    flags = region_flags[flag].rename("quality_flag")
    panel = region_years.join(flags, on="region_id")
    panel["quality_flag"] = panel["quality_flag"].fillna(False).astype(bool)
    cols = ["region_id", "year", "real_value", "population", "quality_flag", "is_interpolated"]
    return panel[cols]


class PanelPipeline:
    """Builds, checks and persists the county-year panel."""

    STAGE_ORDER = [
        "crosswalk",
        "baseline",
        "dominant",
        "propagate",
        "fiscal",
        "interpolate",
        "aggregate",
        "treatment",
    ]

    def __init__(self, inputs: PanelInputs, config: PanelConfig):
        self.inputs = inputs
        self.config = config
        self.diagnostics = DiagnosticsLog()
        self.results: List[StageResult] = []
        self.run_id = datetime.now().strftime("%Y%m%d_%H%M%S")

    # -------------------------------------------------------------------

    def _stage(self, name: str, fn: Callable, *args, **kwargs):
        log.info("=" * 70)
        log.info(f"STAGE: {name.upper()}")
        log.info("=" * 70)
        start = time.time()
        try:
            out = fn(*args, **kwargs)
        except PanelError as exc:
            exc.stage = exc.stage or name
            self.results.append(StageResult(name, "failed", time.time() - start, str(exc)))
            raise
        self.results.append(StageResult(name, "success", time.time() - start))
        return out

    # -------------------------------------------------------------------

    def build(self) -> PanelResult:
        """Run every transform stage in memory. Nothing is written."""
        cfg, inputs, diag = self.config, self.inputs, self.diagnostics

        def crosswalk_stage():
            result = classify_cardinality(inputs.entity_records, diag)
            records = apply_crosswalk(
                inputs.entity_records, result, cfg.unmatched_tolerance, cfg.jurisdiction_prefix_len, diag
            )
            return result, records

        crosswalk, records = self._stage("crosswalk", crosswalk_stage)
        entity_flags = self._stage(
            "baseline", tag_baseline_quality, records, cfg.baseline_sets, diagnostics=diag
        )
        assignment = self._stage("dominant", assign_dominant_entities, inputs.service_areas, cfg.exclusions, diag)

        residuals = prepare_residuals(inputs.residual_areas)
        unit_regions = build_unit_regions(assignment["unit_id"], inputs.unit_regions, cfg.region_prefix_len)
        graph = MembershipGraph.from_assignment(assignment, unit_regions, residuals)
        regions = pd.Index(normalize_ids(inputs.region_reference["region_id"]).dropna().unique())
        unit_flags, region_flags = self._stage(
            "propagate", propagate_flags, entity_flags, graph, regions, cfg.unmatched_tolerance, diag
        )

        real = self._stage(
            "fiscal", normalize_to_real, records, inputs.price_index, inputs.fiscal_calendar, cfg, diag
        )
        series = self._stage("interpolate", interpolate_bounded_gaps, real, cfg.max_gap, diagnostics=diag)
        region_years = self._stage(
            "aggregate", aggregate_regions, series, assignment, unit_regions,
            inputs.region_reference, cfg, residuals, diag,
        )

        panel = assemble_panel(region_years, region_flags, cfg.panel_flag)
        panel = self._stage("treatment", merge_treatment, panel, inputs.reforms, cfg.jurisdiction_prefix_len, diag)
        panel = panel[PANEL_COLUMNS].sort_values(["region_id", "year"], kind="mergesort").reset_index(drop=True)

        return PanelResult(
            panel=panel,
            crosswalk=crosswalk,
            entity_flags=entity_flags,
            assignment=assignment,
            unit_flags=unit_flags,
            region_flags=region_flags,
            entity_series=series,
            region_years=region_years,
            diagnostics=diag,
        )

    # -------------------------------------------------------------------

    def run(self, csv_path: Optional[Path] = None, persist: bool = True) -> PanelResult:
        """Build, QA-gate, then persist the panel and record its vintage."""
        log_dir = Path(self.config.log_dir) / f"pipeline_{self.run_id}"
        try:
            result = self.build()

            qa = PanelQA(result.panel, self.inputs.region_reference, verbose=False)
            passed = self._stage("qa", qa.run_all_checks)
            if persist:
                qa.write_summary(log_dir / "panel_qa_summary.json")
            if not passed:
                raise QAGateError(qa.issues)

            if persist:
                self._stage(
                    "export", export_panel, result.panel, result.diagnostics.to_frame(),
                    self.config.duck_path, csv_path,
                )
                tracker = VintageTracker(self.config.duck_path)
                changed = tracker.record(PANEL_TABLE, result.panel)
                log.info(f"Panel {'changed' if changed else 'unchanged'} since last run ({result.panel_hash})")
        except PanelError:
            if persist:
                self._save_summary(log_dir, False)
            raise

        if persist:
            self._save_summary(log_dir, True)
        log.info(f"✅ Panel complete: {len(result.panel):,} region-years, {result.panel['region_id'].nunique():,} regions")
        return result

    # -------------------------------------------------------------------

    def _save_summary(self, log_dir: Path, success: bool) -> None:
        log_dir.mkdir(parents=True, exist_ok=True)
        summary = {
            "run_id": self.run_id,
            "timestamp": datetime.now().isoformat(),
            "success": success,
            "stages": [asdict(r) for r in self.results],
            "diagnostics": self.diagnostics.summary(),
        }
        out = log_dir / "pipeline_summary.json"
        with open(out, "w") as f:
            json.dump(summary, f, indent=2)
        log.info(f"Summary JSON: {out}")


def build_panel(inputs: PanelInputs, config: PanelConfig) -> PanelResult:
    """Build the panel in memory without QA or persistence."""
    return PanelPipeline(inputs, config).build()
