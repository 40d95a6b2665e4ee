#!/usr/bin/env python3
"""
County Panel - Pipeline Entry Point

Usage:
    python3 -m countypanel.run_pipeline --inputs data/bronze
    python3 -m countypanel.run_pipeline --from-duckdb --config config/panel.json
    python3 -m countypanel.run_pipeline --inputs data/bronze --output data/gold/county_panel.csv --dry-run

Exit codes:
    0: panel built, QA passed, persisted
    1: fatal pipeline error (structural, unmatched join, residual allocation, QA)
    130: interrupted
"""

import argparse
import logging
import sys
from pathlib import Path

from countypanel.config import load_config, with_overrides
from countypanel.errors import PanelError
from countypanel.ingest.loaders import load_csv_inputs, load_duckdb_inputs
from countypanel.pipeline import PanelPipeline

log = logging.getLogger("run_pipeline")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build the county-year local finance panel.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--inputs", type=Path, help="Directory of input CSV tables")
    source.add_argument("--from-duckdb", action="store_true", help="Read inputs from the warehouse bronze schema")
    parser.add_argument("--config", type=Path, default=None, help="JSON config file")
    parser.add_argument("--duck-path", type=Path, default=None, help="Override warehouse path")
    parser.add_argument("--output", type=Path, default=None, help="Also write the panel to this CSV")
    parser.add_argument("--dry-run", action="store_true", help="Build and QA the panel without writing anything")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    try:
        config = load_config(args.config)
        if args.duck_path is not None:
            config = with_overrides(config, duck_path=args.duck_path)

        if args.from_duckdb:
            inputs = load_duckdb_inputs(config.duck_path)
        else:
            inputs = load_csv_inputs(args.inputs)

        pipeline = PanelPipeline(inputs, config)
        pipeline.run(csv_path=args.output, persist=not args.dry_run)

    except PanelError as exc:
        log.error("=" * 70)
        log.error(f"❌ PIPELINE HALTED: {type(exc).__name__}")
        log.error("=" * 70)
        log.error(f"Stage: {exc.stage or 'setup'}")
        log.error(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted by user.")
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
