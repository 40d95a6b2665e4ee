"""
Baseline completeness flags.

An entity passes a baseline set when it reports a non-missing, non-negative
value in every required year of that set. Zero is a valid report. Negative
values are data errors: they count as missing here and are tallied as a
diagnostic, never raised.
"""

import logging
from typing import Mapping, Optional, Sequence

import pandas as pd

from countypanel.diagnostics import DiagnosticsLog
from countypanel.errors import require_columns

log = logging.getLogger("baseline")


def tag_baseline_quality(
    records: pd.DataFrame,
    baseline_sets: Mapping[str, Sequence[int]],
    value_col: str = "nominal_value",
    diagnostics: Optional[DiagnosticsLog] = None,
) -> pd.DataFrame:
    """
    Return one row per entity with a boolean column per baseline set.

    All sets are evaluated against the same valid entity-year table, so
    adding a set never re-reads the records.
    """
    require_columns(records, ["entity_id", "year", value_col], "entity_records")
    if not baseline_sets:
        raise ValueError("No baseline-year sets configured")

    values = pd.to_numeric(records[value_col], errors="coerce")
    negative = values < 0
    n_negative = int(negative.sum())
    if n_negative:
        log.warning(f"{n_negative} negative {value_col} value(s) treated as missing for baseline checks")

    valid = records.loc[values.notna() & ~negative, ["entity_id", "year"]].drop_duplicates()
    entities = pd.Index(records["entity_id"].dropna().unique()).sort_values()

    flags = pd.DataFrame(index=entities)
    flags.index.name = "entity_id"

    for name, years in baseline_sets.items():
        required = sorted({int(y) for y in years})
        hits = valid[valid["year"].isin(required)].groupby("entity_id")["year"].nunique()
        flags[name] = (hits.reindex(entities, fill_value=0) == len(required)).astype(bool).values
        log.info(f"{name}: {int(flags[name].sum()):,}/{len(entities):,} entities complete over {required}")

    if diagnostics is not None:
        diagnostics.rows("baseline", len(records), len(flags))
        diagnostics.count("baseline", "negative_value", n_negative)
        for name in baseline_sets:
            diagnostics.count("baseline", f"missing_baseline_year:{name}", int((~flags[name]).sum()))

    return flags
