"""
Panel configuration.

Every stage receives one immutable PanelConfig. Values come from the
defaults below, optionally overridden by a JSON file and then by PANEL_*
environment variables (a repo-level .env is loaded first, without
overriding variables already exported by the shell).

Example JSON:

    {
        "baseline_sets": {"baseline_1972": [1967, 1970, 1971, 1972]},
        "max_gap": 3,
        "base_year": 2020,
        "exclusions": {"codes": ["000000"], "suffixes": ["R", "S"],
                       "ranges": [["990000", "999999"]]},
        "residual_policy": {"multiple_uncovered": "proportional"}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from countypanel.errors import StructuralError

log = logging.getLogger("config")

REPO_ROOT = Path(__file__).resolve().parents[1]

COVERAGE_CLASSES = ("full", "single_uncovered", "multiple_uncovered", "mixed")
RESIDUAL_POLICIES = ("direct", "equal", "proportional")

DEFAULT_BASELINE_SETS = {
    "baseline_1972": (1967, 1970, 1971, 1972),
}

DEFAULT_RESIDUAL_POLICY = {
    "single_uncovered": "direct",
    "multiple_uncovered": "equal",
    "mixed": "equal",
}


def _freeze(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class ExclusionRules:
    """Unit codes dropped before dominant-entity assignment.

    ``ranges`` are inclusive (low, high) bounds compared against the trailing
    ``len(low)`` characters of the unit ID, so ("990000", "999999") matches
    any tract whose last six digits start with 99.
    """

    codes: frozenset = frozenset()
    prefixes: Tuple[str, ...] = ()
    suffixes: Tuple[str, ...] = ()
    ranges: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ExclusionRules":
        ranges = []
        for bounds in raw.get("ranges", []):
            low, high = (str(b) for b in bounds)
            if len(low) != len(high):
                raise ValueError(f"Exclusion range bounds must have equal width: {bounds}")
            ranges.append((low, high))
        return cls(
            codes=frozenset(str(c) for c in raw.get("codes", [])),
            prefixes=tuple(str(p) for p in raw.get("prefixes", [])),
            suffixes=tuple(str(s) for s in raw.get("suffixes", [])),
            ranges=tuple(ranges),
        )

    def is_empty(self) -> bool:
        return not (self.codes or self.prefixes or self.suffixes or self.ranges)


@dataclass(frozen=True)
class PanelConfig:
    baseline_sets: Mapping[str, Tuple[int, ...]] = field(
        default_factory=lambda: _freeze(DEFAULT_BASELINE_SETS)
    )
    primary_flag: Optional[str] = None
    max_gap: int = 3
    base_year: int = 2020
    base_reference: str = "fiscal"
    default_fiscal_start_month: Optional[int] = None
    exclusions: ExclusionRules = field(default_factory=ExclusionRules)
    residual_policy: Mapping[str, str] = field(
        default_factory=lambda: _freeze(DEFAULT_RESIDUAL_POLICY)
    )
    unmatched_tolerance: float = 0.10
    population_tolerance: float = 0.5
    jurisdiction_prefix_len: int = 2
    region_prefix_len: int = 5
    duck_path: Path = REPO_ROOT / "data" / "lake" / "warehouse.duckdb"
    log_dir: Path = REPO_ROOT / "data" / "logs"

    def __post_init__(self):
        # Copy caller-owned mappings so later edits cannot reach the config
        object.__setattr__(
            self, "baseline_sets",
            _freeze({name: tuple(int(y) for y in years) for name, years in self.baseline_sets.items()}),
        )
        object.__setattr__(self, "residual_policy", _freeze(self.residual_policy))
        if not self.baseline_sets:
            raise ValueError("At least one baseline-year set is required")
        if self.primary_flag is not None and self.primary_flag not in self.baseline_sets:
            raise ValueError(f"primary_flag {self.primary_flag!r} is not a configured baseline set")
        if self.max_gap < 1:
            raise ValueError(f"max_gap must be >= 1, got {self.max_gap}")
        if self.base_reference not in ("fiscal", "calendar"):
            raise ValueError(f"base_reference must be 'fiscal' or 'calendar', got {self.base_reference!r}")
        if self.default_fiscal_start_month is not None and not 1 <= self.default_fiscal_start_month <= 12:
            raise ValueError(f"default_fiscal_start_month out of range: {self.default_fiscal_start_month}")
        for coverage, policy in self.residual_policy.items():
            if coverage not in COVERAGE_CLASSES or coverage == "full":
                raise ValueError(f"Unknown residual coverage class: {coverage!r}")
            if policy not in RESIDUAL_POLICIES:
                raise ValueError(f"Unknown residual policy {policy!r} for {coverage}")
        if self.residual_policy.get("multiple_uncovered") == "direct":
            raise ValueError("'direct' only applies to single_uncovered regions")
        if self.residual_policy.get("mixed") == "direct":
            raise ValueError("'direct' only applies to single_uncovered regions")
        if not 0.0 <= self.unmatched_tolerance <= 1.0:
            raise ValueError(f"unmatched_tolerance must be in [0, 1], got {self.unmatched_tolerance}")

    @property
    def flag_names(self) -> Tuple[str, ...]:
        return tuple(self.baseline_sets.keys())

    @property
    def panel_flag(self) -> str:
        """Flag copied into the panel's quality_flag column."""
        return self.primary_flag or self.flag_names[0]

    def policy_for(self, coverage_class: str) -> str:
        return self.residual_policy.get(coverage_class, DEFAULT_RESIDUAL_POLICY[coverage_class])


# -----------------------------
# Loading
# -----------------------------

def _from_mapping(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate JSON-ish values into PanelConfig keyword arguments."""
    kwargs: Dict[str, Any] = {}
    for key, value in raw.items():
        if key == "baseline_sets":
            kwargs[key] = _freeze({name: tuple(int(y) for y in years) for name, years in value.items()})
        elif key == "exclusions":
            kwargs[key] = ExclusionRules.from_dict(value)
        elif key == "residual_policy":
            merged = dict(DEFAULT_RESIDUAL_POLICY)
            merged.update(value)
            kwargs[key] = _freeze(merged)
        elif key in ("duck_path", "log_dir"):
            kwargs[key] = Path(value)
        elif key in PanelConfig.__dataclass_fields__:
            kwargs[key] = value
        else:
            log.warning(f"Ignoring unknown config key: {key}")
    return kwargs


def _from_env() -> Dict[str, Any]:
    env: Dict[str, Any] = {}
    if os.getenv("PANEL_MAX_GAP"):
        env["max_gap"] = int(os.environ["PANEL_MAX_GAP"])
    if os.getenv("PANEL_BASE_YEAR"):
        env["base_year"] = int(os.environ["PANEL_BASE_YEAR"])
    if os.getenv("PANEL_BASE_REFERENCE"):
        env["base_reference"] = os.environ["PANEL_BASE_REFERENCE"]
    if os.getenv("PANEL_UNMATCHED_TOLERANCE"):
        env["unmatched_tolerance"] = float(os.environ["PANEL_UNMATCHED_TOLERANCE"])
    if os.getenv("PANEL_DUCK_PATH"):
        env["duck_path"] = Path(os.environ["PANEL_DUCK_PATH"])
    if os.getenv("PANEL_LOG_DIR"):
        env["log_dir"] = Path(os.environ["PANEL_LOG_DIR"])
    return env


def load_config(path: Optional[Path] = None, use_env: bool = True) -> PanelConfig:
    """Build a PanelConfig from defaults, an optional JSON file and PANEL_* env vars."""
    kwargs: Dict[str, Any] = {}

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise StructuralError(f"Config file not found: {path}", table=str(path))
        with open(path) as f:
            kwargs.update(_from_mapping(json.load(f)))
        log.info(f"Loaded config from {path}")

    if use_env:
        load_dotenv(dotenv_path=REPO_ROOT / ".env", override=False)
        env = _from_env()
        if env:
            log.info(f"Environment overrides: {sorted(env)}")
        kwargs.update(env)

    return PanelConfig(**kwargs)


def with_overrides(config: PanelConfig, **changes) -> PanelConfig:
    """Return a copy of ``config`` with ``changes`` applied (and re-validated)."""
    return replace(config, **changes)
