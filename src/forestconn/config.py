#!/usr/bin/env python3
"""forestconn.config

Shared configuration utilities for the forestconn CLI subsystems.

This module provides the helpers used by forestconn.digitize and
forestconn.connectivity. Centralizing these keeps both scripts on the
same parameters and the same working grid.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Every numeric parameter of the analysis lives in the YAML (or its defaults
  below); nothing in the processing modules is hard-coded.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    Config errors should fail fast.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------

def coerce_bbox(x: Any) -> Optional[Tuple[float, float, float, float]]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
        except (TypeError, ValueError):
            return None
        if xmin >= xmax or ymin >= ymax:
            return None
        return (xmin, ymin, xmax, ymax)
    return None


def format_bbox(b: Tuple[float, float, float, float], precision: int = 1) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Parameter blocks
# -----------------------------------------------------------------------------
# One dataclass per YAML section. Unknown keys are rejected so that typos in
# the config file don't silently fall back to defaults.

@dataclass(frozen=True)
class GridParams:
    crs: str = "EPSG:32617"
    resolution: float = 1.0
    max_pixels: int = 10_000_000_000


@dataclass(frozen=True)
class CleaningParams:
    size_threshold: float = 250.0
    landcover_class: int = 1
    background_class: int = 0


@dataclass(frozen=True)
class ConnectivityParams:
    gap_threshold: float = 50.0
    metric_radius: float = 1000.0
    search_radius: float = 1500.0
    max_cost_distance: float = 5000.0
    home_range_length: float = 282.0
    decay_alpha: Optional[float] = None
    eight_connected: bool = True
    quad_segs: int = 16
    overlap: str = "first"

    @property
    def alpha(self) -> float:
        """Decay rate for the negative-exponential weights."""
        if self.decay_alpha is not None:
            return float(self.decay_alpha)
        return -1.0 / float(self.home_range_length)


@dataclass(frozen=True)
class RuntimeParams:
    workers: Optional[int] = None
    executor: str = "process"

    @property
    def n_workers(self) -> int:
        if self.workers is None:
            return os.cpu_count() or 1
        return int(self.workers)


@dataclass(frozen=True)
class Settings:
    grid: GridParams = field(default_factory=GridParams)
    cleaning: CleaningParams = field(default_factory=CleaningParams)
    connectivity: ConnectivityParams = field(default_factory=ConnectivityParams)
    runtime: RuntimeParams = field(default_factory=RuntimeParams)


_SECTIONS = {
    "grid": GridParams,
    "cleaning": CleaningParams,
    "connectivity": ConnectivityParams,
    "runtime": RuntimeParams,
}

OVERLAP_POLICIES = ("first", "last")
EXECUTORS = ("process", "thread")


def _build_section(name: str, cls, raw: Any):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ValueError(f"Config section '{name}' must be a mapping, got {type(raw).__name__}")
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ValueError(f"Unknown keys in config section '{name}': {unknown}. Allowed: {sorted(allowed)}")
    return cls(**raw)


def validate_settings(s: Settings) -> Settings:
    """Check parameter ranges and relationships.

    Raises ValueError on the first violation.
    """
    g, cl, c, rt = s.grid, s.cleaning, s.connectivity, s.runtime

    if not g.resolution or float(g.resolution) <= 0:
        raise ValueError(f"grid.resolution must be positive, got {g.resolution}")
    if int(g.max_pixels) <= 0:
        raise ValueError(f"grid.max_pixels must be positive, got {g.max_pixels}")
    if float(cl.size_threshold) < 0:
        raise ValueError(f"cleaning.size_threshold must be >= 0, got {cl.size_threshold}")

    for key in ("gap_threshold", "metric_radius", "search_radius", "max_cost_distance", "home_range_length"):
        v = getattr(c, key)
        if v is None or float(v) <= 0:
            raise ValueError(f"connectivity.{key} must be positive, got {v}")
    if float(c.search_radius) <= float(c.metric_radius):
        raise ValueError(
            "connectivity.search_radius must be strictly larger than metric_radius "
            f"(got search={c.search_radius}, metric={c.metric_radius})"
        )
    if not math.isfinite(c.alpha) or c.alpha >= 0:
        raise ValueError(f"Decay alpha must be negative, got {c.alpha}")
    if int(c.quad_segs) < 1:
        raise ValueError(f"connectivity.quad_segs must be >= 1, got {c.quad_segs}")
    if c.overlap not in OVERLAP_POLICIES:
        raise ValueError(f"connectivity.overlap must be one of {OVERLAP_POLICIES}, got {c.overlap!r}")

    if rt.workers is not None and int(rt.workers) < 1:
        raise ValueError(f"runtime.workers must be >= 1, got {rt.workers}")
    if rt.executor not in EXECUTORS:
        raise ValueError(f"runtime.executor must be one of {EXECUTORS}, got {rt.executor!r}")

    return s


def settings_from_dict(data: Dict[str, Any]) -> Settings:
    """Build validated Settings from a parsed YAML mapping."""
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown config sections: {unknown}. Allowed: {sorted(_SECTIONS)}")
    parts = {name: _build_section(name, cls, data.get(name)) for name, cls in _SECTIONS.items()}
    return validate_settings(Settings(**parts))


def load_settings(path: Optional[Path]) -> Settings:
    """Load settings from YAML, or return defaults when path is None."""
    if path is None:
        return validate_settings(Settings())
    return settings_from_dict(load_yaml(path))


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so both CLIs use the same defaults.

DEFAULT_CONFIG_YAML = Path("config/connectivity.yaml")
DEFAULT_OUT_DIR = Path("data/processed")


def resolve_config_path(path: Optional[Path]) -> Optional[Path]:
    """Explicit --config path, else DEFAULT_CONFIG_YAML when it exists, else None (built-in defaults)."""
    if path is not None:
        return path
    if DEFAULT_CONFIG_YAML.exists():
        print(f"[CONFIG] Using {DEFAULT_CONFIG_YAML}")
        return DEFAULT_CONFIG_YAML
    return None
