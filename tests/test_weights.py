#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from forestconn.config import ConnectivityParams
from forestconn.connectivity.weights import assign_weights, pixel_areas, weighted_pixel_areas
from forestconn.grid import Raster

ALPHA = ConnectivityParams().alpha


def _cumulative(grid):
    data = np.ma.array(np.arange(100, dtype="float64").reshape(10, 10) * 10.0)
    data[9, 9] = np.ma.masked
    return Raster(data, grid, name="cumulative_cost")


def test_weight_is_one_at_source_and_decays(small_grid):
    w = assign_weights(_cumulative(small_grid), ALPHA)
    assert w.data[0, 0] == pytest.approx(1.0)
    vals = w.data[0, :]
    assert np.all(np.diff(vals) < 0)
    assert w.data[2, 8] == pytest.approx(np.exp(-280.0 / 282.0))
    comp = w.data.compressed()
    assert np.all((comp > 0) & (comp <= 1))


def test_unset_cost_stays_unset(small_grid):
    w = assign_weights(_cumulative(small_grid), ALPHA)
    assert not w.valid[9, 9]
    assert w.valid.sum() == 99


def test_alpha_must_be_negative(small_grid):
    with pytest.raises(ValueError):
        assign_weights(_cumulative(small_grid), 0.0)


def test_pixel_areas(small_grid):
    w = assign_weights(_cumulative(small_grid), ALPHA)
    areas = weighted_pixel_areas(w)
    assert areas.data[0, 0] == pytest.approx(100.0)
    assert areas.name == "weighted_pixel_area"
    assert not areas.valid[9, 9]
    assert pixel_areas(w).data.max() <= small_grid.pixel_area
