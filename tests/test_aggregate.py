#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Point, box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from forestconn.connectivity.aggregate import area_sum, clipped_raster, coverage_fractions, forest_in_zone, patch_metrics
from forestconn.grid import GridSpec, Raster


def _areas(grid, value=None):
    value = grid.pixel_area if value is None else value
    return Raster(np.ma.array(np.full(grid.shape, value, dtype="float64")), grid, name="pixel_area")


def test_partial_pixels_use_covered_fraction(crs):
    grid = GridSpec.from_bounds((0.0, 0.0, 40.0, 40.0), 10.0, crs)
    frac = coverage_fractions(box(0, 0, 15, 40), grid)
    assert np.allclose(frac[:, 0], 1.0)
    assert np.allclose(frac[:, 1], 0.5)
    assert np.allclose(frac[:, 2:], 0.0)
    assert area_sum(_areas(grid), box(0, 0, 15, 40)) == pytest.approx(600.0)


def test_disk_area_is_exact(crs):
    grid = GridSpec.from_bounds((-150.0, -150.0, 150.0, 150.0), 10.0, crs)
    disk = Point(0, 0).buffer(100, quad_segs=16)
    assert area_sum(_areas(grid), disk) == pytest.approx(disk.area, rel=1e-9)
    assert disk.area == pytest.approx(np.pi * 100**2, rel=0.01)


def test_unset_pixels_contribute_nothing(crs):
    grid = GridSpec.from_bounds((0.0, 0.0, 40.0, 40.0), 10.0, crs)
    r = _areas(grid)
    keep = np.ones(grid.shape, dtype=bool)
    keep[:, 0] = False
    assert area_sum(r.update_mask(keep), box(0, 0, 20, 40)) == pytest.approx(400.0)
    assert area_sum(r, box(100, 100, 200, 200)) == 0.0


def test_clipped_raster_sums_to_area(crs):
    grid = GridSpec.from_bounds((-150.0, -150.0, 150.0, 150.0), 10.0, crs)
    disk = Point(3, 7).buffer(64)
    r = _areas(grid, 42.0)
    img = clipped_raster(r, disk)
    assert float(img.data.sum()) == pytest.approx(area_sum(r, disk))
    assert not img.valid[0, 0]


def test_forest_in_zone_and_metrics(crs):
    grid = GridSpec.from_bounds((0.0, 0.0, 100.0, 100.0), 10.0, crs)
    forest = gpd.GeoDataFrame(geometry=[box(0, 0, 50, 100), box(60, 0, 100, 100)], crs=crs)
    zone = box(0, 0, 100, 50)
    fz = forest_in_zone(forest, zone)
    assert fz.area == pytest.approx(4500.0)
    assert forest_in_zone(forest, box(500, 500, 600, 600)).is_empty

    plain = _areas(grid)
    weighted = _areas(grid, 50.0)
    m = patch_metrics(weighted, plain, box(0, 0, 50, 100), fz)
    assert m["forest_amount"] == pytest.approx(4500.0)
    assert m["unweighted_patch_area"] == pytest.approx(2500.0)
    assert m["weighted_patch_area"] == pytest.approx(1250.0)

    m = patch_metrics(weighted, plain, None, fz)
    assert np.isnan(m["weighted_patch_area"]) and np.isnan(m["unweighted_patch_area"])
    assert m["forest_amount"] == pytest.approx(4500.0)
