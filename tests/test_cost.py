#!/usr/bin/env python3

from __future__ import annotations

import sys
import warnings
from pathlib import Path

import numpy as np
import pytest
from shapely.geometry import Point, box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from forestconn.connectivity.cost import clip, cumulative_cost, focal_zones, seed_mask, source_raster
from forestconn.grid import GridSpec, Raster


@pytest.fixture
def grid(crs):
    # 21 x 21 pixels of 10 units, centre pixel (10, 10) holds (105, 105)
    return GridSpec.from_bounds((0.0, 0.0, 210.0, 210.0), 10.0, crs)


def _ones(grid):
    return Raster(np.ma.ones(grid.shape, dtype="float32"), grid, name="cost")


def _source(grid, patch=7):
    return source_raster(Point(105, 105), patch, grid, box(*grid.bounds))


def test_source_raster_single_seed(grid):
    src = _source(grid)
    assert src.data[10, 10] == 7
    assert int((src.data.filled(0) != 0).sum()) == 1
    with pytest.raises(ValueError):
        source_raster(Point(105, 105), 0, grid, box(*grid.bounds))
    with pytest.raises(ValueError):
        source_raster(Point(500, 105), 7, grid, box(*grid.bounds))


def test_source_zone_masks_outside(grid):
    zone = Point(105, 105).buffer(50)
    src = source_raster(Point(105, 105), 3, grid, zone)
    assert src.valid[10, 10]
    assert not src.valid[0, 0]


def test_cost_grows_with_distance(grid):
    acc = cumulative_cost(_ones(grid), _source(grid), max_distance=5000)
    assert acc.data[10, 10] == pytest.approx(0.0, abs=1e-6)
    assert acc.data[10, 15] == pytest.approx(50.0)
    row = acc.data[10, 10:].filled(np.nan)
    assert np.all(np.diff(row) > 0)
    # a diagonal step is longer than a straight one
    assert acc.data[11, 11] == pytest.approx(10 * np.sqrt(2))


def test_max_distance_cutoff(grid):
    acc = cumulative_cost(_ones(grid), _source(grid), max_distance=30)
    assert acc.valid[10, 12]
    assert not acc.valid[10, 14]
    assert np.nanmax(acc.data.compressed()) <= 30


def test_unset_pixels_are_barriers(grid):
    cost = _ones(grid)
    keep = np.ones(grid.shape, dtype=bool)
    keep[:, 12] = False
    acc = cumulative_cost(cost.update_mask(keep), _source(grid), max_distance=5000)
    assert acc.valid[:, :12].all()
    assert not acc.valid[:, 12:].any()


def test_no_traversable_seed_gives_empty_result(grid):
    keep = np.ones(grid.shape, dtype=bool)
    keep[10, 10] = False
    acc = cumulative_cost(_ones(grid).update_mask(keep), _source(grid), max_distance=5000)
    assert not acc.valid.any()


def test_zones_and_clip(grid):
    zones = focal_zones(Point(105, 105), 30, 50)
    assert zones.metric.area < zones.search.area
    with pytest.raises(ValueError):
        focal_zones(Point(0, 0), 50, 50)

    clipped = clip(_ones(grid), zones.search)
    assert clipped.grid.shape == (11, 11)
    assert clipped.valid.sum() < clipped.grid.n_pixels
    assert clipped.valid[5, 5]


def test_point_on_pixel_edges_seeds_every_touching_pixel(grid):
    zone = box(*grid.bounds)
    edge = source_raster(Point(100, 105), 7, grid, zone)
    assert sorted(map(tuple, np.argwhere(edge.data.filled(0) == 7))) == [(10, 9), (10, 10)]
    corner = source_raster(Point(100, 110), 7, grid, zone)
    assert int((corner.data.filled(0) == 7).sum()) == 4
    # on the outer grid edge only the inside pixel is left
    rim = source_raster(Point(210, 105), 7, grid, zone)
    assert sorted(map(tuple, np.argwhere(rim.data.filled(0) == 7))) == [(10, 20)]


def test_seed_mask_drops_untraversable_focal_pixels(grid):
    keep = np.ones(grid.shape, dtype=bool)
    keep[:, 10:] = False
    cost = _ones(grid).update_mask(keep)
    source = source_raster(Point(100, 105), 7, grid, box(*grid.bounds))
    seeds = seed_mask(cost, source)
    assert sorted(map(tuple, np.argwhere(seeds))) == [(10, 9)]

    acc = cumulative_cost(cost, source, max_distance=5000)
    assert acc.data[10, 9] == pytest.approx(0.0, abs=1e-6)
    assert not acc.valid[:, 10:].any()


def test_propagation_raises_no_deprecation_warnings(grid):
    with warnings.catch_warnings():
        warnings.simplefilter("error", FutureWarning)
        acc = cumulative_cost(_ones(grid), _source(grid), max_distance=30)
    assert acc.valid[10, 12]
    assert not acc.valid[10, 14]
