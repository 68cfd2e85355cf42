#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from forestconn.grid import GridMismatchError, PixelBudgetError
from forestconn.rasterize import LabelTypeError, fill_background, rasterize_labels, traversable


def _layer(geoms, labels, crs):
    return gpd.GeoDataFrame({"landcover": labels}, geometry=geoms, crs=crs)


def test_uncovered_pixels_stay_unset_until_filled(small_grid, crs):
    gdf = _layer([box(20, 20, 60, 60)], [1], crs)
    r = rasterize_labels(gdf, "landcover", small_grid)
    assert r.valid.sum() == 16
    assert (r.data.compressed() == 1).all()

    filled = fill_background(r, 0)
    assert filled.valid.all()
    assert filled.data.sum() == 16
    # row 4 is y 50..60, col 2 is x 20..30
    assert filled.data[4, 2] == 1
    assert filled.data[0, 0] == 0


def test_overlap_policy(small_grid, crs):
    gdf = _layer([box(0, 0, 60, 100), box(40, 0, 100, 100)], [1, 2], crs)
    first = rasterize_labels(gdf, "landcover", small_grid, overlap="first")
    last = rasterize_labels(gdf, "landcover", small_grid, overlap="last")
    # column 5 (x 50..60) is covered by both polygons
    assert first.data[0, 5] == 1
    assert last.data[0, 5] == 2
    assert first.data[0, 0] == last.data[0, 0] == 1
    assert first.data[0, 9] == last.data[0, 9] == 2
    with pytest.raises(ValueError):
        rasterize_labels(gdf, "landcover", small_grid, overlap="max")


def test_string_label_rejected(small_grid, crs):
    gdf = _layer([box(0, 0, 50, 50)], ["forest"], crs)
    with pytest.raises(LabelTypeError):
        rasterize_labels(gdf, "landcover", small_grid)
    with pytest.raises(LabelTypeError):
        rasterize_labels(gdf, "missing", small_grid)


def test_budget_and_crs_checks(small_grid, crs):
    gdf = _layer([box(0, 0, 50, 50)], [1], crs)
    with pytest.raises(PixelBudgetError):
        rasterize_labels(gdf, "landcover", small_grid, max_pixels=50)
    with pytest.raises(GridMismatchError):
        rasterize_labels(gdf.set_crs("EPSG:32618", allow_override=True), "landcover", small_grid)


def test_traversable_masks_background(small_grid, crs):
    gdf = _layer([box(0, 0, 50, 100)], [1], crs)
    cost = traversable(fill_background(rasterize_labels(gdf, "landcover", small_grid), 0))
    assert cost.valid[:, :5].all()
    assert not cost.valid[:, 5:].any()
    assert np.all(cost.data.compressed() == 1)
