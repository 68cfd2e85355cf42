#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import geopandas as gpd
import pytest
from shapely.geometry import Point, box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from forestconn.config import CleaningParams, ConnectivityParams, GridParams, RuntimeParams, Settings
from forestconn.grid import GridSpec

CRS = "EPSG:32617"


@pytest.fixture
def crs():
    return CRS


@pytest.fixture
def small_grid():
    # 10 x 10 pixels of 10 units
    return GridSpec.from_bounds((0.0, 0.0, 100.0, 100.0), 10.0, CRS)


@pytest.fixture
def coarse_settings():
    """Default analysis parameters on a 10-unit grid, single worker."""
    return Settings(
        grid=GridParams(crs=CRS, resolution=10.0),
        cleaning=CleaningParams(),
        connectivity=ConnectivityParams(),
        runtime=RuntimeParams(workers=1),
    )


@pytest.fixture
def square_scene():
    """One 2000 x 2000 forest square inside a larger study area, focal point at its centre."""
    forest = gpd.GeoDataFrame({"landcover": [1]}, geometry=[box(0, 0, 2000, 2000)], crs=CRS)
    study_area = gpd.GeoDataFrame({"name": ["study"]}, geometry=[box(-500, -500, 2500, 2500)], crs=CRS)
    points = gpd.GeoDataFrame({"patch": [7]}, geometry=[Point(1000, 1000)], crs=CRS)
    return forest, study_area, points
