#!/usr/bin/env python3
"""bridge.py

Gap bridging: forest fragments closer than the gap-crossing threshold become
one traversable area.

Every polygon is buffered outward by gap/2 so that two fragments within `gap`
of each other overlap, then all buffers are merged into one multipolygon.
The union is rasterized to a {0,1} traversability mask.
"""

from __future__ import annotations

from typing import Optional

import geopandas as gpd
import numpy as np
import shapely

from forestconn.grid import GridSpec, Raster
from forestconn.rasterize import fill_background, rasterize_labels, traversable


def bridge_gaps(
    forest: gpd.GeoDataFrame,
    gap_threshold: float,
    *,
    landcover_class: int = 1,
    quad_segs: int = 16,
) -> gpd.GeoDataFrame:
    """Single-feature layer: union of all forest polygons buffered by gap/2."""
    if gap_threshold < 0:
        raise ValueError(f"gap_threshold must be >= 0, got {gap_threshold}")
    geoms = forest.geometry[forest.geometry.notna() & ~forest.geometry.is_empty]
    buffered = geoms.buffer(float(gap_threshold) / 2.0, quad_segs=int(quad_segs))
    merged = shapely.union_all(np.asarray(buffered))
    return gpd.GeoDataFrame(
        {"id": ["union_result"], "landcover": [int(landcover_class)]},
        geometry=[merged],
        crs=forest.crs,
    )


def bridged_mask(
    bridged: gpd.GeoDataFrame,
    grid: GridSpec,
    *,
    background: int = 0,
    max_pixels: Optional[int] = None,
) -> Raster:
    """Background-filled {0,1} raster of the bridged forest."""
    labelled = rasterize_labels(bridged, "landcover", grid, max_pixels=max_pixels, dtype="uint8")
    return fill_background(labelled, background)


def cost_raster(
    forest: gpd.GeoDataFrame,
    grid: GridSpec,
    gap_threshold: float,
    *,
    landcover_class: int = 1,
    background: int = 0,
    quad_segs: int = 16,
    max_pixels: Optional[int] = None,
):
    """Bridge, rasterize, and mask out background.

    Returns (bridged_layer, filled_mask, cost). cost is 1 on traversable
    pixels and unset elsewhere, so propagation can't cross background.
    """
    bridged = bridge_gaps(forest, gap_threshold, landcover_class=landcover_class, quad_segs=quad_segs)
    mask = bridged_mask(bridged, grid, background=background, max_pixels=max_pixels)
    return bridged, mask, traversable(mask, min_class=landcover_class)
