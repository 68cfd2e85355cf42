#!/usr/bin/env python3
"""cost.py

Cumulative cost distance from one focal point through the cost raster.

For each focal point:
- a metric zone (metric_radius) where areas are summed, and a larger search
  zone (search_radius) where cost paths may run, so paths aren't cut at the
  edge of the metric zone;
- a source raster over the search zone: 0 everywhere except the focal
  pixel(s) holding the point, which carry the point's patch id. Search zones
  of neighbouring points overlap, so only this point may seed;
- cost propagation from the seed over traversable pixels only, planar step
  lengths, cut off at max_cost_distance.

Propagation uses skimage.graph.MCP_Geometric: a step between neighbours costs
the step length times the mean of the two pixel costs. Unset pixels get an
infinite cost and are never entered.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from rasterio import features
from shapely.geometry import Point, Polygon
from skimage.graph import MCP_Geometric

from forestconn.grid import GridSpec, Raster, assert_same_grid


@dataclass(frozen=True)
class FocalZones:
    point: Point
    metric: Polygon
    search: Polygon


def focal_zones(point: Point, metric_radius: float, search_radius: float, *, quad_segs: int = 16) -> FocalZones:
    if float(search_radius) <= float(metric_radius):
        raise ValueError(
            f"search_radius ({search_radius}) must be larger than metric_radius ({metric_radius})"
        )
    return FocalZones(
        point=point,
        metric=point.buffer(float(metric_radius), quad_segs=int(quad_segs)),
        search=point.buffer(float(search_radius), quad_segs=int(quad_segs)),
    )


def clip(raster: Raster, geom) -> Raster:
    """Window to geom's bounds and unset every pixel whose centre is outside geom."""
    win = raster.window(geom.bounds)
    inside = features.geometry_mask([geom], out_shape=win.grid.shape, transform=win.grid.transform, invert=True)
    return win.update_mask(inside)


def source_raster(point: Point, patch_id: int, grid: GridSpec, search_zone: Polygon) -> Raster:
    """Seed raster on grid: patch_id at the focal pixel(s), 0 elsewhere in the zone, unset outside.

    The focal pixels are the pixels whose closed extent holds the point: one
    for an interior point, two or four when it sits on pixel edges, so a
    point on a patch edge seeds the patch side whichever edge it is.
    """
    if int(patch_id) == 0:
        raise ValueError("patch id 0 can't mark a source pixel (0 means 'not a source')")
    focal = grid.touching_indices(point.x, point.y)
    if not focal:
        raise ValueError(f"Focal point ({point.x:.2f}, {point.y:.2f}) is outside the source grid")

    values = np.zeros(grid.shape, dtype="int64")
    inside = features.geometry_mask([search_zone], out_shape=grid.shape, transform=grid.transform, invert=True)
    for row, col in focal:
        values[row, col] = int(patch_id)
        inside[row, col] = True
    return Raster(np.ma.array(values, mask=~inside), grid, name="source")


def seed_mask(cost: Raster, source: Raster) -> np.ndarray:
    """Source pixels that can start a path: non-zero, set, and traversable."""
    assert_same_grid(cost.grid, source.grid, what="cost and source rasters")
    return source.valid & (source.data.filled(0) != 0) & cost.valid


def cumulative_cost(
    cost: Raster,
    source: Raster,
    *,
    max_distance: float,
    eight_connected: bool = True,
) -> Raster:
    """Minimum accumulated cost from the non-zero source pixels.

    Pixels that can't be reached, or only at a cost above max_distance, are
    unset in the result. If no source pixel is traversable the result is
    entirely unset.
    """
    grid = cost.grid
    seeds = seed_mask(cost, source)

    costs = np.where(cost.valid, cost.data.filled(0).astype("float64"), np.inf)
    if (costs < 0).any():
        raise ValueError("Cost raster has negative values")

    seeds &= np.isfinite(costs)
    out = np.ma.masked_all(grid.shape, dtype="float64")
    if not seeds.any():
        return Raster(out, grid, name="cumulative_cost")

    # The search-zone window bounds the propagation; the cutoff is applied to the result
    xres, yres = grid.res
    mcp = MCP_Geometric(costs, fully_connected=bool(eight_connected), sampling=(yres, xres))
    acc, _ = mcp.find_costs(starts=[tuple(rc) for rc in np.argwhere(seeds)])

    reached = np.isfinite(acc) & (acc <= float(max_distance)) & np.isfinite(costs)
    out = np.ma.array(np.where(reached, acc, 0.0), mask=~reached)
    return Raster(out, grid, name="cumulative_cost")
