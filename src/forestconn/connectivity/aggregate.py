#!/usr/bin/env python3
"""aggregate.py

Area sums restricted to clip regions, with partial pixel coverage.

A pixel that straddles the clip region contributes its value times the
fraction of the pixel covered by the region, rather than all-or-nothing on
its centre. Unset pixels contribute nothing.

The three metrics per focal point:
- weighted_patch_area:   weighted pixel areas over patch ∩ metric zone ∩ forest
- unweighted_patch_area: plain pixel areas (binary cost raster), same region
- forest_amount:         plain pixel areas over metric zone ∩ forest
"""

from __future__ import annotations

from typing import Dict, Optional

import geopandas as gpd
import numpy as np
import shapely
from rasterio import features
from shapely.geometry import box

from forestconn.grid import GridSpec, Raster


def _dilate(mask: np.ndarray) -> np.ndarray:
    """Grow a boolean mask by one pixel in all 8 directions."""
    out = mask.copy()
    out[1:, :] |= mask[:-1, :]
    out[:-1, :] |= mask[1:, :]
    vert = out.copy()
    out[:, 1:] |= vert[:, :-1]
    out[:, :-1] |= vert[:, 1:]
    return out


def _polygonal(geom):
    """Polygon parts of geom (intersections can leave lines and points behind)."""
    parts = shapely.get_parts(shapely.get_parts(geom))
    polys = parts[shapely.get_type_id(parts) == 3]
    if len(polys) == 0:
        return shapely.Polygon()
    if len(polys) == 1:
        return polys[0]
    return shapely.multipolygons(polys)


def coverage_fractions(geom, grid: GridSpec) -> np.ndarray:
    """Fraction in [0, 1] of every pixel of grid covered by geom."""
    frac = np.zeros(grid.shape, dtype="float64")
    if geom is None or geom.is_empty:
        return frac
    geom = _polygonal(geom.intersection(box(*grid.bounds)))
    if geom.is_empty or geom.area == 0:
        return frac

    touched = features.rasterize(
        [(geom, 1)], out_shape=grid.shape, transform=grid.transform, fill=0, all_touched=True, dtype="uint8"
    ).astype(bool)

    # A pixel whose centre is deeper than half a diagonal inside geom is fully covered
    xres, yres = grid.res
    core = geom.buffer(-0.5 * float(np.hypot(xres, yres)))
    interior = np.zeros(grid.shape, dtype=bool)
    if not core.is_empty:
        interior = features.rasterize(
            [(core, 1)], out_shape=grid.shape, transform=grid.transform, fill=0, dtype="uint8"
        ).astype(bool)
    frac[interior] = 1.0

    band = _dilate(touched) & ~interior
    rows, cols = np.nonzero(band)
    if rows.size == 0:
        return frac

    xs, ys = grid.pixel_edges()
    boxes = shapely.box(xs[cols], ys[rows + 1], xs[cols + 1], ys[rows])
    parts = np.asarray(shapely.get_parts(geom))
    tree = shapely.STRtree(parts)
    box_idx, part_idx = tree.query(boxes, predicate="intersects")
    areas = shapely.area(shapely.intersection(boxes[box_idx], parts[part_idx]))
    covered = np.bincount(box_idx, weights=areas, minlength=rows.size)
    frac[rows, cols] = np.clip(covered / grid.pixel_area, 0.0, 1.0)
    return frac


def area_sum(raster: Raster, region, fractions: Optional[np.ndarray] = None) -> float:
    """Sum of valid pixel values weighted by their coverage of region."""
    if fractions is None:
        fractions = coverage_fractions(region, raster.grid)
    use = raster.valid & (fractions > 0)
    if not use.any():
        return 0.0
    return float(np.sum(raster.data.data[use].astype("float64") * fractions[use]))


def clipped_raster(raster: Raster, region, fractions: Optional[np.ndarray] = None) -> Raster:
    """Pixel values times coverage of region; unset where the pixel isn't covered."""
    if fractions is None:
        fractions = coverage_fractions(region, raster.grid)
    keep = raster.valid & (fractions > 0)
    values = np.where(keep, raster.data.filled(0).astype("float64") * fractions, 0.0)
    return Raster(np.ma.array(values, mask=~keep), raster.grid, name=raster.name)


def forest_in_zone(forest: gpd.GeoDataFrame, zone):
    """Union of the true (unbuffered) forest polygons, intersected with zone."""
    idx = forest.sindex.query(zone, predicate="intersects")
    if len(idx) == 0:
        return shapely.Polygon()
    merged = shapely.union_all(np.asarray(forest.geometry.iloc[idx]))
    return merged.intersection(zone)


def patch_metrics(
    weighted_areas: Raster,
    plain_areas: Raster,
    patch_geom,
    forest_zone,
) -> Dict[str, float]:
    """The three area metrics for one focal point.

    patch_geom None means no single focal patch was found; the two
    patch-restricted metrics come back as NaN.
    forest_zone is forest ∩ metric zone (see forest_in_zone).
    """
    forest_amount = area_sum(plain_areas, forest_zone)
    if patch_geom is None:
        return {
            "weighted_patch_area": float("nan"),
            "unweighted_patch_area": float("nan"),
            "forest_amount": forest_amount,
        }

    region = forest_zone.intersection(patch_geom)
    plain_frac = coverage_fractions(region, plain_areas.grid)
    if weighted_areas.grid == plain_areas.grid:
        weighted_frac = plain_frac
    else:
        weighted_frac = coverage_fractions(region, weighted_areas.grid)
    return {
        "weighted_patch_area": area_sum(weighted_areas, region, weighted_frac),
        "unweighted_patch_area": area_sum(plain_areas, region, plain_frac),
        "forest_amount": forest_amount,
    }
