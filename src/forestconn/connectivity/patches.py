#!/usr/bin/env python3
"""patches.py

Patch delineation and focal-patch selection.

A patch is one 8-connected component of traversable pixels in the
gap-bridged cost raster, returned as a polygon. 8-connectivity matches the
buffer geometry: diagonal neighbours touch and are connected.
"""

from __future__ import annotations

from typing import Optional, Tuple

import geopandas as gpd
import numpy as np
from rasterio import features
from shapely.geometry import Point, shape

from forestconn.grid import Raster


# Status values reported for each focal point
STATUS_OK = "ok"
STATUS_BOUNDARY = "boundary"
STATUS_NO_PATCH = "no_patch"
STATUS_MULTIPLE = "multiple_patches"
# Matched a patch, but none of the pixels holding the point is traversable
STATUS_SEED_NOT_TRAVERSABLE = "seed_not_traversable"


def delineate_patches(
    cost: Raster,
    region=None,
    *,
    max_pixels: Optional[int] = None,
    landcover_class: int = 1,
) -> gpd.GeoDataFrame:
    """Vectorize traversable pixels into one polygon per connected component.

    region (optional shapely geometry) bounds the computation: only pixels
    whose centre is inside it are considered. The pixel budget applies to the
    bounded window, and exceeding it means the caller must tile the region.
    """
    if region is not None:
        cost = cost.window(region.bounds)
        inside = features.geometry_mask([region], out_shape=cost.grid.shape, transform=cost.grid.transform, invert=True)
        cost = cost.update_mask(inside)
    if max_pixels is not None:
        cost.grid.check_budget(max_pixels, what="patch delineation")

    valid = cost.valid
    geoms = []
    if valid.any():
        for geom, _ in features.shapes(
            valid.astype("uint8"),
            mask=valid,
            connectivity=8,
            transform=cost.grid.transform,
        ):
            geoms.append(shape(geom))

    patches = gpd.GeoDataFrame(
        {"landcover": np.full(len(geoms), int(landcover_class), dtype="int32")},
        geometry=geoms,
        crs=cost.grid.crs,
    )
    # Diagonal-only joins come back as self-touching rings
    invalid = ~patches.geometry.is_valid
    if invalid.any():
        patches.loc[invalid, "geometry"] = patches.geometry[invalid].make_valid()

    print(f"[PATCHES] {len(patches)} patches from {int(valid.sum()):,} traversable pixels")
    return patches


def select_focal_patch(patches: gpd.GeoDataFrame, point: Point) -> Tuple[gpd.GeoDataFrame, str]:
    """Patch polygon(s) containing point, plus a status flag.

    Exactly one containing patch is the expected case. A point exactly on a
    patch edge isn't "contained"; it falls back to intersection and is
    flagged as boundary. Zero or several matches are returned as-is with
    their status so the caller can report them.
    """
    candidates = patches.iloc[patches.sindex.query(point)]
    hits = candidates[candidates.geometry.contains(point)]
    if len(hits) == 1:
        return hits, STATUS_OK
    if len(hits) > 1:
        return hits, STATUS_MULTIPLE

    touching = candidates[candidates.geometry.intersects(point)]
    if len(touching) == 1:
        return touching, STATUS_BOUNDARY
    if len(touching) > 1:
        return touching, STATUS_MULTIPLE
    return touching, STATUS_NO_PATCH
