#!/usr/bin/env python3
"""forestconn.rasterize

Polygon layer -> single-band class raster on the working grid.

Two stages, so "no polygon here" and "background class" stay distinguishable:
1. rasterize_labels(): pixels inside a polygon take its label, all other
   pixels are left unset (masked).
2. fill_background(): unset pixels get an explicit background class.
"""

from __future__ import annotations

from typing import Iterable, Optional

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio import features

from forestconn.grid import GridSpec, Raster, assert_vector_crs


class LabelTypeError(ValueError):
    """The label column used for rasterization is missing or not numeric."""


def check_label_column(gdf: gpd.GeoDataFrame, label: str) -> None:
    """Raise LabelTypeError unless gdf[label] is a numeric (non-bool) column."""
    if label not in gdf.columns:
        raise LabelTypeError(f"Label column '{label}' not found. Available columns: {list(gdf.columns)}")
    col = gdf[label]
    if pd.api.types.is_bool_dtype(col) or not pd.api.types.is_numeric_dtype(col):
        raise LabelTypeError(
            f"Label column '{label}' must be numeric, got dtype {col.dtype}. "
            "String labels can't be burned into a raster; map them to class numbers first."
        )
    if col.isna().any():
        raise LabelTypeError(f"Label column '{label}' has {int(col.isna().sum())} missing values")


def _shapes(gdf: gpd.GeoDataFrame, label: str, overlap: str) -> Iterable:
    rows = gdf[[label, gdf.geometry.name]]
    rows = rows[rows.geometry.notna() & ~rows.geometry.is_empty]
    pairs = list(zip(rows.geometry, rows[label]))
    # rasterio burns in order with later shapes replacing earlier ones
    if overlap == "first":
        pairs.reverse()
    elif overlap != "last":
        raise ValueError(f"overlap must be 'first' or 'last', got {overlap!r}")
    return pairs


def rasterize_labels(
    gdf: gpd.GeoDataFrame,
    label: str,
    grid: GridSpec,
    *,
    overlap: str = "first",
    max_pixels: Optional[int] = None,
    dtype: str = "int32",
) -> Raster:
    """Burn gdf[label] into grid; pixels whose centre is in no polygon stay unset.

    overlap decides which polygon wins a pixel covered by several polygons:
    "first" keeps the earliest feature in gdf order, "last" the latest.
    """
    check_label_column(gdf, label)
    assert_vector_crs(gdf, grid, what="rasterize input")
    if max_pixels is not None:
        grid.check_budget(max_pixels, what=f"rasterize '{label}'")

    values = np.zeros(grid.shape, dtype=dtype)
    covered = np.zeros(grid.shape, dtype=bool)
    pairs = _shapes(gdf, label, overlap)
    if pairs:
        values = features.rasterize(
            pairs,
            out_shape=grid.shape,
            transform=grid.transform,
            fill=0,
            dtype=dtype,
        )
        covered = ~features.geometry_mask(
            [g for g, _ in pairs],
            out_shape=grid.shape,
            transform=grid.transform,
        )
    return Raster(np.ma.array(values, mask=~covered), grid, name=label)


def fill_background(raster: Raster, background: int = 0) -> Raster:
    """Gapless raster: every unset pixel becomes the background class."""
    return raster.filled(background)


def traversable(mask: Raster, min_class: int = 1) -> Raster:
    """Cost raster: 1 where class >= min_class, unset (not 0) everywhere else."""
    keep = mask.valid & (mask.data.filled(0) >= min_class)
    ones = np.ones(mask.grid.shape, dtype="float32")
    return Raster(np.ma.array(ones, mask=~keep), mask.grid, name="cost")
