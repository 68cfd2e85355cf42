#!/usr/bin/env python3
"""clean_forest.py

Turn a hand-digitized forest layer into a clean, labelled polygon layer and a
background-filled forest class raster.

This module exposes two levels:
1. split_by_area() / label_landcover() - pure GeoDataFrame transforms
2. clean_forest() - full step used by `python -m forestconn.digitize clean`

Example (via forestconn.digitize):
  python -m forestconn.digitize clean \
    --forest data/raw/digitized_forest.kml \
    --study-area data/raw/study_area.gpkg \
    --out-gpkg data/interim/vectors/forest_small_removed.gpkg \
    --out-raster data/interim/rasters/forest_with_matrix.tif

Notes:
- Digitizing at different zoom levels leaves tiny patches (single tree
  crowns) behind; these are removed with a closed lower area bound.
- Digitized layers sometimes contain stray line strings next to polygons;
  they have no area and are dropped.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

import geopandas as gpd

from forestconn.config import CleaningParams, GridParams, format_bbox
from forestconn.grid import GridSpec, Raster, raster_range
from forestconn.io import read_layer, write_layer, write_raster
from forestconn.rasterize import fill_background, rasterize_labels


POLYGON_TYPES = ("Polygon", "MultiPolygon")


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------

def _make_valid(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Repair invalid geometries (self-intersections from hand digitizing)."""
    gdf = gdf.copy()
    invalid = ~gdf.geometry.is_valid
    if invalid.any():
        print(f"[CLEAN] Repairing {int(invalid.sum())} invalid geometries")
        gdf.loc[invalid, gdf.geometry.name] = gdf.geometry[invalid].make_valid()
    return gdf


def _polygonal_only(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Keep polygon parts; drop lines/points (including those left by make_valid)."""
    gdf = gdf.explode(index_parts=False)
    keep = gdf.geometry.geom_type.isin(POLYGON_TYPES) & ~gdf.geometry.is_empty
    dropped = int((~keep).sum())
    if dropped:
        print(f"[WARN] Dropping {dropped} non-polygon geometries")
    # Re-assemble multi-part features under their original index
    out = gdf[keep].dissolve(level=0) if keep.any() else gdf[keep]
    return out


def add_patch_areas(gdf: gpd.GeoDataFrame, column: str = "area") -> gpd.GeoDataFrame:
    """New layer with planar area (working CRS units squared) per feature."""
    if gdf.crs is None:
        raise ValueError("Input geometries have no CRS; can't compute area safely.")
    if gdf.crs.is_geographic:
        raise ValueError(f"Area needs a projected CRS, got {gdf.crs}")
    out = gdf.copy()
    out[column] = out.geometry.area.astype(float)
    return out


def split_by_area(
    gdf: gpd.GeoDataFrame,
    threshold: float,
    column: str = "area",
) -> Tuple[gpd.GeoDataFrame, gpd.GeoDataFrame]:
    """Partition into (kept, discarded): kept has area >= threshold.

    The bound is closed on the kept side, so a patch of exactly `threshold`
    stays in.
    """
    if column not in gdf.columns:
        gdf = add_patch_areas(gdf, column)
    is_kept = gdf[column] >= float(threshold)
    return gdf[is_kept].copy(), gdf[~is_kept].copy()


def label_landcover(gdf: gpd.GeoDataFrame, landcover_class: int = 1, column: str = "landcover") -> gpd.GeoDataFrame:
    out = gdf.copy()
    out[column] = int(landcover_class)
    return out


def forest_class_raster(
    forest: gpd.GeoDataFrame,
    grid: GridSpec,
    *,
    label: str = "landcover",
    background: int = 0,
    overlap: str = "first",
    max_pixels: Optional[int] = None,
) -> Raster:
    """Rasterize labelled forest and fill everything else with the background class."""
    labelled = rasterize_labels(forest, label, grid, overlap=overlap, max_pixels=max_pixels, dtype="uint8")
    return fill_background(labelled, background)


# -----------------------------------------------------------------------------
# Core function (called by forestconn.digitize)
# -----------------------------------------------------------------------------

def clean_forest(
    forest_path: Path,
    study_area_path: Path,
    *,
    grid_params: GridParams,
    cleaning: CleaningParams,
    overlap: str = "first",
    out_gpkg: Optional[Path] = None,
    out_raster: Optional[Path] = None,
    out_discarded: Optional[Path] = None,
    overwrite: bool = False,
) -> Tuple[gpd.GeoDataFrame, gpd.GeoDataFrame, Raster]:
    """Clean the digitized layer and rasterize it over the study area.

    Steps:
    1. Read and reproject both layers to the working CRS
    2. Repair geometries, drop non-polygons
    3. Compute areas and remove patches below size_threshold
    4. Label survivors with landcover_class
    5. Rasterize over the study-area bounds and fill background_class
    6. Write the outputs that were requested

    Returns:
        (kept, discarded, forest_raster)
    """
    forest = read_layer(forest_path, grid_params.crs)
    study_area = read_layer(study_area_path, grid_params.crs)

    forest = _polygonal_only(_make_valid(forest))
    with_areas = add_patch_areas(forest)
    kept, discarded = split_by_area(with_areas, cleaning.size_threshold)
    kept = label_landcover(kept, cleaning.landcover_class)

    grid = GridSpec.from_bounds(tuple(study_area.total_bounds), grid_params.resolution, grid_params.crs)
    raster = forest_class_raster(
        kept,
        grid,
        background=cleaning.background_class,
        overlap=overlap,
        max_pixels=grid_params.max_pixels,
    )

    if out_gpkg:
        write_layer(kept, out_gpkg, layer="forest_small_removed", overwrite=overwrite)
    if out_discarded:
        write_layer(discarded, out_discarded, layer="forest_small_patches", overwrite=overwrite)
    if out_raster:
        write_raster(raster.rename("landcover"), out_raster, overwrite=overwrite)

    # --- Human-friendly summary ---
    lo, hi = raster_range(raster)
    print(f"[CLEAN] {len(with_areas)} features, threshold {cleaning.size_threshold:g} sq units")
    print(f"  - kept:      {len(kept)} (total area {kept['area'].sum():,.1f})")
    print(f"  - discarded: {len(discarded)} (total area {discarded['area'].sum():,.1f})")
    print(f"  - raster:    {grid.height} x {grid.width} px @ {grid_params.resolution:g}, bounds {format_bbox(grid.bounds)}")
    print(f"  - values:    min={lo:g} max={hi:g}")

    return kept, discarded, raster
