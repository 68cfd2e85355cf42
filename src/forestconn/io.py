#!/usr/bin/env python3
"""forestconn.io

Read and write layers, rasters and tables.

This is the only module that touches disk. Processing modules take and
return GeoDataFrames / Rasters and never open files themselves.

Required deps (typical conda geo stack): geopandas, rasterio, numpy
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from rasterio.crs import CRS

from forestconn.grid import GridSpec, Raster


def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def _skip_existing(path: Path, overwrite: bool) -> bool:
    if path.exists() and not overwrite:
        print(f"[SKIP] {path} exists (use --overwrite to replace)")
        return True
    return False


# -----------------------------------------------------------------------------
# Vector layers
# -----------------------------------------------------------------------------

def read_layer(path: Path, crs, layer: Optional[str] = None) -> gpd.GeoDataFrame:
    """Read a vector layer and reproject it to the working CRS.

    Raises SystemExit on a missing file, an empty layer or a layer without CRS.
    Everything downstream depends on CRS, so there is no guessing here.
    """
    if not path.exists():
        raise SystemExit(f"Layer not found: {path}")
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    if gdf.empty:
        raise SystemExit(f"Loaded {path} but it contains zero features. Wrong file?")
    if gdf.crs is None:
        raise SystemExit(f"{path} has no CRS (.prj missing or unreadable). Fix that first.")
    target = CRS.from_user_input(crs)
    if CRS.from_user_input(gdf.crs) != target:
        print(f"[READ] {path.name}: reprojecting {gdf.crs} -> {target}")
        gdf = gdf.to_crs(target)
    return gdf


def write_layer(gdf: gpd.GeoDataFrame, path: Path, layer: Optional[str] = None, *, overwrite: bool = True) -> Optional[Path]:
    """Write a layer; GeoPackage unless the extension says otherwise."""
    if _skip_existing(path, overwrite):
        return None
    _ensure_dir(path.parent)
    suffix = path.suffix.lower()
    if suffix == ".gpkg":
        gdf.to_file(path, layer=layer or path.stem, driver="GPKG")
    elif suffix in (".geojson", ".json"):
        gdf.to_file(path, driver="GeoJSON")
    elif suffix == ".kml":
        gdf.to_file(path, driver="KML")
    else:
        gdf.to_file(path)
    print(f"Wrote {len(gdf)} features -> {path}")
    return path


# -----------------------------------------------------------------------------
# Rasters
# -----------------------------------------------------------------------------

def _nodata_for(dtype: np.dtype):
    if np.issubdtype(dtype, np.floating):
        return np.nan
    if np.issubdtype(dtype, np.unsignedinteger):
        return np.iinfo(dtype).max
    return np.iinfo(dtype).min


def read_raster(path: Path, name: Optional[str] = None) -> Raster:
    """Read band 1 as a masked Raster (nodata pixels come back unset)."""
    if not path.exists():
        raise SystemExit(f"Raster not found: {path}")
    with rasterio.open(path) as src:
        if src.crs is None:
            raise SystemExit(f"Raster has no CRS: {path}")
        data = src.read(1, masked=True)
        grid = GridSpec(crs=src.crs, transform=src.transform, width=src.width, height=src.height)
    return Raster(data, grid, name=name or path.stem)


def write_raster(raster: Raster, path: Path, *, nodata=None, overwrite: bool = True) -> Optional[Path]:
    """Write a Raster as a single-band GeoTIFF; unset pixels become nodata."""
    if _skip_existing(path, overwrite):
        return None
    _ensure_dir(path.parent)
    dtype = raster.data.dtype
    masked_any = bool(np.ma.getmaskarray(raster.data).any())
    if nodata is None and masked_any:
        nodata = _nodata_for(dtype)
    arr = raster.data.filled(nodata) if masked_any else np.asarray(raster.data.data)

    profile = dict(
        driver="GTiff",
        height=raster.grid.height,
        width=raster.grid.width,
        count=1,
        dtype=str(dtype),
        crs=raster.grid.crs,
        transform=raster.grid.transform,
        nodata=nodata,
        compress="deflate",
    )
    # GTiff tiles must be multiples of 16; tiny rasters stay striped
    if raster.grid.width >= 256 and raster.grid.height >= 256:
        profile.update(tiled=True, blockxsize=256, blockysize=256)

    with rasterio.open(path, "w", **profile) as dst:
        dst.write(arr, 1)
        dst.set_band_description(1, raster.name)
    return path


def write_weighted_images(
    images: Iterable[Tuple[int, Raster]],
    out_dir: Path,
    *,
    overwrite: bool = True,
) -> int:
    """One GeoTIFF per focal point, named <patch>.tif. Returns files written."""
    _ensure_dir(out_dir)
    n = 0
    for patch, raster in images:
        if write_raster(raster, out_dir / f"{patch}.tif", overwrite=overwrite) is not None:
            n += 1
    print(f"[IMAGES] Wrote {n} rasters -> {out_dir}")
    return n


# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------

def write_metrics_csv(df: pd.DataFrame, path: Path, *, overwrite: bool = True) -> Optional[Path]:
    """Write the per-point metrics table, sorted by patch for presentation."""
    if _skip_existing(path, overwrite):
        return None
    _ensure_dir(path.parent)
    out = df.sort_values("patch").reset_index(drop=True)
    out.to_csv(path, index=False)
    print(f"Wrote {len(out)} rows -> {path}")
    return path
