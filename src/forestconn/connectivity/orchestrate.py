#!/usr/bin/env python3
"""orchestrate.py

Run the per-focal-point pipeline over every focal point.

Per point (independent of every other point):
1. focal zones (metric + search buffers)
2. source raster + cumulative cost through the cost raster
3. decay weights -> weighted pixel areas
4. focal patch selection + area sums -> one metrics row

The cost raster, patch layer and forest layer are shared read-only inputs.
Points run in a process (or thread) pool; each worker receives the shared
inputs once at start-up, and rows are collected in completion order and
sorted by patch at the end.

Called by:
  python -m forestconn.connectivity metrics ...
"""

from __future__ import annotations

from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.geometry import Point

from forestconn.config import ConnectivityParams, RuntimeParams, Settings, format_bbox
from forestconn.connectivity.aggregate import clipped_raster, coverage_fractions, forest_in_zone, patch_metrics
from forestconn.connectivity.bridge import cost_raster
from forestconn.connectivity.cost import FocalZones, clip, cumulative_cost, focal_zones, seed_mask, source_raster
from forestconn.connectivity.patches import (
    STATUS_BOUNDARY,
    STATUS_OK,
    STATUS_SEED_NOT_TRAVERSABLE,
    delineate_patches,
    select_focal_patch,
)
from forestconn.connectivity.weights import assign_weights, pixel_areas, weighted_pixel_areas
from forestconn.grid import GridSpec, Raster, assert_same_grid, assert_vector_crs, raster_range
from forestconn.io import read_layer, read_raster


METRIC_COLUMNS = ["patch", "weighted_patch_area", "unweighted_patch_area", "forest_amount", "status"]


@dataclass
class ConnectivityInputs:
    """Shared read-only inputs of the per-point phase."""
    cost: Raster
    patches: gpd.GeoDataFrame
    forest: gpd.GeoDataFrame
    params: ConnectivityParams


# -----------------------------------------------------------------------------
# Global preparation (runs once)
# -----------------------------------------------------------------------------

def prepare_inputs(
    forest: gpd.GeoDataFrame,
    study_area: gpd.GeoDataFrame,
    settings: Settings,
    *,
    forest_raster: Optional[Raster] = None,
) -> Tuple[ConnectivityInputs, Raster, gpd.GeoDataFrame]:
    """Bridge gaps, build the cost raster and delineate patches.

    forest_raster, when given (output of forestconn.digitize), must sit on
    exactly the working grid; a mismatch is raised, not reprojected.

    Returns (inputs, bridged_mask, bridged_layer).
    """
    g, c = settings.grid, settings.connectivity
    grid = GridSpec.from_bounds(tuple(study_area.total_bounds), g.resolution, g.crs)
    assert_vector_crs(forest, grid, what="forest layer")
    assert_vector_crs(study_area, grid, what="study area")
    if forest_raster is not None:
        assert_same_grid(grid, forest_raster.grid, what="working grid and forest raster")

    # Per-point unions of the true forest fail on self-intersecting rings
    invalid = ~forest.geometry.is_valid
    if invalid.any():
        print(f"[BRIDGE] Repairing {int(invalid.sum())} invalid forest geometries")
        forest = forest.copy()
        forest.loc[invalid, forest.geometry.name] = forest.geometry[invalid].make_valid()

    bridged, mask, cost = cost_raster(
        forest,
        grid,
        c.gap_threshold,
        landcover_class=settings.cleaning.landcover_class,
        background=settings.cleaning.background_class,
        quad_segs=c.quad_segs,
        max_pixels=g.max_pixels,
    )
    lo, hi = raster_range(mask)
    print(f"[BRIDGE] gap {c.gap_threshold:g}: {int(cost.valid.sum()):,} traversable of {grid.n_pixels:,} px (min={lo:g} max={hi:g})")
    print(f"  - grid: {grid.height} x {grid.width} px @ {g.resolution:g}, bounds {format_bbox(grid.bounds)}")

    region = study_area.union_all() if hasattr(study_area, "union_all") else study_area.unary_union
    patches = delineate_patches(cost, region, max_pixels=g.max_pixels, landcover_class=settings.cleaning.landcover_class)
    inputs = ConnectivityInputs(cost=cost, patches=patches, forest=forest, params=c)
    return inputs, mask, bridged


def validate_focal_points(points: gpd.GeoDataFrame, grid: GridSpec, id_column: str = "patch") -> gpd.GeoDataFrame:
    """Focal points need point geometries and a unique, non-zero integer id."""
    assert_vector_crs(points, grid, what="focal points")
    if id_column not in points.columns:
        raise ValueError(f"Focal points need a '{id_column}' column. Available columns: {list(points.columns)}")
    ids = points[id_column]
    if ids.isna().any():
        raise ValueError(f"{int(ids.isna().sum())} focal points have no '{id_column}' id")
    if not pd.api.types.is_numeric_dtype(ids) or not np.all(np.mod(ids.astype(float), 1) == 0):
        raise ValueError(f"Focal point '{id_column}' ids must be integers, got dtype {ids.dtype}")
    if (ids == 0).any():
        raise ValueError(f"Focal point '{id_column}' id 0 is reserved (it marks non-source pixels)")
    dupes = ids[ids.duplicated()].unique().tolist()
    if dupes:
        raise ValueError(f"Duplicate focal point ids: {sorted(dupes)[:10]}")
    kinds = set(points.geometry.geom_type.unique())
    if kinds - {"Point"}:
        raise ValueError(f"Focal points must be Point geometries, found {sorted(kinds)}")
    out = points.copy()
    out[id_column] = ids.astype("int64")
    return out


# -----------------------------------------------------------------------------
# Per-point work
# -----------------------------------------------------------------------------

def focal_weighted_areas(inputs: ConnectivityInputs, point: Point, patch_id: int) -> Tuple[FocalZones, Raster, Raster, bool]:
    """Zones, plain pixel areas and weighted pixel areas around one point.

    Both rasters share the search-zone window of the cost raster. The last
    item tells whether any focal pixel was traversable; without a seed the
    weighted raster is entirely unset.
    """
    p = inputs.params
    zones = focal_zones(point, p.metric_radius, p.search_radius, quad_segs=p.quad_segs)
    window = inputs.cost.window(zones.search.bounds)
    search_cost = clip(inputs.cost, zones.search)
    assert_same_grid(window.grid, search_cost.grid, what="cost window and search window")

    source = source_raster(point, patch_id, search_cost.grid, zones.search)
    acc = cumulative_cost(
        search_cost,
        source,
        max_distance=p.max_cost_distance,
        eight_connected=p.eight_connected,
    )
    weighted = weighted_pixel_areas(assign_weights(acc, p.alpha))
    plain = pixel_areas(window)
    return zones, plain, weighted, bool(seed_mask(search_cost, source).any())


def _focal_patch_geom(inputs: ConnectivityInputs, point: Point, seeded: bool):
    hits, status = select_focal_patch(inputs.patches, point)
    if status not in (STATUS_OK, STATUS_BOUNDARY):
        return None, status
    if not seeded:
        return None, STATUS_SEED_NOT_TRAVERSABLE
    return hits.geometry.iloc[0], status


def point_metrics(inputs: ConnectivityInputs, point: Point, patch_id: int) -> Dict[str, Any]:
    zones, plain, weighted, seeded = focal_weighted_areas(inputs, point, patch_id)
    patch_geom, status = _focal_patch_geom(inputs, point, seeded)
    forest_zone = forest_in_zone(inputs.forest, zones.metric)
    row: Dict[str, Any] = {"patch": int(patch_id)}
    row.update(patch_metrics(weighted, plain, patch_geom, forest_zone))
    row["status"] = status
    return row


def point_image(inputs: ConnectivityInputs, point: Point, patch_id: int) -> Tuple[int, Optional[Raster], str]:
    """Weighted pixel areas clipped to patch ∩ metric zone ∩ forest, for diagnostics."""
    zones, _, weighted, seeded = focal_weighted_areas(inputs, point, patch_id)
    patch_geom, status = _focal_patch_geom(inputs, point, seeded)
    if patch_geom is None:
        return int(patch_id), None, status
    region = forest_in_zone(inputs.forest, zones.metric).intersection(patch_geom)
    image = clipped_raster(weighted, region, coverage_fractions(region, weighted.grid))
    return int(patch_id), image.rename("weighted_pixel_area"), status


def _failed_row(patch_id: int, err: Exception) -> Dict[str, Any]:
    return {
        "patch": int(patch_id),
        "weighted_patch_area": float("nan"),
        "unweighted_patch_area": float("nan"),
        "forest_amount": float("nan"),
        "status": f"error: {err}",
    }


# -----------------------------------------------------------------------------
# Pool plumbing
# -----------------------------------------------------------------------------
# Process workers get the shared inputs once through the initializer instead
# of pickling them with every task.

_WORKER_INPUTS: Optional[ConnectivityInputs] = None


def _init_worker(inputs: ConnectivityInputs) -> None:
    global _WORKER_INPUTS
    _WORKER_INPUTS = inputs


def _metrics_task(task: Tuple[int, float, float]) -> Dict[str, Any]:
    patch_id, x, y = task
    try:
        return point_metrics(_WORKER_INPUTS, Point(x, y), patch_id)
    except Exception as e:  # one bad point must not abort the batch
        return _failed_row(patch_id, e)


def _image_task(task: Tuple[int, float, float]):
    patch_id, x, y = task
    try:
        return point_image(_WORKER_INPUTS, Point(x, y), patch_id)
    except Exception as e:
        return int(patch_id), None, f"error: {e}"


def _tasks(points: gpd.GeoDataFrame, id_column: str) -> List[Tuple[int, float, float]]:
    return [(int(pid), float(geom.x), float(geom.y)) for pid, geom in zip(points[id_column], points.geometry)]


def _make_executor(inputs: ConnectivityInputs, runtime: RuntimeParams) -> Executor:
    if runtime.executor == "process":
        return ProcessPoolExecutor(max_workers=runtime.n_workers, initializer=_init_worker, initargs=(inputs,))
    _init_worker(inputs)
    return ThreadPoolExecutor(max_workers=runtime.n_workers)


def _run(fn: Callable, inputs: ConnectivityInputs, tasks: List, runtime: RuntimeParams) -> List:
    if runtime.n_workers <= 1 or len(tasks) <= 1:
        _init_worker(inputs)
        return [fn(t) for t in tasks]

    results = []
    with _make_executor(inputs, runtime) as pool:
        futures = [pool.submit(fn, t) for t in tasks]
        for fut in as_completed(futures):
            results.append(fut.result())
    return results


# -----------------------------------------------------------------------------
# Public entrypoints
# -----------------------------------------------------------------------------

def compute_patch_metrics(
    inputs: ConnectivityInputs,
    focal_points: gpd.GeoDataFrame,
    runtime: RuntimeParams = RuntimeParams(workers=1),
    *,
    id_column: str = "patch",
) -> pd.DataFrame:
    """One metrics row per focal point, sorted by patch id.

    Columns: patch, weighted_patch_area, unweighted_patch_area,
    forest_amount, status. Anomalous points (no or several containing
    patches, an untraversable focal pixel, failures) keep their row with NaN
    metrics and a status flag.
    """
    points = validate_focal_points(focal_points, inputs.cost.grid, id_column)
    tasks = _tasks(points, id_column)
    print(f"[METRICS] {len(tasks)} focal points, {runtime.n_workers} {runtime.executor} worker(s)")

    rows = _run(_metrics_task, inputs, tasks, runtime)
    df = pd.DataFrame(rows, columns=METRIC_COLUMNS).sort_values("patch").reset_index(drop=True)

    flagged = df[~df["status"].isin([STATUS_OK])]
    for _, row in flagged.iterrows():
        print(f"[WARN] patch {row['patch']}: {row['status']}")
    print(f"[METRICS] Done: {len(df) - len(flagged)} ok, {len(flagged)} flagged")
    return df


def weighted_area_images(
    inputs: ConnectivityInputs,
    focal_points: gpd.GeoDataFrame,
    runtime: RuntimeParams = RuntimeParams(workers=1),
    *,
    id_column: str = "patch",
) -> List[Tuple[int, Raster]]:
    """Clipped weighted pixel-area raster per focal point, tagged with its patch id.

    Points without a single focal patch, or that failed, are reported and
    left out.
    """
    points = validate_focal_points(focal_points, inputs.cost.grid, id_column)
    tasks = _tasks(points, id_column)
    print(f"[IMAGES] {len(tasks)} focal points, {runtime.n_workers} {runtime.executor} worker(s)")

    images = []
    for patch_id, image, status in _run(_image_task, inputs, tasks, runtime):
        if image is None:
            print(f"[WARN] patch {patch_id}: no image ({status})")
            continue
        images.append((patch_id, image))
    images.sort(key=lambda t: t[0])
    return images


def load_inputs(
    forest_path: Path,
    study_area_path: Path,
    settings: Settings,
    *,
    forest_raster_path: Optional[Path] = None,
) -> Tuple[ConnectivityInputs, Raster, gpd.GeoDataFrame]:
    """Read layers from disk and run prepare_inputs()."""
    forest = read_layer(forest_path, settings.grid.crs)
    study_area = read_layer(study_area_path, settings.grid.crs)
    forest_raster = read_raster(forest_raster_path) if forest_raster_path else None
    return prepare_inputs(forest, study_area, settings, forest_raster=forest_raster)
