#!/usr/bin/env python3
"""forestconn.connectivity

Processing CLI for forest connectivity around focal points.

This is one of two forestconn subsystem CLIs:
- forestconn.digitize     → clean the digitized layer, rasterize it
- forestconn.connectivity → gap bridging, patches, weighted patch areas (this file)

Examples:
  # Gap-bridged traversability raster only
  python -m forestconn.connectivity bridge \
    --forest data/interim/vectors/forest_small_removed.gpkg \
    --study-area data/raw/study_area.gpkg \
    --out-raster data/interim/rasters/forest_bridged.tif

  # Patch outlines (8-connected components of the bridged raster)
  python -m forestconn.connectivity patches \
    --forest data/interim/vectors/forest_small_removed.gpkg \
    --study-area data/raw/study_area.gpkg \
    --out-gpkg data/interim/vectors/patches.gpkg

  # Metrics table for every focal point, with per-point rasters
  python -m forestconn.connectivity metrics \
    --forest data/interim/vectors/forest_small_removed.gpkg \
    --study-area data/raw/study_area.gpkg \
    --focal-points data/raw/focal_points.gpkg \
    --out-csv data/processed/patch_metrics.csv \
    --images-dir data/processed/weighted_areas \
    --workers 8
"""

from __future__ import annotations

import argparse
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from forestconn.config import DEFAULT_CONFIG_YAML, DEFAULT_OUT_DIR, coerce_bbox, format_bbox, load_settings, resolve_config_path


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def _add_inputs(p: argparse.ArgumentParser) -> None:
    p.add_argument("--forest", required=True, type=Path, help="Cleaned forest layer (output of forestconn.digitize)")
    p.add_argument("--study-area", required=True, type=Path, help="Study-area boundary layer (defines the grid)")
    p.add_argument(
        "--forest-raster",
        type=Path,
        default=None,
        help="Optional forest class raster from forestconn.digitize; must match the working grid exactly",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for forestconn.connectivity."""
    ap = argparse.ArgumentParser(
        prog="forestconn.connectivity",
        description="Gap bridging, patch delineation and distance-weighted patch areas",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m forestconn.digitize      # Digitized layer processing
  python -m forestconn.connectivity  # Weighted patch areas (this)
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Path to parameters YAML (default: {DEFAULT_CONFIG_YAML} when present, else built-in defaults)",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without reading or writing layers",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    bridge = sub.add_parser(
        "bridge",
        help="Write the gap-bridged traversability raster",
        description="""
Bridge gaps narrower than gap_threshold between forest fragments.

Every forest polygon is buffered by gap_threshold / 2, the buffers are merged,
and the union is rasterized over the study-area grid (background filled).
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_inputs(bridge)
    bridge.add_argument("--out-raster", required=True, type=Path, help="Output GeoTIFF for the bridged raster")

    patches = sub.add_parser(
        "patches",
        help="Write patch outlines of the bridged raster",
        description="""
Delineate patches: 8-connected components of traversable pixels inside the
study area, one polygon per component.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_inputs(patches)
    patches.add_argument("--out-gpkg", required=True, type=Path, help="Output GeoPackage for patch polygons")

    metrics = sub.add_parser(
        "metrics",
        help="Compute weighted/unweighted patch area and forest amount per focal point",
        description="""
Compute the connectivity metrics for every focal point.

This command:
1. Bridges gaps and builds the cost raster over the study area
2. Delineates patches
3. For each focal point (in parallel):
   - cumulative cost from the focal pixel within the search radius
   - exponential decay weights -> weighted pixel areas
   - area sums over patch ∩ metric radius ∩ forest
4. Writes one CSV row per focal point (status column flags anomalies)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_inputs(metrics)
    metrics.add_argument(
        "--focal-points",
        required=True,
        type=Path,
        help="Focal point layer with a unique integer 'patch' column",
    )
    metrics.add_argument(
        "--out-csv",
        type=Path,
        default=DEFAULT_OUT_DIR / "patch_metrics.csv",
        help=f"Output CSV (default: {DEFAULT_OUT_DIR / 'patch_metrics.csv'})",
    )
    metrics.add_argument("--out-bridged-raster", type=Path, default=None, help="Optional bridged raster GeoTIFF")
    metrics.add_argument("--out-patches", type=Path, default=None, help="Optional patch outlines GeoPackage")
    metrics.add_argument(
        "--images-dir",
        type=Path,
        default=None,
        help="Also write each point's clipped weighted pixel-area raster as <patch>.tif here",
    )
    metrics.add_argument(
        "--bbox",
        nargs=4,
        type=float,
        default=None,
        metavar=("XMIN", "YMIN", "XMAX", "YMAX"),
        help="Only process focal points inside this box (working CRS units)",
    )
    metrics.add_argument("--workers", type=int, default=None, help="Override runtime.workers")
    metrics.add_argument(
        "--executor",
        choices=["process", "thread"],
        default=None,
        help="Override runtime.executor",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _print_plan(title: str, args: argparse.Namespace, settings, outputs: List[str]) -> None:
    c = settings.connectivity
    print(f"[DRY-RUN] Would {title}:")
    print(f"  Forest layer: {args.forest}")
    print(f"  Study area:   {args.study_area}")
    if args.forest_raster:
        print(f"  Grid check:   {args.forest_raster}")
    print(f"  CRS / res:    {settings.grid.crs} / {settings.grid.resolution:g}")
    print(f"  Gap:          {c.gap_threshold:g}")
    for line in outputs:
        print(f"  {line}")


def _handle_bridge(args: argparse.Namespace) -> int:
    settings = load_settings(resolve_config_path(args.config))
    if args.dry_run:
        _print_plan("bridge forest gaps", args, settings, [f"Output raster: {args.out_raster}"])
        return 0

    # Lazy import: keeps CLI startup fast, avoids loading geopandas until needed
    from forestconn.connectivity.orchestrate import load_inputs
    from forestconn.io import write_raster

    _, mask, _ = load_inputs(args.forest, args.study_area, settings, forest_raster_path=args.forest_raster)
    if write_raster(mask.rename("forest_bridged"), args.out_raster, overwrite=args.overwrite):
        print(f"Wrote bridged raster -> {args.out_raster}")
    return 0


def _handle_patches(args: argparse.Namespace) -> int:
    settings = load_settings(resolve_config_path(args.config))
    if args.dry_run:
        _print_plan("delineate patches", args, settings, [f"Output layer: {args.out_gpkg}"])
        return 0

    from forestconn.connectivity.orchestrate import load_inputs
    from forestconn.io import write_layer

    inputs, _, _ = load_inputs(args.forest, args.study_area, settings, forest_raster_path=args.forest_raster)
    write_layer(inputs.patches, args.out_gpkg, layer="patches", overwrite=args.overwrite)
    return 0


def _handle_metrics(args: argparse.Namespace) -> int:
    settings = load_settings(resolve_config_path(args.config))
    runtime = settings.runtime
    if args.workers is not None:
        runtime = replace(runtime, workers=args.workers)
    if args.executor is not None:
        runtime = replace(runtime, executor=args.executor)
    if runtime.n_workers < 1:
        raise SystemExit(f"--workers must be >= 1, got {runtime.n_workers}")

    bbox = None
    if args.bbox is not None:
        bbox = coerce_bbox(args.bbox)
        if bbox is None:
            raise SystemExit(f"Invalid --bbox {args.bbox}: expected XMIN YMIN XMAX YMAX with min < max")

    if args.dry_run:
        c = settings.connectivity
        outputs = [
            f"Focal points: {args.focal_points}",
            f"Radii:        metric {c.metric_radius:g} / search {c.search_radius:g}, max cost {c.max_cost_distance:g}",
            f"Decay alpha:  {c.alpha:.6g}",
            f"Workers:      {runtime.n_workers} ({runtime.executor})",
            f"Output CSV:   {args.out_csv}",
        ]
        if bbox:
            outputs.append(f"Point bbox:   {format_bbox(bbox)}")
        if args.out_bridged_raster:
            outputs.append(f"Bridged raster: {args.out_bridged_raster}")
        if args.out_patches:
            outputs.append(f"Patch layer:  {args.out_patches}")
        if args.images_dir:
            outputs.append(f"Images dir:   {args.images_dir}")
        _print_plan("compute patch metrics", args, settings, outputs)
        return 0

    from forestconn.connectivity.orchestrate import compute_patch_metrics, load_inputs, weighted_area_images
    from forestconn.io import read_layer, write_layer, write_metrics_csv, write_raster, write_weighted_images

    inputs, mask, _ = load_inputs(args.forest, args.study_area, settings, forest_raster_path=args.forest_raster)
    if args.out_bridged_raster:
        write_raster(mask.rename("forest_bridged"), args.out_bridged_raster, overwrite=args.overwrite)
    if args.out_patches:
        write_layer(inputs.patches, args.out_patches, layer="patches", overwrite=args.overwrite)

    points = read_layer(args.focal_points, settings.grid.crs)
    if bbox:
        points = points.cx[bbox[0]:bbox[2], bbox[1]:bbox[3]]
        print(f"[METRICS] {len(points)} focal points inside {format_bbox(bbox)}")
        if points.empty:
            raise SystemExit("No focal points inside --bbox")

    df = compute_patch_metrics(inputs, points, runtime)
    write_metrics_csv(df, args.out_csv, overwrite=args.overwrite)

    if args.images_dir:
        images = weighted_area_images(inputs, points, runtime)
        write_weighted_images(images, args.images_dir, overwrite=args.overwrite)

    # Human-friendly summary
    ok = df.dropna(subset=["weighted_patch_area"])
    print(f"\n[METRICS] {len(df)} focal points, {len(ok)} with patch metrics")
    if not ok.empty:
        print(f"  - weighted patch area:   median {ok['weighted_patch_area'].median():,.1f}")
        print(f"  - unweighted patch area: median {ok['unweighted_patch_area'].median():,.1f}")
        print(f"  - forest amount:         median {ok['forest_amount'].median():,.1f}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for forestconn.connectivity CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "bridge": _handle_bridge,
        "patches": _handle_patches,
        "metrics": _handle_metrics,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(args)
    except ValueError as e:
        # Configuration errors (grid mismatch, pixel budget, label type, params)
        raise SystemExit(f"[ERROR] {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
