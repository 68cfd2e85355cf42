#!/usr/bin/env python3
"""forestconn.digitize

Processing CLI for the hand-digitized forest layer.

This is one of two forestconn subsystem CLIs:
- forestconn.digitize     → clean the digitized layer, rasterize it (this file)
- forestconn.connectivity → gap bridging, patches, weighted patch areas

Outputs of this CLI are the inputs of forestconn.connectivity:
- cleaned, labelled forest layer (GeoPackage)
- forest class raster with background matrix (GeoTIFF, values {0,1})

Examples:
  # Remove patches below the size threshold, label, rasterize
  python -m forestconn.digitize clean \
    --forest data/raw/digitized_forest.kml \
    --study-area data/raw/study_area.gpkg \
    --out-gpkg data/interim/vectors/forest_small_removed.gpkg \
    --out-raster data/interim/rasters/forest_with_matrix.tif
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from forestconn.config import DEFAULT_CONFIG_YAML, load_settings, resolve_config_path


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for forestconn.digitize."""
    ap = argparse.ArgumentParser(
        prog="forestconn.digitize",
        description="Clean and rasterize a hand-digitized forest layer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m forestconn.digitize      # Digitized layer processing (this)
  python -m forestconn.connectivity  # Weighted patch areas
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

    clean = sub.add_parser(
        "clean",
        help="Remove small patches, label landcover, rasterize with background",
        description="""
Process a hand-digitized forest layer.

This command:
1. Reads the forest and study-area layers, reprojecting to the working CRS
2. Repairs invalid geometries and drops non-polygon features
3. Computes each patch's area and drops patches below size_threshold
4. Labels kept patches with landcover_class
5. Rasterizes over the study area and fills background_class
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    clean.add_argument("--forest", required=True, type=Path, help="Digitized forest layer (any OGR format)")
    clean.add_argument("--study-area", required=True, type=Path, help="Study-area boundary layer")
    clean.add_argument("--out-gpkg", required=True, type=Path, help="Output GeoPackage for the cleaned layer")
    clean.add_argument("--out-raster", required=True, type=Path, help="Output GeoTIFF for the forest class raster")
    clean.add_argument(
        "--out-discarded",
        type=Path,
        default=None,
        help="Optional GeoPackage for the patches that were removed",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_clean(args: argparse.Namespace) -> int:
    settings = load_settings(resolve_config_path(args.config))

    if args.dry_run:
        print("[DRY-RUN] Would clean digitized forest:")
        print(f"  Forest layer: {args.forest}")
        print(f"  Study area:   {args.study_area}")
        print(f"  Output layer: {args.out_gpkg}")
        print(f"  Output raster: {args.out_raster}")
        print(f"  CRS / res:    {settings.grid.crs} / {settings.grid.resolution:g}")
        print(f"  Threshold:    {settings.cleaning.size_threshold:g}")
        return 0

    # Lazy import: keeps CLI startup fast, avoids loading geopandas until needed
    from forestconn.digitize.clean_forest import clean_forest

    clean_forest(
        args.forest,
        args.study_area,
        grid_params=settings.grid,
        cleaning=settings.cleaning,
        overlap=settings.connectivity.overlap,
        out_gpkg=args.out_gpkg,
        out_raster=args.out_raster,
        out_discarded=args.out_discarded,
        overwrite=args.overwrite,
    )
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for forestconn.digitize CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "clean": _handle_clean,
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
