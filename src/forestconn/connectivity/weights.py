#!/usr/bin/env python3
"""weights.py

Negative-exponential decay weights from cumulative cost, and per-pixel areas.

weight = exp(alpha * cost), alpha < 0, so weight is 1 at the focal pixel and
falls towards 0 with cost. Unset cost pixels stay unset: "no weight" is not
"weight 0", and unset pixels drop out of area sums entirely.
"""

from __future__ import annotations

import numpy as np

from forestconn.grid import Raster


def assign_weights(cumulative: Raster, alpha: float) -> Raster:
    if alpha >= 0:
        raise ValueError(f"alpha must be negative for a decaying weight, got {alpha}")
    weights = np.ma.exp(cumulative.data.astype("float64") * float(alpha))
    return Raster(weights, cumulative.grid, name="weighted_cumulative_cost")


def pixel_areas(raster: Raster, name: str = "pixel_area") -> Raster:
    """Multiply every valid pixel value by the pixel's area (planar grid)."""
    return Raster(raster.data.astype("float64") * raster.grid.pixel_area, raster.grid, name=name)


def weighted_pixel_areas(weights: Raster) -> Raster:
    return pixel_areas(weights, name="weighted_pixel_area")
