#!/usr/bin/env python3
"""forestconn.grid

Explicit working-grid value and the masked raster type used everywhere else.

Every raster in one computation shares a single GridSpec (CRS + pixel size +
pixel alignment). Components receive the grid as an argument instead of
inferring it from their inputs, and mismatches are raised, never reprojected.

Raster values live in numpy masked arrays: a masked pixel is "unset" (no
value), which is different from a pixel valued at 0.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
from rasterio.crs import CRS
from rasterio.transform import Affine

BBox = Tuple[float, float, float, float]


class GridMismatchError(ValueError):
    """Inputs of one computation don't share CRS, resolution or alignment."""


class PixelBudgetError(ValueError):
    """A raster operation would touch more pixels than the configured budget."""


# -----------------------------------------------------------------------------
# Grid specification
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class GridSpec:
    crs: CRS
    transform: Affine
    width: int
    height: int

    @classmethod
    def from_bounds(cls, bounds: BBox, resolution: float, crs) -> "GridSpec":
        """North-up grid covering bounds, origin snapped outward to multiples of resolution."""
        res = float(resolution)
        if res <= 0:
            raise ValueError(f"resolution must be positive, got {resolution}")
        crs = CRS.from_user_input(crs)
        if crs.is_geographic:
            raise GridMismatchError(f"Working CRS must be projected (planar distances), got {crs}")
        xmin, ymin, xmax, ymax = bounds
        x0 = math.floor(xmin / res) * res
        y1 = math.ceil(ymax / res) * res
        width = max(1, int(math.ceil((xmax - x0) / res - 1e-9)))
        height = max(1, int(math.ceil((y1 - ymin) / res - 1e-9)))
        return cls(crs=crs, transform=Affine(res, 0.0, x0, 0.0, -res, y1), width=width, height=height)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def res(self) -> Tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def pixel_area(self) -> float:
        xres, yres = self.res
        return xres * yres

    @property
    def n_pixels(self) -> int:
        return int(self.width) * int(self.height)

    @property
    def bounds(self) -> BBox:
        t = self.transform
        xmin = t.c
        ymax = t.f
        return (xmin, ymax - self.height * abs(t.e), xmin + self.width * t.a, ymax)

    def index(self, x: float, y: float) -> Tuple[int, int]:
        """(row, col) of the pixel containing (x, y); may fall outside the grid."""
        col, row = ~self.transform @ (x, y)
        return int(math.floor(row)), int(math.floor(col))

    def touching_indices(self, x: float, y: float, eps: float = 1e-9) -> List[Tuple[int, int]]:
        """(row, col) of every in-grid pixel whose closed extent holds (x, y).

        One pixel for an interior point, two on a pixel edge, four on a
        corner. Unlike index(), the result doesn't depend on which side of
        an edge the point is rounded to.
        """
        col, row = ~self.transform @ (x, y)
        rows = range(int(math.floor(row - eps)), int(math.floor(row + eps)) + 1)
        cols = range(int(math.floor(col - eps)), int(math.floor(col + eps)) + 1)
        return [(r, c) for r in rows for c in cols if self.contains_index(r, c)]

    def contains_index(self, row: int, col: int) -> bool:
        return 0 <= row < self.height and 0 <= col < self.width

    def pixel_edges(self) -> Tuple[np.ndarray, np.ndarray]:
        """Column x-edges (width + 1) and row y-edges (height + 1), top to bottom."""
        t = self.transform
        xs = t.c + t.a * np.arange(self.width + 1, dtype=np.float64)
        ys = t.f + t.e * np.arange(self.height + 1, dtype=np.float64)
        return xs, ys

    def check_budget(self, max_pixels: int, what: str = "raster") -> None:
        if self.n_pixels > int(max_pixels):
            raise PixelBudgetError(
                f"{what} needs {self.n_pixels:,} pixels ({self.height} x {self.width}), "
                f"over the budget of {int(max_pixels):,}. Tile the region or raise grid.max_pixels."
            )

    def window(self, bounds: BBox) -> Tuple[int, int, "GridSpec"]:
        """Sub-grid aligned to this grid that covers bounds.

        Returns (row_off, col_off, subgrid). Offsets may be negative or exceed
        the grid when bounds reach past its edges.
        """
        xmin, ymin, xmax, ymax = bounds
        xres, yres = self.res
        t = self.transform
        col0 = int(math.floor((xmin - t.c) / xres + 1e-9))
        col1 = int(math.ceil((xmax - t.c) / xres - 1e-9))
        row0 = int(math.floor((t.f - ymax) / yres + 1e-9))
        row1 = int(math.ceil((t.f - ymin) / yres - 1e-9))
        width = max(1, col1 - col0)
        height = max(1, row1 - row0)
        sub = GridSpec(
            crs=self.crs,
            transform=t @ Affine.translation(col0, row0),
            width=width,
            height=height,
        )
        return row0, col0, sub


def same_grid(a: GridSpec, b: GridSpec) -> bool:
    """True when a and b share CRS, resolution and pixel alignment."""
    if a.crs != b.crs:
        return False
    if not np.allclose(a.res, b.res, rtol=0, atol=1e-9 * max(a.res)):
        return False
    xres, yres = a.res
    dx = (b.transform.c - a.transform.c) / xres
    dy = (b.transform.f - a.transform.f) / yres
    return abs(dx - round(dx)) < 1e-6 and abs(dy - round(dy)) < 1e-6


def assert_same_grid(a: GridSpec, b: GridSpec, what: str = "inputs") -> None:
    if not same_grid(a, b):
        raise GridMismatchError(
            f"Grid mismatch between {what}: "
            f"crs {a.crs} vs {b.crs}, res {a.res} vs {b.res}, "
            f"origin ({a.transform.c}, {a.transform.f}) vs ({b.transform.c}, {b.transform.f})"
        )


def assert_vector_crs(gdf, grid: GridSpec, what: str = "vector layer") -> None:
    """Vector layers must already be in the working CRS (reproject at read time)."""
    if gdf.crs is None:
        raise GridMismatchError(f"{what} has no CRS")
    if CRS.from_user_input(gdf.crs) != grid.crs:
        raise GridMismatchError(f"{what} CRS {gdf.crs} does not match working CRS {grid.crs}")


# -----------------------------------------------------------------------------
# Masked raster
# -----------------------------------------------------------------------------

@dataclass
class Raster:
    data: np.ma.MaskedArray
    grid: GridSpec
    name: str = "band"

    def __post_init__(self):
        if not isinstance(self.data, np.ma.MaskedArray):
            self.data = np.ma.asarray(self.data)
        # Expand nomask so callers can always index the mask
        self.data = np.ma.array(self.data, mask=np.ma.getmaskarray(self.data))
        if self.data.shape != self.grid.shape:
            raise GridMismatchError(f"Raster '{self.name}' shape {self.data.shape} != grid shape {self.grid.shape}")

    @property
    def valid(self) -> np.ndarray:
        return ~np.ma.getmaskarray(self.data)

    def filled(self, value) -> "Raster":
        """Replace unset pixels with an explicit value (no pixel stays masked)."""
        arr = self.data.filled(value)
        return Raster(np.ma.array(arr, mask=np.zeros(arr.shape, dtype=bool)), self.grid, self.name)

    def update_mask(self, keep: np.ndarray) -> "Raster":
        """Mask out every pixel where keep is False (existing masks stay)."""
        mask = np.ma.getmaskarray(self.data) | ~np.asarray(keep, dtype=bool)
        return Raster(np.ma.array(self.data.data, mask=mask), self.grid, self.name)

    def rename(self, name: str) -> "Raster":
        return Raster(self.data, self.grid, name)

    def window(self, bounds: BBox) -> "Raster":
        """Copy of the pixels covering bounds; pixels outside this raster come back masked."""
        row0, col0, sub = self.grid.window(bounds)
        out = np.ma.masked_all(sub.shape, dtype=self.data.dtype)
        r0, r1 = max(row0, 0), min(row0 + sub.height, self.grid.height)
        c0, c1 = max(col0, 0), min(col0 + sub.width, self.grid.width)
        if r1 > r0 and c1 > c0:
            out[r0 - row0:r1 - row0, c0 - col0:c1 - col0] = self.data[r0:r1, c0:c1]
        return Raster(out, sub, self.name)


def raster_range(raster: Raster) -> Tuple[float, float]:
    """Min/max over valid pixels; (nan, nan) when nothing is valid."""
    vals = raster.data.compressed()
    if vals.size == 0:
        return (float("nan"), float("nan"))
    return (float(vals.min()), float(vals.max()))
