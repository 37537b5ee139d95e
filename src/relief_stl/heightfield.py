"""
Heightfield sampling: quantized raster + HeightPlan -> per-vertex elevations.

Two sampling modes:
  - grid: a regular (R+1)x(R+1) vertex lattice stretched over the opaque
    bbox, each vertex taking the nearest source pixel.
  - columns: one cell per source pixel; vertex (i, j) takes the pixel it
    borders, with the last row/column clamped.

Elevation is 0 for transparent pixels, otherwise ``base + cumulative`` of the
swatch whose RGB matches exactly (base alone when no swatch matches), snapped
to the nearest multiple of the layer height.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np
from scipy.ndimage import maximum_filter

from relief_stl.contracts import HeightPlan, TextureMap
from relief_stl.height_plan import snap_heights
from relief_stl.raster import BBox, RasterImage
from relief_stl.scheduling import BuildPacer

logger = logging.getLogger(__name__)

RESOLUTION_LADDER: Tuple[Tuple[int, int], ...] = (
    (3000, 512),
    (2000, 384),
    (1600, 320),
    (1200, 256),
    (900, 192),
    (600, 160),
    (400, 128),
)
DEFAULT_RESOLUTION = 96
MIN_PREVIEW_RESOLUTION = 32
MAX_PIXEL_COLUMNS = 1_200_000


def select_resolution(max_side: int) -> int:
    """Grid subdivisions per side for a bbox whose longer side is ``max_side``."""
    for threshold, resolution in RESOLUTION_LADDER:
        if max_side > threshold:
            return resolution
    return DEFAULT_RESOLUTION


def preview_resolution(resolution: int) -> int:
    return max(MIN_PREVIEW_RESOLUTION, resolution // 3)


def pixel_columns_allowed(bbox: BBox, max_pixels: int = MAX_PIXEL_COLUMNS) -> bool:
    return bbox[2] * bbox[3] <= max_pixels


@dataclass
class Heightfield:
    """Vertex lattice of elevations (mm) plus per-vertex color and crop UVs."""

    heights: np.ndarray       # (rows+1, cols+1) float64
    colors: np.ndarray        # (rows+1, cols+1, 3) uint8
    uvs: np.ndarray           # (rows+1, cols+1, 2) crop-local, v down the image
    cell_size: Tuple[float, float]
    bbox: BBox
    mode: str
    layer_height: float
    texture: TextureMap

    @property
    def rows(self) -> int:
        return int(self.heights.shape[0] - 1)

    @property
    def cols(self) -> int:
        return int(self.heights.shape[1] - 1)

    def vertex_positions(self) -> np.ndarray:
        """``(V, 3)`` top-surface positions; image row 0 sits at the largest Y."""
        dx, dy = self.cell_size
        ii, jj = np.meshgrid(
            np.arange(self.rows + 1), np.arange(self.cols + 1), indexing="ij"
        )
        x = jj * dx
        y = (self.rows - ii) * dy
        return np.stack([x, y, self.heights], axis=-1).reshape(-1, 3)


def pixel_elevations(
    pixels: np.ndarray,
    table: Dict[int, float],
    plan: HeightPlan,
) -> np.ndarray:
    """Snapped elevations for an ``(..., 4)`` RGBA array."""
    rgb = pixels[..., :3].astype(np.uint32)
    packed = (rgb[..., 0] << 16) | (rgb[..., 1] << 8) | rgb[..., 2]
    keys, inverse = np.unique(packed, return_inverse=True)
    lut = np.array([table.get(int(k), plan.base_height) for k in keys], dtype=np.float64)
    elevation = lut[inverse.reshape(-1)].reshape(packed.shape)
    elevation = np.where(pixels[..., 3] > 0, elevation, 0.0)
    return snap_heights(elevation, plan.layer_height)


def apply_stepped(heights: np.ndarray) -> np.ndarray:
    """Flatten each cell to the max of its corners.

    A corner shared by several cells takes the max over all of them, which is
    the 3x3 neighbourhood max of the vertex lattice.
    """
    if heights.size == 0:
        return heights
    return maximum_filter(heights, size=3, mode="nearest")


def _texture_for(raster: RasterImage, bbox: BBox) -> TextureMap:
    x0, y0, bw, bh = bbox
    w, h = raster.width, raster.height
    return TextureMap(
        image=raster.pixels,
        offset=(x0 / w, y0 / h),
        repeat=(bw / w, bh / h),
    )


async def sample_grid(
    raster: RasterImage,
    bbox: BBox,
    resolution: int,
    table: Dict[int, float],
    plan: HeightPlan,
    pacer: BuildPacer,
    stepped: bool = False,
) -> Heightfield:
    """Interpolated-grid heightfield over ``bbox`` at ``resolution`` cells per side."""
    x0, y0, bw, bh = bbox
    n = resolution + 1
    t = np.arange(n) / float(resolution)
    px = x0 + np.clip(np.floor(t * (bw - 1) + 0.5), 0, bw - 1).astype(np.int64)
    py = y0 + np.clip(np.floor(t * (bh - 1) + 0.5), 0, bh - 1).astype(np.int64)

    heights = np.zeros((n, n), dtype=np.float64)
    colors = np.zeros((n, n, 3), dtype=np.uint8)
    for i in range(n):
        row = raster.pixels[py[i], px]
        heights[i] = pixel_elevations(row, table, plan)
        colors[i] = row[:, :3]
        await pacer.checkpoint()

    if stepped:
        heights = apply_stepped(heights)
    logger.debug("Sampled %dx%d grid over bbox %s (stepped=%s)", n, n, bbox, stepped)

    uu, vv = np.meshgrid(t, t, indexing="xy")
    return Heightfield(
        heights=heights,
        colors=colors,
        uvs=np.stack([uu, vv], axis=-1),
        cell_size=(bw / float(resolution), bh / float(resolution)),
        bbox=bbox,
        mode="grid",
        layer_height=plan.layer_height,
        texture=_texture_for(raster, bbox),
    )


async def sample_pixel_columns(
    raster: RasterImage,
    bbox: BBox,
    table: Dict[int, float],
    plan: HeightPlan,
    pacer: BuildPacer,
) -> Heightfield:
    """One cell per source pixel; edge vertices clamp to the last row/column."""
    x0, y0, bw, bh = bbox
    px = x0 + np.minimum(np.arange(bw + 1), bw - 1)
    py = y0 + np.minimum(np.arange(bh + 1), bh - 1)

    heights = np.zeros((bh + 1, bw + 1), dtype=np.float64)
    colors = np.zeros((bh + 1, bw + 1, 3), dtype=np.uint8)
    for i in range(bh + 1):
        row = raster.pixels[py[i], px]
        heights[i] = pixel_elevations(row, table, plan)
        colors[i] = row[:, :3]
        await pacer.checkpoint()

    logger.debug("Sampled %dx%d pixel columns over bbox %s", bw, bh, bbox)
    uu, vv = np.meshgrid(
        np.arange(bw + 1) / float(bw), np.arange(bh + 1) / float(bh), indexing="xy"
    )
    return Heightfield(
        heights=heights,
        colors=colors,
        uvs=np.stack([uu, vv], axis=-1),
        cell_size=(1.0, 1.0),
        bbox=bbox,
        mode="columns",
        layer_height=plan.layer_height,
        texture=_texture_for(raster, bbox),
    )
