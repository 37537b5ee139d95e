"""Immutable RGBA raster wrapper plus decode/encode helpers (Pillow)."""

from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from relief_stl.contracts import RasterDecodeError

logger = logging.getLogger(__name__)

BBox = Tuple[int, int, int, int]  # x0, y0, width, height
RasterSource = Union["RasterImage", bytes, str, os.PathLike]


@dataclass(frozen=True, eq=False)
class RasterImage:
    """Read-only ``(height, width, 4)`` uint8 RGBA buffer."""

    pixels: np.ndarray

    def __post_init__(self):
        arr = np.ascontiguousarray(self.pixels, dtype=np.uint8)
        if arr.ndim != 3 or arr.shape[2] != 4:
            raise ValueError(f"Expected (H, W, 4) RGBA array, got shape {arr.shape}")
        if arr is self.pixels:
            arr = arr.copy()
        arr.setflags(write=False)
        object.__setattr__(self, "pixels", arr)

    @classmethod
    def from_rgb(cls, rgb: np.ndarray, alpha: int = 255) -> "RasterImage":
        rgb = np.asarray(rgb, dtype=np.uint8)
        a = np.full(rgb.shape[:2] + (1,), alpha, dtype=np.uint8)
        return cls(np.concatenate([rgb, a], axis=2))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[:, :, :3]

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[:, :, 3]

    @property
    def opaque_mask(self) -> np.ndarray:
        return self.pixels[:, :, 3] > 0

    def __eq__(self, other) -> bool:
        if not isinstance(other, RasterImage):
            return NotImplemented
        return self.pixels.shape == other.pixels.shape and np.array_equal(
            self.pixels, other.pixels
        )

    def __hash__(self) -> int:
        return hash((self.pixels.shape, self.pixels.tobytes()))

    def with_pixels(self, pixels: np.ndarray) -> "RasterImage":
        return RasterImage(pixels)

    def copy_pixels(self) -> np.ndarray:
        """Writable copy of the pixel buffer."""
        return self.pixels.copy()

    def opaque_bbox(self) -> BBox:
        """Tight box around alpha>0 pixels; the full extent if there are none."""
        mask = self.opaque_mask
        if not mask.any():
            return (0, 0, self.width, self.height)
        rows = np.flatnonzero(mask.any(axis=1))
        cols = np.flatnonzero(mask.any(axis=0))
        x0, x1 = int(cols[0]), int(cols[-1])
        y0, y1 = int(rows[0]), int(rows[-1])
        return (x0, y0, x1 - x0 + 1, y1 - y0 + 1)

    def crop(self, bbox: BBox) -> "RasterImage":
        x0, y0, w, h = bbox
        return RasterImage(self.pixels[y0:y0 + h, x0:x0 + w])

    def count_unique_colors(self) -> int:
        """Distinct RGB values among non-transparent pixels."""
        rgb = self.rgb[self.opaque_mask].astype(np.uint32)
        if len(rgb) == 0:
            return 0
        packed = (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]
        return int(len(np.unique(packed)))

    def finalize_alpha(self) -> "RasterImage":
        """Promote any partially transparent pixel to fully opaque."""
        alpha = self.alpha
        partial = (alpha > 0) & (alpha < 255)
        if not partial.any():
            return self
        out = self.copy_pixels()
        out[:, :, 3][partial] = 255
        return RasterImage(out)


def load_raster(source: RasterSource) -> RasterImage:
    """Decode a path, raw bytes, or pass through an existing raster."""
    if isinstance(source, RasterImage):
        return source
    try:
        if isinstance(source, (bytes, bytearray)):
            handle = Image.open(io.BytesIO(source))
        else:
            handle = Image.open(os.fspath(source))
        with handle as img:
            img.load()
            rgba = np.asarray(img.convert("RGBA"), dtype=np.uint8)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise RasterDecodeError(f"Could not decode image: {exc}") from exc
    if rgba.size == 0:
        raise RasterDecodeError("Decoded image is empty")
    logger.debug("Decoded raster %dx%d", rgba.shape[1], rgba.shape[0])
    return RasterImage(rgba)


def save_raster(raster: RasterImage, path: Union[str, os.PathLike]) -> str:
    path = os.fspath(path)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    Image.fromarray(raster.copy_pixels()).save(path)
    return path


def encode_png(raster: RasterImage) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(raster.copy_pixels()).save(buf, format="PNG")
    return buf.getvalue()
