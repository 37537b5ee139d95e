"""Swatch extraction: ranked, capped, hue-ordered distinct colors."""

from __future__ import annotations

import colorsys
import logging
from typing import List, Optional, Sequence

import numpy as np

from relief_stl.contracts import RasterDecodeError, Swatch, unpack_rgb
from relief_stl.raster import RasterImage, RasterSource, load_raster

logger = logging.getLogger(__name__)

SWATCH_CAP = 2 ** 14


def rgb_to_hsl(r: int, g: int, b: int):
    """Hue in degrees, saturation and lightness in percent."""
    h, light, s = colorsys.rgb_to_hls(r / 255.0, g / 255.0, b / 255.0)
    return h * 360.0, s * 100.0, light * 100.0


def _display_key(swatch: Swatch):
    h, s, light = rgb_to_hsl(*swatch.rgb)
    return (h, -s, -light)


def extract_swatches(
    raster: Optional[RasterImage],
    cap: int = SWATCH_CAP,
    include_transparent: bool = True,
) -> List[Swatch]:
    """Tally opaque colors, keep the ``cap`` most frequent, order by hue.

    Transparent pixels are tallied separately into a single alpha-0 swatch
    appended last.
    """
    if raster is None or raster.pixels.size == 0:
        return []

    mask = raster.opaque_mask
    rgb = raster.rgb[mask].astype(np.uint32)
    transparent = int(mask.size - mask.sum())

    swatches: List[Swatch] = []
    if len(rgb):
        packed = (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]
        keys, counts = np.unique(packed, return_counts=True)
        # Most frequent first; packed key breaks ties so the cut is stable.
        order = np.lexsort((keys, -counts))[:cap]
        swatches = [
            Swatch(rgb=unpack_rgb(int(keys[i])), alpha=255, count=int(counts[i]))
            for i in order
        ]
        swatches.sort(key=_display_key)

    if include_transparent and transparent > 0:
        swatches.append(Swatch(rgb=(0, 0, 0), alpha=0, count=transparent))
    return swatches


def extract_swatches_from_file(source: RasterSource, cap: int = SWATCH_CAP) -> List[Swatch]:
    try:
        raster = load_raster(source)
    except RasterDecodeError as exc:
        logger.warning("swatches: decode failed, returning none: %s", exc)
        return []
    return extract_swatches(raster, cap=cap)


def opaque_swatches(swatches: Sequence[Swatch]) -> List[Swatch]:
    return [s for s in swatches if not s.is_transparent]
