"""
Shared test fixtures for the relief pipeline tests.
"""
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from relief_stl.raster import RasterImage

RED = (255, 0, 0)
BLUE = (0, 0, 255)


def make_raster(rgb_rows, alpha=255):
    """RasterImage from a nested list of RGB tuples."""
    rgb = np.array(rgb_rows, dtype=np.uint8)
    return RasterImage.from_rgb(rgb, alpha=alpha)


@pytest.fixture
def two_color_raster():
    """4x4 opaque raster: left two columns red, right two columns blue."""
    row = [RED, RED, BLUE, BLUE]
    return make_raster([row] * 4)


@pytest.fixture
def transparent_pixel():
    """A single fully transparent pixel."""
    return RasterImage(np.zeros((1, 1, 4), dtype=np.uint8))


@pytest.fixture
def framed_raster():
    """6x6 raster: opaque 4x4 core (red/blue) inside a transparent border."""
    pixels = np.zeros((6, 6, 4), dtype=np.uint8)
    pixels[1:5, 1:3, :3] = RED
    pixels[1:5, 3:5, :3] = BLUE
    pixels[1:5, 1:5, 3] = 255
    return RasterImage(pixels)


@pytest.fixture
def gradient_raster():
    """32x24 smooth color gradient, fully opaque."""
    h, w = 24, 32
    yy, xx = np.mgrid[0:h, 0:w]
    rgb = np.stack(
        [
            (xx * 255 // (w - 1)),
            (yy * 255 // (h - 1)),
            ((xx + yy) * 255 // (w + h - 2)),
        ],
        axis=-1,
    ).astype(np.uint8)
    return RasterImage.from_rgb(rgb)


@pytest.fixture
def gradient_png(tmp_path, gradient_raster) -> str:
    """The gradient raster saved as a PNG file."""
    path = tmp_path / "gradient.png"
    Image.fromarray(gradient_raster.copy_pixels()).save(path)
    return str(path)


@pytest.fixture
def two_color_png(tmp_path, two_color_raster) -> str:
    path = tmp_path / "two_color.png"
    Image.fromarray(two_color_raster.copy_pixels()).save(path)
    return str(path)
