"""Tests for the raster wrapper and shared mesh contracts."""

import math

import numpy as np
import pytest

from relief_stl.contracts import RasterDecodeError, ReliefMesh, TextureMap
from relief_stl.raster import RasterImage, encode_png, load_raster, save_raster


class TestRasterImage:

    def test_read_only_copy(self):
        px = np.zeros((2, 3, 4), dtype=np.uint8)
        raster = RasterImage(px)
        px[0, 0, 0] = 99
        assert raster.pixels[0, 0, 0] == 0
        with pytest.raises(ValueError):
            raster.pixels[0, 0, 0] = 1

    def test_rejects_wrong_shape(self):
        with pytest.raises(ValueError):
            RasterImage(np.zeros((2, 2, 3), dtype=np.uint8))

    def test_structural_equality(self, two_color_raster):
        clone = RasterImage(two_color_raster.copy_pixels())
        assert clone == two_color_raster
        assert hash(clone) == hash(two_color_raster)
        assert clone != RasterImage(np.zeros((4, 4, 4), dtype=np.uint8))

    def test_opaque_bbox(self, framed_raster, transparent_pixel):
        assert framed_raster.opaque_bbox() == (1, 1, 4, 4)
        assert transparent_pixel.opaque_bbox() == (0, 0, 1, 1)
        assert framed_raster.crop((1, 1, 4, 4)).width == 4

    def test_unique_colors_ignore_transparent(self, framed_raster):
        assert framed_raster.count_unique_colors() == 2


class TestDecode:

    def test_png_bytes_round_trip(self, framed_raster):
        assert load_raster(encode_png(framed_raster)) == framed_raster

    def test_save_and_load_path(self, framed_raster, tmp_path):
        path = save_raster(framed_raster, tmp_path / "sub" / "out.png")
        assert load_raster(path) == framed_raster

    def test_rgb_image_gets_opaque_alpha(self, tmp_path):
        from PIL import Image

        path = tmp_path / "rgb.png"
        Image.new("RGB", (3, 2), (10, 20, 30)).save(path)
        raster = load_raster(str(path))
        assert raster.pixels.shape == (2, 3, 4)
        assert np.all(raster.alpha == 255)

    def test_garbage_raises(self):
        with pytest.raises(RasterDecodeError):
            load_raster(b"\x00\x01\x02")


class TestReliefMesh:

    def _cube_corners(self):
        pts = np.array(
            [[x, y, z] for x in (0, 2) for y in (0, 2) for z in (0, 2)], dtype=np.float32
        )
        faces = np.array([[0, 1, 2], [5, 6, 7]])
        return ReliefMesh(positions=pts, faces=faces, scale=(1.0, 1.0, 0.5))

    def test_bounding_sphere_uses_scale(self):
        center, radius = self._cube_corners().bounding_sphere()
        assert center.tolist() == [1.0, 1.0, 0.5]
        assert radius == pytest.approx(math.sqrt(1 + 1 + 0.25))

    def test_camera_framing_looks_at_center(self):
        mesh = self._cube_corners()
        position, target = mesh.camera_framing()
        center, radius = mesh.bounding_sphere()
        assert target.tolist() == center.tolist()
        direction = (position - target) / np.linalg.norm(position - target)
        expected = np.array([0.0, -0.9, 1.8]) / np.linalg.norm([0.0, -0.9, 1.8])
        assert np.allclose(direction, expected)
        assert np.linalg.norm(position - target) > radius

    def test_empty_mesh_sphere(self):
        center, radius = ReliefMesh(positions=np.zeros((0, 3))).bounding_sphere()
        assert radius == 0.0

    def test_triangles_indexed_and_soup(self):
        mesh = self._cube_corners()
        assert mesh.triangle_count == 2
        assert mesh.triangles().shape == (2, 3, 3)
        soup = ReliefMesh(positions=mesh.triangles().reshape(-1, 3))
        assert not soup.is_indexed
        assert soup.triangle_count == 2


def test_texture_sample_applies_offset_and_repeat():
    image = np.zeros((4, 4, 4), dtype=np.uint8)
    image[1, 1] = (1, 2, 3, 255)
    image[2, 2] = (9, 9, 9, 255)
    texture = TextureMap(image=image, offset=(0.25, 0.25), repeat=(0.5, 0.5))
    out = texture.sample([[0.0, 0.0], [0.99, 0.99]])
    assert out[0].tolist() == [1, 2, 3, 255]
    assert out[1].tolist() == [9, 9, 9, 255]
