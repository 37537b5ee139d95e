"""Tests for top-surface and watertight solid construction."""

import asyncio

import numpy as np
import pytest

from relief_stl.contracts import HeightPlan
from relief_stl.height_plan import elevation_table
from relief_stl.heightfield import sample_grid, sample_pixel_columns
from relief_stl.scheduling import BuildEpoch, BuildPacer
from relief_stl.solidify import (
    boundary_edges,
    build_top_surface,
    flat_normals,
    grid_faces,
    solidify,
)
from relief_stl.swatches import extract_swatches

SCENARIO_PLAN = HeightPlan(0.1, 0.2, (0.3, 0.1), (0, 1))


def _pacer() -> BuildPacer:
    return BuildPacer(BuildEpoch().advance())


def _field(raster, plan=SCENARIO_PLAN, resolution=None):
    table = elevation_table(plan, extract_swatches(raster))
    bbox = raster.opaque_bbox()
    if resolution is None:
        coro = sample_pixel_columns(raster, bbox, table, plan, _pacer())
    else:
        coro = sample_grid(raster, bbox, resolution, table, plan, _pacer())
    return asyncio.run(coro)


class TestTopology:

    def test_grid_faces_point_up(self):
        rows, cols = 2, 3
        faces = grid_faces(rows, cols)
        assert faces.shape == (2 * rows * cols, 3)
        ii, jj = np.meshgrid(np.arange(rows + 1), np.arange(cols + 1), indexing="ij")
        verts = np.stack([jj, rows - ii, np.zeros_like(ii)], axis=-1).reshape(-1, 3)
        normals = flat_normals(verts[faces].astype(float))
        assert np.allclose(normals, [0.0, 0.0, 1.0])

    def test_boundary_edge_count(self):
        edges = boundary_edges(3, 5)
        assert len(edges) == 2 * (3 + 5)
        # Closed loop: every perimeter vertex starts exactly one edge.
        assert len(np.unique(edges[:, 0])) == len(edges)
        assert sorted(edges[:, 0].tolist()) == sorted(edges[:, 1].tolist())

    def test_degenerate_normal_is_zero(self):
        tri = np.zeros((1, 3, 3))
        assert flat_normals(tri).tolist() == [[0.0, 0.0, 0.0]]


class TestSolid:

    def test_counts(self, two_color_raster):
        field = _field(two_color_raster)
        mesh = asyncio.run(solidify(field, _pacer(), indexed=True))
        stats = mesh.stats
        assert stats.top_vertex_count == 25
        assert stats.bottom_vertex_count == stats.top_vertex_count
        assert stats.boundary_edge_count == 16
        assert stats.wall_quad_count == 16
        assert mesh.triangle_count == 2 * 16 + 2 * 16 + 2 * 16

    def test_bottom_is_flat_at_zero(self, two_color_raster):
        mesh = asyncio.run(solidify(_field(two_color_raster), _pacer(), indexed=True))
        bottom = mesh.positions[mesh.stats.top_vertex_count:]
        assert np.all(bottom[:, 2] == 0.0)

    def test_scenario_top_heights(self, two_color_raster):
        mesh = asyncio.run(solidify(_field(two_color_raster), _pacer(), indexed=True))
        top = mesh.positions[: mesh.stats.top_vertex_count]
        assert sorted(set(np.round(top[:, 2], 4).tolist())) == [0.5, 0.6]

    @pytest.mark.parametrize("resolution", [None, 12])
    def test_opaque_solid_is_watertight(self, two_color_raster, resolution):
        field = _field(two_color_raster, resolution=resolution)
        mesh = asyncio.run(solidify(field, _pacer()))
        assert not mesh.is_indexed
        tm = mesh.to_trimesh(merge=True)
        assert tm.is_watertight
        assert tm.is_winding_consistent
        assert tm.volume > 0

    def test_framed_raster_crops_and_closes(self, framed_raster):
        mesh = asyncio.run(solidify(_field(framed_raster), _pacer()))
        assert mesh.to_trimesh(merge=True).is_watertight
        assert mesh.texture.offset == (1 / 6, 1 / 6)

    def test_soup_normals_are_unit(self, two_color_raster):
        mesh = asyncio.run(solidify(_field(two_color_raster), _pacer()))
        lengths = np.linalg.norm(mesh.normals, axis=1)
        assert np.allclose(lengths, 1.0, atol=1e-5)
        assert len(mesh.colors) == len(mesh.positions) == len(mesh.uvs)

    def test_transparent_pixel_has_no_walls(self, transparent_pixel):
        field = _field(transparent_pixel, plan=HeightPlan(0.12, 0.12), resolution=96)
        mesh = asyncio.run(solidify(field, _pacer()))
        assert mesh.stats.wall_quad_count == 0
        assert np.all(mesh.positions[:, 2] == 0.0)
        assert mesh.triangle_count == 2 * 2 * 96 * 96

    def test_walls_only_on_raised_edges(self):
        from relief_stl.raster import RasterImage

        # Opaque diagonal, transparent off-diagonal; the bbox keeps all four pixels.
        px = np.zeros((2, 2, 4), dtype=np.uint8)
        px[0, 0] = (255, 0, 0, 255)
        px[1, 1] = (255, 0, 0, 255)
        plan = HeightPlan(0.1, 0.2, (0.1,), (0,))
        field = _field(RasterImage(px), plan=plan)
        mesh = asyncio.run(solidify(field, _pacer(), indexed=True))
        assert mesh.stats.boundary_edge_count == 8
        assert mesh.stats.wall_quad_count == 6


class TestPreviewSurface:

    def test_preview_is_open_top_only(self, two_color_raster):
        field = _field(two_color_raster, resolution=32)
        mesh = asyncio.run(build_top_surface(field, _pacer(), scale=(0.1, 0.1, 1.0)))
        assert mesh.mode == "preview"
        assert mesh.faces is None
        assert mesh.triangle_count == 2 * 32 * 32
        assert mesh.scale == (0.1, 0.1, 1.0)
        assert not mesh.to_trimesh(merge=True).is_watertight
