"""Heightfield -> triangle mesh: open preview surface or watertight solid."""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
import trimesh

from relief_stl.contracts import ReliefMesh, SolidStats, Vec3
from relief_stl.heightfield import Heightfield
from relief_stl.scheduling import BuildPacer

logger = logging.getLogger(__name__)


def grid_faces(rows: int, cols: int) -> np.ndarray:
    """Two triangles per cell: (a, c, b) and (b, c, d), counter-clockwise from +Z."""
    stride = cols + 1
    r, c = np.meshgrid(np.arange(rows), np.arange(cols), indexing="ij")
    a = (r * stride + c).ravel()
    b = a + 1
    cc = a + stride
    d = cc + 1
    faces = np.empty((2 * len(a), 3), dtype=np.int64)
    faces[0::2] = np.stack([a, cc, b], axis=1)
    faces[1::2] = np.stack([b, cc, d], axis=1)
    return faces


def boundary_edges(rows: int, cols: int) -> np.ndarray:
    """Directed perimeter edges ``(u, v)`` in the winding used by the top faces."""
    stride = cols + 1

    def vid(r, c):
        return np.asarray(r) * stride + np.asarray(c)

    cs = np.arange(cols)
    rs = np.arange(rows)
    top = np.stack([vid(0, cs + 1), vid(0, cs)], axis=1)
    left = np.stack([vid(rs, 0), vid(rs + 1, 0)], axis=1)
    bottom = np.stack([vid(rows, cs), vid(rows, cs + 1)], axis=1)
    right = np.stack([vid(rs + 1, cols), vid(rs, cols)], axis=1)
    return np.concatenate([top, left, bottom, right]).astype(np.int64)


def flat_normals(triangles: np.ndarray) -> np.ndarray:
    """Unit normal per triangle; degenerate triangles get a zero vector."""
    out = np.zeros((len(triangles), 3), dtype=np.float64)
    if len(triangles) == 0:
        return out
    normals, valid = trimesh.triangles.normals(triangles)
    out[valid] = normals
    return out


def _expand(
    vertices: np.ndarray,
    faces: np.ndarray,
    colors: np.ndarray,
    uvs: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Duplicate vertices per face corner; normals become per-face."""
    flat = faces.reshape(-1)
    positions = vertices[flat]
    normals = np.repeat(flat_normals(positions.reshape(-1, 3, 3)), 3, axis=0)
    return (
        positions.astype(np.float32),
        colors[flat].astype(np.float32),
        uvs[flat].astype(np.float32),
        normals.astype(np.float32),
    )


def _vertex_attributes(field: Heightfield) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    vertices = field.vertex_positions()
    colors = field.colors.reshape(-1, 3).astype(np.float64) / 255.0
    uvs = field.uvs.reshape(-1, 2)
    return vertices, colors, uvs


async def build_top_surface(
    field: Heightfield,
    pacer: BuildPacer,
    scale: Vec3 = (1.0, 1.0, 1.0),
) -> ReliefMesh:
    """Open, single-sided, non-indexed top surface for fast previews."""
    vertices, colors, uvs = _vertex_attributes(field)
    faces = grid_faces(field.rows, field.cols)
    await pacer.checkpoint()
    positions, vcolors, vuvs, normals = _expand(vertices, faces, colors, uvs)
    await pacer.checkpoint()
    return ReliefMesh(
        positions=positions,
        faces=None,
        colors=vcolors,
        uvs=vuvs,
        normals=normals,
        texture=field.texture,
        scale=scale,
        mode="preview",
        metadata={"sampling": field.mode, "rows": field.rows, "cols": field.cols},
    )


async def solidify(
    field: Heightfield,
    pacer: BuildPacer,
    scale: Vec3 = (1.0, 1.0, 1.0),
    indexed: bool = False,
) -> ReliefMesh:
    """Close the heightfield into a solid: top, flat bottom at z=0, side walls.

    Walls are emitted only along perimeter edges with at least one endpoint
    above zero. With ``indexed=False`` the result is expanded to a triangle
    soup with per-face normals.
    """
    top, colors, uvs = _vertex_attributes(field)
    count = len(top)
    bottom = top.copy()
    bottom[:, 2] = 0.0
    vertices = np.concatenate([top, bottom])

    top_faces = grid_faces(field.rows, field.cols)
    bottom_faces = top_faces[:, ::-1] + count
    await pacer.checkpoint()

    edges = boundary_edges(field.rows, field.cols)
    heights = field.heights.reshape(-1)
    raised = (heights[edges[:, 0]] > 0) | (heights[edges[:, 1]] > 0)
    u, v = edges[raised, 0], edges[raised, 1]
    walls = np.empty((2 * len(u), 3), dtype=np.int64)
    walls[0::2] = np.stack([v, u, u + count], axis=1)
    walls[1::2] = np.stack([v, u + count, v + count], axis=1)
    await pacer.checkpoint()

    faces = np.concatenate([top_faces, bottom_faces, walls])
    stats = SolidStats(
        top_vertex_count=count,
        bottom_vertex_count=len(bottom),
        wall_quad_count=int(len(u)),
        boundary_edge_count=int(len(edges)),
    )
    logger.debug(
        "solidify: %d top faces, %d wall quads of %d boundary edges",
        len(top_faces), stats.wall_quad_count, stats.boundary_edge_count,
    )

    all_colors = np.concatenate([colors, colors])
    all_uvs = np.concatenate([uvs, uvs])
    metadata = {"sampling": field.mode, "rows": field.rows, "cols": field.cols}
    if indexed:
        return ReliefMesh(
            positions=vertices.astype(np.float32),
            faces=faces,
            colors=all_colors.astype(np.float32),
            uvs=all_uvs.astype(np.float32),
            texture=field.texture,
            scale=scale,
            mode="solid",
            stats=stats,
            metadata=metadata,
        )

    positions, vcolors, vuvs, normals = _expand(vertices, faces, all_colors, all_uvs)
    await pacer.checkpoint()
    return ReliefMesh(
        positions=positions,
        faces=None,
        colors=vcolors,
        uvs=vuvs,
        normals=normals,
        texture=field.texture,
        scale=scale,
        mode="solid",
        stats=stats,
        metadata=metadata,
    )
