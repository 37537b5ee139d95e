"""Contracts shared by the quantize -> heightfield -> STL pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

import numpy as np
import trimesh

RGB = Tuple[int, int, int]
Vec3 = Tuple[float, float, float]


class ReliefError(Exception):
    """Base exception for relief generation errors."""
    pass


class RasterDecodeError(ReliefError):
    """Image bytes could not be decoded into an RGBA raster."""
    pass


class HeightPlanError(ReliefError):
    """Height plan violates its invariants."""
    pass


class StlExportError(ReliefError):
    """Binary STL serialization failed."""
    pass


class ReliefBuildError(ReliefError):
    """A synchronous build did not produce a mesh."""
    pass


def pack_rgb(rgb: RGB) -> int:
    r, g, b = rgb
    return (int(r) << 16) | (int(g) << 8) | int(b)


def unpack_rgb(key: int) -> RGB:
    return ((key >> 16) & 0xFF, (key >> 8) & 0xFF, key & 0xFF)


@dataclass(frozen=True)
class Swatch:
    """A distinct color observed in a raster, with its pixel count.

    Identity is ``(rgb, alpha)``; the count is informational only.
    """

    rgb: RGB
    alpha: int = 255
    count: int = 0

    @property
    def key(self) -> Tuple[RGB, int]:
        return (self.rgb, self.alpha)

    @property
    def is_transparent(self) -> bool:
        return self.alpha == 0

    @property
    def hex(self) -> str:
        return "#" + "".join(f"{int(v):02x}" for v in self.rgb)


@dataclass(frozen=True)
class HeightPlan:
    """Per-color stacking heights (mm) for the opaque swatches.

    ``color_heights[i]`` belongs to opaque swatch ``i``; ``color_order`` lists
    opaque swatch indices bottom-of-stack first.
    """

    layer_height: float
    base_height: float
    color_heights: Tuple[float, ...] = ()
    color_order: Tuple[int, ...] = ()

    def validate(self, opaque_count: Optional[int] = None) -> None:
        if not self.layer_height > 0:
            raise HeightPlanError(f"layer_height must be > 0, got {self.layer_height}")
        if self.base_height < self.layer_height - 1e-9:
            raise HeightPlanError(
                f"base_height {self.base_height} is below layer_height {self.layer_height}"
            )
        n = len(self.color_heights) if opaque_count is None else opaque_count
        if len(self.color_heights) != n:
            raise HeightPlanError(
                f"{len(self.color_heights)} color heights for {n} opaque swatches"
            )
        if sorted(self.color_order) != list(range(n)):
            raise HeightPlanError(
                f"color_order {list(self.color_order)} is not a permutation of 0..{n - 1}"
            )
        if any(h < 0 for h in self.color_heights):
            raise HeightPlanError("color heights must be non-negative")


@dataclass(frozen=True)
class TextureMap:
    """Color-sampling image for top-surface shading.

    ``image`` is the full source raster; ``offset``/``repeat`` map crop-local
    UVs (0..1 over the bbox, v pointing down the image) into it.
    """

    image: np.ndarray
    offset: Tuple[float, float] = (0.0, 0.0)
    repeat: Tuple[float, float] = (1.0, 1.0)

    def sample(self, uvs: np.ndarray) -> np.ndarray:
        """Nearest-pixel RGBA lookup for an ``(N, 2)`` array of crop UVs."""
        uvs = np.asarray(uvs, dtype=np.float64).reshape(-1, 2)
        h, w = self.image.shape[:2]
        u = self.offset[0] + uvs[:, 0] * self.repeat[0]
        v = self.offset[1] + uvs[:, 1] * self.repeat[1]
        px = np.clip(np.floor(u * w), 0, w - 1).astype(np.int64)
        py = np.clip(np.floor(v * h), 0, h - 1).astype(np.int64)
        return self.image[py, px]


@dataclass(frozen=True)
class SolidStats:
    top_vertex_count: int
    bottom_vertex_count: int
    wall_quad_count: int
    boundary_edge_count: int


@dataclass
class ReliefMesh:
    """Triangle mesh in local units: X/Y in source pixels, Z in mm.

    ``faces`` is None for non-indexed (triangle soup) meshes, in which case
    every three consecutive positions form one triangle.
    """

    positions: np.ndarray
    faces: Optional[np.ndarray] = None
    colors: Optional[np.ndarray] = None
    uvs: Optional[np.ndarray] = None
    normals: Optional[np.ndarray] = None
    texture: Optional[TextureMap] = None
    scale: Vec3 = (1.0, 1.0, 1.0)
    mode: str = "solid"
    generation: int = 0
    stats: Optional[SolidStats] = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_indexed(self) -> bool:
        return self.faces is not None

    @property
    def triangle_count(self) -> int:
        if self.faces is not None:
            return int(len(self.faces))
        return int(len(self.positions) // 3)

    def triangles(self) -> np.ndarray:
        """``(M, 3, 3)`` local-space triangle corners."""
        pos = np.asarray(self.positions)
        if self.faces is not None:
            return pos[np.asarray(self.faces, dtype=np.int64)]
        usable = (len(pos) // 3) * 3
        return pos[:usable].reshape(-1, 3, 3)

    def scaled_positions(self) -> np.ndarray:
        return np.asarray(self.positions, dtype=np.float64) * np.asarray(self.scale)

    def bounding_sphere(self) -> Tuple[np.ndarray, float]:
        pts = self.scaled_positions()
        if len(pts) == 0:
            return np.zeros(3), 0.0
        center = (pts.min(axis=0) + pts.max(axis=0)) / 2.0
        radius = float(np.linalg.norm(pts - center, axis=1).max())
        return center, radius

    def camera_framing(
        self,
        direction: Vec3 = (0.0, -0.9, 1.8),
        fov_deg: float = 45.0,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Camera position and target that fit the bounding sphere in view."""
        center, radius = self.bounding_sphere()
        d = np.asarray(direction, dtype=np.float64)
        d = d / (np.linalg.norm(d) or 1.0)
        distance = max(radius, 1e-6) / math.sin(math.radians(fov_deg) / 2.0)
        return center + d * distance, center

    def to_trimesh(self, merge: bool = False) -> trimesh.Trimesh:
        """Scaled trimesh view; ``merge`` welds the duplicated soup vertices."""
        faces = self.faces
        if faces is None:
            faces = np.arange(self.triangle_count * 3, dtype=np.int64).reshape(-1, 3)
        mesh = trimesh.Trimesh(
            vertices=self.scaled_positions(), faces=faces, process=False
        )
        if merge:
            mesh.merge_vertices()
        return mesh


@dataclass(frozen=True)
class Committed:
    mesh: ReliefMesh

    @property
    def generation(self) -> int:
        return self.mesh.generation


@dataclass(frozen=True)
class Aborted:
    generation: int


@dataclass(frozen=True)
class BuildFailed:
    generation: int
    error: Exception


BuildOutcome = Union[Committed, Aborted, BuildFailed]
