"""
Binary STL serialization for relief meshes.

Layout (little-endian):
  - 80-byte ASCII header, zero padded
  - uint32 triangle count
  - 50 bytes per triangle: normal (3 x f32), 3 vertices (9 x f32), uint16 attr

Records are filled in chunks with a loop yield between chunks so a running
UI loop stays responsive; export itself is not cancellable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

import numpy as np

from relief_stl.contracts import ReliefMesh, StlExportError

logger = logging.getLogger(__name__)

HEADER_SIZE = 80
COUNT_SIZE = 4
CHUNK_TRIANGLES = 20_000
DEFAULT_HEADER = "relief-stl binary STL"

STL_RECORD_DTYPE = np.dtype(
    [
        ("normal", "<f4", (3,)),
        ("vertices", "<f4", (3, 3)),
        ("attr", "<u2"),
    ]
)


@dataclass(frozen=True)
class StlBlob:
    data: bytes
    mime_type: str = "model/stl"

    @property
    def triangle_count(self) -> int:
        return (len(self.data) - HEADER_SIZE - COUNT_SIZE) // STL_RECORD_DTYPE.itemsize

    def save(self, path: Union[str, Path]) -> Path:
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(self.data)
        return out


def _header_bytes(header: str) -> bytes:
    raw = header.encode("ascii", errors="replace")[:HEADER_SIZE]
    return raw.ljust(HEADER_SIZE, b"\0")


def _triangles_for_export(mesh: ReliefMesh) -> np.ndarray:
    if mesh is None or mesh.positions is None:
        raise StlExportError("Mesh has no position attribute")
    positions = np.asarray(mesh.positions)
    if positions.ndim != 2 or positions.shape[1] != 3:
        raise StlExportError(f"Positions must be (N, 3), got {positions.shape}")
    if mesh.faces is not None:
        faces = np.asarray(mesh.faces)
        if faces.size and (faces.min() < 0 or faces.max() >= len(positions)):
            raise StlExportError("Face indices reference missing vertices")
    elif len(positions) % 3 != 0:
        raise StlExportError(
            f"Non-indexed mesh needs a multiple of 3 positions, got {len(positions)}"
        )
    return mesh.triangles()


def _unit_normals(tris: np.ndarray) -> np.ndarray:
    cross = np.cross(tris[:, 1] - tris[:, 0], tris[:, 2] - tris[:, 0])
    length = np.linalg.norm(cross, axis=1, keepdims=True)
    length[length == 0] = 1.0
    return cross / length


async def export_stl(
    mesh: ReliefMesh,
    on_progress: Optional[Callable[[float], None]] = None,
    header: str = DEFAULT_HEADER,
) -> StlBlob:
    """Serialize ``mesh`` (scaled by ``mesh.scale``) to a binary STL blob."""
    tris = _triangles_for_export(mesh)
    count = len(tris)
    scale = np.asarray(mesh.scale, dtype=np.float64)

    try:
        buffer = bytearray(HEADER_SIZE + COUNT_SIZE + count * STL_RECORD_DTYPE.itemsize)
    except MemoryError as exc:
        raise StlExportError(f"Cannot allocate STL buffer for {count} triangles") from exc

    buffer[:HEADER_SIZE] = _header_bytes(header)
    buffer[HEADER_SIZE:HEADER_SIZE + COUNT_SIZE] = np.uint32(count).astype("<u4").tobytes()
    if count:
        records = np.frombuffer(
            buffer, dtype=STL_RECORD_DTYPE, count=count, offset=HEADER_SIZE + COUNT_SIZE
        )

    for start in range(0, count, CHUNK_TRIANGLES):
        stop = min(count, start + CHUNK_TRIANGLES)
        chunk = np.asarray(tris[start:stop], dtype=np.float64) * scale
        records["normal"][start:stop] = _unit_normals(chunk)
        records["vertices"][start:stop] = chunk
        records["attr"][start:stop] = 0
        if on_progress is not None and stop < count:
            on_progress(stop / count)
        await asyncio.sleep(0)

    if on_progress is not None:
        on_progress(1.0)
    logger.debug("Exported %d triangles (%d bytes)", count, len(buffer))
    return StlBlob(bytes(buffer))


def export_stl_bytes(mesh: ReliefMesh, header: str = DEFAULT_HEADER) -> bytes:
    return asyncio.run(export_stl(mesh, header=header)).data


def write_stl(mesh: ReliefMesh, path: Union[str, Path], header: str = DEFAULT_HEADER) -> Path:
    return StlBlob(export_stl_bytes(mesh, header=header)).save(path)


def read_stl_header(data: bytes) -> Tuple[str, int]:
    """Header text (padding stripped) and declared triangle count."""
    if len(data) < HEADER_SIZE + COUNT_SIZE:
        raise StlExportError(f"STL data too short: {len(data)} bytes")
    text = data[:HEADER_SIZE].rstrip(b"\0").decode("ascii", errors="replace")
    count = int(np.frombuffer(data, dtype="<u4", count=1, offset=HEADER_SIZE)[0])
    return text, count
