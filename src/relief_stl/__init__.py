"""Public API for image -> layered-color relief -> binary STL."""

from relief_stl.builder import BuildConfig, BuildParams, ReliefBuilder, build_relief, build_solid
from relief_stl.contracts import (
    Aborted,
    BuildFailed,
    Committed,
    HeightPlan,
    ReliefError,
    ReliefMesh,
    Swatch,
)
from relief_stl.pipeline import PipelineConfig, PipelineResult, run_relief_pipeline
from relief_stl.quantize import QuantizeConfig, quantize
from relief_stl.raster import RasterImage, load_raster
from relief_stl.stl_exporter import StlBlob, export_stl, export_stl_bytes, write_stl
from relief_stl.swatches import extract_swatches

__all__ = [
    "Aborted",
    "BuildConfig",
    "BuildFailed",
    "BuildParams",
    "Committed",
    "HeightPlan",
    "PipelineConfig",
    "PipelineResult",
    "QuantizeConfig",
    "RasterImage",
    "ReliefBuilder",
    "ReliefError",
    "ReliefMesh",
    "StlBlob",
    "Swatch",
    "build_relief",
    "build_solid",
    "export_stl",
    "export_stl_bytes",
    "extract_swatches",
    "load_raster",
    "quantize",
    "run_relief_pipeline",
    "write_stl",
]
