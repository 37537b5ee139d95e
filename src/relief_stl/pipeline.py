"""Batch pipeline: image -> quantize -> height plan -> solid relief -> run artifacts."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from relief_stl.builder import BuildConfig, BuildParams, build_solid
from relief_stl.contracts import HeightPlan, ReliefMesh, Swatch
from relief_stl.height_plan import (
    DEFAULT_LAYER_HEIGHT,
    SwapPoint,
    plan_from_overrides,
    swap_schedule,
)
from relief_stl.quantize import QuantizeConfig, quantize
from relief_stl.raster import load_raster, save_raster
from relief_stl.run_protocol import (
    copy_input_image,
    prepare_run_dir,
    update_latest_pointer,
    write_json,
    write_text,
)
from relief_stl.stl_exporter import write_stl
from relief_stl.swatches import extract_swatches

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    runs_dir: str = "runs"
    quantize: QuantizeConfig = field(default_factory=QuantizeConfig)
    layer_height: float = DEFAULT_LAYER_HEIGHT
    base_height: Optional[float] = None
    heights_by_hex: Dict[str, float] = field(default_factory=dict)
    order_hex: List[str] = field(default_factory=list)
    pixel_size: float = 0.1
    height_scale: float = 1.0
    stepped: bool = False
    pixel_columns: bool = False
    export_quantized_png: bool = True


@dataclass
class PipelineResult:
    run_id: str
    run_dir: str
    stl_path: str
    swatches_path: str
    swap_plan_path: str
    metrics_path: str
    summary_path: str
    manifest_path: str
    image_input_path: str
    quantized_png_path: Optional[str] = None
    swatches: List[Swatch] = field(default_factory=list)
    plan: Optional[HeightPlan] = None
    swap_points: List[SwapPoint] = field(default_factory=list)
    mesh: Optional[ReliefMesh] = None
    watertight: bool = False


def run_relief_pipeline(
    image_path: str,
    design_name: str = "relief",
    config: Optional[PipelineConfig] = None,
) -> PipelineResult:
    if not os.path.isfile(image_path):
        raise FileNotFoundError(f"Image file not found: {image_path}")

    if config is None:
        config = PipelineConfig()

    started = time.perf_counter()
    raster = load_raster(image_path)
    paths = prepare_run_dir(config.runs_dir, design_name)
    copied_image = copy_input_image(image_path, paths.input_dir)

    logger.info(
        "Quantizing %s (%dx%d) with %s",
        copied_image, raster.width, raster.height, config.quantize.algorithm,
    )
    quantized = quantize(raster, config.quantize)
    swatches = extract_swatches(quantized)
    plan = plan_from_overrides(
        swatches,
        layer_height=config.layer_height,
        base_height=config.base_height,
        heights_by_hex=config.heights_by_hex,
        order_hex=config.order_hex,
    )
    points = swap_schedule(plan, swatches)

    params = BuildParams(
        source=quantized,
        plan=plan,
        swatches=tuple(swatches),
        pixel_size=config.pixel_size,
        height_scale=config.height_scale,
        stepped=config.stepped,
        pixel_columns=config.pixel_columns,
    )
    logger.info("Building solid relief for %d colors", len(points))
    mesh = build_solid(params, BuildConfig(preview=False))

    stl_path = write_stl(mesh, paths.stl_path)
    tm = mesh.to_trimesh(merge=True)
    watertight = bool(tm.is_watertight)
    if not watertight:
        logger.info("Relief mesh is not watertight (transparent regions or zero-height cells)")

    quantized_png_path = None
    if config.export_quantized_png:
        quantized_png_path = save_raster(quantized, paths.quantized_png_path)

    swatches_path = paths.swatches_path
    write_json(
        swatches_path,
        [
            {"hex": s.hex, "rgb": list(s.rgb), "alpha": s.alpha, "count": s.count}
            for s in swatches
        ],
    )
    swap_plan_path = paths.swap_plan_path
    write_json(
        swap_plan_path,
        {
            "layer_height_mm": plan.layer_height,
            "base_height_mm": plan.base_height,
            "swaps": [p.to_dict() for p in points],
        },
    )

    elapsed = time.perf_counter() - started
    stats = mesh.stats
    metrics_payload: Dict[str, object] = {
        "run_id": paths.run_id,
        "elapsed_s": round(elapsed, 3),
        "image_size_px": [raster.width, raster.height],
        "unique_colors": quantized.count_unique_colors(),
        "sampling": mesh.metadata.get("sampling"),
        "watertight": watertight,
        "bounds_mm": tm.bounds.tolist() if len(tm.vertices) else None,
        "max_height_mm": float(points[-1].end_mm) if points else plan.base_height,
        "counts": {
            "swatches": len(swatches),
            "swaps": len(points),
            "triangles": mesh.triangle_count,
            "wall_quads": stats.wall_quad_count if stats else 0,
            "boundary_edges": stats.boundary_edge_count if stats else 0,
        },
    }
    write_json(paths.metrics_path, metrics_payload)

    summary = _build_summary(paths.run_id, elapsed, mesh, watertight, plan, points)
    write_text(paths.summary_path, summary)

    manifest = {
        "run_id": paths.run_id,
        "design_name": design_name,
        "input_image": str(copied_image),
        "created_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "config": asdict(config),
        "artifacts": paths.artifact_index(quantized_png_path),
    }
    write_json(paths.manifest_path, manifest)
    update_latest_pointer(config.runs_dir, paths.run_dir)

    return PipelineResult(
        run_id=paths.run_id,
        run_dir=str(paths.run_dir),
        stl_path=str(stl_path),
        swatches_path=str(swatches_path),
        swap_plan_path=str(swap_plan_path),
        metrics_path=str(paths.metrics_path),
        summary_path=str(paths.summary_path),
        manifest_path=str(paths.manifest_path),
        image_input_path=str(copied_image),
        quantized_png_path=quantized_png_path,
        swatches=swatches,
        plan=plan,
        swap_points=points,
        mesh=mesh,
        watertight=watertight,
    )


def _build_summary(
    run_id: str,
    elapsed_s: float,
    mesh: ReliefMesh,
    watertight: bool,
    plan: HeightPlan,
    points: List[SwapPoint],
) -> str:
    lines = [
        f"# Run {run_id}",
        "",
        f"- Duration: {elapsed_s:.2f}s",
        f"- Triangles: {mesh.triangle_count}",
        f"- Watertight: {'yes' if watertight else 'no'}",
        f"- Layer height: {plan.layer_height:.2f} mm",
        f"- Base height: {plan.base_height:.2f} mm",
        "",
        "## Filament Swaps",
    ]
    if not points:
        lines.append("- None (no opaque colors)")
    else:
        for p in points:
            lines.append(
                f"- {p.swatch.hex}: layers {p.start_layer}-{p.end_layer} "
                f"({p.start_mm:.2f}-{p.end_mm:.2f} mm)"
            )
    return "\n".join(lines) + "\n"
