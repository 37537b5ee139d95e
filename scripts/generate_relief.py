#!/usr/bin/env python3
"""Turn an image into a layered-color relief STL plus a filament swap plan."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from relief_stl.palettes import PALETTES
from relief_stl.pipeline import PipelineConfig, run_relief_pipeline
from relief_stl.quantize import STRATEGIES, QuantizeConfig


def _parse_height(value: str):
    """``#rrggbb=mm`` -> (hex, mm)."""
    hex_value, sep, mm = value.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"Expected COLOR=MM, got '{value}'")
    try:
        return hex_value.strip().lower(), float(mm)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Bad height in '{value}'") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Image -> quantized layered-color relief -> binary STL"
    )
    parser.add_argument("--image", required=True, help="Path to input image (.png/.jpg/...)")
    parser.add_argument("--name", default="relief", help="Design/run name")
    parser.add_argument("--runs-dir", default="runs", help="Runs output root")
    parser.add_argument(
        "--algorithm", default="posterize", choices=STRATEGIES,
        help="Quantization strategy",
    )
    parser.add_argument(
        "--weight", type=int, default=16, help="Color target for the strategy pass"
    )
    parser.add_argument(
        "--final-colors", type=int, default=16,
        help="Color cap when no fixed palette is used",
    )
    parser.add_argument(
        "--palette", default="auto", choices=sorted(PALETTES),
        help="Fixed palette to snap colors onto",
    )
    parser.add_argument("--seed", type=int, default=0, help="k-means seed")
    parser.add_argument(
        "--layer-height", type=float, default=0.12, help="Print layer height (mm)"
    )
    parser.add_argument(
        "--base-height", type=float, default=None,
        help="Base slab height (mm); defaults to one layer",
    )
    parser.add_argument(
        "--height", action="append", type=_parse_height, default=[],
        metavar="COLOR=MM", help="Slice height for one color, e.g. '#ff0000=0.6'",
    )
    parser.add_argument(
        "--order", default="",
        help="Comma-separated colors, bottom of the stack first",
    )
    parser.add_argument(
        "--pixel-size", type=float, default=0.1, help="Millimetres per source pixel"
    )
    parser.add_argument(
        "--height-scale", type=float, default=1.0, help="Vertical exaggeration"
    )
    parser.add_argument(
        "--stepped", action="store_true", help="Flatten cells to terraces (grid mode)"
    )
    parser.add_argument(
        "--pixel-columns", action="store_true",
        help="One column per source pixel instead of the interpolated grid",
    )
    parser.add_argument(
        "--no-quantized-png", action="store_true", help="Skip writing quantized.png"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logs"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = PipelineConfig(
        runs_dir=args.runs_dir,
        quantize=QuantizeConfig(
            algorithm=args.algorithm,
            weight=max(2, int(args.weight)),
            final_colors=max(1, int(args.final_colors)),
            palette_id=args.palette,
            seed=int(args.seed),
        ),
        layer_height=float(args.layer_height),
        base_height=args.base_height,
        heights_by_hex=dict(args.height),
        order_hex=[c.strip() for c in args.order.split(",") if c.strip()],
        pixel_size=float(args.pixel_size),
        height_scale=float(args.height_scale),
        stepped=args.stepped,
        pixel_columns=args.pixel_columns,
        export_quantized_png=not args.no_quantized_png,
    )

    result = run_relief_pipeline(args.image, design_name=args.name, config=config)

    print(f"Run ID: {result.run_id}")
    print(f"Run dir: {result.run_dir}")
    print(f"Triangles: {result.mesh.triangle_count}")
    print(f"Watertight: {'yes' if result.watertight else 'no'}")
    print(f"Colors: {len(result.swap_points)}")
    for point in result.swap_points:
        print(f"  {point.swatch.hex} up to {point.end_mm:.2f} mm (layer {point.end_layer})")
    print(f"STL: {result.stl_path}")
    if result.quantized_png_path:
        print(f"Quantized PNG: {result.quantized_png_path}")
    print(f"Swap plan: {result.swap_plan_path}")
    print(f"Metrics: {result.metrics_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
