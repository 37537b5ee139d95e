"""HeightPlan operations: snapping, reconciliation, elevation lookup, swap points."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from relief_stl.contracts import HeightPlan, Swatch, pack_rgb
from relief_stl.swatches import opaque_swatches

DEFAULT_LAYER_HEIGHT = 0.12
MAX_SLICE_HEIGHT = 10.0


def snap_to_layer(value: float, layer_height: float) -> float:
    """Nearest non-negative multiple of ``layer_height`` (half-up)."""
    steps = math.floor(value / layer_height + 0.5)
    return max(0.0, round(steps * layer_height, 8))


def snap_heights(values: np.ndarray, layer_height: float) -> np.ndarray:
    return np.maximum(0.0, np.floor(values / layer_height + 0.5) * layer_height)


def sanitize_height(
    value: float, layer_height: float, max_height: float = MAX_SLICE_HEIGHT
) -> float:
    """Clamp to ``[layer_height, max_height]`` and align to the layer grid."""
    clamped = max(layer_height, min(max_height, value))
    snapped = snap_to_layer(clamped, layer_height)
    return round(max(layer_height, min(max_height, snapped)), 8)


def default_plan(
    swatches: Sequence[Swatch], layer_height: float = DEFAULT_LAYER_HEIGHT
) -> HeightPlan:
    n = len(opaque_swatches(swatches))
    return HeightPlan(
        layer_height=layer_height,
        base_height=layer_height,
        color_heights=tuple(layer_height for _ in range(n)),
        color_order=tuple(range(n)),
    )


def plan_from_overrides(
    swatches: Sequence[Swatch],
    layer_height: float = DEFAULT_LAYER_HEIGHT,
    base_height: Optional[float] = None,
    heights_by_hex: Optional[Mapping[str, float]] = None,
    order_hex: Optional[Sequence[str]] = None,
) -> HeightPlan:
    """Plan keyed by ``#rrggbb`` strings; unknown hexes are ignored."""
    opaque = opaque_swatches(swatches)
    heights_by_hex = {k.lower(): v for k, v in (heights_by_hex or {}).items()}
    heights = tuple(
        sanitize_height(heights_by_hex.get(s.hex, layer_height), layer_height)
        for s in opaque
    )

    index_by_hex = {s.hex: i for i, s in enumerate(opaque)}
    order: List[int] = []
    for hex_value in order_hex or ():
        i = index_by_hex.get(hex_value.lower())
        if i is not None and i not in order:
            order.append(i)
    order.extend(i for i in range(len(opaque)) if i not in order)

    base = layer_height if base_height is None else base_height
    return HeightPlan(
        layer_height=layer_height,
        base_height=sanitize_height(base, layer_height),
        color_heights=heights,
        color_order=tuple(order),
    )


def reconcile_plan(
    plan: HeightPlan,
    old_swatches: Sequence[Swatch],
    new_swatches: Sequence[Swatch],
) -> HeightPlan:
    """Carry heights and order across a swatch-list change by color identity.

    Surviving colors keep their relative order; new colors are appended in
    the order they appear in ``new_swatches`` with a one-layer height.
    """
    old_opaque = opaque_swatches(old_swatches)
    new_opaque = opaque_swatches(new_swatches)
    new_index = {s.key: i for i, s in enumerate(new_opaque)}

    old_heights = {
        s.key: plan.color_heights[i]
        for i, s in enumerate(old_opaque)
        if i < len(plan.color_heights)
    }
    heights = tuple(old_heights.get(s.key, plan.layer_height) for s in new_opaque)

    order: List[int] = []
    for idx in plan.color_order:
        if idx >= len(old_opaque):
            continue
        j = new_index.get(old_opaque[idx].key)
        if j is not None and j not in order:
            order.append(j)
    order.extend(j for j in range(len(new_opaque)) if j not in order)

    return replace(plan, color_heights=heights, color_order=tuple(order))


def with_layer_height(plan: HeightPlan, layer_height: float) -> HeightPlan:
    """Re-align base and color heights after the layer granularity changes."""
    return replace(
        plan,
        layer_height=layer_height,
        base_height=sanitize_height(plan.base_height, layer_height),
        color_heights=tuple(sanitize_height(h, layer_height) for h in plan.color_heights),
    )


def cumulative_heights(plan: HeightPlan) -> List[float]:
    """Running stack height per order position, base excluded."""
    out: List[float] = []
    running = 0.0
    for idx in plan.color_order:
        running += plan.color_heights[idx] if idx < len(plan.color_heights) else 0.0
        out.append(running)
    return out


def elevation_table(plan: HeightPlan, swatches: Sequence[Swatch]) -> Dict[int, float]:
    """Packed RGB -> unsnapped elevation (mm) for every opaque swatch."""
    opaque = opaque_swatches(swatches)
    plan.validate(len(opaque))
    table: Dict[int, float] = {}
    for idx, cum in zip(plan.color_order, cumulative_heights(plan)):
        table[pack_rgb(opaque[idx].rgb)] = plan.base_height + cum
    return table


@dataclass(frozen=True)
class SwapPoint:
    """Height band printed with one color."""

    order_position: int
    swatch: Swatch
    start_mm: float
    end_mm: float
    start_layer: int
    end_layer: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "order_position": self.order_position,
            "color": self.swatch.hex,
            "start_mm": self.start_mm,
            "end_mm": self.end_mm,
            "start_layer": self.start_layer,
            "end_layer": self.end_layer,
        }


def swap_schedule(plan: HeightPlan, swatches: Sequence[Swatch]) -> List[SwapPoint]:
    """Filament change points: the first color prints from the bed up."""
    opaque = opaque_swatches(swatches)
    plan.validate(len(opaque))
    layer = plan.layer_height
    points: List[SwapPoint] = []
    prev_top = 0.0
    for pos, (idx, cum) in enumerate(zip(plan.color_order, cumulative_heights(plan))):
        top = snap_to_layer(plan.base_height + cum, layer)
        start = prev_top
        points.append(
            SwapPoint(
                order_position=pos,
                swatch=opaque[idx],
                start_mm=start,
                end_mm=top,
                start_layer=int(math.floor(start / layer + 0.5)) + 1,
                end_layer=int(math.floor(top / layer + 0.5)),
            )
        )
        prev_top = top
    return points
