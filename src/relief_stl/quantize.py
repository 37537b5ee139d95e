"""
Color quantization for relief rasters.

Reduces a raster to a small discrete palette so every remaining color can be
assigned its own print height. Two stages:
  1. A strategy pass (posterize, median-cut, k-means, octree, Wu, or none)
     targeting ``weight`` colors.
  2. A post-process that either snaps to a fixed palette or merges the
     rarest colors until at most ``final_colors`` remain.

All functions take and return immutable ``RasterImage`` values. Alpha is
never modified by a strategy; transparent pixels keep their RGB. ``k`` is
expected to be pre-clamped to [2, 256] by the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.spatial import cKDTree

from relief_stl.contracts import RGB, Swatch
from relief_stl.palettes import get_palette, parse_color
from relief_stl.raster import RasterImage

logger = logging.getLogger(__name__)

STRATEGIES = ("posterize", "median-cut", "kmeans", "octree", "wu", "none")

ColorLike = Union[str, Sequence[int]]


@dataclass
class QuantizeConfig:
    """Configuration for the strategy pass and the post-process."""

    algorithm: str = "posterize"
    weight: int = 16            # color target for the strategy pass
    final_colors: int = 16      # cap used when no fixed palette is selected
    palette_id: str = "auto"
    palette_colors: Optional[Sequence[str]] = None  # overrides palette_id
    seed: int = 0
    kmeans_max_iter: int = 20


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


# ----------------------------
# Posterize
# ----------------------------

def posterize_levels(k: int) -> Tuple[int, int, int]:
    """Per-channel level counts whose product never exceeds ``k``."""
    r = max(1, int(round(k ** (1.0 / 3.0))))
    while r > 1 and r ** 3 > k:
        r -= 1
    while (r + 1) ** 3 <= k:
        r += 1
    g = b = r

    # Grow the smallest channel while the product stays within k.
    while r * g * b < k:
        if r <= g and r <= b:
            if (r + 1) * g * b <= k:
                r += 1
            else:
                break
        elif g <= r and g <= b:
            if r * (g + 1) * b <= k:
                g += 1
            else:
                break
        else:
            if r * g * (b + 1) <= k:
                b += 1
            else:
                break
    return r, g, b


def posterize(raster: RasterImage, k: int) -> RasterImage:
    """Evenly spaced level quantization; grayscale luma for ``k <= 4``."""
    px = raster.copy_pixels()
    rgb = px[:, :, :3].astype(np.float64)

    if k <= 4:
        steps = max(0, k - 1)
        luma = 0.299 * rgb[:, :, 0] + 0.587 * rgb[:, :, 1] + 0.114 * rgb[:, :, 2]
        if steps > 0:
            idx = _round_half_up(luma * steps / 255.0)
            level = _round_half_up(idx * (255.0 / steps))
        else:
            level = np.zeros_like(luma)
        level = np.clip(level, 0, 255).astype(np.uint8)
        for c in range(3):
            px[:, :, c] = level
        return RasterImage(px)

    for c, levels in enumerate(posterize_levels(k)):
        steps = levels - 1
        if steps == 0:
            # A single level sits at mid-gray so the channel does not darken the image.
            px[:, :, c] = 128
            continue
        idx = _round_half_up(rgb[:, :, c] * steps / 255.0)
        px[:, :, c] = np.clip(_round_half_up(idx * (255.0 / steps)), 0, 255).astype(np.uint8)
    return RasterImage(px)


# ----------------------------
# Shared color statistics
# ----------------------------

@dataclass
class _ColorStats:
    colors: np.ndarray   # (n, 3) float64 unique opaque colors, ascending packed key
    counts: np.ndarray   # (n,) pixel counts
    inverse: np.ndarray  # opaque pixel -> unique color index
    mask: np.ndarray     # (H, W) opaque mask


def _color_stats(raster: RasterImage) -> _ColorStats:
    mask = raster.opaque_mask
    rgb = raster.rgb[mask].astype(np.uint32)
    if len(rgb) == 0:
        return _ColorStats(
            np.zeros((0, 3)), np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64), mask
        )
    packed = (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]
    keys, inverse, counts = np.unique(packed, return_inverse=True, return_counts=True)
    colors = np.stack(
        [(keys >> 16) & 0xFF, (keys >> 8) & 0xFF, keys & 0xFF], axis=1
    ).astype(np.float64)
    return _ColorStats(colors, counts.astype(np.int64), inverse.reshape(-1), mask)


def _remap(raster: RasterImage, stats: _ColorStats, targets: np.ndarray) -> RasterImage:
    """Replace every opaque pixel's RGB with the target of its unique color."""
    targets = np.clip(_round_half_up(np.asarray(targets, dtype=np.float64)), 0, 255)
    targets = targets.astype(np.uint8)
    if np.array_equal(targets, stats.colors.astype(np.uint8)):
        return raster
    px = raster.copy_pixels()
    rgb_view = px[:, :, :3]
    rgb_view[stats.mask] = targets[stats.inverse]
    return RasterImage(px)


def _weighted_means(colors: np.ndarray, counts: np.ndarray, labels: np.ndarray) -> np.ndarray:
    """Count-weighted mean color of each label, broadcast back per unique color."""
    uniq, label_idx = np.unique(labels, return_inverse=True)
    w = counts.astype(np.float64)
    total = np.bincount(label_idx, weights=w, minlength=len(uniq))
    means = np.stack(
        [np.bincount(label_idx, weights=colors[:, c] * w, minlength=len(uniq)) for c in range(3)],
        axis=1,
    ) / total[:, None]
    return means[label_idx]


# ----------------------------
# Clustering strategies
# ----------------------------

def median_cut(raster: RasterImage, k: int) -> RasterImage:
    """Split the widest box at its count-weighted median until ``k`` boxes."""
    stats = _color_stats(raster)
    n = len(stats.colors)
    if n <= k:
        return raster

    colors, counts = stats.colors, stats.counts
    boxes: List[np.ndarray] = [np.arange(n)]
    while len(boxes) < k:
        best, best_range, best_channel = -1, 0.0, 0
        for i, idx in enumerate(boxes):
            if len(idx) < 2:
                continue
            sub = colors[idx]
            ranges = sub.max(axis=0) - sub.min(axis=0)
            channel = int(np.argmax(ranges))
            if ranges[channel] > best_range:
                best, best_range, best_channel = i, float(ranges[channel]), channel
        if best < 0:
            break

        idx = boxes.pop(best)
        order = idx[np.argsort(colors[idx, best_channel], kind="stable")]
        cum = np.cumsum(counts[order])
        cut = int(np.searchsorted(cum, cum[-1] / 2.0)) + 1
        cut = min(max(cut, 1), len(order) - 1)
        boxes.append(order[:cut])
        boxes.append(order[cut:])

    labels = np.empty(n, dtype=np.int64)
    for i, idx in enumerate(boxes):
        labels[idx] = i
    return _remap(raster, stats, _weighted_means(colors, counts, labels))


def kmeans(
    raster: RasterImage, k: int, seed: int = 0, max_iter: int = 20
) -> RasterImage:
    """Weighted Lloyd iterations over unique colors with k-means++ seeding."""
    stats = _color_stats(raster)
    n = len(stats.colors)
    if n <= k:
        return raster

    colors = stats.colors
    w = stats.counts.astype(np.float64)
    rng = np.random.default_rng(seed)

    centers = [colors[rng.choice(n, p=w / w.sum())]]
    while len(centers) < k:
        dist, _ = cKDTree(np.asarray(centers)).query(colors)
        prob = (dist ** 2) * w
        if prob.sum() <= 0:
            break
        centers.append(colors[rng.choice(n, p=prob / prob.sum())])
    centers_arr = np.asarray(centers, dtype=np.float64)

    labels = np.zeros(n, dtype=np.int64)
    for _ in range(max_iter):
        _, labels = cKDTree(centers_arr).query(colors)
        total = np.bincount(labels, weights=w, minlength=len(centers_arr))
        sums = np.stack(
            [np.bincount(labels, weights=colors[:, c] * w, minlength=len(centers_arr)) for c in range(3)],
            axis=1,
        )
        updated = centers_arr.copy()
        filled = total > 0
        updated[filled] = sums[filled] / total[filled, None]
        if np.allclose(updated, centers_arr, atol=1e-3):
            centers_arr = updated
            break
        centers_arr = updated

    _, labels = cKDTree(centers_arr).query(colors)
    return _remap(raster, stats, centers_arr[labels])


def octree(raster: RasterImage, k: int) -> RasterImage:
    """Bit-prefix octree reduction, folding the lightest sibling groups first."""
    stats = _color_stats(raster)
    n = len(stats.colors)
    if n <= k:
        return raster

    ints = stats.colors.astype(np.int64)

    def keys_at(depth: int) -> np.ndarray:
        shift = 8 - depth
        return ((ints[:, 0] >> shift) << 16) | ((ints[:, 1] >> shift) << 8) | (ints[:, 2] >> shift)

    # Deepest level whose node count fits in k; the level below it overflows.
    depth = 8
    while depth > 0 and len(np.unique(keys_at(depth - 1))) > k:
        depth -= 1
    child = keys_at(depth)
    parent = keys_at(depth - 1)

    child_keys = np.unique(child)
    leaf_count = len(child_keys)
    parent_keys, parent_inv = np.unique(parent, return_inverse=True)
    parent_weight = np.bincount(parent_inv, weights=stats.counts, minlength=len(parent_keys))
    children_per_parent = np.array(
        [len(np.unique(child[parent_inv == p])) for p in range(len(parent_keys))]
    )

    merged = np.zeros(len(parent_keys), dtype=bool)
    for p in np.lexsort((parent_keys, parent_weight)):
        if leaf_count <= k:
            break
        if children_per_parent[p] < 2:
            continue
        merged[p] = True
        leaf_count -= children_per_parent[p] - 1

    labels = np.where(merged[parent_inv], (1 << 40) + parent, child)
    return _remap(raster, stats, _weighted_means(stats.colors, stats.counts, labels))


def _wu_volume(m: np.ndarray, r0, r1, g0, g1, b0, b1):
    return (
        m[r1, g1, b1] - m[r1, g1, b0] - m[r1, g0, b1] + m[r1, g0, b0]
        - m[r0, g1, b1] + m[r0, g1, b0] + m[r0, g0, b1] - m[r0, g0, b0]
    )


def wu(raster: RasterImage, k: int) -> RasterImage:
    """Wu's variance-minimising box cuts over a 33^3 cumulative moment grid."""
    stats = _color_stats(raster)
    n = len(stats.colors)
    if n <= k:
        return raster

    colors, counts = stats.colors, stats.counts.astype(np.float64)
    cells = (colors.astype(np.int64) >> 3) + 1
    moments = np.zeros((5, 33, 33, 33), dtype=np.float64)
    at = (cells[:, 0], cells[:, 1], cells[:, 2])
    np.add.at(moments[0], at, counts)
    for c in range(3):
        np.add.at(moments[c + 1], at, colors[:, c] * counts)
    np.add.at(moments[4], at, (colors ** 2).sum(axis=1) * counts)
    for axis in (1, 2, 3):
        moments = np.cumsum(moments, axis=axis)
    wt, mr, mg, mb, m2 = moments

    def box_moments(box):
        return [_wu_volume(m, *box) for m in (wt, mr, mg, mb)]

    def variance(box) -> float:
        w, r, g, b = box_moments(box)
        if w <= 0:
            return 0.0
        return float(_wu_volume(m2, *box) - (r * r + g * g + b * b) / w)

    def best_cut(box):
        whole = box_moments(box)
        best = None
        for axis in range(3):
            lo, hi = box[2 * axis], box[2 * axis + 1]
            if hi - lo < 2:
                continue
            ps = np.arange(lo + 1, hi)
            bounds = list(box)
            bounds[2 * axis + 1] = ps
            half = [_wu_volume(m, *bounds) for m in (wt, mr, mg, mb)]
            rest = [whole[i] - half[i] for i in range(4)]
            valid = (half[0] > 0) & (rest[0] > 0)
            if not valid.any():
                continue
            with np.errstate(divide="ignore", invalid="ignore"):
                score = (half[1] ** 2 + half[2] ** 2 + half[3] ** 2) / half[0] + (
                    rest[1] ** 2 + rest[2] ** 2 + rest[3] ** 2
                ) / rest[0]
            score = np.where(valid, score, -np.inf)
            i = int(np.argmax(score))
            if best is None or score[i] > best[0]:
                best = (float(score[i]), axis, int(ps[i]))
        return best

    boxes = [(0, 32, 0, 32, 0, 32)]
    variances = [variance(boxes[0])]
    while len(boxes) < k:
        i = int(np.argmax(variances))
        if variances[i] <= 0:
            break
        cut = best_cut(boxes[i])
        if cut is None:
            variances[i] = 0.0
            continue
        _, axis, pos = cut
        lower, upper = list(boxes[i]), list(boxes[i])
        lower[2 * axis + 1] = pos
        upper[2 * axis] = pos
        boxes[i] = tuple(lower)
        boxes.append(tuple(upper))
        variances[i] = variance(boxes[i])
        variances.append(variance(boxes[-1]))

    labels = np.empty(n, dtype=np.int64)
    for i, (r0, r1, g0, g1, b0, b1) in enumerate(boxes):
        inside = (
            (cells[:, 0] > r0) & (cells[:, 0] <= r1)
            & (cells[:, 1] > g0) & (cells[:, 1] <= g1)
            & (cells[:, 2] > b0) & (cells[:, 2] <= b1)
        )
        labels[inside] = i
    return _remap(raster, stats, _weighted_means(colors, counts, labels))


# ----------------------------
# Post-processing
# ----------------------------

def _palette_array(colors: Sequence[ColorLike]) -> np.ndarray:
    rows = [parse_color(c) if isinstance(c, str) else tuple(int(v) for v in c) for c in colors]
    return np.asarray(rows, dtype=np.float64).reshape(-1, 3)


def map_to_palette(raster: RasterImage, colors: Sequence[ColorLike]) -> RasterImage:
    """Snap each opaque pixel to its nearest palette entry (Euclidean RGB)."""
    palette = _palette_array(colors)
    if len(palette) == 0:
        return raster
    stats = _color_stats(raster)
    if len(stats.colors) == 0:
        return raster
    _, nearest = cKDTree(palette).query(stats.colors)
    return _remap(raster, stats, palette[nearest])


def enforce_color_count(raster: RasterImage, cap: int) -> RasterImage:
    """Fold the least frequent color into its nearest neighbour until ``<= cap``."""
    stats = _color_stats(raster)
    n = len(stats.colors)
    if n <= cap:
        return raster

    colors = stats.colors
    counts = stats.counts.copy()
    alive = np.ones(n, dtype=bool)
    target = np.arange(n)
    remaining = n
    while remaining > max(cap, 1):
        live = np.flatnonzero(alive)
        i = live[int(np.argmin(counts[live]))]
        others = live[live != i]
        j = others[int(np.argmin(((colors[others] - colors[i]) ** 2).sum(axis=1)))]
        counts[j] += counts[i]
        alive[i] = False
        target[target == i] = j
        remaining -= 1

    logger.debug("enforce_color_count: merged %d colors into %d", n, remaining)
    return _remap(raster, stats, colors[target])


def recolor(raster: RasterImage, old_rgb: RGB, new_rgb: RGB) -> RasterImage:
    """Literal replacement of one opaque color."""
    hit = raster.opaque_mask & np.all(raster.rgb == np.asarray(old_rgb, dtype=np.uint8), axis=2)
    if not hit.any():
        return raster
    px = raster.copy_pixels()
    rgb_view = px[:, :, :3]
    rgb_view[hit] = np.asarray(new_rgb, dtype=np.uint8)
    return RasterImage(px)


def remove_color(
    raster: RasterImage, swatches: Sequence[Swatch], removed: Swatch
) -> RasterImage:
    """Remap pixels onto the remaining opaque swatches after deleting one."""
    remaining = [
        s.rgb for s in swatches if not s.is_transparent and s.key != removed.key
    ]
    if not remaining:
        return raster
    return map_to_palette(raster, remaining)


def quantize(raster: RasterImage, config: Optional[QuantizeConfig] = None) -> RasterImage:
    """Strategy pass, then palette mapping or color-count enforcement."""
    if config is None:
        config = QuantizeConfig()
    algorithm = config.algorithm
    if algorithm not in STRATEGIES:
        raise ValueError(f"Unknown quantization algorithm '{algorithm}'. Options: {STRATEGIES}")

    k = int(config.weight)
    if algorithm == "posterize":
        out = posterize(raster, k)
    elif algorithm == "median-cut":
        out = median_cut(raster, k)
    elif algorithm == "kmeans":
        out = kmeans(raster, k, seed=config.seed, max_iter=config.kmeans_max_iter)
    elif algorithm == "octree":
        out = octree(raster, k)
    elif algorithm == "wu":
        out = wu(raster, k)
    else:
        out = raster
    logger.debug("%s pass: %d unique colors", algorithm, out.count_unique_colors())

    if config.palette_colors:
        palette: Sequence[str] = config.palette_colors
    else:
        palette = get_palette(config.palette_id).colors
    if palette:
        out = map_to_palette(out, palette)
    else:
        out = enforce_color_count(out, int(config.final_colors))

    out = out.finalize_alpha()
    logger.info(
        "Quantized with %s (weight=%d, palette=%s): %d unique colors",
        algorithm,
        k,
        "custom" if config.palette_colors else config.palette_id,
        out.count_unique_colors(),
    )
    return out
