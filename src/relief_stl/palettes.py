"""Fixed target palettes for palette-mapped quantization."""

from __future__ import annotations

import colorsys
import re
from dataclasses import dataclass
from typing import Dict, List, Tuple

from relief_stl.contracts import RGB

_HSL_RE = re.compile(
    r"^hsl\(\s*([\d.]+)(?:deg)?[\s,]+([\d.]+)%[\s,]+([\d.]+)%\s*\)$", re.IGNORECASE
)


@dataclass(frozen=True)
class Palette:
    palette_id: str
    label: str
    colors: Tuple[str, ...]

    @property
    def size(self) -> int:
        return len(self.colors)

    def rgb_colors(self) -> List[RGB]:
        return [parse_color(c) for c in self.colors]


def parse_color(value: str) -> RGB:
    """Parse ``#rrggbb`` / ``#rgb`` or CSS ``hsl(h s% l%)`` into an RGB tuple."""
    text = value.strip()
    if text.startswith("#"):
        digits = text[1:]
        if len(digits) == 3:
            digits = "".join(ch * 2 for ch in digits)
        if len(digits) != 6:
            raise ValueError(f"Invalid hex color: {value}")
        return (int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16))

    match = _HSL_RE.match(text)
    if match:
        h = float(match.group(1)) % 360.0
        s = float(match.group(2)) / 100.0
        light = float(match.group(3)) / 100.0
        r, g, b = colorsys.hls_to_rgb(h / 360.0, light, s)
        return (int(round(r * 255)), int(round(g * 255)), int(round(b * 255)))

    raise ValueError(f"Unsupported color format: {value}")


PALETTES: Dict[str, Palette] = {
    "auto": Palette("auto", "Auto", ()),
    "p4": Palette("p4", "4", ("#d7263d", "#021c1e", "#f2e86d", "#3bceac")),
    "p8": Palette(
        "p8",
        "8",
        (
            "#264653", "#2a9d8f", "#e9c46a", "#f4a261",
            "#e76f51", "#8ab17d", "#6a4c93", "#ef476f",
        ),
    ),
    "p16": Palette(
        "p16",
        "16",
        (
            "#e63946", "#f1faee", "#a8dadc", "#457b9d",
            "#1d3557", "#ffb4a2", "#ffd6a5", "#fdffb6",
            "#cdeac0", "#a3e635", "#80ed99", "#00b4d8",
            "#0077b6", "#023e8a", "#ef233c", "#ffd6e0",
        ),
    ),
    "p32": Palette(
        "p32",
        "32",
        tuple(f"hsl({round(i * 360 / 32)} 70% 55%)" for i in range(32)),
    ),
}


def get_palette(palette_id: str) -> Palette:
    try:
        return PALETTES[palette_id]
    except KeyError:
        raise KeyError(
            f"Unknown palette '{palette_id}'. Available: {sorted(PALETTES)}"
        ) from None
