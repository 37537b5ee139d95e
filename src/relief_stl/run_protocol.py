"""Run-folder protocol: one timestamped folder per relief build.

Layout::

    <runs_root>/<YYYYmmdd_HHMMSS>_<slug>/
        input/<image>
        artifacts/model.stl, quantized.png, swatches.json, swap_plan.json
        manifest.json, metrics.json, summary.md
    <runs_root>/latest -> newest run folder
"""

from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

STL_NAME = "model.stl"
QUANTIZED_PNG_NAME = "quantized.png"
SWATCHES_NAME = "swatches.json"
SWAP_PLAN_NAME = "swap_plan.json"


@dataclass(frozen=True)
class RunPaths:
    """Every path a relief run writes, fixed when the folder is created."""

    run_id: str
    run_dir: Path
    input_dir: Path
    artifacts_dir: Path

    @classmethod
    def under(cls, run_dir: Path) -> "RunPaths":
        return cls(
            run_id=run_dir.name,
            run_dir=run_dir,
            input_dir=run_dir / "input",
            artifacts_dir=run_dir / "artifacts",
        )

    @property
    def stl_path(self) -> Path:
        return self.artifacts_dir / STL_NAME

    @property
    def quantized_png_path(self) -> Path:
        return self.artifacts_dir / QUANTIZED_PNG_NAME

    @property
    def swatches_path(self) -> Path:
        return self.artifacts_dir / SWATCHES_NAME

    @property
    def swap_plan_path(self) -> Path:
        return self.artifacts_dir / SWAP_PLAN_NAME

    @property
    def manifest_path(self) -> Path:
        return self.run_dir / "manifest.json"

    @property
    def metrics_path(self) -> Path:
        return self.run_dir / "metrics.json"

    @property
    def summary_path(self) -> Path:
        return self.run_dir / "summary.md"

    def artifact_index(
        self, quantized_png: Optional[Union[str, Path]]
    ) -> Dict[str, Optional[str]]:
        """Manifest ``artifacts`` block; ``quantized_png`` is None when skipped."""
        return {
            "stl": str(self.stl_path),
            "quantized_png": str(quantized_png) if quantized_png else None,
            "swatches": str(self.swatches_path),
            "swap_plan": str(self.swap_plan_path),
            "metrics": str(self.metrics_path),
            "summary": str(self.summary_path),
        }


def slugify(value: str) -> str:
    value = re.sub(r"[^a-z0-9]+", "-", value.strip().lower())
    return value.strip("-") or "relief"


def create_run_id(design_name: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    return f"{stamp}_{slugify(design_name)}"


def prepare_run_dir(runs_root: str, design_name: str) -> RunPaths:
    root = Path(runs_root)
    root.mkdir(parents=True, exist_ok=True)

    base_id = create_run_id(design_name)
    candidate = root / base_id
    attempt = 1
    # Two runs inside the same second get a numeric suffix.
    while candidate.exists():
        attempt += 1
        candidate = root / f"{base_id}_{attempt}"

    paths = RunPaths.under(candidate)
    paths.input_dir.mkdir(parents=True)
    paths.artifacts_dir.mkdir()
    return paths


def copy_input_image(image_path: str, input_dir: Path) -> Path:
    src = Path(image_path)
    dst = input_dir / src.name
    if src.resolve() != dst.resolve():
        shutil.copy2(src, dst)
    return dst


def write_json(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


def write_text(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def update_latest_pointer(runs_root: str, run_dir: Path) -> None:
    """Point ``<runs_root>/latest`` at ``run_dir``.

    Symlink when the filesystem allows it, otherwise a ``latest`` folder
    holding ``latest_run.txt`` with the run id.
    """
    root = Path(runs_root)
    latest = root / "latest"

    if latest.is_symlink() or latest.is_file():
        latest.unlink()
    elif latest.is_dir():
        shutil.rmtree(latest)

    try:
        latest.symlink_to(os.path.relpath(run_dir, root))
    except OSError:
        latest.mkdir(parents=True, exist_ok=True)
        (latest / "latest_run.txt").write_text(run_dir.name, encoding="utf-8")
