"""
Relief mesh builds and the debounced rebuild controller.

``build_relief`` runs one phase of one build generation and reports a tagged
outcome instead of raising:
  - Committed(mesh)   the phase finished and its token is still current
  - Aborted(gen)      a newer build started; partial buffers were dropped
  - BuildFailed(...)  the raster could not be decoded or the plan is invalid

``ReliefBuilder`` owns the generation epoch and the live mesh. Each build
runs a cheap preview (open top surface at a reduced grid resolution) and
then, after yielding to the loop, the full watertight solid.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Set, Tuple

from relief_stl.contracts import (
    Aborted,
    BuildFailed,
    BuildOutcome,
    Committed,
    HeightPlan,
    HeightPlanError,
    RasterDecodeError,
    ReliefBuildError,
    ReliefMesh,
    Swatch,
)
from relief_stl.height_plan import elevation_table
from relief_stl.heightfield import (
    MAX_PIXEL_COLUMNS,
    pixel_columns_allowed,
    preview_resolution,
    sample_grid,
    sample_pixel_columns,
    select_resolution,
)
from relief_stl.raster import RasterSource, load_raster
from relief_stl.scheduling import (
    BuildEpoch,
    BuildPacer,
    BuildSuperseded,
    BuildToken,
    Debouncer,
)
from relief_stl.solidify import build_top_surface, solidify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildParams:
    """Everything that determines a mesh; equal params mean an equal mesh."""

    source: RasterSource
    plan: HeightPlan
    swatches: Tuple[Swatch, ...]
    pixel_size: float = 0.1       # mm per source pixel
    height_scale: float = 1.0
    stepped: bool = False
    pixel_columns: bool = False
    force_rebuild: int = 0


@dataclass
class BuildConfig:
    budget_ms: float = 12.0
    debounce_ms: float = 120.0
    max_pixel_columns: int = MAX_PIXEL_COLUMNS
    preview: bool = True


async def build_relief(
    params: BuildParams,
    token: BuildToken,
    config: Optional[BuildConfig] = None,
    phase: str = "final",
) -> BuildOutcome:
    """Build the ``preview`` surface or the ``final`` solid for one generation."""
    if config is None:
        config = BuildConfig()
    if phase not in ("preview", "final"):
        raise ValueError(f"Unknown build phase '{phase}'")

    pacer = BuildPacer(token, budget_ms=config.budget_ms)
    started = time.perf_counter()
    try:
        token.ensure_current()
        raster = load_raster(params.source)
        table = elevation_table(params.plan, params.swatches)
        bbox = raster.opaque_bbox()
        resolution = select_resolution(max(bbox[2], bbox[3]))
        scale = (params.pixel_size, params.pixel_size, params.height_scale)

        if phase == "preview":
            field = await sample_grid(
                raster, bbox, preview_resolution(resolution), table,
                params.plan, pacer, stepped=params.stepped,
            )
            mesh = await build_top_surface(field, pacer, scale=scale)
        else:
            if params.pixel_columns and pixel_columns_allowed(bbox, config.max_pixel_columns):
                field = await sample_pixel_columns(raster, bbox, table, params.plan, pacer)
            else:
                if params.pixel_columns:
                    logger.info(
                        "Pixel columns need %dx%d=%d pixels (max %d); using grid at %d",
                        bbox[2], bbox[3], bbox[2] * bbox[3],
                        config.max_pixel_columns, resolution,
                    )
                field = await sample_grid(
                    raster, bbox, resolution, table,
                    params.plan, pacer, stepped=params.stepped,
                )
            mesh = await solidify(field, pacer, scale=scale)
        token.ensure_current()
    except BuildSuperseded:
        logger.debug("Build %d %s superseded", token.generation, phase)
        return Aborted(token.generation)
    except (RasterDecodeError, HeightPlanError) as exc:
        if not token.is_current:
            return Aborted(token.generation)
        logger.warning("Build %d %s failed: %s", token.generation, phase, exc)
        return BuildFailed(token.generation, exc)

    mesh.generation = token.generation
    logger.debug(
        "Build %d %s: %d triangles in %.1f ms (%d yields)",
        token.generation, phase, mesh.triangle_count,
        (time.perf_counter() - started) * 1000.0, pacer.yields,
    )
    return Committed(mesh)


def build_solid(params: BuildParams, config: Optional[BuildConfig] = None) -> ReliefMesh:
    """Blocking single-generation build of the final solid."""
    token = BuildEpoch().advance()
    outcome = asyncio.run(build_relief(params, token, config, phase="final"))
    if isinstance(outcome, BuildFailed):
        raise ReliefBuildError(f"Relief build failed: {outcome.error}") from outcome.error
    if not isinstance(outcome, Committed):
        raise ReliefBuildError(f"Relief build {outcome.generation} did not commit")
    return outcome.mesh


class ReliefBuilder:
    """Debounced, cancellable rebuilds with a single live mesh.

    Must be driven from a running asyncio loop. ``start`` supersedes any
    in-flight build immediately; ``request`` coalesces bursts with a trailing
    debounce and ignores params equal to the live or in-flight ones.
    """

    def __init__(
        self,
        config: Optional[BuildConfig] = None,
        on_commit: Optional[Callable[[ReliefMesh], None]] = None,
        on_failed: Optional[Callable[[BuildFailed], None]] = None,
    ):
        self.config = config or BuildConfig()
        self.on_commit = on_commit
        self.on_failed = on_failed
        self._epoch = BuildEpoch()
        self._debouncer = Debouncer(self.config.debounce_ms / 1000.0)
        self._live_mesh: Optional[ReliefMesh] = None
        self._live_params: Optional[BuildParams] = None
        self._inflight_params: Optional[BuildParams] = None
        self._queued_params: Optional[BuildParams] = None
        self._tasks: Set[asyncio.Task] = set()
        self.building = False
        self.last_failure: Optional[BuildFailed] = None

    @property
    def live_mesh(self) -> Optional[ReliefMesh]:
        return self._live_mesh

    @property
    def live_params(self) -> Optional[BuildParams]:
        return self._live_params

    @property
    def generation(self) -> int:
        return self._epoch.current

    def request(self, params: BuildParams) -> bool:
        """Schedule a debounced rebuild; False when ``params`` need no rebuild."""
        unchanged = (
            params == self._inflight_params if self.building else params == self._live_params
        )
        if unchanged:
            # The latest request wins, so an earlier queued one is dropped too.
            self._debouncer.cancel()
            self._queued_params = None
            return False
        self._queued_params = params
        self._debouncer.call(self._fire)
        return True

    def _fire(self) -> None:
        params, self._queued_params = self._queued_params, None
        if params is not None:
            self.start(params)

    def start(self, params: BuildParams) -> "asyncio.Task[BuildOutcome]":
        """Begin a new generation now, superseding any in-flight build."""
        token = self._epoch.advance()
        self._inflight_params = params
        self.building = True
        task = asyncio.get_running_loop().create_task(self._run(params, token))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, params: BuildParams, token: BuildToken) -> BuildOutcome:
        if self.config.preview:
            preview = await build_relief(params, token, self.config, phase="preview")
            if isinstance(preview, Committed):
                self._commit(preview.mesh, token)
            else:
                return self._settle(preview, token)

        # Let the loop run anything pending before the expensive pass.
        await asyncio.sleep(0)
        outcome = await build_relief(params, token, self.config, phase="final")
        if isinstance(outcome, Committed):
            if not self._commit(outcome.mesh, token):
                outcome = Aborted(token.generation)
            else:
                self._live_params = params
        return self._settle(outcome, token)

    def _commit(self, mesh: ReliefMesh, token: BuildToken) -> bool:
        if not token.is_current:
            return False
        self._live_mesh = mesh
        logger.debug("Committed %s mesh for build %d", mesh.mode, token.generation)
        if self.on_commit is not None:
            self.on_commit(mesh)
        return True

    def _settle(self, outcome: BuildOutcome, token: BuildToken) -> BuildOutcome:
        if not token.is_current:
            return outcome
        self.building = False
        if isinstance(outcome, BuildFailed):
            self.last_failure = outcome
            if self.on_failed is not None:
                self.on_failed(outcome)
        return outcome

    async def wait_idle(self) -> None:
        """Wait until no debounce is pending and every build task has finished."""
        while True:
            if self._tasks:
                await asyncio.gather(*list(self._tasks))
            elif self._debouncer.pending:
                await asyncio.sleep(self._debouncer.delay_s / 4.0)
            else:
                return

    def cancel(self) -> None:
        """Drop any queued request and supersede the in-flight build."""
        self._debouncer.cancel()
        self._queued_params = None
        if self.building:
            self._epoch.advance()
            self.building = False
