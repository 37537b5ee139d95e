"""Tests for tagged build outcomes and the debounced rebuild controller."""

import asyncio
from dataclasses import replace

import numpy as np
import pytest

from relief_stl.builder import (
    BuildConfig,
    BuildParams,
    ReliefBuilder,
    build_relief,
    build_solid,
)
from relief_stl.contracts import (
    Aborted,
    BuildFailed,
    Committed,
    HeightPlan,
    HeightPlanError,
    RasterDecodeError,
    ReliefBuildError,
)
from relief_stl.scheduling import BuildEpoch
from relief_stl.swatches import extract_swatches

SCENARIO_PLAN = HeightPlan(0.1, 0.2, (0.3, 0.1), (0, 1))
FAST = BuildConfig(debounce_ms=10.0)


def _params(raster, plan=SCENARIO_PLAN, **kwargs):
    return BuildParams(
        source=raster, plan=plan, swatches=tuple(extract_swatches(raster)), **kwargs
    )


class TestBuildRelief:

    def test_scenario_commits_solid(self, two_color_raster):
        params = _params(two_color_raster, pixel_columns=True, pixel_size=0.2)
        token = BuildEpoch().advance()
        outcome = asyncio.run(build_relief(params, token))
        assert isinstance(outcome, Committed)
        mesh = outcome.mesh
        assert mesh.mode == "solid"
        assert mesh.generation == token.generation == outcome.generation
        assert mesh.scale == (0.2, 0.2, 1.0)
        assert mesh.metadata["sampling"] == "columns"
        z = np.round(mesh.positions[:, 2], 4)
        assert set(z.tolist()) == {0.0, 0.5, 0.6}

    def test_preview_phase_is_open_surface(self, two_color_raster):
        outcome = asyncio.run(
            build_relief(_params(two_color_raster), BuildEpoch().advance(), phase="preview")
        )
        assert isinstance(outcome, Committed)
        assert outcome.mesh.mode == "preview"
        assert outcome.mesh.triangle_count == 2 * 32 * 32

    def test_undecodable_bytes_fail(self, two_color_raster):
        params = replace(_params(two_color_raster), source=b"\x89PNG broken")
        outcome = asyncio.run(build_relief(params, BuildEpoch().advance()))
        assert isinstance(outcome, BuildFailed)
        assert isinstance(outcome.error, RasterDecodeError)

    def test_bad_plan_fails(self, two_color_raster):
        params = _params(two_color_raster, plan=HeightPlan(0.1, 0.2, (0.3,), (0,)))
        outcome = asyncio.run(build_relief(params, BuildEpoch().advance()))
        assert isinstance(outcome, BuildFailed)
        assert isinstance(outcome.error, HeightPlanError)

    def test_stale_token_aborts(self, two_color_raster):
        epoch = BuildEpoch()
        token = epoch.advance()
        epoch.advance()
        outcome = asyncio.run(build_relief(_params(two_color_raster), token))
        assert outcome == Aborted(token.generation)

    def test_transparent_pixel_builds_flat(self, transparent_pixel):
        params = _params(transparent_pixel, plan=HeightPlan(0.12, 0.12))
        outcome = asyncio.run(build_relief(params, BuildEpoch().advance()))
        assert isinstance(outcome, Committed)
        assert outcome.mesh.stats.wall_quad_count == 0
        assert np.all(outcome.mesh.positions[:, 2] == 0.0)

    def test_pixel_columns_fall_back_to_grid(self, two_color_raster):
        params = _params(two_color_raster, pixel_columns=True)
        config = BuildConfig(max_pixel_columns=4)
        outcome = asyncio.run(build_relief(params, BuildEpoch().advance(), config))
        assert outcome.mesh.metadata["sampling"] == "grid"

    def test_build_solid_raises_on_failure(self, two_color_raster):
        params = replace(_params(two_color_raster), source=b"nope")
        with pytest.raises(ReliefBuildError):
            build_solid(params)

    def test_params_structural_equality(self, two_color_raster):
        a = _params(two_color_raster)
        b = _params(two_color_raster.with_pixels(two_color_raster.copy_pixels()))
        assert a == b
        assert a != replace(a, force_rebuild=1)
        assert a != replace(a, stepped=True)


class TestReliefBuilder:

    def test_second_build_supersedes_first(self, two_color_raster, gradient_raster):
        committed = []

        async def run():
            builder = ReliefBuilder(BuildConfig(budget_ms=0.0), on_commit=committed.append)
            first = builder.start(_params(gradient_raster, plan=_plan_for(gradient_raster)))
            await asyncio.sleep(0)
            second = builder.start(_params(two_color_raster))
            return builder, await first, await second

        builder, first, second = asyncio.run(run())
        assert isinstance(first, Aborted)
        assert first.generation == 1
        assert isinstance(second, Committed)
        assert second.generation == 2
        assert builder.live_mesh is second.mesh
        assert all(mesh.generation == 2 for mesh in committed)
        assert not builder.building

    def test_preview_then_solid_commits(self, two_color_raster):
        committed = []

        async def run():
            builder = ReliefBuilder(on_commit=committed.append)
            await builder.start(_params(two_color_raster))
            return builder

        builder = asyncio.run(run())
        assert [m.mode for m in committed] == ["preview", "solid"]
        assert builder.live_mesh.mode == "solid"

    def test_debounced_requests_coalesce(self, two_color_raster):
        base = _params(two_color_raster)
        last = replace(base, height_scale=2.0)

        async def run():
            builder = ReliefBuilder(FAST)
            assert builder.request(base)
            assert builder.request(replace(base, height_scale=1.5))
            assert builder.request(last)
            await builder.wait_idle()
            return builder

        builder = asyncio.run(run())
        assert builder.generation == 1
        assert builder.live_params == last
        assert builder.live_mesh.scale[2] == 2.0
        assert not builder.building

    def test_equal_params_skip_rebuild(self, two_color_raster):
        params = _params(two_color_raster)

        async def run():
            builder = ReliefBuilder(FAST)
            builder.request(params)
            await builder.wait_idle()
            skipped = builder.request(params)
            forced = builder.request(replace(params, force_rebuild=1))
            await builder.wait_idle()
            return builder, skipped, forced

        builder, skipped, forced = asyncio.run(run())
        assert skipped is False
        assert forced is True
        assert builder.generation == 2

    def test_in_flight_params_skip_rebuild(self, two_color_raster):
        params = _params(two_color_raster)

        async def run():
            builder = ReliefBuilder(FAST)
            builder.start(params)
            again = builder.request(params)
            await builder.wait_idle()
            return builder, again

        builder, again = asyncio.run(run())
        assert again is False
        assert builder.generation == 1

    def test_return_to_live_params_drops_queued_request(self, two_color_raster):
        params = _params(two_color_raster)

        async def run():
            builder = ReliefBuilder(FAST)
            builder.request(params)
            await builder.wait_idle()
            moved = builder.request(replace(params, height_scale=3.0))
            back = builder.request(params)
            await builder.wait_idle()
            return builder, moved, back

        builder, moved, back = asyncio.run(run())
        assert moved is True
        assert back is False
        assert builder.generation == 1
        assert builder.live_params == params
        assert builder.live_mesh.scale[2] == 1.0

    def test_return_to_in_flight_params_drops_queued_request(self, two_color_raster):
        params = _params(two_color_raster)

        async def run():
            builder = ReliefBuilder(FAST)
            builder.start(params)
            builder.request(replace(params, height_scale=3.0))
            back = builder.request(params)
            await builder.wait_idle()
            return builder, back

        builder, back = asyncio.run(run())
        assert back is False
        assert builder.generation == 1
        assert builder.live_params == params

    def test_failure_reported_and_clears_building(self, two_color_raster):
        failures = []
        params = replace(_params(two_color_raster), source=b"garbage")

        async def run():
            builder = ReliefBuilder(FAST, on_failed=failures.append)
            builder.request(params)
            await builder.wait_idle()
            return builder

        builder = asyncio.run(run())
        assert len(failures) == 1
        assert isinstance(failures[0].error, RasterDecodeError)
        assert builder.last_failure is failures[0]
        assert builder.live_mesh is None
        assert not builder.building

    def test_cancel_drops_queued_request(self, two_color_raster):
        async def run():
            builder = ReliefBuilder(FAST)
            builder.request(_params(two_color_raster))
            builder.cancel()
            await builder.wait_idle()
            return builder

        builder = asyncio.run(run())
        assert builder.generation == 0
        assert builder.live_mesh is None


def _plan_for(raster):
    n = len([s for s in extract_swatches(raster) if not s.is_transparent])
    return HeightPlan(0.12, 0.12, tuple([0.12] * n), tuple(range(n)))
