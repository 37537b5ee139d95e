"""Cooperative scheduling primitives for single-threaded (asyncio) builds.

A ``BuildEpoch`` hands out monotonically increasing ``BuildToken`` values;
starting a newer build makes every older token stale. Long loops call
``await pacer.checkpoint()`` at row or chunk boundaries: the pacer yields to
the event loop once its time slice is spent and raises ``BuildSuperseded``
as soon as its token is stale, so the caller can discard partial buffers.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional


class BuildSuperseded(Exception):
    """Raised inside a build when a newer generation has started."""

    def __init__(self, generation: int):
        super().__init__(f"build {generation} superseded")
        self.generation = generation


class BuildEpoch:
    """Monotonic generation counter; exactly one generation may commit."""

    def __init__(self) -> None:
        self._generation = 0

    @property
    def current(self) -> int:
        return self._generation

    def advance(self) -> "BuildToken":
        self._generation += 1
        return BuildToken(self, self._generation)


@dataclass(frozen=True)
class BuildToken:
    epoch: BuildEpoch
    generation: int

    @property
    def is_current(self) -> bool:
        return self.epoch.current == self.generation

    def ensure_current(self) -> None:
        if not self.is_current:
            raise BuildSuperseded(self.generation)


class BuildPacer:
    """Time-slices a build: yields after ``budget_ms`` and re-checks its token."""

    def __init__(
        self,
        token: BuildToken,
        budget_ms: float = 12.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.token = token
        self.budget_s = budget_ms / 1000.0
        self._clock = clock
        self._slice_start = clock()
        self.yields = 0

    async def checkpoint(self) -> None:
        if self._clock() - self._slice_start >= self.budget_s:
            await asyncio.sleep(0)
            self.yields += 1
            self._slice_start = self._clock()
        self.token.ensure_current()


class Debouncer:
    """Trailing-edge debounce on the running event loop."""

    def __init__(self, delay_s: float) -> None:
        self.delay_s = delay_s
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def call(self, callback: Callable[[], None]) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            self._handle = None
            callback()

        self._handle = loop.call_later(self.delay_s, _fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
