from __future__ import annotations

import asyncio
import math
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from definitions import RequestSpec
from loadgen import OutcomeRecord, ResultRecorder
from report import LevelAggregate, aggregate


DispatchFn = Callable[[RequestSpec, asyncio.Event], Awaitable[OutcomeRecord]]


class GlobalTimeout(Exception):
    """A level did not settle before its watchdog deadline."""

    def __init__(self, rate: int, issued: int, deadline_s: float) -> None:
        super().__init__(
            f"Level at {rate} rpm did not settle within {deadline_s:.1f}s "
            f"({issued} requests issued)"
        )
        self.rate = rate
        self.issued = issued
        self.deadline_s = deadline_s


@dataclass(frozen=True)
class LevelPlan:
    rate: int
    interval_s: float
    total_requests: int
    batch_size: int

    @property
    def ticks(self) -> int:
        return math.ceil(self.total_requests / self.batch_size)

    @property
    def max_issued(self) -> int:
        return self.ticks * self.batch_size


def plan_level(rate: int, window_s: float, batch_size: int) -> LevelPlan:
    if rate <= 0:
        raise ValueError(f"rate must be > 0, got {rate}")
    if window_s <= 0:
        raise ValueError(f"window_s must be > 0, got {window_s}")
    if batch_size <= 0:
        raise ValueError(f"batch_size must be > 0, got {batch_size}")
    # One window's worth of requests; the last batch may overshoot by up to
    # batch_size - 1.
    return LevelPlan(
        rate=rate,
        interval_s=float(window_s) / rate,
        total_requests=rate,
        batch_size=batch_size,
    )


class TimeoutGuard:
    """Single-shot watchdog for one level.

    Firing sets the level's shared cancellation event. Leaving the ``async with``
    block cancels the timer, so no timer outlives its level.
    """

    def __init__(self, deadline_s: float, cancel_event: asyncio.Event) -> None:
        self.deadline_s = deadline_s
        self.cancel_event = cancel_event
        self.fired = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._handle is not None:
            raise RuntimeError("TimeoutGuard already started")
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.deadline_s, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.fired = True
        self.cancel_event.set()

    async def __aenter__(self) -> TimeoutGuard:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.cancel()


async def _sleep_or_cancelled(cancel_event: asyncio.Event, delay_s: float) -> bool:
    if delay_s <= 0:
        await asyncio.sleep(0)
        return cancel_event.is_set()
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay_s)
    except asyncio.TimeoutError:
        return False
    return True


async def _wait_for_tasks(tasks: list[asyncio.Task[None]], timeout_s: float) -> None:
    if not tasks:
        return
    done, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout_s))
    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    if done:
        await asyncio.gather(*done, return_exceptions=True)


class IntervalScheduler:
    """Paces one level's requests in fixed-size batches on a fixed cadence."""

    def __init__(
        self,
        dispatch: DispatchFn,
        *,
        window_s: float = 60.0,
        batch_size: int = 10,
        timeout_factor: float = 200,
        cancel_grace_s: float = 5.0,
        verbose: bool = True,
    ) -> None:
        self.dispatch = dispatch
        self.window_s = float(window_s)
        self.batch_size = batch_size
        self.timeout_factor = timeout_factor
        self.cancel_grace_s = float(cancel_grace_s)
        self.verbose = verbose

    @property
    def deadline_s(self) -> float:
        return self.window_s * self.timeout_factor

    async def run_level(
        self,
        rate: int,
        spec: RequestSpec,
        recorder: Optional[ResultRecorder] = None,
    ) -> LevelAggregate:
        plan = plan_level(rate, self.window_s, self.batch_size)
        recorder = recorder if recorder is not None else ResultRecorder()
        cancel_event = asyncio.Event()
        tasks: list[asyncio.Task[None]] = []

        guard = TimeoutGuard(self.deadline_s, cancel_event)
        async with guard:
            try:
                await self._emit(plan, spec, recorder, cancel_event, tasks)
                if self.verbose:
                    print()
                await self._settle(tasks, cancel_event)
            except asyncio.CancelledError:
                cancel_event.set()
                for task in tasks:
                    task.cancel()
                raise

        if guard.fired:
            print("GLOBAL TIMEOUT", file=sys.stderr)
            raise GlobalTimeout(rate, len(tasks), guard.deadline_s)
        return aggregate(await recorder.snapshot())

    async def _dispatch_one(
        self,
        spec: RequestSpec,
        cancel_event: asyncio.Event,
        recorder: ResultRecorder,
    ) -> None:
        outcome = await self.dispatch(spec, cancel_event)
        await recorder.record(outcome)

    async def _emit(
        self,
        plan: LevelPlan,
        spec: RequestSpec,
        recorder: ResultRecorder,
        cancel_event: asyncio.Event,
        tasks: list[asyncio.Task[None]],
    ) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        tick = 0
        while len(tasks) < plan.total_requests:
            if tick:
                # Ticks are anchored to the level start so a late tick does not
                # delay the ones after it.
                delay_s = started + tick * plan.interval_s - loop.time()
                if await _sleep_or_cancelled(cancel_event, delay_s):
                    return
            if self.verbose:
                print(
                    f"Interval {tick} after {tick * plan.interval_s:.2f}s "
                    f"sending out {len(tasks) + plan.batch_size} requests",
                    end="\r",
                    flush=True,
                )
            for _ in range(plan.batch_size):
                tasks.append(
                    asyncio.create_task(self._dispatch_one(spec, cancel_event, recorder))
                )
            tick += 1

    async def _settle(
        self,
        tasks: list[asyncio.Task[None]],
        cancel_event: asyncio.Event,
    ) -> None:
        if not tasks:
            return
        all_done = asyncio.gather(*tasks, return_exceptions=True)
        cancel_wait = asyncio.create_task(cancel_event.wait())
        try:
            await asyncio.wait({all_done, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
        if all_done.done():
            return
        # Dispatchers abandon their calls once the event is set; anything still
        # running after the grace period is cancelled outright.
        await _wait_for_tasks(tasks, self.cancel_grace_s)
        await all_done
