"""
Unit tests for level pacing, the level watchdog and cancellation.
"""

import asyncio
import math

import pytest

from loadgen import ResultRecorder
from scheduler import GlobalTimeout, IntervalScheduler, TimeoutGuard, plan_level


def test_plan_level_for_one_minute_window():
    plan = plan_level(100, 60.0, 10)

    assert plan.interval_s == pytest.approx(0.6)
    assert plan.total_requests == 100
    assert plan.ticks == 10
    assert plan.max_issued == 100


def test_plan_level_rounds_last_batch_up():
    plan = plan_level(95, 60.0, 10)

    assert plan.ticks == 10
    assert plan.max_issued == 100
    assert plan.max_issued - plan.total_requests <= plan.batch_size - 1


@pytest.mark.parametrize(
    "rate,window_s,batch_size",
    [(0, 60.0, 10), (-5, 60.0, 10), (100, 0.0, 10), (100, 60.0, 0)],
)
def test_plan_level_rejects_invalid_input(rate, window_s, batch_size):
    with pytest.raises(ValueError):
        plan_level(rate, window_s, batch_size)


@pytest.mark.asyncio
async def test_run_level_one_window_at_100_rpm(get_spec, make_fixed_dispatch):
    dispatch = make_fixed_dispatch(status_code=200, latency_ms=50.0)
    scheduler = IntervalScheduler(dispatch, window_s=0.05, batch_size=10, verbose=False)

    result = await scheduler.run_level(100, get_spec)

    assert dispatch.calls == 100
    assert result.to_dict() == {
        "200": {"count": 100, "total_latency_ms": 5000.0, "avg_latency_ms": 50.0}
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("rate", [1, 9, 10, 11, 37, 95, 250])
async def test_run_level_issues_whole_batches(rate, get_spec, make_fixed_dispatch):
    dispatch = make_fixed_dispatch()
    scheduler = IntervalScheduler(dispatch, window_s=0.02, batch_size=10, verbose=False)

    result = await scheduler.run_level(rate, get_spec)

    expected = math.ceil(rate / 10) * 10
    assert dispatch.calls == expected
    assert result.issued == expected
    assert result.issued >= rate
    assert result.issued - rate <= 9


@pytest.mark.asyncio
async def test_run_level_paces_batches_on_the_cadence(get_spec, make_fixed_dispatch):
    dispatch = make_fixed_dispatch()
    scheduler = IntervalScheduler(dispatch, window_s=0.4, batch_size=10, verbose=False)

    await scheduler.run_level(40, get_spec)

    # 40 requests in batches of 10 at a 10ms cadence: 4 ticks, 30ms apart end to end.
    interval_s = 0.4 / 40
    elapsed = max(dispatch.call_times) - min(dispatch.call_times)
    assert dispatch.calls == 40
    assert elapsed >= 3 * interval_s * 0.9


@pytest.mark.asyncio
async def test_run_level_feeds_the_given_recorder(get_spec, make_fixed_dispatch):
    dispatch = make_fixed_dispatch(status_code=204, latency_ms=3.0)
    recorder = ResultRecorder()
    scheduler = IntervalScheduler(dispatch, window_s=0.01, verbose=False)

    result = await scheduler.run_level(20, get_spec, recorder=recorder)

    assert len(recorder) == 20
    assert result.get(204).count == 20


@pytest.mark.asyncio
async def test_run_level_prints_progress(get_spec, make_fixed_dispatch, capsys):
    scheduler = IntervalScheduler(make_fixed_dispatch(), window_s=0.01, verbose=True)

    await scheduler.run_level(20, get_spec)

    out = capsys.readouterr().out
    assert "Interval 0 after 0.00s sending out 10 requests" in out
    assert "Interval 1" in out


@pytest.mark.asyncio
async def test_watchdog_aborts_hung_level(get_spec, make_hanging_dispatch, capsys):
    dispatch = make_hanging_dispatch()
    scheduler = IntervalScheduler(
        dispatch, window_s=0.01, batch_size=10, timeout_factor=5, verbose=False
    )

    with pytest.raises(GlobalTimeout) as excinfo:
        await asyncio.wait_for(scheduler.run_level(20, get_spec), timeout=2.0)

    assert excinfo.value.rate == 20
    assert excinfo.value.issued == 20
    assert dispatch.calls == 20
    assert len(dispatch.outcomes) == 20
    assert all(outcome.status_code is None for outcome in dispatch.outcomes)
    assert "GLOBAL TIMEOUT" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_watchdog_stops_emission_mid_level(get_spec, make_hanging_dispatch):
    dispatch = make_hanging_dispatch()
    # 10ms cadence for 100 requests would take 90ms; the watchdog fires at 30ms.
    scheduler = IntervalScheduler(
        dispatch, window_s=1.0, batch_size=10, timeout_factor=0.03, verbose=False
    )

    with pytest.raises(GlobalTimeout) as excinfo:
        await asyncio.wait_for(scheduler.run_level(100, get_spec), timeout=2.0)

    issued = excinfo.value.issued
    assert 0 < issued < 100
    assert issued % 10 == 0
    assert dispatch.calls == issued

    await asyncio.sleep(0.05)
    assert dispatch.calls == issued
    assert len(dispatch.outcomes) == issued


@pytest.mark.asyncio
async def test_watchdog_cancels_dispatches_that_ignore_the_token(
    get_spec, make_hanging_dispatch
):
    dispatch = make_hanging_dispatch(honor_cancel=False)
    scheduler = IntervalScheduler(
        dispatch,
        window_s=0.01,
        timeout_factor=5,
        cancel_grace_s=0.05,
        verbose=False,
    )

    with pytest.raises(GlobalTimeout):
        await asyncio.wait_for(scheduler.run_level(10, get_spec), timeout=2.0)

    assert dispatch.calls == 10


@pytest.mark.asyncio
async def test_guard_fires_once_and_sets_event():
    event = asyncio.Event()
    guard = TimeoutGuard(0.01, event)

    async with guard:
        assert guard.active
        await asyncio.wait_for(event.wait(), timeout=1.0)

    assert guard.fired
    assert not guard.active


@pytest.mark.asyncio
async def test_guard_is_disarmed_on_normal_exit():
    event = asyncio.Event()
    guard = TimeoutGuard(0.02, event)

    async with guard:
        pass

    await asyncio.sleep(0.05)
    assert not guard.fired
    assert not guard.active
    assert not event.is_set()


@pytest.mark.asyncio
async def test_guard_cannot_start_twice():
    guard = TimeoutGuard(10.0, asyncio.Event())
    guard.start()
    try:
        with pytest.raises(RuntimeError):
            guard.start()
    finally:
        guard.cancel()


@pytest.mark.asyncio
async def test_completed_level_leaves_no_armed_guard(get_spec, make_fixed_dispatch):
    dispatch = make_fixed_dispatch()
    scheduler = IntervalScheduler(
        dispatch, window_s=0.01, timeout_factor=2, verbose=False
    )

    await scheduler.run_level(10, get_spec)
    await asyncio.sleep(0.05)
    result = await scheduler.run_level(10, get_spec)

    assert result.issued == 10
    assert dispatch.calls == 20
