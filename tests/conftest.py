"""
Pytest configuration and shared fixtures.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to path
_project_root = Path(__file__).resolve().parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from definitions import RequestSpec  # noqa: E402
from loadgen import OutcomeRecord  # noqa: E402


@pytest.fixture
def get_spec():
    return RequestSpec(
        name="status",
        method="GET",
        url="http://bench.test/api/status",
        params={"v": "1"},
    )


@pytest.fixture
def post_spec():
    return RequestSpec(
        name="search",
        method="POST",
        url="http://bench.test/api/search",
        headers={"kbn-xsrf": "true"},
        params={"query": "error", "size": 10},
    )


class FixedDispatch:
    """Fake dispatcher that answers every request with the same outcome."""

    def __init__(self, status_code=200, latency_ms=50.0):
        self.status_code = status_code
        self.latency_ms = latency_ms
        self.calls = 0
        self.call_times = []

    async def __call__(self, spec, cancel_event):
        self.calls += 1
        self.call_times.append(asyncio.get_running_loop().time())
        await asyncio.sleep(0)
        return OutcomeRecord(status_code=self.status_code, latency_ms=self.latency_ms)


class HangingDispatch:
    """Fake dispatcher that only finishes once the level is cancelled."""

    def __init__(self, honor_cancel=True):
        self.honor_cancel = honor_cancel
        self.calls = 0
        self.outcomes = []

    async def __call__(self, spec, cancel_event):
        self.calls += 1
        if self.honor_cancel:
            await cancel_event.wait()
        else:
            await asyncio.sleep(3600)
        outcome = OutcomeRecord(status_code=None, latency_ms=0.0, error="cancelled")
        self.outcomes.append(outcome)
        return outcome


@pytest.fixture
def fixed_dispatch():
    return FixedDispatch()


@pytest.fixture
def make_fixed_dispatch():
    return FixedDispatch


@pytest.fixture
def make_hanging_dispatch():
    return HangingDispatch
