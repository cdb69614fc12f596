from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from definitions import RequestSpec


CANCELLED = "cancelled"


class AuthenticationError(RuntimeError):
    pass


def now_unix_ms() -> int:
    return int(time.time() * 1000)


def _elapsed_ms(start: float) -> float:
    return max(0.0, (time.perf_counter() - start) * 1000.0)


@dataclass(frozen=True)
class OutcomeRecord:
    """Result of one dispatched request.

    ``status_code`` is None when no response was received: network failure,
    per-request timeout, or cancellation by the level watchdog.
    """

    status_code: Optional[int]
    latency_ms: float
    started_at_unix_ms: int = 0
    error: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.error == CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ResultRecorder:
    """Append-only collection of the outcomes of one level."""

    def __init__(
        self,
        on_record: Optional[Callable[[OutcomeRecord], Awaitable[None]]] = None,
    ) -> None:
        self._records: list[OutcomeRecord] = []
        self._lock = asyncio.Lock()
        self._on_record = on_record

    async def record(self, outcome: OutcomeRecord) -> None:
        async with self._lock:
            self._records.append(outcome)
        if self._on_record is not None:
            await self._on_record(outcome)

    async def snapshot(self) -> list[OutcomeRecord]:
        async with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        return len(self._records)


def _has_header(headers: dict[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key in headers)


def _request_kwargs(spec: RequestSpec, params_as_body: bool = False) -> dict[str, Any]:
    headers = dict(spec.headers)
    kwargs: dict[str, Any] = {"method": spec.method, "url": spec.url}
    if spec.method == "GET" and not params_as_body:
        kwargs["params"] = dict(spec.params)
    else:
        if not _has_header(headers, "content-type"):
            headers["Content-Type"] = "application/json"
        kwargs["content"] = json.dumps(spec.params)
    kwargs["headers"] = headers
    return kwargs


def _failed_outcome(
    started_at_ms: int,
    latency_ms: float,
    error: str,
) -> OutcomeRecord:
    return OutcomeRecord(
        status_code=None,
        latency_ms=latency_ms,
        started_at_unix_ms=started_at_ms,
        error=error,
    )


async def dispatch_request(
    client: httpx.AsyncClient,
    spec: RequestSpec,
    cancel_event: asyncio.Event,
    cancelled_latency_ms: Optional[float] = None,
) -> OutcomeRecord:
    """Issue one request and normalize whatever happens into an OutcomeRecord.

    Transport errors never propagate. Setting ``cancel_event`` abandons the
    in-flight call; the outcome then reports the elapsed time, or
    ``cancelled_latency_ms`` when given.
    """
    started_at_ms = now_unix_ms()
    start = time.perf_counter()

    def cancelled_outcome() -> OutcomeRecord:
        latency_ms = (
            float(cancelled_latency_ms)
            if cancelled_latency_ms is not None
            else _elapsed_ms(start)
        )
        return _failed_outcome(started_at_ms, latency_ms, CANCELLED)

    if cancel_event.is_set():
        return cancelled_outcome()

    request_task = asyncio.create_task(client.request(**_request_kwargs(spec)))
    cancel_task = asyncio.create_task(cancel_event.wait())
    try:
        await asyncio.wait(
            {request_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        cancel_task.cancel()
        if not request_task.done():
            request_task.cancel()

    if not request_task.done() or request_task.cancelled():
        await asyncio.gather(request_task, return_exceptions=True)
        return cancelled_outcome()

    try:
        response = request_task.result()
    except httpx.TimeoutException as exc:
        return _failed_outcome(started_at_ms, _elapsed_ms(start), f"timeout: {exc}")
    except httpx.HTTPError as exc:
        return _failed_outcome(
            started_at_ms, _elapsed_ms(start), str(exc) or type(exc).__name__
        )
    except Exception as exc:  # noqa: BLE001
        return _failed_outcome(
            started_at_ms, _elapsed_ms(start), str(exc) or type(exc).__name__
        )

    return OutcomeRecord(
        status_code=int(response.status_code),
        latency_ms=_elapsed_ms(start),
        started_at_unix_ms=started_at_ms,
    )


async def login(client: httpx.AsyncClient, spec: RequestSpec) -> str:
    """Perform the login request and return the session cookie (``name=value``)."""
    try:
        response = await client.request(**_request_kwargs(spec, params_as_body=True))
    except httpx.HTTPError as exc:
        raise AuthenticationError(f"Login request to {spec.url} failed: {exc}") from exc

    if response.status_code >= 400:
        raise AuthenticationError(
            f"Login request to {spec.url} returned HTTP {response.status_code}"
        )
    cookies = response.headers.get_list("set-cookie")
    if not cookies:
        raise AuthenticationError(
            f"Login response from {spec.url} did not set a cookie"
        )
    cookie = cookies[0].split(";", 1)[0].strip()
    if not cookie:
        raise AuthenticationError(f"Login response from {spec.url} set an empty cookie")
    return cookie
