from __future__ import annotations

import asyncio
import csv
import functools
import json
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from definitions import RequestSpec
from loadgen import AuthenticationError, OutcomeRecord, ResultRecorder, dispatch_request, login
from report import (
    LevelAggregate,
    LevelResult,
    table_rows,
    write_levels_json,
    write_summary_markdown,
)
from scheduler import GlobalTimeout, IntervalScheduler


DEFAULT_RATES = [
    100, 200, 400, 600, 1000, 1200, 1500, 1800, 2000, 2200,
    2500, 3000, 4000, 5000, 6000, 7000, 8000, 10000, 15000, 20000,
]


@dataclass
class RunConfig:
    rates: list[int] = field(default_factory=lambda: list(DEFAULT_RATES))
    window_s: float = 60.0
    batch_size: int = 10
    timeout_factor: float = 200
    warmup_rate: int = 500
    inter_level_delay_s: float = 2.0
    cancel_grace_s: float = 5.0
    request_timeout_s: Optional[float] = None
    verify_tls: bool = True
    output_dir: Path = Path("runs")
    run_name: Optional[str] = None
    verbose: bool = True

    def validate(self) -> None:
        if not self.rates:
            raise ValueError("rates cannot be empty")
        for rate in self.rates:
            if rate <= 0:
                raise ValueError(f"rates must be > 0, got {rate}")
        for previous, current in zip(self.rates, self.rates[1:]):
            if current <= previous:
                raise ValueError(
                    f"rates must be strictly ascending, got {previous} then {current}"
                )
        if self.window_s <= 0:
            raise ValueError("window_s must be > 0")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.timeout_factor <= 0:
            raise ValueError("timeout_factor must be > 0")
        if self.warmup_rate < 0:
            raise ValueError("warmup_rate must be >= 0")
        if self.inter_level_delay_s < 0 or self.cancel_grace_s < 0:
            raise ValueError("inter_level_delay_s and cancel_grace_s must be >= 0")
        if self.request_timeout_s is not None and self.request_timeout_s <= 0:
            raise ValueError("request_timeout_s must be > 0 when set")


class StopReason(str, Enum):
    NONE = "none"
    LATENCY_DEGRADED = "latency-degraded"
    FIRST_LEVEL_FAILED = "first-level-failed"
    NO_SUCCESS = "no-success"
    GLOBAL_TIMEOUT = "global-timeout"
    EXHAUSTED = "exhausted"


def evaluate_stop(
    baseline: Optional[LevelAggregate],
    current: Optional[LevelAggregate],
    *,
    timed_out: bool,
    exhausted: bool,
    latency_factor: float,
) -> StopReason:
    """Decide whether the ramp escalates after a level.

    Returns ``StopReason.NONE`` to continue. The latency bound is loose on
    purpose: the ramp stops only once the 200 average exceeds
    ``latency_factor`` times the baseline 200 average.
    """
    if timed_out:
        return StopReason.GLOBAL_TIMEOUT
    if exhausted:
        return StopReason.EXHAUSTED
    baseline_ok = baseline.get(200) if baseline is not None else None
    if baseline_ok is None:
        return StopReason.FIRST_LEVEL_FAILED
    current_ok = current.get(200) if current is not None else None
    if current_ok is None:
        return StopReason.NO_SUCCESS
    if not current_ok.avg_latency_ms / latency_factor < baseline_ok.avg_latency_ms:
        return StopReason.LATENCY_DEGRADED
    return StopReason.NONE


def should_continue(
    baseline: Optional[LevelAggregate],
    current: Optional[LevelAggregate],
    *,
    timed_out: bool,
    exhausted: bool,
    latency_factor: float,
) -> bool:
    return (
        evaluate_stop(
            baseline,
            current,
            timed_out=timed_out,
            exhausted=exhausted,
            latency_factor=latency_factor,
        )
        is StopReason.NONE
    )


@dataclass
class RampState:
    current_rate_index: int = 0
    baseline: Optional[LevelAggregate] = None
    stopped: bool = False
    stop_reason: StopReason = StopReason.NONE

    def stop(self, reason: StopReason) -> None:
        self.stopped = True
        self.stop_reason = reason


@dataclass
class RunResult:
    levels: list[LevelResult]
    stop_reason: StopReason
    failed_rate: Optional[int] = None

    @property
    def baseline(self) -> Optional[LevelAggregate]:
        return self.levels[0].aggregate if self.levels else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stop_reason": self.stop_reason.value,
            "failed_rate": self.failed_rate,
            "levels": [level.to_dict() for level in self.levels],
        }


class RampController:
    """Runs warm-up, then each rate in ascending order until a stop condition."""

    def __init__(
        self,
        scheduler: IntervalScheduler,
        *,
        rates: list[int],
        warmup_rate: int = 500,
        inter_level_delay_s: float = 2.0,
        latency_factor: float = 200,
        recorder_factory: Optional[Callable[[int], ResultRecorder]] = None,
        verbose: bool = True,
    ) -> None:
        self.scheduler = scheduler
        self.rates = list(rates)
        self.warmup_rate = warmup_rate
        self.inter_level_delay_s = inter_level_delay_s
        self.latency_factor = latency_factor
        self.recorder_factory = recorder_factory
        self.verbose = verbose

    async def run(self, spec: RequestSpec) -> RunResult:
        state = RampState()
        levels: list[LevelResult] = []
        failed_rate: Optional[int] = None

        if self.warmup_rate > 0:
            if self.verbose:
                print("Doing warm up")
            await self.scheduler.run_level(self.warmup_rate, spec)

        for index, rate in enumerate(self.rates):
            state.current_rate_index = index
            if self.verbose:
                print(f"Running test for {rate} rpm")
            recorder = self.recorder_factory(rate) if self.recorder_factory else None
            try:
                level_aggregate = await self.scheduler.run_level(
                    rate, spec, recorder=recorder
                )
            except GlobalTimeout:
                print(f"Timeout at {rate}", file=sys.stderr)
                failed_rate = rate
                state.stop(
                    evaluate_stop(
                        state.baseline,
                        None,
                        timed_out=True,
                        exhausted=False,
                        latency_factor=self.latency_factor,
                    )
                )
                break

            levels.append(LevelResult(rate=rate, aggregate=level_aggregate))
            if state.baseline is None:
                state.baseline = level_aggregate
            if self.verbose:
                avg_ms = level_aggregate.avg_latency_ms(200)
                print(f"{rate} rpm, {'-' if avg_ms is None else f'{avg_ms:.2f}'} ms")

            reason = evaluate_stop(
                state.baseline,
                level_aggregate,
                timed_out=False,
                exhausted=index == len(self.rates) - 1,
                latency_factor=self.latency_factor,
            )
            if reason is not StopReason.NONE:
                state.stop(reason)
                break
            if self.inter_level_delay_s > 0:
                await asyncio.sleep(self.inter_level_delay_s)

        if not state.stopped:
            state.stop(StopReason.EXHAUSTED)
        return RunResult(levels=levels, stop_reason=state.stop_reason, failed_rate=failed_rate)


class AsyncJSONLWriter:
    def __init__(self, output_path: Path) -> None:
        self.output_path = output_path
        self._file = output_path.open("w", encoding="utf-8", buffering=1)
        self._lock = asyncio.Lock()

    async def write(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=True)
        async with self._lock:
            self._file.write(line + "\n")

    def close(self) -> None:
        self._file.close()


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _write_csv(path: Path, rows: list[dict[str, Any]]) -> None:
    if not rows:
        path.write_text("", encoding="utf-8")
        return
    fieldnames: list[str] = []
    for row in rows:
        for key in row.keys():
            if key not in fieldnames:
                fieldnames.append(key)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def _resolved_config_dict(
    config: RunConfig, spec: RequestSpec, output_dir: Path
) -> dict[str, Any]:
    payload = asdict(config)
    payload["output_dir"] = str(config.output_dir)
    payload["resolved_run_dir"] = str(output_dir)
    payload["test"] = spec.to_dict()
    payload["started_at_utc"] = datetime.now(timezone.utc).isoformat()
    return payload


async def run_benchmark(
    config: RunConfig,
    spec: RequestSpec,
    login_spec: Optional[RequestSpec] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> tuple[RunResult, Path]:
    """Run a full ramp against ``spec`` and write the run artifacts.

    Raises AuthenticationError when login fails, and GlobalTimeout when the
    warm-up level hangs.
    """
    config.validate()
    if spec.auth and login_spec is None:
        raise AuthenticationError(
            f"Test '{spec.name}' requires auth but no login definition was given"
        )

    output_dir = _ensure_output_dir(config.output_dir, config.run_name)
    config_path = output_dir / "config.json"
    outcomes_path = output_dir / "outcomes.jsonl"
    levels_json_path = output_dir / "levels.json"
    levels_csv_path = output_dir / "levels.csv"
    summary_md_path = output_dir / "summary.md"

    resolved_config = _resolved_config_dict(config, spec, output_dir)
    _write_json(config_path, resolved_config)

    limits = httpx.Limits(
        max_connections=None,
        max_keepalive_connections=max(config.batch_size * 10, 64),
    )
    outcome_writer = AsyncJSONLWriter(outcomes_path)

    def recorder_for(rate: int) -> ResultRecorder:
        async def on_record(outcome: OutcomeRecord) -> None:
            await outcome_writer.write({"rate": rate, **outcome.to_dict()})

        return ResultRecorder(on_record=on_record)

    try:
        async with httpx.AsyncClient(
            limits=limits,
            timeout=config.request_timeout_s,
            verify=config.verify_tls,
            transport=transport,
        ) as client:
            if spec.auth:
                assert login_spec is not None
                if config.verbose:
                    print("logging in...")
                spec = spec.with_cookie(await login(client, login_spec))
                if config.verbose:
                    print("logged in!")

            scheduler = IntervalScheduler(
                functools.partial(dispatch_request, client),
                window_s=config.window_s,
                batch_size=config.batch_size,
                timeout_factor=config.timeout_factor,
                cancel_grace_s=config.cancel_grace_s,
                verbose=config.verbose,
            )
            controller = RampController(
                scheduler,
                rates=config.rates,
                warmup_rate=config.warmup_rate,
                inter_level_delay_s=config.inter_level_delay_s,
                latency_factor=config.timeout_factor,
                recorder_factory=recorder_for,
                verbose=config.verbose,
            )
            if config.verbose:
                print(f"Test fetching {spec.url}")
            result = await controller.run(spec)
    finally:
        outcome_writer.close()

    stop_reason = result.stop_reason.value
    write_levels_json(levels_json_path, result.levels, stop_reason, result.failed_rate)
    _write_csv(levels_csv_path, table_rows(result.levels))
    write_summary_markdown(
        output_path=summary_md_path,
        run_name=config.run_name or "run",
        resolved_config=resolved_config,
        levels=result.levels,
        stop_reason=stop_reason,
        failed_rate=result.failed_rate,
    )
    return result, output_dir
