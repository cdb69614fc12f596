from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Sequence

from loadgen import OutcomeRecord


NO_STATUS_LABEL = "none"


@dataclass(frozen=True)
class StatusStats:
    count: int
    total_latency_ms: float
    avg_latency_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "total_latency_ms": self.total_latency_ms,
            "avg_latency_ms": self.avg_latency_ms,
        }


def status_label(status_code: Optional[int]) -> str:
    return NO_STATUS_LABEL if status_code is None else str(status_code)


def _status_sort_key(status_code: Optional[int]) -> tuple[int, int]:
    if status_code is None:
        return (1, 0)
    return (0, status_code)


@dataclass(frozen=True)
class LevelAggregate:
    """Per-status-code count and latency of one level, keyed by status code.

    Requests that never got a response are grouped under ``None``.
    """

    statuses: Mapping[Optional[int], StatusStats]

    def get(self, status_code: Optional[int]) -> Optional[StatusStats]:
        return self.statuses.get(status_code)

    def avg_latency_ms(self, status_code: Optional[int] = 200) -> Optional[float]:
        stats = self.statuses.get(status_code)
        return stats.avg_latency_ms if stats is not None else None

    @property
    def issued(self) -> int:
        return sum(stats.count for stats in self.statuses.values())

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {
            status_label(status_code): stats.to_dict()
            for status_code, stats in self.statuses.items()
        }


def aggregate(outcomes: Iterable[OutcomeRecord]) -> LevelAggregate:
    latencies: dict[Optional[int], list[float]] = {}
    for outcome in outcomes:
        latencies.setdefault(outcome.status_code, []).append(float(outcome.latency_ms))

    statuses: dict[Optional[int], StatusStats] = {}
    for status_code in sorted(latencies, key=_status_sort_key):
        values = latencies[status_code]
        # fsum is exact, so the total does not depend on completion order.
        total = math.fsum(values)
        statuses[status_code] = StatusStats(
            count=len(values),
            total_latency_ms=total,
            avg_latency_ms=total / len(values),
        )
    return LevelAggregate(statuses=MappingProxyType(statuses))


@dataclass(frozen=True)
class LevelResult:
    rate: int
    aggregate: LevelAggregate

    def to_dict(self) -> dict[str, Any]:
        return {"rate": self.rate, "statuses": self.aggregate.to_dict()}


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def table_rows(levels: Sequence[LevelResult]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for level in levels:
        for status_code, stats in level.aggregate.statuses.items():
            rows.append(
                {
                    "rpm": level.rate,
                    "status_code": status_label(status_code),
                    "total_time_ms": stats.total_latency_ms,
                    "total_runs": stats.count,
                    "avg_runtime_ms": stats.avg_latency_ms,
                }
            )
    return rows


def describe_stop(stop_reason: str, failed_rate: Optional[int]) -> str:
    if failed_rate is not None:
        return f"Stopped: {stop_reason} at {failed_rate} rpm"
    return f"Stopped: {stop_reason}"


def render_table(
    levels: Sequence[LevelResult],
    stop_reason: str,
    failed_rate: Optional[int] = None,
) -> str:
    header = ["rpm", "status", "total time ms", "total runs", "avg runtime ms"]
    body = [
        [
            str(row["rpm"]),
            row["status_code"],
            _fmt(row["total_time_ms"]),
            str(row["total_runs"]),
            _fmt(row["avg_runtime_ms"]),
        ]
        for row in table_rows(levels)
    ]
    widths = [
        max(len(header[column]), *(len(line[column]) for line in body))
        if body
        else len(header[column])
        for column in range(len(header))
    ]

    def _line(cells: list[str]) -> str:
        return " | ".join(cell.rjust(width) for cell, width in zip(cells, widths))

    lines = [_line(header), "-+-".join("-" * width for width in widths)]
    lines.extend(_line(cells) for cells in body)
    lines.append("")
    lines.append(describe_stop(stop_reason, failed_rate))
    return "\n".join(lines)


def write_levels_json(
    output_path: Path,
    levels: Sequence[LevelResult],
    stop_reason: str,
    failed_rate: Optional[int],
) -> None:
    payload = {
        "stop_reason": stop_reason,
        "failed_rate": failed_rate,
        "levels": [level.to_dict() for level in levels],
    }
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    levels: Sequence[LevelResult],
    stop_reason: str,
    failed_rate: Optional[int],
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    lines: list[str] = []
    lines.append(f"# RPM Ramp Benchmark Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")
    lines.append("")
    lines.append("## Outcome")
    lines.append("")
    lines.append(f"- Stop reason: `{stop_reason}`")
    if failed_rate is not None:
        lines.append(f"- Level aborted by the watchdog: {failed_rate} rpm")
    lines.append(f"- Completed levels: {len(levels)}")
    lines.append("")
    lines.append("## Level Results")
    lines.append("")
    lines.append("| RPM | Status | Total runs | Total time ms | Avg runtime ms |")
    lines.append("|---:|---:|---:|---:|---:|")
    for row in table_rows(levels):
        lines.append(
            "| "
            f"{row['rpm']} | "
            f"{row['status_code']} | "
            f"{row['total_runs']} | "
            f"{_fmt(row['total_time_ms'])} | "
            f"{_fmt(row['avg_runtime_ms'])} |"
        )

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
