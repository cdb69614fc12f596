from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from definitions import RequestSpec, load_test_definitions
from loadgen import AuthenticationError
from report import render_table
from runner import DEFAULT_RATES, RunConfig, RunResult, StopReason, run_benchmark
from scheduler import GlobalTimeout


LOGIN_TEST = "login"


def _parse_rates(value: str) -> list[int]:
    if not value.strip():
        raise argparse.ArgumentTypeError("--rates cannot be empty")
    parts = [part.strip() for part in value.split(",") if part.strip()]
    rates: list[int] = []
    for part in parts:
        try:
            parsed = int(part)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(
                f"Invalid rate '{part}'. Expected comma-separated integers."
            ) from exc
        if parsed <= 0:
            raise argparse.ArgumentTypeError(f"Rates must be > 0, got {parsed}.")
        if rates and parsed <= rates[-1]:
            raise argparse.ArgumentTypeError(
                f"Rates must be strictly ascending, got {rates[-1]} then {parsed}."
            )
        rates.append(parsed)
    if not rates:
        raise argparse.ArgumentTypeError("--rates cannot be empty")
    return rates


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Ramp an HTTP endpoint through increasing requests-per-minute levels "
            "until latency collapses."
        )
    )

    parser.add_argument(
        "test",
        nargs="?",
        default=LOGIN_TEST,
        help="Name of the test definition to run (default: login)",
    )
    parser.add_argument("--tests-file", type=Path, default=Path("tests.json"))

    parser.add_argument(
        "--rates",
        type=_parse_rates,
        default=list(DEFAULT_RATES),
        help="Comma-separated ascending requests-per-minute levels, e.g. 100,200,400",
    )
    parser.add_argument("--window-s", type=float, default=60.0)
    parser.add_argument("--batch-size", type=int, default=10)
    parser.add_argument(
        "--timeout-factor",
        type=float,
        default=200,
        help="Watchdog deadline and latency bound, as a multiple of the window/baseline.",
    )
    parser.add_argument(
        "--warmup-rate",
        type=int,
        default=500,
        help="Requests per minute for the discarded warm-up level (0 disables).",
    )
    parser.add_argument("--inter-level-delay-s", type=float, default=2.0)
    parser.add_argument("--cancel-grace-s", type=float, default=5.0)
    parser.add_argument("--request-timeout-s", type=float, default=None)
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip TLS certificate verification.",
    )

    parser.add_argument("--output-dir", type=Path, default=Path("runs"))
    parser.add_argument("--run-name", default=None)
    parser.add_argument("--quiet", action="store_true")

    return parser


def _config_from_args(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        rates=args.rates,
        window_s=args.window_s,
        batch_size=args.batch_size,
        timeout_factor=args.timeout_factor,
        warmup_rate=args.warmup_rate,
        inter_level_delay_s=args.inter_level_delay_s,
        cancel_grace_s=args.cancel_grace_s,
        request_timeout_s=args.request_timeout_s,
        verify_tls=not args.insecure,
        output_dir=args.output_dir,
        run_name=args.run_name or args.test,
        verbose=not args.quiet,
    )


def _resolve_tests(
    parser: argparse.ArgumentParser, args: argparse.Namespace
) -> tuple[RequestSpec, Optional[RequestSpec]]:
    if not args.tests_file.exists():
        parser.error(f"--tests-file not found: {args.tests_file}")
    try:
        definitions = load_test_definitions(args.tests_file)
    except ValueError as exc:
        parser.error(str(exc))

    spec = definitions.get(args.test)
    if spec is None:
        available = ", ".join(sorted(definitions))
        parser.error(f"Unknown test {args.test}. Available: {available}")
    login_spec = definitions.get(LOGIN_TEST)
    if spec.auth and login_spec is None:
        parser.error(f"Test {args.test} requires auth but {args.tests_file} has no login test")
    return spec, login_spec


def _validate_args(parser: argparse.ArgumentParser, config: RunConfig) -> None:
    try:
        config.validate()
    except ValueError as exc:
        parser.error(str(exc))


def _exit_code(result: RunResult) -> int:
    return 2 if result.stop_reason is StopReason.GLOBAL_TIMEOUT else 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = _config_from_args(args)
    _validate_args(parser, config)
    spec, login_spec = _resolve_tests(parser, args)

    try:
        result, output_dir = asyncio.run(run_benchmark(config, spec, login_spec))
    except AuthenticationError as exc:
        print(f"Login failed: {exc}", file=sys.stderr)
        sys.exit(1)
    except GlobalTimeout as exc:
        print(f"Warm-up did not complete: {exc}", file=sys.stderr)
        sys.exit(1)

    print(render_table(result.levels, result.stop_reason.value, result.failed_rate))
    print(f"Run complete. Outputs written to: {output_dir}")
    sys.exit(_exit_code(result))


if __name__ == "__main__":
    main()
