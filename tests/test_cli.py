"""
Unit tests for the command line entry point.
"""

import argparse
import json

import pytest

from rpm_ramp import _config_from_args, _parse_rates, build_parser, main
from runner import DEFAULT_RATES


def test_parse_rates():
    assert _parse_rates("100, 200,400") == [100, 200, 400]


@pytest.mark.parametrize("value", ["", "100,abc", "100,0", "200,100", "100,100"])
def test_parse_rates_rejects_bad_values(value):
    with pytest.raises(argparse.ArgumentTypeError):
        _parse_rates(value)


def test_parser_defaults():
    args = build_parser().parse_args([])

    assert args.test == "login"
    assert args.rates == DEFAULT_RATES
    assert args.window_s == 60.0
    assert args.batch_size == 10
    assert args.timeout_factor == 200
    assert args.warmup_rate == 500
    assert args.inter_level_delay_s == 2.0


def test_config_from_args():
    args = build_parser().parse_args(
        ["search", "--rates", "10,20", "--insecure", "--quiet", "--warmup-rate", "0"]
    )

    config = _config_from_args(args)

    assert config.rates == [10, 20]
    assert config.verify_tls is False
    assert config.verbose is False
    assert config.warmup_rate == 0
    assert config.run_name == "search"


def _write_tests(tmp_path, tests):
    path = tmp_path / "tests.json"
    path.write_text(json.dumps({"base_url": "http://bench.test", "tests": tests}), encoding="utf-8")
    return path


def test_main_rejects_unknown_test(tmp_path, capsys):
    path = _write_tests(tmp_path, {"status": {"url": "/status"}})

    with pytest.raises(SystemExit) as excinfo:
        main(["missing", "--tests-file", str(path)])

    assert excinfo.value.code == 2
    assert "Unknown test missing. Available: status" in capsys.readouterr().err


def test_main_rejects_missing_tests_file(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["status", "--tests-file", str(tmp_path / "nope.json")])

    assert excinfo.value.code == 2


def test_main_requires_login_for_auth_tests(tmp_path, capsys):
    path = _write_tests(tmp_path, {"status": {"url": "/status", "auth": True}})

    with pytest.raises(SystemExit) as excinfo:
        main(["status", "--tests-file", str(path)])

    assert excinfo.value.code == 2
    assert "requires auth" in capsys.readouterr().err


def test_main_rejects_invalid_config(tmp_path):
    path = _write_tests(tmp_path, {"status": {"url": "/status"}})

    with pytest.raises(SystemExit) as excinfo:
        main(["status", "--tests-file", str(path), "--batch-size", "0"])

    assert excinfo.value.code == 2
