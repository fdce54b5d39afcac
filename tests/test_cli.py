"""Tests for the reconciliation CLI."""

import json

import pytest

from stkpay.reconciliation import cli
from stkpay.reconciliation.cli import create_parser, main, run_sweep_async, run_verify_async


class TestParser:
    """Tests for argument parsing."""

    def test_verify_by_correlation_id(self):
        args = create_parser().parse_args(["verify", "-c", "k2-req-1"])
        assert args.command == "verify"
        assert args.correlation_id == "k2-req-1"
        assert args.reference is None

    def test_verify_needs_exactly_one_target(self):
        parser = create_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["verify"])
        with pytest.raises(SystemExit):
            parser.parse_args(["verify", "-c", "a", "-r", "b"])

    def test_sweep_defaults(self):
        args = create_parser().parse_args(["sweep-pending"])
        assert args.older_than == 5
        assert args.limit == 100
        assert args.output is None
        assert args.summary_only is False


class TestMain:
    """Tests for command dispatch."""

    def test_no_command(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_rejects_bad_limits(self):
        assert main(["sweep-pending", "--limit", "0"]) == 1
        assert main(["sweep-pending", "--older-than", "-1"]) == 1

    def test_dispatches_sweep(self, monkeypatch):
        calls = {}

        async def fake_sweep(**kwargs):
            calls.update(kwargs)
            return 0

        monkeypatch.setattr(cli, "run_sweep_async", fake_sweep)
        assert main(["sweep-pending", "--older-than", "15", "-l", "20", "--summary-only"]) == 0
        assert calls == {
            "older_than_minutes": 15,
            "limit": 20,
            "output_file": None,
            "include_details": False,
        }

    def test_dispatches_verify(self, monkeypatch):
        calls = {}

        async def fake_verify(**kwargs):
            calls.update(kwargs)
            return 1

        monkeypatch.setattr(cli, "run_verify_async", fake_verify)
        assert main(["verify", "--reference", "INV-1042"]) == 1
        assert calls == {"correlation_id": None, "reference": "INV-1042"}


class TestCommands:
    """Tests for the command coroutines against a real database."""

    async def test_sweep_writes_report(self, db_engine, tmp_path):
        output = tmp_path / "sweep.json"
        code = await run_sweep_async(
            older_than_minutes=0,
            output_file=str(output),
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'stkpay_test.db'}",
        )
        assert code == 0
        report = json.loads(output.read_text())
        assert report["statistics"]["total_pending"] == 0
        assert report["records"] == []

    async def test_verify_unknown_transaction(self, db_engine, tmp_path):
        code = await run_verify_async(
            correlation_id="nope",
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'stkpay_test.db'}",
        )
        assert code == 2
