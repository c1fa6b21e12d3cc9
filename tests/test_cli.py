"""Tests for the billing-sync CLI and settings."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from billing_sync import cli
from billing_sync.config import Settings
from billing_sync.ledger.models import LedgerStatus


@pytest.fixture()
def patched_engine(engine):
    with patch.object(cli, "build_engine", return_value=engine):
        yield engine


class TestSettings:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("BILLING_SYNC_WEBHOOK_ATTEMPTS", "5")
        monkeypatch.setenv("BILLING_SYNC_QUEUE_BACKEND", "redis")
        s = Settings(_env_file=None)
        assert s.webhook_attempts == 5
        assert s.queue_backend == "redis"
        assert s.signature_tolerance_seconds == 300


class TestLedgerCommand:
    def test_failed_lists_entries(self, patched_engine, capsys):
        entry = patched_engine.ledger.insert("evt_bad", "invoice.paid")
        patched_engine.ledger.update_status(entry.id, LedgerStatus.FAILED, error="enqueue failed")
        cli.main(["ledger", "failed"])
        out = capsys.readouterr().out
        assert "evt_bad" in out
        assert "1 failed event(s)" in out

    def test_show_entry(self, patched_engine, capsys):
        patched_engine.ledger.insert("evt_1", "invoice.paid")
        cli.main(["ledger", "show", "evt_1"])
        shown = json.loads(capsys.readouterr().out)
        assert shown["external_event_id"] == "evt_1"
        assert shown["status"] == "pending"

    def test_show_unknown_exits(self, patched_engine):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["ledger", "show", "evt_missing"])
        assert exc_info.value.code == 1

    def test_show_requires_event_id(self, patched_engine):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["ledger", "show"])
        assert exc_info.value.code == 2


class TestSweepCommand:
    def test_single_sweep_prints_report(self, patched_engine, capsys):
        cli.main(["sweep"])
        report = json.loads(capsys.readouterr().out)
        assert report == {
            "orphans_retried": 0,
            "orphans_resolved": 0,
            "ledger_requeued": 0,
            "errors": [],
        }

class TestResyncCommand:
    def test_prints_report(self, patched_engine, seeded_provider, capsys):
        cli.main(["resync", "cus_1"])
        report = json.loads(capsys.readouterr().out)
        assert report["customer_id"] == "cus_1"
        assert report["subscriptions"] == 1
        assert report["invoices"] == 1

    def test_unknown_customer_exits(self, patched_engine):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["resync", "cus_missing"])
        assert exc_info.value.code == 1


class TestServeCommand:
    def test_serve_runs_uvicorn(self, patched_engine):
        with patch("uvicorn.run") as run:
            cli.main(["serve", "--port", "9001", "--no-workers"])
        run.assert_called_once()
        assert run.call_args.kwargs["port"] == 9001

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.main([])
