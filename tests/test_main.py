"""
Tests for the cron cycle's terminal output.
"""

import asyncio
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from rich.console import Console

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import main
import report
from external.ledger_client import LedgerClient
from external.reconciler import LedgerReconciler
from ops.run_context import RunContext
from protocol.service import ProtocolService


@pytest.fixture
def service():
    with tempfile.TemporaryDirectory() as tmpdir:
        svc = ProtocolService.from_config(
            db_path=Path(tmpdir) / "protocol.db", config_overrides={"min_settle_interval": 0}
        )
        svc.create_belief("b1", "creator", duration_epochs=5, pool_id="p1")
        yield svc


@pytest.fixture
def recorded(monkeypatch):
    console = Console(record=True, width=200)
    monkeypatch.setattr(report, "console", console)
    return console


def _run(service, client, dry_run):
    reconciler = LedgerReconciler(service.store, service.amm, service.ledger, service.recorder, dry_run=dry_run)
    asyncio.run(main.run_cycle(service, reconciler, client, RunContext(dry_run=dry_run)))


class TestRunCycle:
    def test_header_follows_run_mode(self, service, recorded, monkeypatch):
        # The process-wide default says dry run; the run context wins
        monkeypatch.setattr("config.DRY_RUN", True)
        client = AsyncMock(spec=LedgerClient)
        client.fetch_events.return_value = ([], None)
        _run(service, client, dry_run=False)
        text = recorded.export_text()
        assert "LIVE" in text
        assert "DRY RUN" not in text

    def test_header_in_dry_run(self, service, recorded):
        client = AsyncMock(spec=LedgerClient)
        client.fetch_events.return_value = ([], None)
        _run(service, client, dry_run=True)
        assert "DRY RUN" in recorded.export_text()

    def test_refused_events_reported(self, service, recorded):
        service.register_agent("carol")
        client = AsyncMock(spec=LedgerClient)
        client.fetch_events.side_effect = [
            ([{"event_type": "withdraw", "tx_signature": "tx-w", "agent_id": "carol", "amount": 3}], "c1"),
            ([], "c1"),
        ]
        _run(service, client, dry_run=False)
        assert "1 ledger event(s) refused" in recorded.export_text()
