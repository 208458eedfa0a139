"""
Tests for the ledger reconciler (settlement outbox + confirmed event inbox) and the HTTP client.
"""

import asyncio
import logging
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import external.reconciler as reconciler_module
from external.ledger_client import LedgerClient
from external.reconciler import CURSOR_KEY, MAX_DISPATCH_ATTEMPTS, LedgerReconciler, read_cursor
from models.errors import ExternalLedgerError, ValidationError
from models.reasons import REASON_INVARIANT_VIOLATION
from models.types import SettlementStatus, Side
from protocol.service import ProtocolService

T0 = 1_000_000.0


@pytest.fixture
def service():
    with tempfile.TemporaryDirectory() as tmpdir:
        svc = ProtocolService.from_config(
            db_path=Path(tmpdir) / "protocol.db", config_overrides={"min_settle_interval": 0}
        )
        svc.create_belief("b1", "creator", duration_epochs=5, pool_id="p1")
        yield svc


def _reconciler(service, dry_run=False) -> LedgerReconciler:
    return LedgerReconciler(service.store, service.amm, service.ledger, service.recorder, dry_run=dry_run)


def _settle_once(service):
    service.record_trade("alice", "p1", Side.LONG, None, 1_000_000, 20_000)
    service.record_trade("bob", "p1", Side.SHORT, None, 1_000_000, 20_000)
    return service.settle_epoch("b1", now=T0)


def _pending_row(service):
    with service.store.snapshot() as conn:
        return dict(conn.execute("SELECT * FROM pending_settlements WHERE belief_id = 'b1'").fetchone())


class TestDispatch:
    def test_dry_run_never_calls_ledger(self, service):
        _settle_once(service)
        client = AsyncMock(spec=LedgerClient)
        submitted = asyncio.run(_reconciler(service, dry_run=True).dispatch_pending(client))
        assert submitted == 0
        client.submit_settlement.assert_not_awaited()
        assert _pending_row(service)["status"] == SettlementStatus.PENDING.value

    def test_submitted_with_signature(self, service):
        result = _settle_once(service)
        client = AsyncMock(spec=LedgerClient)
        client.submit_settlement.return_value = "tx-settle-0"
        submitted = asyncio.run(_reconciler(service).dispatch_pending(client))
        assert submitted == 1
        client.submit_settlement.assert_awaited_once_with("p1", result.bd_score_ppm, 0)
        row = _pending_row(service)
        assert row["status"] == SettlementStatus.SUBMITTED.value
        assert row["tx_signature"] == "tx-settle-0"

    def test_failure_recorded_for_retry(self, service):
        _settle_once(service)
        client = AsyncMock(spec=LedgerClient)
        client.submit_settlement.side_effect = ExternalLedgerError("ledger down")
        assert asyncio.run(_reconciler(service).dispatch_pending(client)) == 0
        row = _pending_row(service)
        assert row["status"] == SettlementStatus.FAILED.value
        assert row["attempts"] == 1
        assert "ledger down" in row["last_error"]
        # Failed rows are picked up again
        assert len(_reconciler(service).pending_settlements()) == 1

    def test_exhausted_instruction_logged(self, service, caplog):
        _settle_once(service)
        with service.store.transaction() as conn:
            conn.execute("UPDATE pending_settlements SET attempts = ?", (MAX_DISPATCH_ATTEMPTS - 1,))
        client = AsyncMock(spec=LedgerClient)
        client.submit_settlement.side_effect = ExternalLedgerError("ledger down")
        reconciler = _reconciler(service)
        with caplog.at_level(logging.ERROR, logger="external.reconciler"):
            asyncio.run(reconciler.dispatch_pending(client))
        assert "abandoned" in caplog.text
        assert reconciler.pending_settlements() == []


class TestApplyEvent:
    def test_confirmed_settlement_moves_reserves_once(self, service):
        _settle_once(service)
        before = service.amm.get_pool("p1")
        event = {"event_type": "settlement", "tx_signature": "tx-s", "pool_id": "p1", "epoch": 0, "bd_score_ppm": 800_000}
        reconciler = _reconciler(service)
        assert reconciler.apply_event(event) is True
        after = service.amm.get_pool("p1")
        assert after.vault_balance == before.vault_balance
        assert after.r_long == 1_600_000
        assert _pending_row(service)["status"] == SettlementStatus.CONFIRMED.value

        assert reconciler.apply_event(event) is False
        assert service.amm.get_pool("p1").r_long == 1_600_000

    def test_deposit_and_withdraw(self, service):
        reconciler = _reconciler(service)
        service.register_agent("carol")
        reconciler.apply_event({"event_type": "deposit", "tx_signature": "tx-d", "agent_id": "carol", "amount": 500})
        reconciler.apply_event({"event_type": "deposit", "tx_signature": "tx-d", "agent_id": "carol", "amount": 500})
        assert service.ledger.get_agent("carol").total_stake == 500
        reconciler.apply_event({"event_type": "withdraw", "tx_signature": "tx-w", "agent_id": "carol", "amount": 200})
        assert service.ledger.get_agent("carol").total_stake == 300

    def test_trade_event_recorded_once(self, service):
        event = {
            "event_type": "trade",
            "tx_signature": "tx-t",
            "agent_id": "dave",
            "pool_id": "p1",
            "side": "LONG",
            "trade_type": "buy",
            "token_amount": 1000,
            "notional": 100,
            "skim_amount": 2,
        }
        reconciler = _reconciler(service)
        assert reconciler.apply_event(event) is True
        assert reconciler.apply_event(event) is False
        assert service.ledger.get_agent("dave").total_stake == 2
        assert service.amm.get_pool("p1").supply_long == 1000

    def test_malformed_event(self, service):
        with pytest.raises(ValidationError):
            _reconciler(service).apply_event({"event_type": "mint", "tx_signature": "x"})


class TestSync:
    def test_pages_until_cursor_stops(self, service):
        service.register_agent("carol")
        client = AsyncMock(spec=LedgerClient)
        client.fetch_events.side_effect = [
            (
                [
                    {"event_type": "deposit", "tx_signature": "tx-1", "agent_id": "carol", "amount": 100},
                    {"event_type": "deposit", "tx_signature": "tx-2", "agent_id": "carol", "amount": 50},
                ],
                "c1",
            ),
            ([], "c1"),
        ]
        applied = asyncio.run(_reconciler(service).sync(client))
        assert applied == 2
        assert service.ledger.get_agent("carol").total_stake == 150
        with service.store.snapshot() as conn:
            assert read_cursor(conn) == "c1"
        assert client.fetch_events.await_args_list[1].args == ("c1",)

    def test_refused_event_kept_and_retried(self, service, caplog):
        service.register_agent("carol")
        client = AsyncMock(spec=LedgerClient)
        client.fetch_events.side_effect = [
            (
                [
                    {"event_type": "withdraw", "tx_signature": "tx-early", "agent_id": "carol", "amount": 10},
                    {"event_type": "deposit", "tx_signature": "tx-ok", "agent_id": "carol", "amount": 10},
                ],
                "c2",
            ),
            ([], "c2"),
            ([], "c2"),
        ]
        reconciler = _reconciler(service)
        with caplog.at_level(logging.ERROR, logger="external.reconciler"):
            assert asyncio.run(reconciler.sync(client)) == 1
        assert "tx-early" in caplog.text
        assert service.ledger.get_agent("carol").total_stake == 10
        failed = reconciler.unresolved_failures()
        assert [(f["tx_signature"], f["reason"], f["attempts"]) for f in failed] == [
            ("tx-early", REASON_INVARIANT_VIOLATION, 1)
        ]
        with service.store.snapshot() as conn:
            assert read_cursor(conn) == "c2"

        # The deposit has landed, so the withdrawal now applies
        assert asyncio.run(reconciler.sync(client)) == 1
        assert service.ledger.get_agent("carol").total_stake == 0
        assert reconciler.unresolved_failures() == []
        with service.store.snapshot() as conn:
            row = conn.execute("SELECT 1 FROM processed_events WHERE tx_signature = 'tx-early'").fetchone()
        assert row is not None

    def test_retries_stop_at_cap(self, service, monkeypatch):
        monkeypatch.setattr(reconciler_module, "MAX_EVENT_RETRIES", 2)
        service.register_agent("carol")
        client = AsyncMock(spec=LedgerClient)
        client.fetch_events.side_effect = [
            ([{"event_type": "withdraw", "tx_signature": "tx-never", "agent_id": "carol", "amount": 5}], "c3"),
            ([], "c3"),
            ([], "c3"),
            ([], "c3"),
        ]
        reconciler = _reconciler(service)
        for _ in range(3):
            asyncio.run(reconciler.sync(client))
        failed = reconciler.unresolved_failures()
        assert len(failed) == 1
        assert failed[0]["attempts"] == 2

    def test_malformed_event_recorded_without_signature(self, service):
        client = AsyncMock(spec=LedgerClient)
        client.fetch_events.side_effect = [([{"event_type": "mint"}], "c4"), ([], "c4")]
        reconciler = _reconciler(service)
        assert asyncio.run(reconciler.sync(client)) == 0
        failed = reconciler.unresolved_failures()
        assert failed[0]["tx_signature"].startswith("unsigned:")
        assert failed[0]["reason"] == "validation_error"

    def test_cursor_key_is_not_a_tunable(self, service):
        from storage.config_store import ConfigStore

        with service.store.transaction() as conn:
            conn.execute(
                "INSERT INTO protocol_config (key, value, updated_at) VALUES (?, 'c9', 0)", (CURSOR_KEY,)
            )
        assert ConfigStore(service.store).snapshot() == service.config


class TestLedgerClient:
    def test_submit_settlement_returns_signature(self):
        client = LedgerClient(base_url="http://ledger.invalid/", api_key="k")
        client._request = AsyncMock(return_value={"tx_signature": "tx-9"})
        assert asyncio.run(client.submit_settlement("p1", 500_000, 3)) == "tx-9"
        client._request.assert_awaited_once_with(
            "POST", "/settlements", json={"pool_id": "p1", "bd_score_ppm": 500_000, "epoch": 3}
        )

    def test_missing_signature_is_error(self):
        client = LedgerClient(base_url="http://ledger.invalid")
        client._request = AsyncMock(return_value={})
        with pytest.raises(ExternalLedgerError):
            asyncio.run(client.submit_settlement("p1", 1, 0))

    def test_fetch_events_keeps_cursor_when_absent(self):
        client = LedgerClient(base_url="http://ledger.invalid")
        client._request = AsyncMock(return_value={"events": [{"a": 1}]})
        events, cursor = asyncio.run(client.fetch_events("c5"))
        assert events == [{"a": 1}]
        assert cursor == "c5"

    def test_unreachable_ledger_raises(self):
        client = LedgerClient(base_url="http://127.0.0.1:9", timeout=2)
        with pytest.raises(ExternalLedgerError):
            asyncio.run(client.fetch_events())

    def test_auth_header(self):
        assert LedgerClient(api_key="secret")._headers()["Authorization"] == "Bearer secret"
        assert "Authorization" not in LedgerClient(api_key=None)._headers()
