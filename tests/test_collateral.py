"""
Tests for the collateral ledger: lock sizing, skim, underwater handling, stake invariant.
"""

import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ledger.collateral import base_lock, proportional_lock
from models.errors import CollateralCapExceeded, InsufficientCollateral, InvariantViolation, ValidationError
from models.types import Position, Side, TradeType
from protocol.service import ProtocolService
from storage import rows


@pytest.fixture
def service():
    with tempfile.TemporaryDirectory() as tmpdir:
        svc = ProtocolService.from_config(db_path=Path(tmpdir) / "protocol.db")
        svc.create_belief("b1", "creator", duration_epochs=5, pool_id="p1")
        yield svc


def _buy(service, agent_id, notional, skim, side=Side.LONG, tokens=None, **kwargs):
    return service.record_trade(agent_id, "p1", side, tokens, notional, skim, **kwargs)


def _locks(service, agent_id) -> int:
    return sum(p.belief_lock for p in service.ledger.get_positions(agent_id))


class TestLockMath:
    def test_base_lock_floors(self):
        assert base_lock(100, 200) == 2
        assert base_lock(149, 200) == 2
        assert base_lock(49, 200) == 0

    def test_proportional_lock_rounds_up_while_open(self):
        assert proportional_lock(2, 1000, 500) == 1
        assert proportional_lock(3, 1000, 1) == 1
        assert proportional_lock(2, 1000, 0) == 0


class TestSkim:
    def test_skim_below_required_rejected(self, service):
        with pytest.raises(InsufficientCollateral) as exc:
            _buy(service, "alice", 100, 0, tokens=1000)
        assert exc.value.shortfall == 2
        with pytest.raises(InsufficientCollateral) as exc:
            _buy(service, "alice", 100, 1, tokens=1000)
        assert exc.value.shortfall == 1

    def test_rejected_trade_leaves_no_trace(self, service):
        with pytest.raises(InsufficientCollateral):
            _buy(service, "alice", 100, 1, tokens=1000)
        assert service.amm.get_pool("p1").r_long == 0
        with service.store.snapshot() as conn:
            assert conn.execute("SELECT COUNT(*) FROM trades").fetchone()[0] == 0
            assert rows.load_position(conn, "alice", "p1", Side.LONG).token_balance == 0

    def test_exact_skim_accepted(self, service):
        result = _buy(service, "alice", 100, 2, tokens=1000)
        assert result.new_lock == 2
        assert result.new_balance == 1000
        assert service.ledger.get_agent("alice").total_stake == 2

    def test_staked_agent_needs_no_skim(self, service):
        service.register_agent("alice", 1_000_000)
        result = _buy(service, "alice", 100_000, 0)
        assert result.new_lock == 2_000
        assert service.ledger.get_agent("alice").total_stake == 1_000_000

    def test_follow_up_buy_locks_whole_position(self, service):
        service.register_agent("alice", 1_000_000)
        _buy(service, "alice", 100_000, 0)
        result = _buy(service, "alice", 10_000, 0)
        assert result.new_lock == 2_200

    def test_smaller_follow_up_buy_never_frees_collateral(self, service):
        first = _buy(service, "alice", 1_000_000, 20_000)
        assert first.new_lock == 20_000
        # Only the lock delta is owed
        with pytest.raises(InsufficientCollateral) as exc:
            _buy(service, "alice", 10_000, 0)
        assert exc.value.shortfall == 200
        second = _buy(service, "alice", 10_000, 200)
        assert second.new_lock == 20_200
        assert second.new_balance > first.new_balance
        with pytest.raises(InvariantViolation):
            service.withdraw("alice", 19_800)

    def test_quote_for_unknown_agent(self, service):
        quote = service.recorder.quote_trade("nobody", "p1", Side.LONG, notional=100)
        assert quote["required_skim"] == 2
        assert quote["lock_after"] == 2

    def test_quote_matches_recorded_trades(self, service):
        pool_before = service.amm.get_pool("p1")
        buy_quote = service.recorder.quote_trade("alice", "p1", Side.SHORT, notional=50_000)
        assert service.amm.get_pool("p1") == pool_before
        bought = _buy(service, "alice", 50_000, buy_quote["required_skim"], side=Side.SHORT)
        assert bought.token_amount == buy_quote["token_amount"]
        assert bought.new_lock == buy_quote["lock_after"]

        half = bought.token_amount // 2
        sell_quote = service.recorder.quote_trade("alice", "p1", Side.SHORT, token_amount=half, trade_type=TradeType.SELL)
        sold = service.record_trade("alice", "p1", Side.SHORT, half, None, 0, trade_type=TradeType.SELL)
        assert sold.notional == sell_quote["notional"]
        assert sold.new_lock == sell_quote["lock_after"]


class TestSell:
    def test_partial_sell_shrinks_lock(self, service):
        _buy(service, "alice", 100, 2, tokens=1000)
        result = service.record_trade("alice", "p1", Side.LONG, 500, 50, 0, trade_type=TradeType.SELL)
        assert result.new_balance == 500
        assert result.new_lock == 1

    def test_full_exit_releases_lock(self, service):
        _buy(service, "alice", 100, 2, tokens=1000)
        result = service.record_trade("alice", "p1", Side.LONG, 1000, 100, 0, trade_type=TradeType.SELL)
        assert result.new_balance == 0
        assert result.new_lock == 0
        assert _locks(service, "alice") == 0
        # Freed collateral can be withdrawn
        service.withdraw("alice", 2)
        assert service.ledger.get_agent("alice").total_stake == 0

    def test_oversell_rejected(self, service):
        _buy(service, "alice", 100, 2, tokens=1000)
        with pytest.raises(ValidationError):
            service.record_trade("alice", "p1", Side.LONG, 1001, 1, 0, trade_type=TradeType.SELL)


class TestUnderwater:
    def _sink(self, service, lock: int):
        """Leave bob holding a SHORT position whose lock exceeds his stake."""
        with service.store.transaction() as conn:
            rows.insert_agent(conn, "bob", 0)
            rows.save_position(conn, Position("bob", "p1", Side.SHORT, token_balance=10, belief_lock=lock))

    def test_check_underwater(self, service):
        self._sink(service, 1000)
        check = service.ledger.check_underwater("bob")
        assert check.is_underwater
        assert check.deficit == 1000

    def test_skim_cap_exceeded(self, service):
        self._sink(service, 1000)
        with pytest.raises(CollateralCapExceeded) as exc:
            _buy(service, "bob", 100, 10_000)
        assert exc.value.deficit == 1000
        assert exc.value.skim_rate > exc.value.max_skim_rate
        assert exc.value.positions[0].side == Side.SHORT

    def test_large_buy_covers_deficit(self, service):
        self._sink(service, 1000)
        # required = 1000 (deficit) + 200 (new lock) = 12% of notional
        result = _buy(service, "bob", 10_000, 1_200)
        assert result.skim_applied == 1_200
        check = service.ledger.check_underwater("bob")
        assert not check.is_underwater
        assert check.total_stake == check.total_locks == 1_200

    def test_underwater_agent_may_still_sell(self, service):
        self._sink(service, 1000)
        with service.store.transaction() as conn:
            pool = rows.load_pool(conn, "p1")
            pool.r_short, pool.supply_short = 100, 10
            rows.save_pool(conn, pool)
        result = service.record_trade("bob", "p1", Side.SHORT, 5, 10, 0, trade_type=TradeType.SELL)
        assert result.new_lock == 500


class TestStakeInvariant:
    def test_withdraw_into_locks_rejected(self, service):
        _buy(service, "alice", 100, 2, tokens=1000)
        with pytest.raises(InvariantViolation):
            service.withdraw("alice", 1)

    def test_deposit_then_withdraw_free_stake(self, service):
        service.register_agent("alice")
        service.deposit("alice", 10)
        service.withdraw("alice", 10)
        assert service.ledger.get_agent("alice").total_stake == 0

    def test_non_positive_amounts_rejected(self, service):
        service.register_agent("alice")
        with pytest.raises(ValidationError):
            service.deposit("alice", 0)
        with pytest.raises(ValidationError):
            service.withdraw("alice", -5)

    def test_closed_position_cannot_keep_lock(self, service):
        service.register_agent("alice", 100)
        with service.store.transaction() as conn:
            with pytest.raises(InvariantViolation):
                service.ledger.commit(conn, "alice", {("p1", Side.LONG): 5}, 0)
