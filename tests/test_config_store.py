"""
Tests for live protocol configuration and the rollover scalar.
"""

import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from models.errors import ValidationError
from storage.config_store import ConfigStore, ProtocolConfig, read_rollover, write_rollover
from storage.ledger_store import LedgerStore


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        s = LedgerStore(Path(tmpdir) / "protocol.db")
        s.init_db()
        yield s


class TestProtocolConfig:
    def test_defaults(self):
        cfg = ProtocolConfig()
        assert cfg.base_skim_rate == 0.02
        assert cfg.base_skim_bps == 200
        assert cfg.max_skim_rate == 0.30
        assert cfg.min_new_submissions_for_rebase == 2

    def test_base_above_max_rejected(self):
        with pytest.raises(ValidationError):
            ProtocolConfig(base_skim_rate=0.5, max_skim_rate=0.3)

    def test_zero_min_submissions_rejected(self):
        with pytest.raises(ValidationError):
            ProtocolConfig(min_new_submissions_for_rebase=0)

    def test_frozen(self):
        cfg = ProtocolConfig()
        with pytest.raises(Exception):
            cfg.base_skim_rate = 0.05


class TestConfigStore:
    def test_seed_then_snapshot(self, store):
        cfg = ConfigStore(store).seed_defaults({"min_settle_interval": 0})
        assert cfg.min_settle_interval == 0
        assert ConfigStore(store).snapshot() == cfg

    def test_seed_does_not_overwrite(self, store):
        cs = ConfigStore(store)
        cs.seed_defaults({"base_skim_rate": 0.05})
        cfg = cs.seed_defaults()
        assert cfg.base_skim_rate == 0.05

    def test_update_validates_and_persists(self, store):
        cs = ConfigStore(store)
        cs.seed_defaults()
        cfg = cs.update(min_new_submissions_for_rebase=3)
        assert cfg.min_new_submissions_for_rebase == 3
        assert cs.snapshot().min_new_submissions_for_rebase == 3

    def test_update_unknown_key_rejected(self, store):
        cs = ConfigStore(store)
        cs.seed_defaults()
        with pytest.raises(ValidationError):
            cs.update(not_a_key=1)

    def test_update_invalid_value_leaves_table_unchanged(self, store):
        cs = ConfigStore(store)
        cs.seed_defaults()
        with pytest.raises(ValidationError):
            cs.update(max_skim_rate=0.01)
        assert cs.snapshot().max_skim_rate == 0.30

    def test_snapshot_is_isolated_from_later_updates(self, store):
        cs = ConfigStore(store)
        before = cs.seed_defaults()
        cs.update(learning_threshold=0.5)
        assert before.learning_threshold == 1e-3


class TestRollover:
    def test_seeded_at_zero(self, store):
        ConfigStore(store).seed_defaults()
        with store.snapshot() as conn:
            assert read_rollover(conn) == 0

    def test_write_and_read(self, store):
        ConfigStore(store).seed_defaults()
        with store.transaction() as conn:
            write_rollover(conn, 1234)
        with store.snapshot() as conn:
            assert read_rollover(conn) == 1234

    def test_negative_rejected(self, store):
        with pytest.raises(ValidationError):
            with store.transaction() as conn:
                write_rollover(conn, -1)
