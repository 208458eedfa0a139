"""
Protocol service — the engine's exposed operations.

    submit_belief(agent_id, belief_id, belief_value, meta_prediction, epoch) → submission_id
    record_trade(agent_id, pool_id, side, token_amount, notional, supplied_skim) → TradeResult
    get_rebase_status(belief_id) → RebaseStatus
    settle_epoch(belief_id) → SettlementResult

Every component is built once in ``from_config`` around one LedgerStore and
one frozen ProtocolConfig snapshot, then passed by reference. ``handle``
is the JSON boundary: payloads are validated by the pydantic schemas before
any field is read, and errors come back as ErrorResponse dicts.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from amm.dual_reserve import DualReserveAMM
from consensus.aggregator import Aggregator
from consensus.submissions import BeliefBook
from epochs.scheduler import EpochScheduler
from ledger.collateral import CollateralLedger
from ledger.keyed_locks import KeyedLockRegistry
from ledger.trade_recorder import TradeRecorder
from models.errors import ProtocolError
from models.schemas import (
    ErrorResponse,
    RebaseStatusResponse,
    RecordTradeRequest,
    RecordTradeResponse,
    SettleEpochRequest,
    SettleEpochResponse,
    StakeDeltaModel,
    SubmitBeliefRequest,
    SubmitBeliefResponse,
)
from models.types import Agent, Belief, Pool, RebaseStatus, SettlementResult, Side, TradeResult, TradeType
from storage.config_store import ConfigStore, ProtocolConfig
from storage.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


class ProtocolService:
    def __init__(self, store: LedgerStore, config: ProtocolConfig) -> None:
        self.store = store
        self.config = config
        self.locks = KeyedLockRegistry()
        self.beliefs = BeliefBook(store)
        self.ledger = CollateralLedger(store, config)
        self.amm = DualReserveAMM(store)
        self.recorder = TradeRecorder(store, self.ledger, self.locks)
        self.aggregator = Aggregator(store)
        self.scheduler = EpochScheduler(store, config, self.ledger)

    @classmethod
    def from_config(cls, db_path: Optional[Path] = None, config_overrides: Optional[dict] = None) -> "ProtocolService":
        """Open (and migrate) the database, seed tunables, and wire every component."""
        store = LedgerStore(db_path)
        store.init_db()
        config = ConfigStore(store).seed_defaults(config_overrides)
        logger.info("Protocol service ready db=%s config=%s", store.db_path, config.to_dict())
        return cls(store, config)

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def register_agent(self, agent_id: str, initial_stake: int = 0) -> Agent:
        return self.ledger.register_agent(agent_id, initial_stake)

    def deposit(self, agent_id: str, amount: int) -> Agent:
        return self.ledger.deposit(agent_id, amount)

    def withdraw(self, agent_id: str, amount: int) -> Agent:
        return self.ledger.withdraw(agent_id, amount)

    def create_belief(
        self,
        belief_id: str,
        creator: str,
        duration_epochs: int,
        pool_id: Optional[str] = None,
        min_settle_interval: Optional[int] = None,
        initial_belief: Optional[float] = None,
        initial_meta: Optional[float] = None,
    ) -> tuple[Belief, Pool]:
        """Create a belief and its pool together."""
        pool_id = pool_id or f"pool-{belief_id}"
        with self.store.transaction() as conn:
            belief = self.beliefs.create_belief(
                belief_id, creator, duration_epochs, initial_belief, initial_meta, conn=conn
            )
            pool = self.amm.deploy_pool(pool_id, belief_id, min_settle_interval, conn=conn)
        belief.pool_id = pool.pool_id
        return belief, pool

    # ------------------------------------------------------------------
    # Exposed operations
    # ------------------------------------------------------------------

    def submit_belief(self, agent_id: str, belief_id: str, belief_value: float, meta_prediction: float, epoch: int) -> str:
        return self.beliefs.submit_belief(agent_id, belief_id, belief_value, meta_prediction, epoch)

    def record_trade(
        self,
        agent_id: str,
        pool_id: str,
        side: Side,
        token_amount: Optional[int],
        notional: Optional[int],
        supplied_skim: int,
        trade_type: TradeType = TradeType.BUY,
        belief: Optional[float] = None,
        meta_prediction: Optional[float] = None,
        tx_signature: Optional[str] = None,
    ) -> TradeResult:
        return self.recorder.record_trade(
            agent_id,
            pool_id,
            side,
            token_amount,
            notional,
            supplied_skim,
            trade_type=trade_type,
            belief=belief,
            meta_prediction=meta_prediction,
            tx_signature=tx_signature,
        )

    def get_rebase_status(self, belief_id: str, now: Optional[float] = None) -> RebaseStatus:
        return self.scheduler.get_rebase_status(belief_id, now=now)

    def settle_epoch(self, belief_id: str, epoch: Optional[int] = None, now: Optional[float] = None) -> SettlementResult:
        return self.scheduler.settle_epoch(belief_id, epoch=epoch, now=now)

    # ------------------------------------------------------------------
    # JSON boundary
    # ------------------------------------------------------------------

    def handle(self, operation: str, payload: dict) -> dict:
        """
        Validate *payload* for *operation*, run it, and return a response dict.

        Unknown operations, unknown fields and wrong types never reach the
        engine; they come back as ErrorResponse with reason validation_error.
        """
        handlers: dict[str, Callable[[dict], BaseModel]] = {
            "submit_belief": self._handle_submit_belief,
            "record_trade": self._handle_record_trade,
            "get_rebase_status": self._handle_rebase_status,
            "settle_epoch": self._handle_settle_epoch,
        }
        handler = handlers.get(operation)
        if handler is None:
            return ErrorResponse(error="UnknownOperation", reason="validation_error", message=operation).model_dump()
        try:
            return handler(payload).model_dump()
        except SchemaValidationError as e:
            logger.warning("Rejected %s payload: %d schema error(s)", operation, e.error_count())
            return ErrorResponse(error="ValidationError", reason="validation_error", message=str(e)).model_dump()
        except ProtocolError as e:
            logger.warning("%s rejected: %s", operation, e.reason)
            return ErrorResponse(**_error_fields(e.to_dict())).model_dump()

    def _handle_submit_belief(self, payload: dict) -> SubmitBeliefResponse:
        req = SubmitBeliefRequest.model_validate(payload)
        submission_id = self.submit_belief(req.agent_id, req.belief_id, req.belief_value, req.meta_prediction, req.epoch)
        return SubmitBeliefResponse(submission_id=submission_id)

    def _handle_record_trade(self, payload: dict) -> RecordTradeResponse:
        req = RecordTradeRequest.model_validate(payload)
        result = self.record_trade(
            req.agent_id,
            req.pool_id,
            req.side,
            req.token_amount,
            req.notional,
            req.supplied_skim,
            trade_type=req.trade_type,
            belief=req.belief,
            meta_prediction=req.meta_prediction,
            tx_signature=req.tx_signature,
        )
        return RecordTradeResponse(
            trade_id=result.trade_id,
            new_balance=result.new_balance,
            new_lock=result.new_lock,
            skim_applied=result.skim_applied,
            duplicate=result.duplicate,
        )

    def _handle_rebase_status(self, payload: dict) -> RebaseStatusResponse:
        req = SettleEpochRequest.model_validate(payload)
        status = self.get_rebase_status(req.belief_id)
        return RebaseStatusResponse(
            can_settle=status.can_settle,
            unaccounted_submissions=status.unaccounted_submissions,
            min_required=status.min_required,
            cooldown_remaining_seconds=status.cooldown_remaining_seconds,
            current_epoch=status.current_epoch,
            reason=status.reason,
        )

    def _handle_settle_epoch(self, payload: dict) -> SettleEpochResponse:
        req = SettleEpochRequest.model_validate(payload)
        result = self.settle_epoch(req.belief_id, epoch=req.epoch)
        return SettleEpochResponse(
            belief_id=result.belief_id,
            epoch=result.epoch,
            next_epoch=result.next_epoch,
            new_aggregate=result.new_aggregate,
            certainty=result.certainty,
            bd_score_ppm=result.bd_score_ppm,
            aggregation_method=result.aggregation_method.value,
            redistribution_occurred=result.redistribution_occurred,
            stake_deltas=[
                StakeDeltaModel(
                    agent_id=d.agent_id,
                    stake_before=d.stake_before,
                    stake_after=d.stake_after,
                    delta=d.delta,
                    information_score=d.information_score,
                )
                for d in result.stake_deltas
            ],
        )


def _error_fields(error: dict) -> dict:
    return {k: v for k, v in error.items() if k in ErrorResponse.model_fields}
