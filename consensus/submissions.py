"""
Belief registry and per-epoch submissions.

An agent states (belief, meta_prediction) for the belief's open epoch. A
later statement in the same epoch overwrites the earlier one; statements
for any other epoch are rejected, which keeps settled epochs immutable.
"""

import logging
import sqlite3
from typing import Optional

from models.errors import ValidationError, require_probability
from models.reasons import REASON_BELIEF_NOT_ACTIVE, REASON_WRONG_EPOCH
from models.types import Belief, BeliefStatus
from storage import rows
from storage.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


class BeliefBook:
    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def create_belief(
        self,
        belief_id: str,
        creator: str,
        duration_epochs: int,
        initial_belief: Optional[float] = None,
        initial_meta: Optional[float] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Belief:
        """
        Register a belief that expires after *duration_epochs* settlements.

        When the creator supplies an initial statement it is recorded as
        their epoch-0 submission.
        """
        if duration_epochs < 1:
            raise ValidationError("duration_epochs must be >= 1")
        if conn is None:
            with self._store.transaction() as tx:
                return self.create_belief(belief_id, creator, duration_epochs, initial_belief, initial_meta, conn=tx)

        belief = Belief(belief_id=belief_id, creator=creator, expiration_epoch=duration_epochs)
        rows.insert_agent(conn, creator)
        rows.insert_belief(conn, belief)
        if initial_belief is not None:
            meta = initial_belief if initial_meta is None else initial_meta
            rows.upsert_submission(
                conn,
                creator,
                belief_id,
                0,
                require_probability("initial_belief", initial_belief),
                require_probability("initial_meta", meta),
            )
        logger.info("Belief %s created by %s, expires after epoch %d", belief_id, creator, duration_epochs)
        return belief

    def get_belief(self, belief_id: str) -> Belief:
        with self._store.snapshot() as conn:
            return rows.load_belief(conn, belief_id)

    def submit_belief(
        self,
        agent_id: str,
        belief_id: str,
        belief_value: float,
        meta_prediction: float,
        epoch: int,
    ) -> str:
        """
        Upsert the agent's statement for *epoch*. Returns the submission id.

        Raises:
            ValidationError: value outside [0, 1], belief not active, or
                *epoch* is not the belief's open epoch
            NotFound: unknown belief
        """
        belief_value = require_probability("belief_value", belief_value)
        meta_prediction = require_probability("meta_prediction", meta_prediction)
        if isinstance(epoch, bool) or not isinstance(epoch, int) or epoch < 0:
            raise ValidationError(f"epoch must be a non-negative int, got {epoch!r}", REASON_WRONG_EPOCH)

        with self._store.transaction() as conn:
            belief = rows.load_belief(conn, belief_id)
            if belief.status != BeliefStatus.ACTIVE:
                raise ValidationError(f"belief {belief_id} is {belief.status.value}", REASON_BELIEF_NOT_ACTIVE)
            if epoch != belief.current_epoch:
                raise ValidationError(
                    f"epoch {epoch} is not open for {belief_id} (current {belief.current_epoch})",
                    REASON_WRONG_EPOCH,
                )
            rows.insert_agent(conn, agent_id)
            submission_id = rows.upsert_submission(conn, agent_id, belief_id, epoch, belief_value, meta_prediction)

        logger.info("Submission %s agent=%s belief=%s epoch=%d", submission_id, agent_id, belief_id, epoch)
        return submission_id

    def unaccounted_submitters(self, belief_id: str, conn: Optional[sqlite3.Connection] = None) -> list[str]:
        """Unique agents who submitted in the open epoch (i.e. since the last settlement)."""
        if conn is None:
            with self._store.snapshot() as snap:
                return self.unaccounted_submitters(belief_id, conn=snap)
        belief = rows.load_belief(conn, belief_id)
        return rows.epoch_submitters(conn, belief_id, belief.current_epoch)
