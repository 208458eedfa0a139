"""
Run context — identity for the current process run plus per-task log context.

Every run has:
- run_id: UUID4 generated once at process start
- started_at: ISO-8601 UTC timestamp
- dry_run: True when settlement instructions are never sent
- cycle_id: monotonic counter, incremented each cron iteration

cycle_id, component, belief_id and epoch live in contextvars so structured
logs pick them up without threading them through every call.
"""

import platform
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional

_cycle_id_var: ContextVar[int] = ContextVar("cycle_id", default=0)
_component_var: ContextVar[str] = ContextVar("component", default="")
_belief_id_var: ContextVar[Optional[str]] = ContextVar("belief_id", default=None)
_epoch_var: ContextVar[Optional[int]] = ContextVar("epoch", default=None)


def set_cycle_context(cycle_id: int, component: str = "") -> None:
    """Set cycle context for structured logging injection."""
    _cycle_id_var.set(cycle_id)
    if component:
        _component_var.set(component)


def get_cycle_id() -> int:
    return _cycle_id_var.get()


def get_component() -> str:
    return _component_var.get()


def get_belief_id() -> Optional[str]:
    return _belief_id_var.get()


def get_epoch() -> Optional[int]:
    return _epoch_var.get()


@contextmanager
def settlement_context(belief_id: str, epoch: int, component: str = "epoch_scheduler") -> Iterator[None]:
    """Tag every log record emitted inside the block with belief_id/epoch."""
    tokens = (
        _belief_id_var.set(belief_id),
        _epoch_var.set(epoch),
        _component_var.set(component),
    )
    try:
        yield
    finally:
        _component_var.reset(tokens[2])
        _epoch_var.reset(tokens[1])
        _belief_id_var.reset(tokens[0])


@dataclass
class RunContext:
    """Identity for a single process run."""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    dry_run: bool = True
    schema_version: int = 0
    python_version: str = field(default_factory=platform.python_version)
    cycle_id: int = 0

    def next_cycle(self) -> int:
        """Increment and return the new cycle_id. Also updates contextvars."""
        self.cycle_id += 1
        set_cycle_context(self.cycle_id)
        return self.cycle_id

    def to_manifest_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "dry_run": self.dry_run,
            "schema_version": self.schema_version,
            "python_version": self.python_version,
            "cycle_id": self.cycle_id,
        }
