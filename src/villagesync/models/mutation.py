"""Mutation bookkeeping for optimistic updates.

Each mutating action gets a :class:`MutationRecord` that moves through
``pending → confirmed`` (server accepted, its snapshot replaced the
optimistic guess) or ``pending → corrected`` (request failed, the next
authoritative pull overwrote the guess).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from villagesync.models.ledger import ResourceLedger


class MutationState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CORRECTED = "corrected"


@dataclass(frozen=True)
class MutationResult:
    """Authoritative state returned by a successful mutating call."""

    ledger: ResourceLedger
    unit_totals: Optional[dict[str, int]] = None


@dataclass
class MutationRecord:
    """Lifecycle of one optimistic mutation.

    Attributes:
        mutation_id: Local sequence number.
        kind: Action name (``"start_training"``, ``"donate"`` …).
        user_id: Owner of the mutated ledger.
        state: Current lifecycle state.
        optimistic: Local guess applied before the request was sent.
        authoritative: Server snapshot that settled the mutation.
        error: Failure raised by the gateway, if any.
    """

    mutation_id: int
    kind: str
    user_id: str
    state: MutationState = MutationState.PENDING
    optimistic: Optional[ResourceLedger] = None
    authoritative: Optional[ResourceLedger] = None
    error: Optional[Exception] = None
    unit_totals: Optional[dict[str, int]] = field(default=None, repr=False)

    @property
    def settled(self) -> bool:
        return self.state is not MutationState.PENDING

    @property
    def succeeded(self) -> bool:
        return self.state is MutationState.CONFIRMED and self.error is None
