"""Reconciliation protocol — optimistic local apply, authoritative settle.

Every mutating action follows the same steps:

1. Check the cached ledger (advisory fast-fail only).
2. Apply the expected effect to the projection and publish it.
3. Send the request through the gateway.
4. On success, replace the projection with the server's snapshot.
   On failure, publish an invalidation; the next authoritative pull
   overwrites the optimistic guess.

Concurrent mutations may race.  Between optimistic applies the
projection is only a guess; it is correct again after the next
authoritative read.
"""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Mapping, Optional

from villagesync.models.ledger import ResourceKind, ResourceLedger
from villagesync.models.mutation import MutationRecord, MutationResult, MutationState
from villagesync.network.errors import (
    AuthorizationFailed,
    GatewayError,
    InsufficientResources,
    ValidationRejected,
)
from villagesync.util.events import MutationSettled

if TYPE_CHECKING:
    from villagesync.engine.projection import LedgerProjection
    from villagesync.network.gateway import RemoteStateGateway
    from villagesync.util.events import EventBus

log = logging.getLogger(__name__)

MutationCall = Callable[[], Awaitable[MutationResult]]


class ReconciliationProtocol:
    """Runs mutating actions against the projection and the gateway.

    Args:
        user_id: Owner of the projected ledger.
        gateway: Backend access.
        projection: Cached ledger being mutated.
        event_bus: Receives optimistic, authoritative and invalidation
            notifications.
    """

    def __init__(self, user_id: str, gateway: RemoteStateGateway,
                 projection: LedgerProjection, event_bus: EventBus) -> None:
        self.user_id = user_id
        self._gateway = gateway
        self._projection = projection
        self._events = event_bus
        self._ids = itertools.count(1)
        self._awaiting_correction: list[MutationRecord] = []
        self._unsubscribe = projection.on_authoritative(self._on_authoritative)
        self.history: list[MutationRecord] = []

    def close(self) -> None:
        self._unsubscribe()

    @property
    def pending(self) -> list[MutationRecord]:
        return [r for r in self.history if r.state is MutationState.PENDING]

    # -- Core ------------------------------------------------------------

    async def submit(self, kind: str, costs: Mapping[ResourceKind, int],
                     call: MutationCall) -> MutationRecord:
        """Run one mutation through the optimistic/authoritative cycle.

        Raises:
            InsufficientResources: The cached ledger cannot cover
                ``costs``; nothing was applied or sent.
        """
        costs = {k: int(v) for k, v in costs.items() if v}
        missing = self._projection.ledger.shortfall(costs)
        if missing:
            log.info("%s for %s refused locally: %s", kind, self.user_id, missing)
            raise InsufficientResources(missing)

        record = MutationRecord(mutation_id=next(self._ids), kind=kind, user_id=self.user_id)
        self.history.append(record)
        if costs:
            record.optimistic = self._projection.apply_optimistic(costs)
            self._events.publish(self.user_id, record.optimistic)

        try:
            result = await call()
        except GatewayError as e:
            self._fail(record, e)
            return record

        record.authoritative = self._projection.replace(result.ledger, source=kind)
        if result.unit_totals is not None:
            self._projection.replace_units(result.unit_totals)
            record.unit_totals = dict(result.unit_totals)
        record.state = MutationState.CONFIRMED
        if record.optimistic is not None and not record.optimistic.same_amounts(result.ledger):
            log.debug("%s #%d: server snapshot differs from optimistic guess",
                      kind, record.mutation_id)
        self._events.publish(self.user_id, record.authoritative)
        self._events.emit(MutationSettled(user_id=self.user_id, record=record))
        return record

    def _fail(self, record: MutationRecord, error: GatewayError) -> None:
        record.error = error
        if isinstance(error, ValidationRejected):
            log.info("%s #%d rejected: %s", record.kind, record.mutation_id, error)
        elif isinstance(error, AuthorizationFailed):
            log.warning("%s #%d not authorized: %s", record.kind, record.mutation_id, error)
        else:
            log.warning("%s #%d failed: %s", record.kind, record.mutation_id, error)
        self._awaiting_correction.append(record)
        self._events.publish(self.user_id, None)

    def _on_authoritative(self, snapshot: ResourceLedger) -> None:
        """A server read landed; failed optimistic guesses are now overwritten."""
        if not self._awaiting_correction:
            return
        settled, self._awaiting_correction = self._awaiting_correction, []
        for record in settled:
            record.authoritative = snapshot
            record.state = MutationState.CORRECTED
            self._events.emit(MutationSettled(user_id=self.user_id, record=record))

    # -- Actions ---------------------------------------------------------

    async def start_training(self, troop_type_id: int, building_id: int, quantity: int,
                             unit_costs: Optional[Mapping[ResourceKind, int]] = None,
                             ) -> MutationRecord:
        """Spend resources to start training ``quantity`` troops."""
        costs = {k: v * quantity for k, v in (unit_costs or {}).items()}
        return await self.submit(
            "start_training", costs,
            lambda: self._gateway.start_training(troop_type_id, building_id, quantity),
        )

    async def build_building(self, building_type_id: int, x: int, y: int,
                             costs: Optional[Mapping[ResourceKind, int]] = None,
                             ) -> MutationRecord:
        """Spend resources to place a new building at ``(x, y)``."""
        return await self.submit(
            "build_building", costs or {},
            lambda: self._gateway.create_building(building_type_id, x, y),
        )

    async def upgrade_building(self, building_id: int, new_level: int,
                               costs: Optional[Mapping[ResourceKind, int]] = None,
                               ) -> MutationRecord:
        """Spend resources to raise a building to ``new_level``."""
        return await self.submit(
            "upgrade_building", costs or {},
            lambda: self._gateway.upgrade_building(building_id, new_level),
        )

    async def move_building(self, building_id: int, x: int, y: int) -> MutationRecord:
        return await self.submit(
            "move_building", {}, lambda: self._gateway.move_building(building_id, x, y),
        )

    async def delete_building(self, building_id: int) -> MutationRecord:
        return await self.submit(
            "delete_building", {}, lambda: self._gateway.delete_building(building_id),
        )

    async def donate(self, recipient_id: str,
                     amounts: Mapping[ResourceKind, int]) -> MutationRecord:
        """Send resources to another player.

        On success the recipient's views are invalidated as well.
        """
        record = await self.submit(
            "donate", amounts, lambda: self._gateway.donate(recipient_id, amounts),
        )
        if record.state is MutationState.CONFIRMED:
            self._events.notify_donation_received(recipient_id)
        return record
