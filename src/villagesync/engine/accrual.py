"""Accrual calculator — online polling and offline catch-up of production.

Two flows:

- **Offline**: when the client comes to the foreground, compare the
  persisted last-session stamp with now.  Short gaps (< threshold
  minutes) are noise.  Longer gaps ask the server what was produced and
  hold it as a claimable amount until the player claims it.
- **Online**: a recurring timer re-pulls the authoritative ledger and
  replaces the projection, so timer drift can never double-count.

The local :func:`compute_accrual` is only a preview; the server is
authoritative for rates and credited amounts.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable, Mapping, Optional

from villagesync.models.ledger import ProductionBuilding, ResourceKind, ResourceLedger
from villagesync.network.errors import GatewayError
from villagesync.util.constants import OFFLINE_THRESHOLD_MINUTES
from villagesync.util.events import (
    OfflineAccrualAvailable,
    OfflineAccrualClaimed,
    PopulationChanged,
)
from villagesync.util.formatting import format_amounts

if TYPE_CHECKING:
    from villagesync.engine.projection import LedgerProjection
    from villagesync.network.gateway import RemoteStateGateway
    from villagesync.persistence.local_store import LocalStore
    from villagesync.util.events import EventBus

log = logging.getLogger(__name__)


# ===================================================================
# Pure helpers
# ===================================================================


def compute_accrual(rates_by_kind: Mapping[ResourceKind, float],
                    elapsed_minutes: float) -> dict[ResourceKind, int]:
    """Whole units produced over ``elapsed_minutes``.

    ``delta[k] = floor(rate[k] * elapsed_minutes)``.  Fractions are
    dropped, not carried over to the next call.

    Raises:
        ValueError: On negative elapsed time or a negative rate.
    """
    if elapsed_minutes < 0:
        raise ValueError(f"elapsed_minutes must be >= 0, got {elapsed_minutes}")
    deltas: dict[ResourceKind, int] = {}
    for kind, rate in rates_by_kind.items():
        if rate < 0:
            raise ValueError(f"Rate for {kind} must be >= 0, got {rate}")
        deltas[kind] = int(math.floor(rate * elapsed_minutes))
    return deltas


def rates_by_kind(buildings: Iterable[ProductionBuilding]) -> dict[ResourceKind, float]:
    """Sum generator rates per resource kind."""
    rates: dict[ResourceKind, float] = {}
    for building in buildings:
        rates[building.resource_kind] = rates.get(building.resource_kind, 0.0) + building.rate_per_minute
    return rates


@dataclass(frozen=True)
class OfflineWindow:
    """Gap between the last visible session and now (epoch seconds)."""

    last_session_at: Optional[float]
    now: float

    @property
    def elapsed_minutes(self) -> int:
        if self.last_session_at is None:
            return 0
        return max(0, int(math.floor((self.now - self.last_session_at) / 60.0)))

    def qualifies(self, threshold_minutes: int = OFFLINE_THRESHOLD_MINUTES) -> bool:
        return self.elapsed_minutes >= threshold_minutes


@dataclass
class ClaimableAccrual:
    """Offline production waiting for the player."""

    elapsed_minutes: int = 0
    amounts: dict[ResourceKind, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.amounts.values())

    @property
    def is_empty(self) -> bool:
        return self.total <= 0


# ===================================================================
# Calculator
# ===================================================================


class AccrualCalculator:
    """Offline catch-up and online polling for one user.

    Args:
        user_id: Player whose ledger is tracked.
        gateway: Backend access.
        store: Holds the per-user last-session stamp.
        projection: Cached ledger, replaced on every authoritative read.
        event_bus: Receives claimable/claimed/changed notifications.
        threshold_minutes: Minimum gap that counts as being offline.
        clock: Epoch-seconds source.
    """

    def __init__(
        self,
        user_id: str,
        gateway: RemoteStateGateway,
        store: LocalStore,
        projection: LedgerProjection,
        event_bus: EventBus,
        threshold_minutes: int = OFFLINE_THRESHOLD_MINUTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.user_id = user_id
        self._gateway = gateway
        self._store = store
        self._projection = projection
        self._events = event_bus
        self._threshold = threshold_minutes
        self._clock = clock
        self._claimable: Optional[ClaimableAccrual] = None
        self._claiming = False

    @property
    def claimable(self) -> Optional[ClaimableAccrual]:
        """Amount waiting to be claimed, or None."""
        return self._claimable

    # -- Offline flow ----------------------------------------------------

    async def mark_hidden(self) -> None:
        """Stamp the last-session time (page hidden or unloading)."""
        await self._store.stamp_last_session(self.user_id, self._clock())

    async def check_offline(self) -> ClaimableAccrual:
        """Work out what was produced while the client was away.

        Returns a zero accrual on first run, for gaps under the
        threshold, and when the server preview fails.  A qualifying gap
        is held as :attr:`claimable` until claimed.
        """
        now = self._clock()
        last = await self._store.get_last_session(self.user_id)
        if last is None:
            log.info("First session for %s — stamping now", self.user_id)
            await self._store.stamp_last_session(self.user_id, now)
            return ClaimableAccrual()

        window = OfflineWindow(last_session_at=last, now=now)
        minutes = window.elapsed_minutes
        if not window.qualifies(self._threshold):
            log.debug("Offline for %d min (< %d) — nothing to claim", minutes, self._threshold)
            return ClaimableAccrual(elapsed_minutes=minutes)

        try:
            amounts = await self._gateway.preview_offline_accrual(minutes)
        except GatewayError as e:
            log.warning("Offline accrual preview failed for %s: %s", self.user_id, e)
            return ClaimableAccrual()

        claimable = ClaimableAccrual(elapsed_minutes=minutes, amounts=amounts)
        self._claimable = claimable
        log.info("Offline for %d min — claimable: %s", minutes,
                 format_amounts({k.value: v for k, v in amounts.items()}))
        self._events.emit(OfflineAccrualAvailable(
            user_id=self.user_id, elapsed_minutes=minutes,
            amounts={k.value: v for k, v in amounts.items()},
        ))
        return claimable

    async def claim(self) -> Optional[ResourceLedger]:
        """Credit the claimable accrual.

        Returns the new authoritative ledger, or None when there is
        nothing to claim or a claim is already in flight.

        Raises:
            GatewayError: The commit failed; the claimable amount stays
                available for a retry.
        """
        claimable = self._claimable
        if claimable is None or self._claiming:
            return None
        self._claiming = True
        try:
            ledger = await self._gateway.commit_offline_accrual(claimable.elapsed_minutes)
        except GatewayError as e:
            log.warning("Claiming offline accrual failed for %s: %s", self.user_id, e)
            raise
        finally:
            self._claiming = False

        self._projection.replace(ledger, source="offline-claim")
        await self._store.stamp_last_session(self.user_id, self._clock())
        self._claimable = None
        log.info("Offline accrual claimed for %s (%d min)", self.user_id, claimable.elapsed_minutes)
        self._events.emit(OfflineAccrualClaimed(
            user_id=self.user_id, elapsed_minutes=claimable.elapsed_minutes, ledger=ledger,
        ))
        self._events.publish(self.user_id, ledger)
        return ledger

    async def preview_local(self, elapsed_minutes: float,
                            buildings: Optional[Iterable[ProductionBuilding]] = None,
                            ) -> dict[ResourceKind, int]:
        """Client-side preview from the current generator buildings."""
        if buildings is None:
            buildings = await self._gateway.get_buildings()
        return compute_accrual(rates_by_kind(buildings), elapsed_minutes)

    # -- Online flow -----------------------------------------------------

    async def poll_ledger(self) -> ResourceLedger:
        """Re-pull the authoritative ledger and replace the projection."""
        ledger = self._projection.replace(await self._gateway.get_ledger(), source="poll")
        self._events.publish(self.user_id, ledger)
        return ledger

    async def poll_population(self) -> ResourceLedger:
        population = await self._gateway.get_population()
        ledger = self._projection.replace_population(population)
        self._events.emit(PopulationChanged(user_id=self.user_id, population=population))
        return ledger
