"""Typed event bus — decoupled cross-component notifications.

Any component can announce "resource state for user U changed" and any
other component can invalidate its cached view in response.  A
``ResourcesChanged`` with ``ledger=None`` means "re-pull from the
gateway"; with a ledger it means "apply this authoritative value
directly".
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Type, TypeVar

from villagesync.models.ledger import PopulationSnapshot, ResourceLedger
from villagesync.models.mutation import MutationRecord
from villagesync.models.training import TrainingJob
from villagesync.util.constants import DONATION_REPUBLISH_DELAYS_S

log = logging.getLogger(__name__)

T = TypeVar("T")


# -- Resource events -----------------------------------------------------

@dataclass(frozen=True)
class ResourcesChanged:
    """Resource state for a user changed; None ledger means re-pull."""
    user_id: str
    ledger: Optional[ResourceLedger] = None


@dataclass(frozen=True)
class PopulationChanged:
    user_id: str
    population: PopulationSnapshot


@dataclass(frozen=True)
class OfflineAccrualAvailable:
    """Offline production is waiting to be claimed."""
    user_id: str
    elapsed_minutes: int
    amounts: dict


@dataclass(frozen=True)
class OfflineAccrualClaimed:
    user_id: str
    elapsed_minutes: int
    ledger: ResourceLedger


@dataclass(frozen=True)
class MutationSettled:
    """An optimistic mutation was confirmed or corrected."""
    user_id: str
    record: MutationRecord


# -- Training events -----------------------------------------------------

@dataclass(frozen=True)
class TrainingQueueChanged:
    user_id: str
    jobs: tuple[TrainingJob, ...]


@dataclass(frozen=True)
class TrainingCompleted:
    """The server acknowledged completion of a training job."""
    user_id: str
    job_id: int
    unit_totals: Optional[dict] = None


# -- Session events ------------------------------------------------------

@dataclass(frozen=True)
class CredentialRenewed:
    expires_at: Optional[float]


@dataclass(frozen=True)
class CredentialRenewalFailed:
    """Renewal gave up after all attempts. The session is kept."""
    attempts: int
    reason: str


# -- Event Bus -----------------------------------------------------------

class EventBus:
    """Synchronous in-process event bus with typed events.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(ResourcesChanged, on_change, user_id="u1")
        bus.publish("u1", None)
        unsubscribe()

    Delivery walks a snapshot of the handler list, so a handler may
    unsubscribe itself (or others) mid-broadcast without anyone being
    skipped for that emit.
    """

    def __init__(self, republish_delays: tuple[float, ...] = DONATION_REPUBLISH_DELAYS_S) -> None:
        self._handlers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)
        self._republish_delays = tuple(republish_delays)
        self._scheduled: set[asyncio.TimerHandle] = set()

    def on(self, event_type: Type[T], handler: Callable[[T], None]) -> None:
        """Register a handler for an event type."""
        self._handlers[event_type].append(handler)

    def off(self, event_type: Type[T], handler: Callable[[T], None]) -> None:
        """Unregister a handler."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscribe(self, event_type: Type[T], handler: Callable[[T], None],
                  user_id: Optional[str] = None) -> Callable[[], None]:
        """Register a handler and return a callable that removes it.

        With ``user_id`` the handler only receives events whose
        ``user_id`` attribute matches.
        """
        if user_id is None:
            registered = handler
        else:
            def registered(event: T) -> None:
                if getattr(event, "user_id", None) == user_id:
                    handler(event)

        self.on(event_type, registered)
        return lambda: self.off(event_type, registered)

    def emit(self, event: object) -> None:
        """Emit an event to all handlers registered at the time of the call."""
        for handler in list(self._handlers.get(type(event), [])):
            try:
                handler(event)
            except Exception:
                log.exception("Handler %r failed for %s", handler, type(event).__name__)

    def clear(self) -> None:
        """Remove all handlers."""
        self._handlers.clear()

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, []))

    # -- Resource channel ------------------------------------------------

    def publish(self, user_id: str, ledger: Optional[ResourceLedger] = None) -> None:
        """Announce a resource change for ``user_id``."""
        log.debug("Resources changed for %s (%s)", user_id,
                  "re-pull" if ledger is None else "payload")
        self.emit(ResourcesChanged(user_id=user_id, ledger=ledger))

    def notify_donation_received(self, user_id: str) -> None:
        """Invalidate a recipient's resources now and again after short delays.

        Must be called from within a running event loop when delays are
        configured.
        """
        self.publish(user_id, None)
        if not self._republish_delays:
            return
        loop = asyncio.get_running_loop()
        for delay in self._republish_delays:
            self._schedule_republish(loop, delay, user_id)

    def _schedule_republish(self, loop: asyncio.AbstractEventLoop, delay: float,
                            user_id: str) -> None:
        handle: Optional[asyncio.TimerHandle] = None

        def _fire() -> None:
            self._scheduled.discard(handle)
            self.publish(user_id, None)

        handle = loop.call_later(delay, _fire)
        self._scheduled.add(handle)

    @property
    def pending_republishes(self) -> int:
        return len(self._scheduled)

    def close(self) -> None:
        """Cancel scheduled republishes and drop all handlers."""
        for handle in self._scheduled:
            handle.cancel()
        self._scheduled.clear()
        self.clear()
