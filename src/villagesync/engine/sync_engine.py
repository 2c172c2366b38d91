"""Sync engine — the per-session context object.

Owns everything that lives for one signed-in session:

1. the ledger projection and the event bus
2. the accrual calculator, training tracker and reconciliation protocol
3. the session watchdog
4. the periodic timers (resource poll, population poll, training tick,
   training re-fetch, watchdog check)

``start()`` performs the initial pulls and starts the timers;
``stop()`` cancels every timer and drops every subscription.

Usage:
    async with SyncEngine("u1", gateway, store, config) as engine:
        engine.subscribe_resources(on_change)
        await engine.start_training(troop_type_id=3, building_id=7, quantity=5)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Callable, Mapping, Optional

from villagesync.engine.accrual import AccrualCalculator, ClaimableAccrual
from villagesync.engine.projection import LedgerProjection
from villagesync.engine.reconciliation import ReconciliationProtocol
from villagesync.engine.timers import TimerGroup
from villagesync.engine.training_queue import JobView, TrainingQueueTracker
from villagesync.engine.watchdog import SessionWatchdog
from villagesync.loaders.config_loader import SyncConfig
from villagesync.models.credential import SessionCredential
from villagesync.models.ledger import ResourceKind, ResourceLedger
from villagesync.models.mutation import MutationRecord
from villagesync.network.errors import GatewayError
from villagesync.util.events import EventBus, ResourcesChanged

if TYPE_CHECKING:
    from villagesync.network.gateway import RemoteStateGateway
    from villagesync.persistence.local_store import LocalStore

log = logging.getLogger(__name__)

TIMER_RESOURCES = "resources"
TIMER_POPULATION = "population"
TIMER_TRAINING_TICK = "training-tick"
TIMER_TRAINING_REFETCH = "training-refetch"
TIMER_WATCHDOG = "watchdog"


class SyncEngine:
    """Client-side synchronization for one user session.

    Args:
        user_id: Signed-in player.
        gateway: Backend access; the engine installs its watchdog on it.
        store: Client-local persistence (must be connected before start).
        config: Tuning values.
        event_bus: Shared bus; a private one is created when omitted.
        clock: Epoch-seconds source.
        credential: Initial credential.  When omitted ``start()`` loads
            the persisted one.
    """

    def __init__(
        self,
        user_id: str,
        gateway: RemoteStateGateway,
        store: LocalStore,
        config: Optional[SyncConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        credential: Optional[SessionCredential] = None,
    ) -> None:
        cfg = config or SyncConfig()
        self.user_id = user_id
        self.config = cfg
        self.gateway = gateway
        self.store = store
        self._owns_bus = event_bus is None
        self.events = event_bus or EventBus(republish_delays=tuple(cfg.donation_republish_delays_s))
        self._clock = clock

        self.projection = LedgerProjection(user_id)
        self.watchdog = SessionWatchdog(
            user_id, credential, gateway.refresh_session,
            store=store, event_bus=self.events,
            margin_seconds=cfg.expiry_margin_s,
            max_attempts=cfg.renewal_max_attempts,
            backoff_seconds=cfg.renewal_backoff_s,
            clock=clock,
        )
        self.accrual = AccrualCalculator(
            user_id, gateway, store, self.projection, self.events,
            threshold_minutes=cfg.offline_threshold_minutes, clock=clock,
        )
        self.training = TrainingQueueTracker(
            user_id, gateway, self.projection, self.events, clock=clock,
        )
        self.reconciliation = ReconciliationProtocol(
            user_id, gateway, self.projection, self.events,
        )

        self.timers = TimerGroup()
        self._unsubscribers: list[Callable[[], None]] = []
        self._repull_task: Optional[asyncio.Task] = None
        self._repull_again = False
        self._started = False
        self.last_views: list[JobView] = []

    # -- Lifecycle -------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Initial pulls, offline check, then start all timers."""
        if self._started:
            return
        log.info("Starting sync engine for %s", self.user_id)

        if self.watchdog.credential is None:
            stored = await self.store.load_credential(self.user_id)
            if stored is not None:
                self.watchdog.replace_credential(stored)
                log.info("  credential:   restored from local store")
        self.gateway.use_watchdog(self.watchdog)
        await self.watchdog.ensure_fresh()

        self._unsubscribers.append(self.events.subscribe(
            ResourcesChanged, self._on_resources_changed, user_id=self.user_id,
        ))

        try:
            await self._initial_pull()

            cfg = self.config
            self.timers.add(TIMER_RESOURCES, cfg.resource_poll_s, self._poll_resources)
            self.timers.add(TIMER_POPULATION, cfg.population_poll_s, self._poll_population)
            self.timers.add(TIMER_TRAINING_TICK, cfg.training_tick_s, self._tick_training)
            self.timers.add(TIMER_TRAINING_REFETCH, cfg.training_refetch_s, self.training.refresh)
            self.timers.add(TIMER_WATCHDOG, cfg.watchdog_check_s, self.watchdog.check)
            self.timers.start_all()
        except BaseException:
            log.warning("Sync engine for %s failed to start; rolling back", self.user_id)
            await self._release()
            raise
        self._started = True

    async def _initial_pull(self) -> None:
        steps = (
            ("ledger", self.accrual.poll_ledger),
            ("population", self.accrual.poll_population),
            ("training queue", self.training.refresh),
            ("offline accrual", self.accrual.check_offline),
        )
        for label, step in steps:
            try:
                await step()
            except GatewayError as e:
                log.warning("  initial %s pull failed: %s", label, e)

    async def stop(self) -> None:
        """Cancel all timers and subscriptions and stamp the session end."""
        if not self._started:
            return
        log.info("Stopping sync engine for %s", self.user_id)
        self._started = False
        await self._release()
        if self._owns_bus:
            self.events.close()
        await self.training.close()
        await self.watchdog.close()
        self.reconciliation.close()
        if self.store.is_connected:
            await self.accrual.mark_hidden()
        log.info("Sync engine for %s stopped", self.user_id)

    async def _release(self) -> None:
        """Drop what ``start()`` set up: timers, subscriptions, re-pull."""
        await self.timers.cancel_all()
        self.timers = TimerGroup()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._repull_task is not None and not self._repull_task.done():
            self._repull_task.cancel()
            try:
                await self._repull_task
            except asyncio.CancelledError:
                pass
        self._repull_task = None

    async def __aenter__(self) -> SyncEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # -- Visibility ------------------------------------------------------

    async def on_hidden(self) -> None:
        """Client went to the background or is unloading."""
        await self.accrual.mark_hidden()

    async def on_visible(self) -> ClaimableAccrual:
        """Client came back to the foreground."""
        claimable = await self.accrual.check_offline()
        try:
            await self.accrual.poll_ledger()
        except GatewayError as e:
            log.warning("Ledger pull on foreground failed: %s", e)
        return claimable

    # -- Timer callbacks -------------------------------------------------

    async def _poll_resources(self) -> None:
        await self.accrual.poll_ledger()

    async def _poll_population(self) -> None:
        await self.accrual.poll_population()

    async def _tick_training(self) -> None:
        self.last_views = self.training.tick()

    # -- Invalidation ----------------------------------------------------

    def _on_resources_changed(self, event: ResourcesChanged) -> None:
        """A ``None`` payload asks for one coalesced re-pull."""
        if event.ledger is not None:
            return
        if self._repull_task is not None and not self._repull_task.done():
            self._repull_again = True
            return
        self._repull_task = asyncio.get_running_loop().create_task(
            self._repull(), name=f"repull:{self.user_id}",
        )

    async def _repull(self) -> None:
        while True:
            self._repull_again = False
            try:
                await self.accrual.poll_ledger()
            except GatewayError as e:
                log.warning("Re-pull after invalidation failed: %s", e)
            if not self._repull_again:
                return

    async def wait_for_repull(self) -> None:
        """Await the coalesced re-pull, if one is running."""
        if self._repull_task is not None:
            await asyncio.gather(self._repull_task, return_exceptions=True)

    # -- Read side -------------------------------------------------------

    @property
    def ledger(self) -> ResourceLedger:
        return self.projection.ledger

    def subscribe_resources(self, handler: Callable[[ResourcesChanged], None]
                            ) -> Callable[[], None]:
        """Subscribe a display component to this user's resource changes."""
        return self.events.subscribe(ResourcesChanged, handler, user_id=self.user_id)

    # -- Actions ---------------------------------------------------------

    async def start_training(self, troop_type_id: int, building_id: int, quantity: int,
                             unit_costs: Optional[Mapping[ResourceKind, int]] = None,
                             ) -> MutationRecord:
        record = await self.reconciliation.start_training(
            troop_type_id, building_id, quantity, unit_costs,
        )
        if record.succeeded:
            try:
                await self.training.refresh()
            except GatewayError as e:
                log.warning("Training queue refresh after start failed: %s", e)
        return record

    async def collect(self, job_id: int) -> bool:
        return await self.training.collect(job_id)

    async def claim_offline(self) -> Optional[ResourceLedger]:
        return await self.accrual.claim()

    async def donate(self, recipient_id: str,
                     amounts: Mapping[ResourceKind, int]) -> MutationRecord:
        return await self.reconciliation.donate(recipient_id, amounts)

    async def build_building(self, building_type_id: int, x: int, y: int,
                             costs: Optional[Mapping[ResourceKind, int]] = None,
                             ) -> MutationRecord:
        return await self.reconciliation.build_building(building_type_id, x, y, costs)

    async def upgrade_building(self, building_id: int, new_level: int,
                               costs: Optional[Mapping[ResourceKind, int]] = None,
                               ) -> MutationRecord:
        return await self.reconciliation.upgrade_building(building_id, new_level, costs)

    async def move_building(self, building_id: int, x: int, y: int) -> MutationRecord:
        return await self.reconciliation.move_building(building_id, x, y)

    async def delete_building(self, building_id: int) -> MutationRecord:
        return await self.reconciliation.delete_building(building_id)
