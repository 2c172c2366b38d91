"""Training queue tracker — countdowns and server-confirmed completion.

Per job: ``training → (server-confirmed) completed → removed``.

The 1-second UI tick derives the remaining time from ``ends_at`` (never
stored) and, the first time it sees a job due, sends one completion
request.  Only the server's acknowledgment removes the job.  A failed
request leaves the job listed as ready to collect; the player can
collect it by hand and the 5-second queue re-fetch reconciles the list.
The tracker never auto-retries and never force-completes locally.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from villagesync.models.mutation import MutationResult
from villagesync.models.training import JobStatus, TrainingJob
from villagesync.network.errors import AlreadyCompleted, GatewayError, ValidationRejected
from villagesync.util.events import TrainingCompleted, TrainingQueueChanged
from villagesync.util.formatting import format_remaining, whole_seconds_left

if TYPE_CHECKING:
    from villagesync.engine.projection import LedgerProjection
    from villagesync.network.gateway import RemoteStateGateway
    from villagesync.util.events import EventBus

log = logging.getLogger(__name__)


class JobPhase(str, Enum):
    """What the UI should show for a job."""

    TRAINING = "training"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    READY_TO_COLLECT = "ready_to_collect"


@dataclass(frozen=True)
class JobView:
    """Display state of one job at one tick."""

    job: TrainingJob
    phase: JobPhase
    remaining_seconds: int
    label: str

    @property
    def can_collect(self) -> bool:
        return self.phase is JobPhase.READY_TO_COLLECT


class TrainingQueueTracker:
    """Tracks in-flight training jobs for one user.

    Args:
        user_id: Player whose queue is tracked.
        gateway: Backend access.
        projection: Receives ledger and unit totals after completions.
        event_bus: Receives queue and completion notifications.
        clock: Epoch-seconds source.
    """

    def __init__(
        self,
        user_id: str,
        gateway: RemoteStateGateway,
        projection: LedgerProjection,
        event_bus: EventBus,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.user_id = user_id
        self._gateway = gateway
        self._projection = projection
        self._events = event_bus
        self._clock = clock
        self._jobs: dict[int, TrainingJob] = {}
        self._requested: set[int] = set()   # auto completion already sent
        self._failed: set[int] = set()      # last completion attempt failed
        self._inflight: dict[int, asyncio.Task] = {}

        # --- Monitoring counters ---
        self.completion_requests: int = 0

    @property
    def jobs(self) -> tuple[TrainingJob, ...]:
        return tuple(self._jobs.values())

    def get(self, job_id: int) -> Optional[TrainingJob]:
        return self._jobs.get(job_id)

    # -- Queue re-fetch --------------------------------------------------

    async def refresh(self) -> tuple[TrainingJob, ...]:
        """Replace the active list with the server's queue.

        Idempotent: a job the server already completed simply drops out.
        """
        jobs = await self._gateway.get_training_queue()
        self._jobs = {job.id: job for job in jobs}
        self._requested.intersection_update(self._jobs)
        self._failed.intersection_update(self._jobs)
        self._events.emit(TrainingQueueChanged(user_id=self.user_id, jobs=self.jobs))
        return self.jobs

    # -- UI tick ---------------------------------------------------------

    def tick(self, now: Optional[float] = None) -> list[JobView]:
        """Derive the display state and request completion of newly due jobs."""
        now = self._clock() if now is None else now
        for job in self.jobs:
            if (job.status is JobStatus.TRAINING and job.is_due(now)
                    and job.id not in self._requested):
                self._requested.add(job.id)
                self._spawn_completion(job.id)
        return [self.view(job, now) for job in self.jobs]

    def view(self, job: TrainingJob, now: float) -> JobView:
        remaining = whole_seconds_left(job.remaining_seconds(now))
        if job.id in self._inflight:
            return JobView(job, JobPhase.AWAITING_CONFIRMATION, 0, "Completing…")
        if job.status is JobStatus.COMPLETED or job.id in self._failed or job.is_due(now):
            return JobView(job, JobPhase.READY_TO_COLLECT, 0, "Ready to collect")
        return JobView(job, JobPhase.TRAINING, remaining, format_remaining(remaining))

    # -- Completion ------------------------------------------------------

    def _spawn_completion(self, job_id: int) -> None:
        task = asyncio.get_running_loop().create_task(
            self._complete(job_id), name=f"complete-training:{job_id}",
        )
        self._inflight[job_id] = task
        task.add_done_callback(lambda _t: self._inflight.pop(job_id, None))

    async def collect(self, job_id: int) -> bool:
        """Manual collect action for a due job.

        Returns True when the server confirmed (or had already
        confirmed) completion.
        """
        task = self._inflight.get(job_id)
        if task is not None:
            return await asyncio.shield(task)
        job = self._jobs.get(job_id)
        if job is None or job.is_due(self._clock()):
            self._requested.add(job_id)
        return await self._complete(job_id)

    async def _complete(self, job_id: int) -> bool:
        self.completion_requests += 1
        try:
            result: Optional[MutationResult] = await self._gateway.complete_training(job_id)
        except AlreadyCompleted:
            log.info("Training job %d was already completed", job_id)
            result = None
        except ValidationRejected as e:
            if not await self._gone_from_queue(job_id):
                self._failed.add(job_id)
                log.warning("Completing training job %d rejected: %s", job_id, e)
                return False
            log.info("Training job %d rejected but no longer queued; treating as completed",
                     job_id)
            result = None
        except GatewayError as e:
            self._failed.add(job_id)
            log.warning("Completing training job %d failed: %s", job_id, e)
            return False

        self._failed.discard(job_id)
        self._jobs.pop(job_id, None)
        if result is None:
            result = await self._fetch_totals()
        if result is not None:
            self._projection.replace(result.ledger, source="training-complete")
            if result.unit_totals is not None:
                self._projection.replace_units(result.unit_totals)
            self._events.publish(self.user_id, result.ledger)
        else:
            self._events.publish(self.user_id, None)
        log.info("Training job %d completed for %s", job_id, self.user_id)
        self._events.emit(TrainingCompleted(
            user_id=self.user_id, job_id=job_id,
            unit_totals=result.unit_totals if result is not None else None,
        ))
        self._events.emit(TrainingQueueChanged(user_id=self.user_id, jobs=self.jobs))
        return True

    async def _gone_from_queue(self, job_id: int) -> bool:
        """True when the server's queue no longer lists ``job_id``."""
        try:
            jobs = await self._gateway.get_training_queue()
        except GatewayError as e:
            log.warning("Queue check after rejected completion failed: %s", e)
            return False
        return all(job.id != job_id for job in jobs)

    async def _fetch_totals(self) -> Optional[MutationResult]:
        try:
            ledger = await self._gateway.get_ledger()
            units = await self._gateway.get_unit_totals()
        except GatewayError as e:
            log.warning("Refreshing totals after completion failed: %s", e)
            return None
        return MutationResult(ledger=ledger, unit_totals=units)

    async def drain(self) -> None:
        """Wait for outstanding completion requests."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding completion requests."""
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
