"""Training job model — one batch of troops in the barracks queue."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class JobStatus(str, Enum):
    """Server-side job status. Only the server flips it to COMPLETED."""

    TRAINING = "training"
    COMPLETED = "completed"


@dataclass(frozen=True)
class TrainingJob:
    """An in-flight training job.

    Attributes:
        id: Server queue id.
        troop_kind: Troop type name (e.g. ``"Soldado"``).
        quantity: Number of troops in the batch.
        started_at: Epoch seconds when training started.
        ends_at: Epoch seconds when training is due.
        status: Server-reported status.
    """

    id: int
    troop_kind: str
    quantity: int
    started_at: float
    ends_at: float
    status: JobStatus = JobStatus.TRAINING

    def remaining_seconds(self, now: float) -> float:
        """Derived countdown; never stored, never negative."""
        return max(0.0, self.ends_at - now)

    def is_due(self, now: float) -> bool:
        return now >= self.ends_at
