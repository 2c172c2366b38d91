"""Pydantic request/response models for the backend REST API.

Every backend response is wrapped in ``{"success", "message", "data"}``.
Field aliases follow the backend's JSON keys (a mix of snake_case
columns and camelCase request fields).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from villagesync.models.ledger import PopulationSnapshot, ResourceKind, ResourceLedger
from villagesync.models.training import JobStatus, TrainingJob
from villagesync.util.formatting import to_epoch


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ===================================================================
# Envelope
# ===================================================================


class Envelope(_Wire):
    success: bool = False
    message: str = ""
    data: Any = None


# ===================================================================
# Resources
# ===================================================================


class LedgerPayload(_Wire):
    wood: int = 0
    stone: int = 0
    food: int = 0
    iron: int = 0
    population: int = 0
    max_population: int = 0
    last_updated: Optional[datetime] = None

    def to_ledger(self, synced_at: float) -> ResourceLedger:
        return ResourceLedger(
            wood=max(0, self.wood),
            stone=max(0, self.stone),
            food=max(0, self.food),
            iron=max(0, self.iron),
            population=max(0, self.population),
            max_population=max(0, self.max_population),
            last_synced_at=synced_at,
        )


class PopulationPayload(_Wire):
    current: int = 0
    limit: int = 0

    def to_snapshot(self) -> PopulationSnapshot:
        return PopulationSnapshot(current=max(0, self.current), limit=max(0, self.limit))


class OfflineRequest(_Wire):
    minutes_offline: int = Field(alias="minutesOffline")


class AccrualPayload(_Wire):
    wood: int = 0
    stone: int = 0
    food: int = 0
    iron: int = 0
    total_minutes: int = Field(0, alias="totalMinutes")
    buildings_count: int = Field(0, alias="buildingsCount")

    def to_amounts(self) -> dict[ResourceKind, int]:
        return {kind: max(0, getattr(self, kind.value)) for kind in ResourceKind}


class CollectPayload(_Wire):
    collected_resources: Optional[AccrualPayload] = Field(None, alias="collectedResources")
    new_total_resources: Optional[LedgerPayload] = Field(None, alias="newTotalResources")
    minutes_offline: int = Field(0, alias="minutesOffline")


# ===================================================================
# Training
# ===================================================================


class TrainingJobPayload(_Wire):
    id: int
    troop_name: str = ""
    quantity: int = 1
    start_time: datetime
    end_time: datetime
    status: str = JobStatus.TRAINING.value

    def to_job(self) -> TrainingJob:
        try:
            status = JobStatus(self.status)
        except ValueError:
            status = JobStatus.TRAINING
        return TrainingJob(
            id=self.id,
            troop_kind=self.troop_name,
            quantity=self.quantity,
            started_at=to_epoch(self.start_time),
            ends_at=to_epoch(self.end_time),
            status=status,
        )


class StartTrainingRequest(_Wire):
    troop_type_id: int = Field(alias="troopTypeId")
    building_id: int = Field(alias="buildingId")
    quantity: int


class CompleteTrainingRequest(_Wire):
    queue_id: int = Field(alias="queueId")


class MutationPayload(_Wire):
    """Optional authoritative state echoed back by a mutating call."""
    resources: Optional[LedgerPayload] = None
    new_resources: Optional[LedgerPayload] = Field(None, alias="newResources")
    troops: Optional[Dict[str, int]] = None

    def snapshot(self) -> Optional[LedgerPayload]:
        return self.resources or self.new_resources


class UnitRow(_Wire):
    troop_name: str = ""
    quantity: int = 0


# ===================================================================
# Buildings & donations
# ===================================================================


class CreateBuildingRequest(_Wire):
    building_type_id: int = Field(alias="buildingTypeId")
    position_x: int = Field(alias="positionX")
    position_y: int = Field(alias="positionY")
    level: int = 1


class UpgradeBuildingRequest(_Wire):
    new_level: int = Field(alias="newLevel")


class MoveBuildingRequest(_Wire):
    x: int = Field(alias="newPositionX")
    y: int = Field(alias="newPositionY")


class DonateRequest(_Wire):
    recipient_id: str = Field(alias="recipientId")
    wood: int = 0
    stone: int = 0
    food: int = 0
    iron: int = 0


# ===================================================================
# Session
# ===================================================================


class RefreshRequest(_Wire):
    refresh_token: str


class SessionPayload(_Wire):
    access_token: str
    refresh_token: str = ""
    expires_at: Optional[float] = None


def parse_unit_totals(data: Any) -> dict[str, int]:
    """Accept either ``{"Soldado": 3}`` or ``[{"troop_name": …, "quantity": …}]``."""
    if isinstance(data, dict):
        return {str(k): int(v) for k, v in data.items()}
    totals: dict[str, int] = {}
    for raw in data or []:
        row = UnitRow.model_validate(raw)
        totals[row.troop_name] = totals.get(row.troop_name, 0) + row.quantity
    return totals


def parse_training_queue(data: Any) -> List[TrainingJob]:
    return [TrainingJobPayload.model_validate(raw).to_job() for raw in (data or [])]
