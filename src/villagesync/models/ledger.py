"""Resource ledger model — a cached projection of the player's stockpile.

The backend owns the authoritative ledger. The client only ever holds a
projection of it, which may be briefly ahead (optimistic) or behind
(stale).
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


class ResourceKind(str, Enum):
    """Stockpiled resource kinds."""

    WOOD = "wood"
    STONE = "stone"
    FOOD = "food"
    IRON = "iron"


RESOURCE_KINDS: tuple[ResourceKind, ...] = tuple(ResourceKind)


@dataclass(frozen=True)
class PopulationSnapshot:
    """Current population and housing limit."""

    current: int = 0
    limit: int = 0


@dataclass(frozen=True)
class ResourceLedger:
    """Snapshot of a player's resources.

    Attributes:
        wood, stone, food, iron: Stockpiled amounts.
        population: Units currently housed.
        max_population: Housing limit.
        last_synced_at: Epoch seconds of the authoritative read this
            snapshot came from (0 for purely local guesses).
    """

    wood: int = 0
    stone: int = 0
    food: int = 0
    iron: int = 0
    population: int = 0
    max_population: int = 0
    last_synced_at: float = 0.0

    def __post_init__(self) -> None:
        for name in ("wood", "stone", "food", "iron", "population", "max_population"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")

    # -- Helpers ---------------------------------------------------------

    def get(self, kind: ResourceKind) -> int:
        return getattr(self, kind.value)

    def amounts(self) -> dict[ResourceKind, int]:
        """Stockpile amounts keyed by kind (population excluded)."""
        return {kind: self.get(kind) for kind in RESOURCE_KINDS}

    def shortfall(self, costs: Mapping[ResourceKind, int]) -> dict[ResourceKind, int]:
        """Missing amount per kind for ``costs``; empty when affordable."""
        missing: dict[ResourceKind, int] = {}
        for kind, cost in costs.items():
            have = self.get(kind)
            if cost > have:
                missing[kind] = cost - have
        return missing

    def can_afford(self, costs: Mapping[ResourceKind, int]) -> bool:
        return not self.shortfall(costs)

    def spend(self, costs: Mapping[ResourceKind, int]) -> ResourceLedger:
        """Return the local guess after paying ``costs`` (clamped at zero)."""
        changes = {kind.value: max(0, self.get(kind) - cost) for kind, cost in costs.items()}
        return dataclasses.replace(self, **changes)

    def with_population(self, population: PopulationSnapshot) -> ResourceLedger:
        return dataclasses.replace(
            self, population=population.current, max_population=population.limit,
        )

    def same_amounts(self, other: Optional[ResourceLedger]) -> bool:
        """Compare everything except the sync timestamp."""
        if other is None:
            return False
        return dataclasses.replace(self, last_synced_at=0.0) == dataclasses.replace(
            other, last_synced_at=0.0,
        )


@dataclass(frozen=True)
class ProductionBuilding:
    """A generator building as seen by the accrual calculator."""

    resource_kind: ResourceKind
    rate_per_minute: float

    def __post_init__(self) -> None:
        if self.rate_per_minute < 0:
            raise ValueError(f"rate_per_minute must be >= 0, got {self.rate_per_minute}")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Optional[ProductionBuilding]:
        """Build from a backend building row, or None for non-generators.

        The backend computes a generator's rate as
        ``base_production_rate * level``.
        """
        building_type = row.get("building_types") or row
        if building_type.get("type") != "resource_generator":
            return None
        try:
            kind = ResourceKind(building_type.get("resource_type"))
        except ValueError:
            return None
        base_rate = float(building_type.get("base_production_rate") or 0)
        level = int(row.get("level") or 1)
        return cls(resource_kind=kind, rate_per_minute=base_rate * level)
