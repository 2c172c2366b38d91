"""Ledger projection — the client's single cached view of server state.

Display components read it; only the reconciliation protocol, the
accrual claim step and authoritative re-fetches write it.  Every
authoritative write *replaces* the stockpile wholesale, never merges
deltas into it.
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping, Optional

from villagesync.models.ledger import PopulationSnapshot, ResourceKind, ResourceLedger

log = logging.getLogger(__name__)

AuthoritativeListener = Callable[[ResourceLedger], None]


class LedgerProjection:
    """Cached ledger and unit totals for one user.

    Args:
        user_id: Owner of the projected state.
        initial: Starting ledger (defaults to an empty one).
    """

    def __init__(self, user_id: str, initial: Optional[ResourceLedger] = None) -> None:
        self.user_id = user_id
        self._ledger = initial or ResourceLedger()
        self._unit_totals: dict[str, int] = {}
        self._listeners: list[AuthoritativeListener] = []
        self.version: int = 0
        self.authoritative_version: int = 0

    # -- Reads -----------------------------------------------------------

    @property
    def ledger(self) -> ResourceLedger:
        return self._ledger

    @property
    def unit_totals(self) -> dict[str, int]:
        return dict(self._unit_totals)

    @property
    def is_optimistic(self) -> bool:
        """True while a local guess sits on top of the last server read."""
        return self.version != self.authoritative_version

    # -- Writes ----------------------------------------------------------

    def replace(self, snapshot: ResourceLedger, source: str = "pull") -> ResourceLedger:
        """Install an authoritative snapshot.

        Population fields come from their own poll; a snapshot without
        them (``max_population == 0``) keeps the projected population.
        """
        if snapshot.max_population == 0 and self._ledger.max_population > 0:
            snapshot = snapshot.with_population(
                PopulationSnapshot(self._ledger.population, self._ledger.max_population),
            )
        self._ledger = snapshot
        self.version += 1
        self.authoritative_version = self.version
        log.debug("Projection for %s replaced from %s (v%d)", self.user_id, source, self.version)
        for listener in list(self._listeners):
            listener(snapshot)
        return snapshot

    def replace_population(self, population: PopulationSnapshot) -> ResourceLedger:
        """Install the population fields from the population poll."""
        self._ledger = self._ledger.with_population(population)
        return self._ledger

    def replace_units(self, unit_totals: Mapping[str, int]) -> None:
        self._unit_totals = dict(unit_totals)

    def apply_optimistic(self, costs: Mapping[ResourceKind, int]) -> ResourceLedger:
        """Apply a local guess for ``costs``; the next replace overwrites it."""
        self._ledger = self._ledger.spend(costs)
        self.version += 1
        return self._ledger

    def on_authoritative(self, listener: AuthoritativeListener) -> Callable[[], None]:
        """Call ``listener`` after every authoritative replace."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None
