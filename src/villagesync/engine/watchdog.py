"""Session freshness watchdog — renews the credential before it expires.

Runs on a coarse timer and is also invoked by the gateway whenever a
request is rejected as unauthorized.  Only one renewal is ever in
flight; concurrent callers wait for that one.  A failed renewal is
retried with backoff and then reported; it never logs the player out.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from villagesync.models.credential import SessionCredential
from villagesync.network.errors import GatewayError
from villagesync.util.constants import (
    EXPIRY_MARGIN_S,
    RENEWAL_BACKOFF_S,
    RENEWAL_MAX_ATTEMPTS,
)
from villagesync.util.events import CredentialRenewalFailed, CredentialRenewed

if TYPE_CHECKING:
    from villagesync.persistence.local_store import LocalStore
    from villagesync.util.events import EventBus

log = logging.getLogger(__name__)

Renewer = Callable[[SessionCredential], Awaitable[SessionCredential]]


def is_near_expiry(credential: Optional[SessionCredential], margin_seconds: float,
                   now: Optional[float] = None) -> bool:
    """True when ``credential`` expires within ``margin_seconds``.

    A missing credential counts as expired.  A credential whose expiry
    is unknown counts as valid.
    """
    if credential is None or not credential.token:
        return True
    if credential.expires_at is None:
        return False
    now = time.time() if now is None else now
    return credential.expires_at < now + margin_seconds


class SessionWatchdog:
    """Owns the session credential and keeps it fresh.

    Args:
        user_id: Owner of the credential (storage key).
        credential: Current credential, if any.
        renewer: Async callable exchanging a credential for a new one
            (usually ``RemoteStateGateway.refresh_session``).
        store: Persists renewed tokens.
        event_bus: Receives renewed/failed notifications.
        margin_seconds: Renew when expiry is closer than this.
        max_attempts: Renewal attempts before giving up.
        backoff_seconds: Delay before the second attempt, doubled after.
        clock: Epoch-seconds source.
        sleep: Awaitable delay (tests pass a no-op).
    """

    def __init__(
        self,
        user_id: str,
        credential: Optional[SessionCredential],
        renewer: Renewer,
        store: Optional[LocalStore] = None,
        event_bus: Optional[EventBus] = None,
        margin_seconds: float = EXPIRY_MARGIN_S,
        max_attempts: int = RENEWAL_MAX_ATTEMPTS,
        backoff_seconds: float = RENEWAL_BACKOFF_S,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.user_id = user_id
        self._credential = credential
        self._renewer = renewer
        self._store = store
        self._events = event_bus
        self._margin = margin_seconds
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._clock = clock
        self._sleep = sleep
        self._inflight: Optional[asyncio.Future] = None

        # --- Monitoring counters ---
        self.renewal_count: int = 0
        self.failure_count: int = 0

    @property
    def credential(self) -> Optional[SessionCredential]:
        return self._credential

    def current_token(self) -> str:
        return self._credential.token if self._credential is not None else ""

    def replace_credential(self, credential: SessionCredential) -> None:
        """Install a credential obtained elsewhere (e.g. a fresh login)."""
        self._credential = credential

    def is_near_expiry(self) -> bool:
        return is_near_expiry(self._credential, self._margin, self._clock())

    @property
    def renewal_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # -- Renewal ---------------------------------------------------------

    async def ensure_fresh(self, force: bool = False) -> bool:
        """Make sure the credential is not about to expire.

        Returns True if the credential is fresh (already, or after a
        renewal), False if renewal failed.  Concurrent callers share a
        single in-flight renewal.
        """
        if self.renewal_in_flight:
            log.debug("Renewal already in flight — waiting for it")
            return await asyncio.shield(self._inflight)
        if not force and not self.is_near_expiry():
            return True

        self._inflight = asyncio.ensure_future(self._renew_with_backoff())
        return await asyncio.shield(self._inflight)

    async def renew_after_rejection(self) -> bool:
        """Called by the gateway after a 401/403."""
        return await self.ensure_fresh(force=True)

    async def check(self) -> None:
        """Periodic freshness check."""
        left = self._credential.seconds_left(self._clock()) if self._credential else None
        if not self.is_near_expiry():
            log.debug("Credential valid (%s s left)", "?" if left is None else f"{left:.0f}")
            return
        log.info("Credential near expiry — renewing")
        if not await self.ensure_fresh():
            log.warning("Credential renewal failed; keeping the session and retrying later")

    async def _renew_with_backoff(self) -> bool:
        reason = "no credential to renew"
        delay = self._backoff
        for attempt in range(1, self._max_attempts + 1):
            if self._credential is None:
                break
            try:
                renewed = await self._renewer(self._credential)
            except (GatewayError, ValueError) as e:
                reason = str(e) or type(e).__name__
                log.warning("Credential renewal attempt %d/%d failed: %s",
                            attempt, self._max_attempts, reason)
            else:
                await self._install(renewed)
                return True
            if attempt < self._max_attempts:
                await self._sleep(delay)
                delay *= 2

        self.failure_count += 1
        log.warning("Could not renew credential after %d attempts", self._max_attempts)
        if self._events is not None:
            self._events.emit(CredentialRenewalFailed(attempts=self._max_attempts, reason=reason))
        return False

    async def _install(self, credential: SessionCredential) -> None:
        self._credential = credential
        self.renewal_count += 1
        if self._store is not None and self._store.is_connected:
            await self._store.save_credential(self.user_id, credential)
        log.info("Credential renewed (expires at %s)", credential.expires_at)
        if self._events is not None:
            self._events.emit(CredentialRenewed(expires_at=credential.expires_at))

    async def close(self) -> None:
        """Cancel an in-flight renewal."""
        if self.renewal_in_flight:
            self._inflight.cancel()
            try:
                await self._inflight
            except asyncio.CancelledError:
                pass
        self._inflight = None
