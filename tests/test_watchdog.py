"""Tests for the session freshness watchdog."""

import asyncio

import pytest

from conftest import RecordingSleep, USER_ID
from villagesync.engine.watchdog import SessionWatchdog, is_near_expiry
from villagesync.models.credential import SessionCredential
from villagesync.network.errors import TransientFailure
from villagesync.util.events import CredentialRenewalFailed, CredentialRenewed, EventBus


def _expiring(clock, seconds: float = 60) -> SessionCredential:
    return SessionCredential("old", expires_at=clock() + seconds, refresh_token="ref")


class TestIsNearExpiry:
    def test_missing_credential_is_near_expiry(self):
        assert is_near_expiry(None, 600, now=0)

    def test_empty_token_is_near_expiry(self):
        assert is_near_expiry(SessionCredential(""), 600, now=0)

    def test_unknown_expiry_counts_as_valid(self):
        assert not is_near_expiry(SessionCredential("t", expires_at=None), 600, now=0)

    def test_within_margin(self):
        assert is_near_expiry(SessionCredential("t", expires_at=500), 600, now=0)

    def test_outside_margin(self):
        assert not is_near_expiry(SessionCredential("t", expires_at=3600), 600, now=0)


class TestRenewal:
    @pytest.mark.asyncio
    async def test_fresh_credential_not_renewed(self, clock):
        calls = []

        async def renewer(cred):
            calls.append(cred)
            return cred

        watchdog = SessionWatchdog(USER_ID, _expiring(clock, 3600), renewer, clock=clock)
        assert await watchdog.ensure_fresh() is True
        assert calls == []

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_renewal(self, clock):
        calls = []
        release = asyncio.Event()

        async def renewer(cred):
            calls.append(cred)
            await release.wait()
            return SessionCredential("new", expires_at=clock() + 3600, refresh_token="ref")

        watchdog = SessionWatchdog(USER_ID, _expiring(clock), renewer, clock=clock)
        tasks = [asyncio.create_task(watchdog.ensure_fresh()) for _ in range(5)]
        await asyncio.sleep(0)
        assert watchdog.renewal_in_flight
        release.set()

        results = await asyncio.gather(*tasks)

        assert results == [True] * 5
        assert len(calls) == 1
        assert watchdog.current_token() == "new"
        assert watchdog.renewal_count == 1

    @pytest.mark.asyncio
    async def test_backoff_and_no_logout(self, clock):
        bus = EventBus()
        failed = []
        bus.on(CredentialRenewalFailed, failed.append)
        sleep = RecordingSleep()
        attempts = []

        async def renewer(cred):
            attempts.append(cred)
            raise TransientFailure("backend down")

        credential = _expiring(clock)
        watchdog = SessionWatchdog(USER_ID, credential, renewer, event_bus=bus,
                                   clock=clock, sleep=sleep)

        assert await watchdog.ensure_fresh() is False

        assert len(attempts) == 3
        assert sleep.delays == [2.0, 4.0]
        assert watchdog.credential is credential
        assert failed[0].attempts == 3
        assert "backend down" in failed[0].reason
        assert watchdog.failure_count == 1

    @pytest.mark.asyncio
    async def test_recovers_on_later_attempt(self, clock):
        outcomes = [TransientFailure("blip"), ValueError("bad payload"), None]

        async def renewer(cred):
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome
            return SessionCredential("new", expires_at=clock() + 3600)

        watchdog = SessionWatchdog(USER_ID, _expiring(clock), renewer, clock=clock,
                                   sleep=RecordingSleep())
        assert await watchdog.ensure_fresh() is True
        assert watchdog.current_token() == "new"

    @pytest.mark.asyncio
    async def test_no_credential_cannot_renew(self, clock):
        calls = []

        async def renewer(cred):
            calls.append(cred)
            return cred

        watchdog = SessionWatchdog(USER_ID, None, renewer, clock=clock, sleep=RecordingSleep())
        assert await watchdog.ensure_fresh() is False
        assert calls == []

    @pytest.mark.asyncio
    async def test_renewal_persisted_and_announced(self, clock, store):
        bus = EventBus()
        renewed = []
        bus.on(CredentialRenewed, renewed.append)

        async def renewer(cred):
            return SessionCredential("new", expires_at=clock() + 3600, refresh_token="ref-2")

        watchdog = SessionWatchdog(USER_ID, _expiring(clock), renewer, store=store,
                                   event_bus=bus, clock=clock)
        await watchdog.check()

        stored = await store.load_credential(USER_ID)
        assert stored.token == "new"
        assert stored.refresh_token == "ref-2"
        assert renewed[0].expires_at == clock() + 3600


class TestAgainstBackend:
    @pytest.mark.asyncio
    async def test_forced_renewal_uses_refresh_endpoint(self, gateway, backend):
        watchdog = gateway.watchdog
        assert await watchdog.renew_after_rejection() is True
        assert watchdog.current_token() == "tok-2"
        assert watchdog.credential.refresh_token == "ref-1"
        assert backend.count("POST", "/api/auth/refresh") == 1
