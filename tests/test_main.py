"""Tests for the headless client's startup helpers."""

import pytest

from conftest import USER_ID
from villagesync.engine.sync_engine import SyncEngine
from villagesync.loaders.config_loader import SyncConfig
from villagesync.main import Session, build_parser, claim_offline
from villagesync.models.credential import SessionCredential

COLLECT_PATH = "/api/resources/collect-offline"


async def _session(gateway, store, clock) -> Session:
    config = SyncConfig(donation_republish_delays_s=[])
    engine = SyncEngine(USER_ID, gateway, store, config, clock=clock,
                        credential=SessionCredential("tok-1", refresh_token="ref-1"))
    await store.stamp_last_session(USER_ID, clock() - 42 * 60)
    await engine.start()
    return Session(config=config, store=store, gateway=gateway, engine=engine)


class TestClaimOnStart:
    @pytest.mark.asyncio
    async def test_claim_succeeds(self, gateway, store, clock, backend):
        session = await _session(gateway, store, clock)
        try:
            assert await claim_offline(session) is True
            assert backend.resources["wood"] == 310
        finally:
            await session.engine.stop()

    @pytest.mark.asyncio
    async def test_failed_claim_keeps_running_and_stays_claimable(self, gateway, store, clock,
                                                                  backend):
        session = await _session(gateway, store, clock)
        try:
            backend.fail_next[COLLECT_PATH] = 503

            assert await claim_offline(session) is False

            assert session.engine.is_running
            assert session.engine.accrual.claimable.elapsed_minutes == 42
            assert await claim_offline(session) is True
        finally:
            await session.engine.stop()


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args(["--user-id", "42"])
        assert args.user_id == "42"
        assert args.token == ""
        assert not args.claim

    def test_claim_flag(self):
        args = build_parser().parse_args(["--user-id", "42", "--token", "abc", "--claim"])
        assert args.token == "abc"
        assert args.claim
