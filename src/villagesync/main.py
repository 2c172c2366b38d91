"""Headless sync client entry point.

Initializes all components and runs until interrupted:
1. Load configuration
2. Open the local store
3. Create the gateway and the sync engine
4. Wire logging subscribers onto the event bus
5. Start the engine (initial pulls + timers)

Usage:
    python -m villagesync.main --user-id 42 --token <jwt>
    # or via entry point:
    villagesync --user-id 42
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from villagesync.engine.sync_engine import SyncEngine
from villagesync.loaders.config_loader import (
    DEFAULT_SYNC_CONFIG_PATH,
    SyncConfig,
    load_sync_config,
)
from villagesync.models.credential import SessionCredential
from villagesync.network.errors import GatewayError
from villagesync.network.gateway import RemoteStateGateway
from villagesync.persistence.local_store import LocalStore
from villagesync.util.events import (
    CredentialRenewalFailed,
    CredentialRenewed,
    OfflineAccrualAvailable,
    ResourcesChanged,
    TrainingCompleted,
)
from villagesync.util.formatting import format_amounts

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Container for all session components
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """Holds references to everything the client runs."""

    config: SyncConfig
    store: LocalStore
    gateway: RemoteStateGateway
    engine: SyncEngine


# ===================================================================
# Setup
# ===================================================================


async def open_session(config: SyncConfig, user_id: str,
                       token: str = "", refresh_token: str = "") -> Session:
    """Open the local store and build gateway and engine.

    A token given on the command line replaces the persisted one.
    """
    log.info("Opening session for %s …", user_id)

    store = LocalStore(config.db_path)
    await store.connect()
    log.info("  local store:  connected (%s)", config.db_path)

    credential: Optional[SessionCredential] = None
    if token:
        credential = SessionCredential.from_tokens(token, refresh_token)
        await store.save_credential(user_id, credential)
        log.info("  credential:   from command line")

    gateway = RemoteStateGateway(config.api_base_url, timeout=config.request_timeout_s)
    log.info("  gateway:      %s", config.api_base_url)

    engine = SyncEngine(user_id, gateway, store, config, credential=credential)
    return Session(config=config, store=store, gateway=gateway, engine=engine)


def wire_logging(session: Session) -> None:
    """Log what a display would otherwise render."""
    bus = session.engine.events
    user_id = session.engine.user_id

    def _on_resources(evt: ResourcesChanged) -> None:
        if evt.ledger is not None:
            log.info("Resources: %s | population %d/%d",
                     format_amounts({k.value: v for k, v in evt.ledger.amounts().items()}),
                     evt.ledger.population, evt.ledger.max_population)

    bus.subscribe(ResourcesChanged, _on_resources, user_id=user_id)
    bus.subscribe(OfflineAccrualAvailable, lambda evt: log.info(
        "Offline for %d min, claimable: %s", evt.elapsed_minutes, format_amounts(evt.amounts),
    ), user_id=user_id)
    bus.subscribe(TrainingCompleted, lambda evt: log.info(
        "Training job %d completed", evt.job_id,
    ), user_id=user_id)
    bus.on(CredentialRenewed, lambda evt: log.info("Session renewed"))
    bus.on(CredentialRenewalFailed, lambda evt: log.warning(
        "Session renewal failed after %d attempts: %s", evt.attempts, evt.reason,
    ))


async def claim_offline(session: Session) -> bool:
    """Claim offline production; a failed claim is logged and left claimable."""
    try:
        ledger = await session.engine.claim_offline()
    except GatewayError as e:
        log.warning("Offline claim failed: %s (still claimable, try again later)", e)
        return False
    if ledger is None:
        log.info("Nothing to claim")
        return False
    return True


async def close_session(session: Session) -> None:
    log.info("Shutting down …")
    await session.engine.stop()
    await session.gateway.close()
    log.info("  gateway closed")
    await session.store.close()
    log.info("  local store closed")
    log.info("  goodbye")


# ===================================================================
# Entry points
# ===================================================================


async def _start(args: argparse.Namespace) -> None:
    config = load_sync_config(args.config)
    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    log.info("=== villagesync starting ===")

    session = await open_session(config, args.user_id, args.token, args.refresh_token)
    wire_logging(session)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_shutdown() -> None:
        log.info("Shutdown signal received — stopping …")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await session.engine.start()
        if args.claim:
            await claim_offline(session)
        await stop.wait()
    finally:
        await close_session(session)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="villagesync",
        description="Keep a village's client-side state in sync with the game backend.",
    )
    parser.add_argument("--config", default=DEFAULT_SYNC_CONFIG_PATH,
                        help="Path to the sync YAML config (default: %(default)s)")
    parser.add_argument("--user-id", required=True, help="Player id to sync")
    parser.add_argument("--token", default="", help="Access token (JWT)")
    parser.add_argument("--refresh-token", default="", help="Refresh token")
    parser.add_argument("--claim", action="store_true",
                        help="Claim offline production right after start")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the headless sync client."""
    args = build_parser().parse_args(argv)
    asyncio.run(_start(args))


if __name__ == "__main__":
    main()
