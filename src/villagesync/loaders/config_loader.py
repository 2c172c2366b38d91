"""Sync configuration — loads tuning values from config/sync.yaml.

Provides a single ``SyncConfig`` dataclass that is loaded once at startup
and then handed to the :class:`~villagesync.engine.sync_engine.SyncEngine`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import yaml

from villagesync.util import constants as c

log = logging.getLogger(__name__)

DEFAULT_SYNC_CONFIG_PATH = "config/sync.yaml"
API_URL_ENV = "VILLAGESYNC_API_URL"


@dataclass
class SyncConfig:
    """All tunable synchronization values.

    Loaded from ``config/sync.yaml``.  Every field has a default so the
    client can start without the file.
    """

    # -- Backend -----------------------------------------------------
    api_base_url: str = c.DEFAULT_API_BASE_URL
    request_timeout_s: float = c.REQUEST_TIMEOUT_S

    # -- Timers ------------------------------------------------------
    resource_poll_s: float = c.RESOURCE_POLL_S
    population_poll_s: float = c.POPULATION_POLL_S
    training_tick_s: float = c.TRAINING_TICK_S
    training_refetch_s: float = c.TRAINING_REFETCH_S
    watchdog_check_s: float = c.WATCHDOG_CHECK_S

    # -- Offline accrual ---------------------------------------------
    offline_threshold_minutes: int = c.OFFLINE_THRESHOLD_MINUTES

    # -- Session -----------------------------------------------------
    expiry_margin_s: float = c.EXPIRY_MARGIN_S
    renewal_max_attempts: int = c.RENEWAL_MAX_ATTEMPTS
    renewal_backoff_s: float = c.RENEWAL_BACKOFF_S

    # -- Event bus ---------------------------------------------------
    donation_republish_delays_s: List[float] = field(
        default_factory=lambda: list(c.DONATION_REPUBLISH_DELAYS_S))

    # -- Local state -------------------------------------------------
    db_path: str = "villagesync.db"
    log_level: str = "INFO"


def load_sync_config(path: str = DEFAULT_SYNC_CONFIG_PATH) -> SyncConfig:
    """Load sync configuration from a YAML file.

    Missing keys fall back to dataclass defaults and unknown keys are
    ignored.  If the file does not exist, a warning is logged and pure
    defaults are returned.  ``VILLAGESYNC_API_URL`` overrides the
    backend URL either way.
    """
    p = Path(path)
    if not p.exists():
        log.warning("Sync config not found at %s — using defaults", p)
        raw: dict = {}
    else:
        with p.open() as f:
            raw = yaml.safe_load(f) or {}
        log.info("Loaded sync config from %s (%d keys)", p, len(raw))

    unknown = sorted(k for k in raw if k not in SyncConfig.__dataclass_fields__)
    if unknown:
        log.warning("Ignoring unknown sync config keys: %s", ", ".join(unknown))

    cfg = SyncConfig(**{
        k: v for k, v in raw.items()
        if k in SyncConfig.__dataclass_fields__
    })

    env_url = os.environ.get(API_URL_ENV)
    if env_url:
        cfg.api_base_url = env_url
    return cfg
