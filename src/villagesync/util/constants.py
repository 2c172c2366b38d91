"""Sync constants — timer periods, thresholds, retry tuning.

These are product tuning values, not correctness constants.
``SyncConfig`` uses them as defaults.
"""

# -- Timing --------------------------------------------------------------

RESOURCE_POLL_S: float = 30.0
"""Authoritative ledger re-pull period while online."""

POPULATION_POLL_S: float = 10.0
"""Population re-pull period."""

TRAINING_TICK_S: float = 1.0
"""UI countdown tick for training jobs (display only)."""

TRAINING_REFETCH_S: float = 5.0
"""Training queue re-fetch period."""

WATCHDOG_CHECK_S: float = 300.0
"""Credential freshness check period (~5 min)."""

# -- Offline accrual -----------------------------------------------------

OFFLINE_THRESHOLD_MINUTES: int = 2
"""Minimum offline minutes before accrual is surfaced."""

# -- Credentials ---------------------------------------------------------

EXPIRY_MARGIN_S: float = 600.0
"""Renew when the token expires within this many seconds (10 min)."""

RENEWAL_MAX_ATTEMPTS: int = 3
RENEWAL_BACKOFF_S: float = 2.0
"""Base delay between renewal attempts, doubled per attempt."""

# -- Event bus -----------------------------------------------------------

DONATION_REPUBLISH_DELAYS_S: tuple[float, ...] = (1.0, 3.0)
"""Extra invalidations after a donation lands, to absorb backend lag."""

# -- Network -------------------------------------------------------------

DEFAULT_API_BASE_URL: str = "http://localhost:3001"
REQUEST_TIMEOUT_S: float = 10.0
