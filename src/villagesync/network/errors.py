"""Gateway failure taxonomy.

- ``ValidationRejected``: business rule said no. Informational, never retried.
- ``AuthorizationFailed``: credential rejected after one renewal-and-retry.
- ``TransientFailure``: network/technical trouble. Retry later.
- ``AlreadyCompleted``: idempotent conflict, treat as success.
"""

from __future__ import annotations

from typing import Mapping, Optional


class GatewayError(Exception):
    """Base class for failures raised by the remote state gateway.

    Args:
        message: Human-readable reason (usually the server's ``message``).
        status: HTTP status code, if the failure came from a response.
    """

    def __init__(self, message: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class ValidationRejected(GatewayError):
    """The backend rejected the action on business rules."""


class InsufficientResources(ValidationRejected):
    """Local fast-fail guard: the cached ledger cannot cover the cost."""

    def __init__(self, shortfall: Mapping) -> None:
        missing = ", ".join(f"{getattr(k, 'value', k)}={v}" for k, v in shortfall.items())
        super().__init__(f"Not enough resources (missing {missing})")
        self.shortfall = dict(shortfall)


class AuthorizationFailed(GatewayError):
    """The credential was rejected and renewal did not help."""


class TransientFailure(GatewayError):
    """Network or server trouble; the request may succeed later."""


class AlreadyCompleted(GatewayError):
    """The requested transition already happened on the server."""
