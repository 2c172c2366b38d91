"""Remote state gateway — request/response calls to the authoritative backend.

Wraps an ``httpx.AsyncClient``.  Every call returns typed model objects
or raises a :mod:`villagesync.network.errors` failure:

- transport errors, timeouts, 5xx → ``TransientFailure``
- bodies that do not decode or do not match the expected payload
  → ``TransientFailure``
- 401/403 → one watchdog renewal, one retry, then ``AuthorizationFailed``
- 4xx or ``success: false`` → ``ValidationRejected``
- 404/409 on training completion → ``AlreadyCompleted``

Mutating calls always hand back an authoritative ledger snapshot; when
the backend does not echo one, the gateway fetches it.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, TypeVar

import httpx

from villagesync.models.credential import SessionCredential
from villagesync.models.ledger import (
    PopulationSnapshot,
    ProductionBuilding,
    ResourceKind,
    ResourceLedger,
)
from villagesync.models.mutation import MutationResult
from villagesync.models.training import TrainingJob
from villagesync.network.errors import (
    AlreadyCompleted,
    AuthorizationFailed,
    TransientFailure,
    ValidationRejected,
)
from villagesync.network.rest_models import (
    AccrualPayload,
    CollectPayload,
    CompleteTrainingRequest,
    CreateBuildingRequest,
    DonateRequest,
    Envelope,
    LedgerPayload,
    MoveBuildingRequest,
    MutationPayload,
    OfflineRequest,
    PopulationPayload,
    RefreshRequest,
    SessionPayload,
    StartTrainingRequest,
    UpgradeBuildingRequest,
    parse_training_queue,
    parse_unit_totals,
)
from villagesync.util.constants import DEFAULT_API_BASE_URL, REQUEST_TIMEOUT_S

if TYPE_CHECKING:
    from villagesync.engine.watchdog import SessionWatchdog

log = logging.getLogger(__name__)

T = TypeVar("T")
Parser = Callable[[Any], T]

_AUTH_STATUSES = (401, 403)
_CONFLICT_STATUSES = (404, 409)


def _as_mutation(data: Any) -> MutationPayload:
    return MutationPayload.model_validate(data if isinstance(data, dict) else {})


def _as_buildings(rows: Any) -> list[ProductionBuilding]:
    buildings = []
    for row in rows or []:
        building = ProductionBuilding.from_row(row)
        if building is not None:
            buildings.append(building)
    return buildings


class RemoteStateGateway:
    """Typed client for the game backend.

    Args:
        base_url: Backend root, e.g. ``http://localhost:3001``.
        client: Pre-built httpx client (tests pass one with an ASGI
            transport). When omitted the gateway creates and owns one.
        timeout: Per-request timeout in seconds.
        clock: Epoch-seconds source used to stamp snapshots.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = REQUEST_TIMEOUT_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._clock = clock
        self._watchdog: Optional[SessionWatchdog] = None
        self.request_count: int = 0

    def use_watchdog(self, watchdog: SessionWatchdog) -> None:
        """Take bearer tokens from ``watchdog`` and let it renew on 401."""
        self._watchdog = watchdog

    @property
    def watchdog(self) -> Optional[SessionWatchdog]:
        return self._watchdog

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- Transport -------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        token = self._watchdog.current_token() if self._watchdog is not None else ""
        if not token:
            log.debug("Request without auth token")
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        method: str,
        path: str,
        parse: Parser[T],
        payload: Optional[Mapping[str, Any]] = None,
        auth: bool = True,
        conflict_means_done: bool = False,
    ) -> T:
        """Send one call and return the envelope's ``data`` run through ``parse``.

        An authorization failure triggers exactly one renewal-and-retry.
        """
        for attempt in range(2):
            headers = self._auth_headers() if auth else {}
            self.request_count += 1
            try:
                response = await self._client.request(method, path, json=payload, headers=headers)
            except httpx.TimeoutException as e:
                raise TransientFailure(f"Timeout calling {method} {path}") from e
            except httpx.TransportError as e:
                raise TransientFailure(f"Network error calling {method} {path}: {e}") from e

            if auth and response.status_code in _AUTH_STATUSES:
                if attempt == 0 and self._watchdog is not None:
                    log.info("%s %s rejected (%d) — renewing credential",
                             method, path, response.status_code)
                    if await self._watchdog.renew_after_rejection():
                        continue
                raise AuthorizationFailed(
                    f"Authorization rejected for {method} {path}", response.status_code,
                )
            data = self._unwrap(response, method, path, conflict_means_done)
            try:
                return parse(data)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                raise TransientFailure(
                    f"Malformed payload from {method} {path}: {e}", response.status_code,
                ) from e
        raise AuthorizationFailed(f"Authorization rejected for {method} {path}")

    @staticmethod
    def _unwrap(response: httpx.Response, method: str, path: str,
                conflict_means_done: bool) -> Any:
        status = response.status_code
        try:
            body = Envelope.model_validate(response.json())
        except ValueError as e:
            raise TransientFailure(f"Undecodable response from {method} {path}", status) from e

        if status >= 500:
            raise TransientFailure(body.message or f"HTTP {status} from {path}", status)
        if conflict_means_done and status in _CONFLICT_STATUSES:
            raise AlreadyCompleted(body.message or "Already completed", status)
        if status >= 400 or not body.success:
            raise ValidationRejected(body.message or f"Request rejected by {path}", status)
        return body.data

    def _snapshot(self, data: Any) -> ResourceLedger:
        return LedgerPayload.model_validate(data or {}).to_ledger(self._clock())

    async def _mutation_result(self, payload: MutationPayload,
                               with_units: bool = False) -> MutationResult:
        snapshot = payload.snapshot()
        ledger = snapshot.to_ledger(self._clock()) if snapshot else await self.get_ledger()
        units = payload.troops
        if with_units and units is None:
            units = await self.get_unit_totals()
        return MutationResult(ledger=ledger, unit_totals=units)

    # -- Resources -------------------------------------------------------

    async def get_ledger(self) -> ResourceLedger:
        """Current authoritative resource ledger."""
        return await self._request("GET", "/api/resources/", self._snapshot)

    async def get_population(self) -> PopulationSnapshot:
        return await self._request(
            "GET", "/api/village/population",
            lambda data: PopulationPayload.model_validate(data or {}).to_snapshot(),
        )

    async def get_buildings(self) -> list[ProductionBuilding]:
        """Generator buildings as ``{resource_kind, rate_per_minute}``."""
        return await self._request("GET", "/api/village/buildings", _as_buildings)

    async def preview_offline_accrual(self, elapsed_minutes: int) -> dict[ResourceKind, int]:
        """Server-computed accrual for ``elapsed_minutes`` (not credited)."""
        return await self._request(
            "POST", "/api/resources/calculate-offline",
            lambda data: AccrualPayload.model_validate(data or {}).to_amounts(),
            OfflineRequest(minutes_offline=elapsed_minutes).model_dump(by_alias=True),
        )

    async def commit_offline_accrual(self, elapsed_minutes: int) -> ResourceLedger:
        """Credit offline accrual; returns the new total ledger."""
        payload = await self._request(
            "POST", "/api/resources/collect-offline",
            lambda data: CollectPayload.model_validate(data or {}),
            OfflineRequest(minutes_offline=elapsed_minutes).model_dump(by_alias=True),
        )
        if payload.new_total_resources is None:
            return await self.get_ledger()
        return payload.new_total_resources.to_ledger(self._clock())

    # -- Training --------------------------------------------------------

    async def get_training_queue(self) -> list[TrainingJob]:
        return await self._request(
            "GET", "/api/village/training-queue", parse_training_queue,
        )

    async def get_unit_totals(self) -> dict[str, int]:
        return await self._request("GET", "/api/village/user-troops", parse_unit_totals)

    async def start_training(self, troop_type_id: int, building_id: int,
                             quantity: int) -> MutationResult:
        body = StartTrainingRequest(
            troop_type_id=troop_type_id, building_id=building_id, quantity=quantity,
        )
        payload = await self._request(
            "POST", "/api/village/training/start", _as_mutation,
            body.model_dump(by_alias=True),
        )
        return await self._mutation_result(payload)

    async def complete_training(self, job_id: int) -> MutationResult:
        """Ask the server to complete a due job.

        Raises:
            AlreadyCompleted: The job was completed by an earlier request.
        """
        payload = await self._request(
            "POST", "/api/village/training/complete", _as_mutation,
            CompleteTrainingRequest(queue_id=job_id).model_dump(by_alias=True),
            conflict_means_done=True,
        )
        return await self._mutation_result(payload, with_units=True)

    # -- Buildings & donations -------------------------------------------

    async def create_building(self, building_type_id: int, x: int, y: int,
                              level: int = 1) -> MutationResult:
        """Place a new building; the server charges its cost."""
        body = CreateBuildingRequest(
            building_type_id=building_type_id, position_x=x, position_y=y, level=level,
        )
        payload = await self._request(
            "POST", "/api/village/buildings", _as_mutation, body.model_dump(by_alias=True),
        )
        return await self._mutation_result(payload)

    async def upgrade_building(self, building_id: int, new_level: int) -> MutationResult:
        payload = await self._request(
            "PUT", f"/api/village/buildings/{building_id}/upgrade", _as_mutation,
            UpgradeBuildingRequest(new_level=new_level).model_dump(by_alias=True),
        )
        return await self._mutation_result(payload)

    async def move_building(self, building_id: int, x: int, y: int) -> MutationResult:
        payload = await self._request(
            "PUT", f"/api/village/buildings/{building_id}/move", _as_mutation,
            MoveBuildingRequest(x=x, y=y).model_dump(by_alias=True),
        )
        return await self._mutation_result(payload)

    async def delete_building(self, building_id: int) -> MutationResult:
        payload = await self._request(
            "DELETE", f"/api/village/buildings/{building_id}", _as_mutation,
        )
        return await self._mutation_result(payload)

    async def donate(self, recipient_id: str,
                     amounts: Mapping[ResourceKind, int]) -> MutationResult:
        """Send resources to another player; returns the sender's ledger."""
        body = DonateRequest(
            recipient_id=recipient_id,
            **{kind.value: int(amount) for kind, amount in amounts.items()},
        )
        payload = await self._request(
            "POST", "/api/map/donate", _as_mutation, body.model_dump(by_alias=True),
        )
        return await self._mutation_result(payload)

    # -- Session ---------------------------------------------------------

    async def refresh_session(self, credential: SessionCredential) -> SessionCredential:
        """Exchange the refresh token for a new credential.

        Raises:
            AuthorizationFailed: No refresh token is available.
        """
        if not credential.refresh_token:
            raise AuthorizationFailed("No refresh token available")
        session = await self._request(
            "POST", "/api/auth/refresh",
            lambda data: SessionPayload.model_validate(data or {}),
            RefreshRequest(refresh_token=credential.refresh_token).model_dump(),
            auth=False,
        )
        return SessionCredential.from_tokens(
            session.access_token,
            refresh_token=session.refresh_token or credential.refresh_token,
            expires_at=session.expires_at,
        )
