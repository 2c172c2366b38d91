"""Shared fixtures: a fake clock and an in-process fake game backend.

The backend is a small FastAPI app holding one village in memory.  The
gateway talks to it through ``httpx.ASGITransport``, so every test runs
the real HTTP, envelope and error-mapping code without a server.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from httpx import ASGITransport, AsyncClient

from villagesync.engine.watchdog import SessionWatchdog
from villagesync.models.credential import SessionCredential
from villagesync.network.gateway import RemoteStateGateway
from villagesync.persistence.local_store import LocalStore
from villagesync.util.events import EventBus

USER_ID = "u1"
OTHER_USER_ID = "u2"
START_TIME = 1_700_000_000.0


# ── Helpers ─────────────────────────────────────────────────

class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Awaitable stand-in for ``asyncio.sleep`` that records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# ── Fake backend ────────────────────────────────────────────

class FakeBackend:
    """In-memory state of one player's village, plus failure injection.

    ``fail_next[path] = status`` makes the next call to ``path`` answer
    with that status.  ``respond_next[path] = data`` makes it answer
    successfully with ``data`` instead of the usual payload.
    ``valid_tokens`` lists accepted bearer tokens.
    """

    TRAINING_SECONDS = 120
    TROOP_COSTS = {1: {"wood": 10, "food": 5}}
    TROOP_NAMES = {1: "Soldado"}
    BUILDING_COSTS = {4: {"wood": 30, "stone": 10}}
    UPGRADE_COSTS = {"wood": 10, "stone": 5}

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.resources: dict[str, int] = {
            "wood": 100, "stone": 50, "food": 80, "iron": 20,
        }
        self.population = {"current": 3, "limit": 10}
        self.rates = {"wood": 5, "stone": 3, "food": 4, "iron": 2}
        self.buildings = [
            {"id": 1, "level": 1, "building_types": {
                "type": "resource_generator", "resource_type": "wood",
                "base_production_rate": 5}},
            {"id": 2, "level": 3, "building_types": {
                "type": "resource_generator", "resource_type": "stone",
                "base_production_rate": 1}},
            {"id": 3, "level": 2, "building_types": {"type": "barracks"}},
        ]
        self.queue: dict[int, dict[str, Any]] = {}
        self.units: dict[str, int] = {"Soldado": 0}
        self.donations: list[dict[str, Any]] = []
        self.valid_tokens: set[str] = {"tok-1"}
        self.refresh_tokens: dict[str, str] = {"ref-1": "tok-2"}
        self.fail_next: dict[str, int] = {}
        self.respond_next: dict[str, Any] = {}
        self.calls: list[tuple[str, str]] = []
        self._next_job_id = 1

    # -- Direct state helpers used by tests --

    def add_job(self, quantity: int = 1, started_at: Optional[float] = None,
                seconds: Optional[float] = None) -> int:
        job_id = self._next_job_id
        self._next_job_id += 1
        start = self.clock() if started_at is None else started_at
        self.queue[job_id] = {
            "id": job_id,
            "troop_name": "Soldado",
            "quantity": quantity,
            "start_time": _iso(start),
            "end_time": _iso(start + (seconds or self.TRAINING_SECONDS)),
            "end_ts": start + (seconds or self.TRAINING_SECONDS),
            "status": "training",
        }
        return job_id

    def ledger(self) -> dict[str, Any]:
        return {
            **self.resources,
            "population": self.population["current"],
            "max_population": self.population["limit"],
            "last_updated": _iso(self.clock()),
        }

    def count(self, method: str, path: str) -> int:
        return self.calls.count((method, path))


def _ok(data: Any = None, message: str = "") -> JSONResponse:
    return JSONResponse({"success": True, "message": message, "data": data})


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "message": message, "data": None},
                        status_code=status)


def create_backend_app(backend: FakeBackend) -> FastAPI:
    """Build the FastAPI app serving ``backend``."""
    app = FastAPI()

    @app.middleware("http")
    async def _gate(request: Request, call_next):
        path = request.url.path
        backend.calls.append((request.method, path))
        status = backend.fail_next.pop(path, None)
        if status is not None:
            return _error(status, f"injected failure {status}")
        if path in backend.respond_next:
            return _ok(backend.respond_next.pop(path))
        if path != "/api/auth/refresh":
            token = request.headers.get("authorization", "").removeprefix("Bearer ")
            if token not in backend.valid_tokens:
                return _error(401, "Token inválido")
        return await call_next(request)

    # -- Resources --

    @app.get("/api/resources/")
    async def get_resources():
        return _ok(backend.ledger())

    @app.get("/api/village/population")
    async def get_population():
        return _ok(dict(backend.population))

    @app.get("/api/village/buildings")
    async def get_buildings():
        return _ok(backend.buildings)

    @app.post("/api/resources/calculate-offline")
    async def calculate_offline(request: Request):
        minutes = (await request.json())["minutesOffline"]
        produced = {k: math.floor(r * minutes) for k, r in backend.rates.items()}
        return _ok({**produced, "totalMinutes": minutes, "buildingsCount": 2})

    @app.post("/api/resources/collect-offline")
    async def collect_offline(request: Request):
        minutes = (await request.json())["minutesOffline"]
        produced = {k: math.floor(r * minutes) for k, r in backend.rates.items()}
        for kind, amount in produced.items():
            backend.resources[kind] += amount
        return _ok({
            "collectedResources": produced,
            "newTotalResources": backend.ledger(),
            "minutesOffline": minutes,
        })

    # -- Training --

    @app.get("/api/village/training-queue")
    async def training_queue():
        return _ok([
            {k: v for k, v in job.items() if k != "end_ts"}
            for job in backend.queue.values()
        ])

    @app.get("/api/village/user-troops")
    async def user_troops():
        return _ok([{"troop_name": name, "quantity": qty}
                    for name, qty in backend.units.items()])

    @app.post("/api/village/training/start")
    async def start_training(request: Request):
        body = await request.json()
        costs = backend.TROOP_COSTS.get(body["troopTypeId"])
        if costs is None:
            return _error(404, "Tipo de tropa no encontrado")
        quantity = body["quantity"]
        for kind, cost in costs.items():
            if backend.resources[kind] < cost * quantity:
                return _error(400, "Recursos insuficientes")
        for kind, cost in costs.items():
            backend.resources[kind] -= cost * quantity
        backend.add_job(quantity=quantity)
        return _ok({"resources": backend.ledger()})

    @app.post("/api/village/training/complete")
    async def complete_training(request: Request):
        job_id = (await request.json())["queueId"]
        job = backend.queue.get(job_id)
        if job is None:
            return _error(404, "Entrenamiento no encontrado")
        if backend.clock() < job["end_ts"]:
            return _error(400, "El entrenamiento aún no ha terminado")
        del backend.queue[job_id]
        backend.units[job["troop_name"]] = backend.units.get(job["troop_name"], 0) + job["quantity"]
        return _ok({"newResources": backend.ledger(), "troops": dict(backend.units)})

    # -- Buildings & donations --

    @app.post("/api/village/buildings")
    async def create_building(request: Request):
        body = await request.json()
        costs = backend.BUILDING_COSTS.get(body["buildingTypeId"])
        if costs is None:
            return _error(400, "Tipo de edificio inválido")
        for kind, cost in costs.items():
            if backend.resources[kind] < cost:
                return _error(400, "Recursos insuficientes")
        for kind, cost in costs.items():
            backend.resources[kind] -= cost
        row = {"id": max(r["id"] for r in backend.buildings) + 1, "level": body["level"],
               "x": body["positionX"], "y": body["positionY"],
               "building_types": {"type": "house"}}
        backend.buildings.append(row)
        # resources travel beside ``data``, not inside it
        return JSONResponse({"success": True, "message": "Edificio creado exitosamente",
                             "data": row, "newResources": dict(backend.resources)})

    @app.put("/api/village/buildings/{building_id}/upgrade")
    async def upgrade_building(building_id: int, request: Request):
        new_level = (await request.json())["newLevel"]
        for row in backend.buildings:
            if row["id"] == building_id:
                costs = {k: v * new_level for k, v in backend.UPGRADE_COSTS.items()}
                for kind, cost in costs.items():
                    if backend.resources[kind] < cost:
                        return _error(400, "Recursos insuficientes para mejorar")
                for kind, cost in costs.items():
                    backend.resources[kind] -= cost
                row["level"] = new_level
                return _ok({"building": row, "newResources": backend.ledger(),
                            "upgradeCosts": costs})
        return _error(404, "Edificio no encontrado")

    @app.put("/api/village/buildings/{building_id}/move")
    async def move_building(building_id: int, request: Request):
        body = await request.json()
        for row in backend.buildings:
            if row["id"] == building_id:
                row["x"], row["y"] = body["newPositionX"], body["newPositionY"]
                return _ok({"id": building_id})
        return _error(404, "Edificio no encontrado")

    @app.delete("/api/village/buildings/{building_id}")
    async def delete_building(building_id: int):
        backend.buildings = [r for r in backend.buildings if r["id"] != building_id]
        backend.resources["wood"] += 20
        return _ok({"resources": backend.ledger()})

    @app.post("/api/map/donate")
    async def donate(request: Request):
        body = await request.json()
        amounts = {k: int(body.get(k, 0)) for k in ("wood", "stone", "food", "iron")}
        for kind, amount in amounts.items():
            if backend.resources[kind] < amount:
                return _error(400, "Recursos insuficientes")
        for kind, amount in amounts.items():
            backend.resources[kind] -= amount
        backend.donations.append({"recipient": body["recipientId"], **amounts})
        return _ok({"resources": backend.ledger()})

    # -- Session --

    @app.post("/api/auth/refresh")
    async def refresh(request: Request):
        refresh_token = (await request.json()).get("refresh_token", "")
        new_token = backend.refresh_tokens.get(refresh_token)
        if new_token is None:
            return _error(401, "Refresh token inválido")
        backend.valid_tokens.add(new_token)
        return _ok({
            "access_token": new_token,
            "refresh_token": refresh_token,
            "expires_at": backend.clock() + 3600,
        })

    return app


# ── Fixtures ────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return FakeBackend(clock)


@pytest.fixture
def bus():
    """Event bus without delayed donation republishes."""
    return EventBus(republish_delays=())


@pytest_asyncio.fixture
async def http_client(backend):
    transport = ASGITransport(app=create_backend_app(backend))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def gateway(http_client, clock):
    """Gateway signed in with ``tok-1`` / ``ref-1``."""
    gw = RemoteStateGateway(client=http_client, clock=clock)
    watchdog = SessionWatchdog(
        USER_ID, SessionCredential("tok-1", expires_at=None, refresh_token="ref-1"),
        gw.refresh_session, clock=clock, sleep=RecordingSleep(),
    )
    gw.use_watchdog(watchdog)
    yield gw
    await gw.close()


@pytest_asyncio.fixture
async def store(tmp_path):
    """Fresh local store per test."""
    local = LocalStore(str(tmp_path / "client.db"))
    await local.connect()
    yield local
    await local.close()
