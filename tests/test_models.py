"""Tests for the value models and formatting helpers."""

import time
from datetime import datetime, timezone

import jwt
import pytest

from villagesync.engine.projection import LedgerProjection
from villagesync.models.credential import SessionCredential, read_expiry
from villagesync.models.ledger import (
    PopulationSnapshot,
    ProductionBuilding,
    ResourceKind,
    ResourceLedger,
)
from villagesync.models.training import TrainingJob
from villagesync.util.formatting import (
    format_amounts,
    format_remaining,
    from_epoch,
    to_epoch,
    whole_seconds_left,
)

W, S = ResourceKind.WOOD, ResourceKind.STONE


# ── ResourceLedger ──────────────────────────────────────────

class TestResourceLedger:
    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            ResourceLedger(wood=-1)

    def test_float_amount_rejected(self):
        with pytest.raises(ValueError):
            ResourceLedger(stone=1.5)

    def test_shortfall_and_can_afford(self):
        ledger = ResourceLedger(wood=10, stone=2)
        assert ledger.shortfall({W: 5, S: 5}) == {S: 3}
        assert not ledger.can_afford({S: 5})
        assert ledger.can_afford({W: 10})

    def test_spend_clamps_at_zero(self):
        ledger = ResourceLedger(wood=10, stone=2).spend({W: 4, S: 5})
        assert (ledger.wood, ledger.stone) == (6, 0)

    def test_same_amounts_ignores_timestamp(self):
        a = ResourceLedger(wood=1, last_synced_at=1.0)
        b = ResourceLedger(wood=1, last_synced_at=2.0)
        assert a.same_amounts(b)
        assert not a.same_amounts(ResourceLedger(wood=2))
        assert not a.same_amounts(None)

    def test_with_population(self):
        ledger = ResourceLedger(wood=1).with_population(PopulationSnapshot(4, 9))
        assert (ledger.population, ledger.max_population, ledger.wood) == (4, 9, 1)


class TestProductionBuilding:
    def test_from_nested_row(self):
        row = {"level": 2, "building_types": {
            "type": "resource_generator", "resource_type": "iron",
            "base_production_rate": 1.5}}
        building = ProductionBuilding.from_row(row)
        assert building.resource_kind is ResourceKind.IRON
        assert building.rate_per_minute == 3.0

    def test_non_generator_skipped(self):
        assert ProductionBuilding.from_row({"type": "barracks"}) is None

    def test_unknown_resource_skipped(self):
        assert ProductionBuilding.from_row(
            {"type": "resource_generator", "resource_type": "gold"}) is None

    def test_negative_rate_rejected(self):
        with pytest.raises(ValueError):
            ProductionBuilding(W, -1)


# ── LedgerProjection ────────────────────────────────────────

class TestLedgerProjection:
    def test_replace_keeps_polled_population(self):
        projection = LedgerProjection("u1")
        projection.replace_population(PopulationSnapshot(5, 20))
        projection.replace(ResourceLedger(wood=7))
        assert projection.ledger.wood == 7
        assert projection.ledger.max_population == 20

    def test_optimistic_flag(self):
        projection = LedgerProjection("u1", ResourceLedger(wood=10))
        projection.apply_optimistic({W: 3})
        assert projection.is_optimistic
        assert projection.ledger.wood == 7
        projection.replace(ResourceLedger(wood=9))
        assert not projection.is_optimistic

    def test_listener_unsubscribe(self):
        projection = LedgerProjection("u1")
        seen = []
        unsubscribe = projection.on_authoritative(seen.append)
        projection.replace(ResourceLedger(wood=1))
        unsubscribe()
        projection.replace(ResourceLedger(wood=2))
        assert [l.wood for l in seen] == [1]

    def test_unit_totals_copied(self):
        projection = LedgerProjection("u1")
        projection.replace_units({"Soldado": 1})
        projection.unit_totals["Soldado"] = 99
        assert projection.unit_totals == {"Soldado": 1}


# ── TrainingJob ─────────────────────────────────────────────

def test_training_job_remaining_never_negative():
    job = TrainingJob(id=1, troop_kind="Soldado", quantity=1, started_at=0, ends_at=120)
    assert job.remaining_seconds(30) == 90
    assert job.remaining_seconds(500) == 0
    assert not job.is_due(119.9)
    assert job.is_due(120)


# ── SessionCredential ───────────────────────────────────────

class TestCredential:
    def test_expiry_read_from_jwt(self):
        exp = int(time.time()) + 3600
        token = jwt.encode({"userId": 1, "exp": exp}, "secret", algorithm="HS256")
        assert read_expiry(token) == exp
        assert SessionCredential.from_tokens(token, "ref").expires_at == exp

    def test_token_without_exp(self):
        token = jwt.encode({"userId": 1}, "secret", algorithm="HS256")
        assert read_expiry(token) is None

    def test_garbage_token(self):
        assert read_expiry("not-a-jwt") is None

    def test_explicit_expiry_wins(self):
        cred = SessionCredential.from_tokens("not-a-jwt", expires_at=100.0)
        assert cred.expires_at == 100.0
        assert cred.seconds_left(40.0) == 60.0


# ── Formatting ──────────────────────────────────────────────

class TestFormatting:
    @pytest.mark.parametrize("seconds, label", [
        (119, "1:59"),
        (0.2, "0:01"),
        (0, "0:00"),
        (-5, "0:00"),
        (3600, "1:00:00"),
        (3725, "1:02:05"),
    ])
    def test_format_remaining(self, seconds, label):
        assert format_remaining(seconds) == label

    def test_whole_seconds_left_rounds_up(self):
        assert whole_seconds_left(1.01) == 2
        assert whole_seconds_left(-1) == 0

    def test_format_amounts(self):
        assert format_amounts({"wood": 5, "iron": 0, "food": 2}) == "+5 wood, +2 food"
        assert format_amounts({}) == "nothing"

    def test_epoch_conversion(self):
        naive = datetime(2024, 1, 1, 12, 0, 0)
        aware = naive.replace(tzinfo=timezone.utc)
        assert to_epoch(naive) == to_epoch(aware)
        assert from_epoch(to_epoch(aware)) == aware
