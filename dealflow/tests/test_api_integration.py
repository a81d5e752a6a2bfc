"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database with a manual clock.
"""
from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow.config import QueuePolicy
from dealflow.engines import EngineResult
from dealflow.models import Base, Deal, QueueItem
from dealflow.utils import ManualClock

T0 = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)


@pytest.fixture()
def test_db():
    """In-memory SQLite shared by all connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture()
def engines() -> MagicMock:
    client = MagicMock()
    client.invoke = AsyncMock(return_value=EngineResult(True, {"done": True}))
    return client


@pytest.fixture()
def client(test_db, clock, engines):
    engine, TestSession = test_db
    from dealflow.app import app, db_session, engine_client, get_clock, queue_policy

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[queue_policy] = lambda: QueuePolicy()
    app.dependency_overrides[engine_client] = lambda: engines
    with patch("dealflow.app.init_db"):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_client(client):
    c, TestSession = client
    session = TestSession()
    session.add(Deal(id="D1", fund_id="F1", name="Acme Robotics", created_at=T0))
    session.commit()
    session.close()
    return c, TestSession


class TestDealEndpoints:
    def test_create_and_get(self, client):
        c, _ = client
        resp = c.post("/api/deals", json={"id": "D7", "fund_id": "F2", "name": "Nimbus"})
        assert resp.status_code == 201
        assert resp.json()["auto_analysis_enabled"] is True
        got = c.get("/api/deals/D7").json()
        assert got["name"] == "Nimbus"
        assert got["created_at"] == T0.isoformat()

    def test_create_duplicate(self, seeded_client):
        c, _ = seeded_client
        assert c.post("/api/deals", json={"id": "D1"}).status_code == 409

    def test_create_rejects_bad_id(self, client):
        c, _ = client
        assert c.post("/api/deals", json={"id": "has spaces"}).status_code == 422

    def test_get_missing(self, client):
        c, _ = client
        resp = c.get("/api/deals/nope")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Deal not found"

    def test_list_filter_by_fund(self, seeded_client):
        c, _ = seeded_client
        c.post("/api/deals", json={"id": "D2", "fund_id": "F9"})
        assert [d["id"] for d in c.get("/api/deals", params={"fund_id": "F1"}).json()] == ["D1"]
        assert len(c.get("/api/deals").json()) == 2

    def test_update(self, seeded_client):
        c, _ = seeded_client
        resp = c.put("/api/deals/D1", json={"auto_analysis_enabled": False})
        assert resp.status_code == 200
        assert resp.json()["auto_analysis_enabled"] is False
        assert resp.json()["name"] == "Acme Robotics"


class TestFactEndpoints:
    def test_ingest_and_resolve(self, seeded_client):
        c, _ = seeded_client
        resp = c.post("/api/deals/D1/sources", json={
            "provider": "crunchbase_export",
            "payload": {"founded_date": "2019-03-01", "num_employees": "11-50"},
        })
        assert resp.status_code == 201
        facts = c.get("/api/deals/D1/facts").json()
        assert facts["founding_year"] == {
            "value": 2019, "source": "Crunchbase", "confidence": "high",
            "last_updated": T0.isoformat(), "is_fallback": False,
        }
        assert facts["employee_count"]["value"] == 11
        assert facts["business_model"]["source"] == "fallback"

    def test_single_fact_fallback(self, seeded_client):
        c, _ = seeded_client
        body = c.get("/api/deals/D1/facts/employee_count").json()
        assert body["value"] == "Require more information. Add LinkedIn or Crunchbase"
        assert body["is_fallback"] is True

    def test_unknown_fact(self, seeded_client):
        c, _ = seeded_client
        assert c.get("/api/deals/D1/facts/revenue").status_code == 404

    def test_facts_for_missing_deal(self, client):
        c, _ = client
        assert c.get("/api/deals/ghost/facts").status_code == 404


class TestAnalysisEndpoints:
    def test_eligibility(self, seeded_client):
        c, _ = seeded_client
        body = c.post("/api/deals/D1/eligibility", json={"trigger_reason": "upload"}).json()
        assert body == {"allowed": True, "reason": "", "priority": "normal", "delay_minutes": 5}

    def test_eligibility_rejects_unknown_reason(self, seeded_client):
        c, _ = seeded_client
        assert c.post("/api/deals/D1/eligibility", json={"trigger_reason": "whim"}).status_code == 422

    def test_refresh_then_cooldown(self, seeded_client, clock):
        c, TestSession = seeded_client
        first = c.post("/api/deals/D1/refresh", json={"trigger_reason": "upload", "user_id": "u1"}).json()
        assert first["queued"] is True
        second = c.post("/api/deals/D1/refresh", json={"trigger_reason": "upload"}).json()
        assert second["queued"] is False
        assert second["reason"]

        session = TestSession()
        assert session.get(QueueItem, first["queue_item_id"]).status == "queued"
        session.close()

    def test_block_and_unblock(self, seeded_client):
        c, _ = seeded_client
        resp = c.post("/api/deals/D1/block", json={"hours": 2, "reason": "IC pending"})
        assert resp.status_code == 200
        assert resp.json()["block_reason"] == "IC pending"
        denied = c.post("/api/deals/D1/refresh", json={"trigger_reason": "manual"}).json()
        assert denied["queued"] is False
        assert "blocked" in denied["reason"]
        assert c.delete("/api/deals/D1/block").json()["blocked_until"] is None

    def test_block_validation(self, seeded_client):
        c, _ = seeded_client
        assert c.post("/api/deals/D1/block", json={}).status_code == 400
        assert c.post("/api/deals/nope/block", json={"hours": 1}).status_code == 404

    def test_bulk_refresh(self, seeded_client):
        c, _ = seeded_client
        too_many = c.post("/api/refresh/bulk", json={"deal_ids": [f"D{n}" for n in range(7)]}).json()
        assert too_many["allowed"] is False
        assert too_many["reason"] == "Maximum 5 deals can be analyzed at once"
        ok = c.post("/api/refresh/bulk", json={"deal_ids": ["D1", "D2"]}).json()
        assert ok["allowed"] is True
        assert ok["queued"] == 2
        assert c.post("/api/refresh/bulk", json={"deal_ids": []}).status_code == 400

    def test_history(self, seeded_client):
        c, _ = seeded_client
        c.post("/api/deals/D1/refresh", json={"trigger_reason": "manual", "user_id": "u1"})
        history = c.get("/api/deals/D1/history").json()
        assert history["triggers"][0]["triggered_by"] == "u1"
        assert history["queue_items"][0]["status"] == "queued"
        assert c.get("/api/deals/nope/history").status_code == 404


class TestQueueEndpoints:
    def test_process_and_item(self, seeded_client, engines):
        c, _ = seeded_client
        item_id = c.post("/api/deals/D1/refresh", json={"trigger_reason": "manual"}).json()["queue_item_id"]
        summary = c.post("/api/queue/process").json()
        assert summary == {"status": "ok", "claimed": 1, "completed": 1, "failed": 0}
        engines.invoke.assert_awaited_once()
        item = c.get(f"/api/queue/items/{item_id}").json()
        assert item["status"] == "completed"
        assert item["attempts"] == 1

    def test_missing_item(self, client):
        c, _ = client
        assert c.get("/api/queue/items/12345").status_code == 404

    def test_health_and_maintenance(self, seeded_client):
        c, _ = seeded_client
        health = c.get("/api/queue/health").json()
        assert health["is_healthy"] is True
        counts = c.post("/api/queue/maintenance").json()
        assert counts == {"reclaimed": 0, "exhausted": 0, "retried": 0, "cleaned_up": 0, "stale_removed": 0}
