"""Tests for the orchestration facade: refresh triggers, bulk triggers, bounded wait."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker

from dealflow import analysis_queue as aq
from dealflow import services
from dealflow.config import QueuePolicy
from dealflow.models import Base, Deal, QueueItem, TriggerEvent
from dealflow.resolver import record_source
from dealflow.utils import ManualClock, as_utc

T0 = datetime(2024, 9, 10, 14, 30, tzinfo=UTC)


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(factory):
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture()
def policy() -> QueuePolicy:
    return QueuePolicy()


def _count(session: Session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar()


class TestEnsureFresh:
    def test_admitted_trigger_is_queued_and_recorded(self, session, clock, policy):
        out = services.ensure_fresh(session, "D1", "F1", "upload", user_id="u1", policy=policy, clock=clock)
        assert out.allowed is True
        assert out.queued is True
        assert out.priority == "normal"
        assert out.delay_minutes == 5

        item = session.get(QueueItem, out.queue_item_id)
        assert item.status == aq.QUEUED
        assert item.fund_id == "F1"
        assert as_utc(item.scheduled_for) == T0 + timedelta(minutes=5)
        event = session.execute(select(TriggerEvent)).scalar_one()
        assert (event.trigger_reason, event.triggered_by, event.queue_item_id, event.forced) == (
            "upload", "u1", out.queue_item_id, False)
        assert session.get(Deal, "D1").fund_id == "F1"

    def test_cooldown_between_calls(self, session, clock, policy):
        assert services.ensure_fresh(session, "D1", "F1", "upload", policy=policy, clock=clock).allowed
        clock.advance(hours=1)
        second = services.ensure_fresh(session, "D1", "F1", "upload", policy=policy, clock=clock)
        assert second.allowed is False
        assert second.reason
        clock.advance(hours=23)
        assert services.ensure_fresh(session, "D1", "F1", "upload", policy=policy, clock=clock).allowed

    def test_denial_has_no_side_effects(self, session, clock, policy):
        session.add(Deal(id="D1", fund_id="F1", auto_analysis_enabled=False, created_at=T0))
        session.flush()
        out = services.ensure_fresh(session, "D1", "F1", "scheduled", policy=policy, clock=clock)
        assert out.allowed is False
        assert out.queued is False
        assert out.queue_item_id is None
        assert _count(session, QueueItem) == 0
        assert _count(session, TriggerEvent) == 0

    def test_denied_unknown_deal_is_not_created(self, session, clock, policy):
        out = services.ensure_fresh(session, "NEW", "F1", "bulk", batch_size=9, policy=policy, clock=clock)
        assert out.allowed is False
        assert session.get(Deal, "NEW") is None

    def test_force_overrides_denial(self, session, clock, policy):
        session.add(Deal(id="D1", fund_id="F1", blocked_until=T0 + timedelta(days=1), created_at=T0))
        session.flush()
        out = services.ensure_fresh(session, "D1", "F1", "manual", force=True, policy=policy, clock=clock)
        assert out.allowed is False
        assert out.queued is True
        assert out.forced is True
        assert "blocked" in out.reason
        assert session.execute(select(TriggerEvent)).scalar_one().forced is True

    def test_first_time_flag_set_on_successful_completion(self, session, clock, policy):
        first = services.ensure_fresh(session, "D1", "F1", "first_time", policy=policy, clock=clock)
        assert first.queued is True
        assert first.priority == "high"
        assert session.get(Deal, "D1").first_analysis_completed is False

        [item] = aq.claim_batch(session, 1, 10, policy=policy, clock=clock).items
        assert aq.complete_item(session, item.id, True, clock=clock) is True
        assert session.get(Deal, "D1").first_analysis_completed is True
        again = services.ensure_fresh(session, "D1", "F1", "first_time", policy=policy, clock=clock)
        assert again.allowed is False
        assert again.reason == "Initial analysis already completed"

    def test_failed_first_analysis_can_be_retriggered(self, session, clock, policy):
        services.ensure_fresh(session, "D1", "F1", "first_time", policy=policy, clock=clock)
        [item] = aq.claim_batch(session, 1, 10, policy=policy, clock=clock).items
        aq.complete_item(session, item.id, False, "engine down", clock=clock)

        assert session.get(Deal, "D1").first_analysis_completed is False
        decision = aq.check_eligibility(session, "D1", "first_time", policy=policy, clock=clock)
        assert decision.allowed is True

    def test_duplicate_manual_triggers_both_queue(self, session, clock, policy):
        a = services.ensure_fresh(session, "D1", "F1", "manual", policy=policy, clock=clock)
        b = services.ensure_fresh(session, "D1", "F1", "manual", policy=policy, clock=clock)
        assert a.queued and b.queued
        assert a.queue_item_id != b.queue_item_id

    def test_unknown_reason_raises(self, session, clock, policy):
        with pytest.raises(ValueError):
            services.ensure_fresh(session, "D1", "F1", "nightly", policy=policy, clock=clock)


class TestEnsureFreshBulk:
    def test_cap_applies_to_whole_submission(self, session, clock, policy):
        out = services.ensure_fresh_bulk(session, [f"D{n}" for n in range(6)], policy=policy, clock=clock)
        assert out.allowed is False
        assert out.reason == "Maximum 5 deals can be analyzed at once"
        assert _count(session, QueueItem) == 0

    def test_bulk_uses_stored_fund_ids(self, session, clock, policy):
        session.add_all([
            Deal(id="A", fund_id="FA", created_at=T0),
            Deal(id="B", fund_id="FB", created_at=T0),
        ])
        session.flush()
        out = services.ensure_fresh_bulk(session, ["A", "B", "A"], user_id="u9", policy=policy, clock=clock)
        assert out.allowed is True
        assert out.to_dict()["queued"] == 2
        funds = dict(session.execute(select(QueueItem.deal_id, QueueItem.fund_id)).all())
        assert funds == {"A": "FA", "B": "FB"}
        priorities = set(session.execute(select(QueueItem.priority)).scalars().all())
        assert priorities == {"low"}

    def test_per_deal_denials_reported(self, session, clock, policy):
        session.add(Deal(id="A", fund_id="FA", blocked_until=T0 + timedelta(hours=1), created_at=T0))
        session.flush()
        out = services.ensure_fresh_bulk(session, ["A", "B"], policy=policy, clock=clock)
        by_deal = {r.deal_id: r for r in out.results}
        assert by_deal["A"].queued is False
        assert by_deal["B"].queued is True

    def test_empty_submission(self, session, clock, policy):
        with pytest.raises(ValueError):
            services.ensure_fresh_bulk(session, [], policy=policy, clock=clock)


class TestResolvedFacts:
    def test_get_resolved_facts(self, session, clock):
        record_source(session, "D1", "linkedin_export", {"employees_in_linkedin": "51-200", "founded": 2014},
                      clock=clock)
        facts = services.get_resolved_facts(session, "D1")
        assert facts["employee_count"]["value"] == 51
        assert facts["founding_year"]["source"] == "LinkedIn Export"
        assert facts["business_model"]["is_fallback"] is True

    def test_refresh_does_not_change_resolution(self, session, clock, policy):
        record_source(session, "D1", "crunchbase_export", {"num_employees": 30}, clock=clock)
        before = services.get_resolved_facts(session, "D1")
        services.ensure_fresh(session, "D1", "F1", "manual", policy=policy, clock=clock)
        assert services.get_resolved_facts(session, "D1") == before


class TestAwaitCompletion:
    @pytest.mark.asyncio
    async def test_timeout_leaves_item_untouched(self, factory, clock, policy):
        with factory() as session:
            item_id = aq.enqueue(session, "D1", "F1", "manual", "high", policy=policy, clock=clock)
            session.commit()

        result = await services.await_completion(factory, item_id, timeout=0.05, poll_interval=0.01, policy=policy)
        assert result.timed_out is True
        assert result.finished is False
        assert result.status == aq.QUEUED

        with factory() as session:
            item = session.get(QueueItem, item_id)
            assert item.status == aq.QUEUED
            assert item.attempts == 0

    @pytest.mark.asyncio
    async def test_returns_when_finished(self, factory, clock, policy):
        with factory() as session:
            item_id = aq.enqueue(session, "D1", "F1", "manual", "high", policy=policy, clock=clock)
            aq.claim_batch(session, 10, 10, policy=policy, clock=clock)
            aq.complete_item(session, item_id, False, "no data", clock=clock)
            session.commit()

        result = await services.await_completion(factory, item_id, timeout=1, poll_interval=0.01, policy=policy)
        assert result.finished is True
        assert result.timed_out is False
        assert result.status == aq.FAILED
        assert result.error_message == "no data"

    @pytest.mark.asyncio
    async def test_missing_item(self, factory, policy):
        with pytest.raises(aq.QueueItemNotFound):
            await services.await_completion(factory, 404, timeout=0.05, poll_interval=0.01, policy=policy)
