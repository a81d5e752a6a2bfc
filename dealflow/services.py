"""Orchestration facade shared by the API, the CLI and the worker."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealflow import analysis_queue as aq
from dealflow.config import TRIGGER_BULK, QueuePolicy, get_policy
from dealflow.models import Deal, QueueItem, TriggerEvent
from dealflow.resolver import resolve_deal_all
from dealflow.utils import SYSTEM_CLOCK, Clock, isoformat, json_dump

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Deals
# ---------------------------------------------------------------------------


def get_or_create_deal(
    session: Session, deal_id: str, fund_id: str = "", name: str = "", *, clock: Clock = SYSTEM_CLOCK,
) -> Deal:
    deal = session.get(Deal, deal_id)
    if deal is None:
        deal = Deal(id=deal_id, fund_id=fund_id or "", name=name or "", created_at=clock.now())
        session.add(deal)
        session.flush()
    elif fund_id and not deal.fund_id:
        deal.fund_id = fund_id
    return deal


def deal_summary(deal: Deal) -> dict[str, Any]:
    return {
        "id": deal.id, "fund_id": deal.fund_id, "name": deal.name,
        "blocked_until": isoformat(deal.blocked_until),
        "block_reason": deal.block_reason,
        "first_analysis_completed": deal.first_analysis_completed,
        "auto_analysis_enabled": deal.auto_analysis_enabled,
        "created_at": isoformat(deal.created_at),
    }


def get_resolved_facts(session: Session, deal_id: str) -> dict[str, dict[str, Any]]:
    """Re-derive every fact for a deal from whatever source records exist now."""
    return {fact: rv.to_dict() for fact, rv in resolve_deal_all(session, deal_id).items()}


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


@dataclass
class RefreshOutcome:
    deal_id: str
    allowed: bool
    queued: bool = False
    queue_item_id: int | None = None
    reason: str = ""
    priority: str = "normal"
    delay_minutes: int = 0
    forced: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "deal_id": self.deal_id, "allowed": self.allowed, "queued": self.queued,
            "queue_item_id": self.queue_item_id, "reason": self.reason,
            "priority": self.priority, "delay_minutes": self.delay_minutes,
            "forced": self.forced,
        }


def ensure_fresh(
    session: Session,
    deal_id: str,
    fund_id: str,
    trigger_reason: str,
    *,
    user_id: str | None = None,
    force: bool = False,
    batch_size: int = 1,
    metadata: dict[str, Any] | None = None,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> RefreshOutcome:
    """Ask for a fresh fact set for a deal.

    Denied triggers return immediately with no side effects unless *force*
    is set. Admitted triggers are queued and recorded; the caller commits.
    Enrichment itself happens later, in the worker.
    """
    policy = policy or get_policy()
    decision = aq.check_eligibility(
        session, deal_id, trigger_reason, user_id,
        batch_size=batch_size, policy=policy, clock=clock,
    )
    if not decision.allowed and not force:
        return RefreshOutcome(
            deal_id=deal_id, allowed=False, reason=decision.reason,
            priority=decision.priority, delay_minutes=decision.delay_minutes,
        )

    deal = get_or_create_deal(session, deal_id, fund_id, clock=clock)
    item_id = aq.enqueue(
        session, deal_id, fund_id or deal.fund_id, trigger_reason,
        decision.priority, decision.delay_minutes,
        metadata=metadata, policy=policy, clock=clock,
    )
    session.add(TriggerEvent(
        deal_id=deal_id,
        trigger_reason=trigger_reason,
        triggered_by=user_id or "",
        triggered_at=clock.now(),
        queue_item_id=item_id,
        forced=not decision.allowed,
        metadata_json=json_dump(metadata or {}),
    ))
    session.flush()

    if not decision.allowed:
        log.warning("Forced %s trigger for deal %s past denial: %s", trigger_reason, deal_id, decision.reason)
    return RefreshOutcome(
        deal_id=deal_id, allowed=decision.allowed, queued=True, queue_item_id=item_id,
        reason=decision.reason, priority=decision.priority,
        delay_minutes=decision.delay_minutes, forced=not decision.allowed,
    )


@dataclass
class BulkRefreshOutcome:
    allowed: bool
    reason: str = ""
    results: list[RefreshOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed, "reason": self.reason,
            "queued": sum(1 for r in self.results if r.queued),
            "results": [r.to_dict() for r in self.results],
        }


def ensure_fresh_bulk(
    session: Session,
    deal_ids: list[str],
    *,
    user_id: str | None = None,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> BulkRefreshOutcome:
    """Trigger a bulk refresh. The batch cap applies to the whole submission."""
    policy = policy or get_policy()
    unique_ids = list(dict.fromkeys(d for d in deal_ids if d))
    if not unique_ids:
        raise ValueError("deal_ids must not be empty")
    if len(unique_ids) > policy.bulk_batch_cap:
        return BulkRefreshOutcome(
            allowed=False, reason=f"Maximum {policy.bulk_batch_cap} deals can be analyzed at once",
        )

    fund_ids = dict(session.execute(
        select(Deal.id, Deal.fund_id).where(Deal.id.in_(unique_ids))
    ).all())
    results = [
        ensure_fresh(
            session, deal_id, fund_ids.get(deal_id, ""), TRIGGER_BULK,
            user_id=user_id, batch_size=len(unique_ids), policy=policy, clock=clock,
        )
        for deal_id in unique_ids
    ]
    return BulkRefreshOutcome(allowed=True, results=results)


# ---------------------------------------------------------------------------
# Bounded wait
# ---------------------------------------------------------------------------


@dataclass
class WaitResult:
    item_id: int
    status: str
    finished: bool
    timed_out: bool = False
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id, "status": self.status, "finished": self.finished,
            "timed_out": self.timed_out, "error_message": self.error_message,
        }


async def await_completion(
    session_factory: Callable[[], Session],
    item_id: int,
    *,
    timeout: float | None = None,
    poll_interval: float = 1.0,
    policy: QueuePolicy | None = None,
) -> WaitResult:
    """Poll a queue item until it finishes or *timeout* runs out.

    Read-only: a timeout only abandons the wait, the item keeps its state.
    """
    policy = policy or get_policy()
    timeout = policy.wait_timeout_seconds if timeout is None else timeout

    def _snapshot() -> tuple[str, str | None]:
        with session_factory() as session:
            item = session.get(QueueItem, item_id)
            if item is None:
                raise aq.QueueItemNotFound(item_id)
            return item.status, item.error_message

    async def _poll() -> WaitResult:
        while True:
            status, error = _snapshot()
            if status in aq.TERMINAL_STATUSES:
                return WaitResult(item_id, status, finished=True, error_message=error)
            log.debug("Queue item %d still %s", item_id, status)
            await asyncio.sleep(poll_interval)

    try:
        return await asyncio.wait_for(_poll(), timeout=timeout)
    except asyncio.TimeoutError:
        status, error = _snapshot()
        log.info("Stopped waiting for queue item %d after %.1fs (status %s)", item_id, timeout, status)
        return WaitResult(item_id, status, finished=status in aq.TERMINAL_STATUSES,
                          timed_out=True, error_message=error)
