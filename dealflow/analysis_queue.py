"""Analysis queue lifecycle: admission control, atomic claiming, recovery.

State machine::

    enqueue -> queued --claim_batch--> processing --complete_item--> completed
                 ^                        |                      +-> failed
                 +---- reclaim_stuck -----+  (attempts < max)
                 +---- requeue_failed ------------------------------ failed
                                          +-- reclaim_stuck (exhausted) -> failed

Only ``claim_batch`` serializes workers: two items for the same deal may be
queued side by side, but a deal never has more than one item processing.
Every function takes an injectable clock; nothing here reads the wall
clock directly. Callers own the transaction and commit.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.orm import Session, aliased

from dealflow.config import (
    TRIGGER_FIRST_TIME,
    TRIGGER_MANUAL,
    VALID_PRIORITIES,
    VALID_TRIGGER_REASONS,
    QueuePolicy,
    get_policy,
)
from dealflow.models import Deal, QueueItem, TriggerEvent
from dealflow.utils import SYSTEM_CLOCK, Clock, as_utc, isoformat, json_dump, json_parse

log = logging.getLogger(__name__)

QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = (COMPLETED, FAILED)


class QueueItemNotFound(LookupError):
    pass


class DealNotFound(LookupError):
    pass


def _validate_reason(trigger_reason: str) -> None:
    if trigger_reason not in VALID_TRIGGER_REASONS:
        raise ValueError(
            f"Unknown trigger reason {trigger_reason!r}. Must be one of: {', '.join(sorted(VALID_TRIGGER_REASONS))}"
        )


def _require_id(value: str, label: str) -> None:
    if not value or not str(value).strip():
        raise ValueError(f"{label} is required")


def _format_remaining(delta: timedelta) -> str:
    minutes = max(int(delta.total_seconds() // 60), 1)
    hours, minutes = divmod(minutes, 60)
    if hours and minutes:
        return f"{hours}h {minutes}m"
    if hours:
        return f"{hours}h"
    return f"{minutes}m"


# ---------------------------------------------------------------------------
# Admission control
# ---------------------------------------------------------------------------


@dataclass
class EligibilityDecision:
    allowed: bool
    reason: str = ""
    priority: str = "normal"
    delay_minutes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed, "reason": self.reason,
            "priority": self.priority, "delay_minutes": self.delay_minutes,
        }


def last_triggered_at(session: Session, deal_id: str, trigger_reason: str) -> datetime | None:
    value = session.execute(
        select(func.max(TriggerEvent.triggered_at))
        .where(TriggerEvent.deal_id == deal_id, TriggerEvent.trigger_reason == trigger_reason)
    ).scalar()
    return as_utc(value)


def last_trigger_map(session: Session, deal_id: str) -> dict[str, datetime]:
    """Latest trigger time per reason for one deal."""
    rows = session.execute(
        select(TriggerEvent.trigger_reason, func.max(TriggerEvent.triggered_at))
        .where(TriggerEvent.deal_id == deal_id)
        .group_by(TriggerEvent.trigger_reason)
    ).all()
    return {reason: as_utc(ts) for reason, ts in rows}


def check_eligibility(
    session: Session,
    deal_id: str,
    trigger_reason: str,
    user_id: str | None = None,
    *,
    batch_size: int = 1,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> EligibilityDecision:
    """Decide whether *trigger_reason* may queue an analysis for *deal_id* right now.

    Read-only. Denials carry a reason that can be shown to the user as is.
    Checks run in order: batch cap, explicit block, auto-analysis switch,
    first-analysis-once rule, per-reason cooldown.
    """
    _require_id(deal_id, "deal_id")
    _validate_reason(trigger_reason)
    policy = policy or get_policy()
    now = clock.now()

    def deny(reason: str) -> EligibilityDecision:
        log.info("Trigger %s for deal %s denied (user=%s): %s", trigger_reason, deal_id, user_id, reason)
        return EligibilityDecision(
            allowed=False, reason=reason,
            priority=policy.priority_for(trigger_reason),
            delay_minutes=policy.delay_for(trigger_reason),
        )

    if batch_size > policy.bulk_batch_cap:
        return deny(f"Maximum {policy.bulk_batch_cap} deals can be analyzed at once")

    deal = session.get(Deal, deal_id)
    if deal is not None:
        blocked_until = as_utc(deal.blocked_until)
        if blocked_until is not None and blocked_until > now:
            msg = f"Analysis blocked until {blocked_until:%Y-%m-%d %H:%M} UTC"
            if deal.block_reason:
                msg += f" ({deal.block_reason})"
            return deny(msg)
        if not deal.auto_analysis_enabled and trigger_reason != TRIGGER_MANUAL:
            return deny("Auto-analysis disabled for this deal")
        if trigger_reason == TRIGGER_FIRST_TIME and deal.first_analysis_completed:
            return deny("Initial analysis already completed")

    cooldown = policy.cooldown_for(trigger_reason)
    if cooldown > timedelta(0):
        last = last_triggered_at(session, deal_id, trigger_reason)
        if last is not None and now < last + cooldown:
            remaining = last + cooldown - now
            return deny(
                f"A {trigger_reason} analysis already ran for this deal recently. "
                f"Try again in {_format_remaining(remaining)}"
            )

    return EligibilityDecision(
        allowed=True,
        priority=policy.priority_for(trigger_reason),
        delay_minutes=policy.delay_for(trigger_reason),
    )


def block_deal(
    session: Session,
    deal_id: str,
    *,
    until: datetime | None = None,
    hours: float | None = None,
    reason: str = "",
    clock: Clock = SYSTEM_CLOCK,
) -> Deal:
    """Suppress new triggers for a deal until a point in time. Running items are not aborted."""
    deal = session.get(Deal, deal_id)
    if deal is None:
        raise DealNotFound(deal_id)
    if until is None:
        if hours is None:
            raise ValueError("Either until or hours is required")
        until = clock.now() + timedelta(hours=hours)
    deal.blocked_until = as_utc(until)
    deal.block_reason = reason
    session.flush()
    log.info("Deal %s blocked until %s", deal_id, isoformat(deal.blocked_until))
    return deal


def unblock_deal(session: Session, deal_id: str) -> Deal:
    deal = session.get(Deal, deal_id)
    if deal is None:
        raise DealNotFound(deal_id)
    deal.blocked_until = None
    deal.block_reason = ""
    session.flush()
    log.info("Deal %s unblocked", deal_id)
    return deal


# ---------------------------------------------------------------------------
# Enqueue & claim
# ---------------------------------------------------------------------------


def enqueue(
    session: Session,
    deal_id: str,
    fund_id: str,
    trigger_reason: str,
    priority: str = "normal",
    delay_minutes: float = 0,
    *,
    max_attempts: int | None = None,
    metadata: dict[str, Any] | None = None,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> int:
    """Insert a queued item and return its id. Duplicates per deal are allowed."""
    _require_id(deal_id, "deal_id")
    _validate_reason(trigger_reason)
    if priority not in VALID_PRIORITIES:
        raise ValueError(f"Unknown priority {priority!r}. Must be one of: {', '.join(sorted(VALID_PRIORITIES))}")
    if delay_minutes < 0:
        raise ValueError("delay_minutes must not be negative")
    policy = policy or get_policy()
    now = clock.now()

    item = QueueItem(
        deal_id=deal_id,
        fund_id=fund_id or "",
        priority=priority,
        trigger_reason=trigger_reason,
        status=QUEUED,
        attempts=0,
        max_attempts=max_attempts or policy.max_attempts,
        created_at=now,
        scheduled_for=now + timedelta(minutes=delay_minutes),
        metadata_json=json_dump(metadata or {}),
    )
    session.add(item)
    session.flush()
    log.info("Queued item %d for deal %s (%s, %s, +%smin)", item.id, deal_id, trigger_reason, priority, delay_minutes)
    return item.id


@dataclass
class ClaimResult:
    status: str  # "ok" | "throttled"
    items: list[QueueItem] = field(default_factory=list)

    @property
    def throttled(self) -> bool:
        return self.status == "throttled"


def processing_deal_count(session: Session) -> int:
    return session.execute(
        select(func.count(distinct(QueueItem.deal_id))).where(QueueItem.status == PROCESSING)
    ).scalar() or 0


def _try_claim(session: Session, item_id: int, deal_id: str, now: datetime) -> bool:
    """Compare-and-swap one item from queued to processing.

    Succeeds only if the row is still queued and no other item for the same
    deal is processing.
    """
    other = aliased(QueueItem)
    busy = select(other.id).where(other.deal_id == deal_id, other.status == PROCESSING).exists()
    result = session.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.status == QUEUED, ~busy)
        .values(status=PROCESSING, started_at=now, attempts=QueueItem.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def claim_batch(
    session: Session,
    batch_size: int | None = None,
    max_concurrent: int | None = None,
    *,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> ClaimResult:
    """Claim up to *batch_size* due items, oldest ``scheduled_for`` first.

    Throttled when the number of deals already processing meets
    *max_concurrent*; otherwise the batch is capped at the free slots.
    """
    policy = policy or get_policy()
    batch_size = policy.claim_batch_size if batch_size is None else batch_size
    max_concurrent = policy.max_concurrent if max_concurrent is None else max_concurrent
    now = clock.now()

    active = processing_deal_count(session)
    if active >= max_concurrent:
        log.info("Claim throttled: %d deals processing (max %d)", active, max_concurrent)
        return ClaimResult("throttled")
    slots = min(batch_size, max_concurrent - active)
    if slots <= 0:
        return ClaimResult("ok")

    # Earliest due item per deal, skipping deals that already have one processing.
    order = [QueueItem.scheduled_for, QueueItem.created_at, QueueItem.id]
    due = (QueueItem.status == QUEUED, QueueItem.scheduled_for <= now)
    ranked = (
        select(
            QueueItem.id,
            func.row_number().over(partition_by=QueueItem.deal_id, order_by=order).label("rn"),
        )
        .where(*due)
        .subquery()
    )
    other = aliased(QueueItem)
    busy = select(other.id).where(other.deal_id == QueueItem.deal_id, other.status == PROCESSING).exists()
    candidates = session.execute(
        select(QueueItem.id, QueueItem.deal_id)
        .where(*due, ~busy, QueueItem.id.in_(select(ranked.c.id).where(ranked.c.rn == 1)))
        .order_by(*order)
        .limit(slots)
        .with_for_update(skip_locked=True)
    ).all()

    claimed_ids = [
        item_id for item_id, deal_id in candidates
        if _try_claim(session, item_id, deal_id, now)
    ]

    if not claimed_ids:
        log.debug("Nothing to claim")
        return ClaimResult("ok")

    items = session.execute(
        select(QueueItem)
        .where(QueueItem.id.in_(claimed_ids))
        .order_by(QueueItem.scheduled_for, QueueItem.created_at, QueueItem.id)
        .execution_options(populate_existing=True)
    ).scalars().all()
    log.info("Claimed %d queue item(s)", len(items))
    return ClaimResult("ok", list(items))


def complete_item(
    session: Session,
    item_id: int,
    success: bool,
    error_message: str | None = None,
    *,
    clock: Clock = SYSTEM_CLOCK,
) -> bool:
    """Move a processing item to completed or failed. Never retries by itself.

    A successful ``first_time`` item marks the deal's first analysis done.

    Returns False (and leaves the row alone) when the item is no longer
    processing, e.g. because it was reclaimed meanwhile.
    """
    now = clock.now()
    result = session.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.status == PROCESSING)
        .values(
            status=COMPLETED if success else FAILED,
            completed_at=now,
            error_message=None if success else (error_message or "Analysis failed"),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        item = session.execute(
            select(QueueItem).where(QueueItem.id == item_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if item is None:
            raise QueueItemNotFound(item_id)
        log.warning("Queue item %d is %s, not processing; completion ignored", item_id, item.status)
        return False

    item = session.execute(
        select(QueueItem).where(QueueItem.id == item_id).execution_options(populate_existing=True)
    ).scalar_one()
    if success:
        if item.trigger_reason == TRIGGER_FIRST_TIME:
            deal = session.get(Deal, item.deal_id)
            if deal is not None:
                deal.first_analysis_completed = True
                session.flush()
        log.info("Queue item %d for deal %s completed", item_id, item.deal_id)
    else:
        log.warning("Queue item %d for deal %s failed: %s", item_id, item.deal_id, item.error_message)
    return True


# ---------------------------------------------------------------------------
# Recovery & retention
# ---------------------------------------------------------------------------


@dataclass
class ReclaimResult:
    requeued: int = 0
    failed: int = 0


def reclaim_stuck(
    session: Session,
    threshold_minutes: float | None = None,
    max_attempts: int | None = None,
    *,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> ReclaimResult:
    """Recover processing items whose worker presumably died.

    Items below their attempt limit go back to queued (attempts unchanged,
    pushed out by the reclaim delay); the rest fail for good. *max_attempts*
    overrides the per-item limit when given.
    """
    policy = policy or get_policy()
    threshold = policy.stuck_threshold_minutes if threshold_minutes is None else threshold_minutes
    now = clock.now()
    cutoff = now - timedelta(minutes=threshold)

    stuck = session.execute(
        select(QueueItem)
        .where(QueueItem.status == PROCESSING, QueueItem.started_at < cutoff)
        .order_by(QueueItem.started_at)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    ).scalars().all()

    result = ReclaimResult()
    for item in stuck:
        limit = max_attempts if max_attempts is not None else item.max_attempts
        if item.attempts < limit:
            item.status = QUEUED
            item.started_at = None
            item.scheduled_for = now + timedelta(minutes=policy.reclaim_delay_minutes)
            result.requeued += 1
            log.warning("Reclaimed stuck item %d for deal %s (attempt %d/%d)",
                        item.id, item.deal_id, item.attempts, limit)
        else:
            item.status = FAILED
            item.completed_at = now
            item.error_message = f"Exceeded maximum attempts ({limit}) while stuck in processing"
            result.failed += 1
            log.warning("Stuck item %d for deal %s exhausted its attempts", item.id, item.deal_id)
    session.flush()
    return result


def requeue_failed(
    session: Session,
    *,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> int:
    """Give failed items with attempts left another go, with exponential backoff."""
    policy = policy or get_policy()
    now = clock.now()
    items = session.execute(
        select(QueueItem)
        .where(QueueItem.status == FAILED, QueueItem.attempts < QueueItem.max_attempts)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    ).scalars().all()
    for item in items:
        backoff = policy.retry_backoff_minutes * (2 ** item.attempts)
        item.status = QUEUED
        item.started_at = None
        item.completed_at = None
        item.scheduled_for = now + timedelta(minutes=backoff)
        log.info("Retrying failed item %d for deal %s in %.1f min", item.id, item.deal_id, backoff)
    session.flush()
    return len(items)


def _delete_items(session: Session, where) -> int:
    ids = session.execute(select(QueueItem.id).where(*where)).scalars().all()
    if not ids:
        return 0
    session.execute(
        update(TriggerEvent).where(TriggerEvent.queue_item_id.in_(ids)).values(queue_item_id=None)
    )
    session.execute(delete(QueueItem).where(QueueItem.id.in_(ids)))
    return len(ids)


def cleanup_old(
    session: Session,
    retention_days: float | None = None,
    *,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> int:
    """Hard-delete terminal items older than the retention window. Live items are never touched."""
    policy = policy or get_policy()
    days = policy.retention_days if retention_days is None else retention_days
    cutoff = clock.now() - timedelta(days=days)
    count = _delete_items(session, (
        QueueItem.status.in_(TERMINAL_STATUSES),
        func.coalesce(QueueItem.completed_at, QueueItem.created_at) < cutoff,
    ))
    if count:
        log.info("Removed %d finished queue item(s) older than %s days", count, days)
    return count


def cleanup_stale_queued(
    session: Session,
    days: float | None = None,
    *,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> int:
    """Drop queued items that were never picked up within *days*."""
    policy = policy or get_policy()
    days = policy.stale_queued_days if days is None else days
    cutoff = clock.now() - timedelta(days=days)
    count = _delete_items(session, (QueueItem.status == QUEUED, QueueItem.created_at < cutoff))
    if count:
        log.info("Removed %d stale queued item(s) older than %s days", count, days)
    return count


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def queue_item_dict(item: QueueItem) -> dict[str, Any]:
    return {
        "id": item.id, "deal_id": item.deal_id, "fund_id": item.fund_id,
        "priority": item.priority, "trigger_reason": item.trigger_reason,
        "status": item.status, "attempts": item.attempts, "max_attempts": item.max_attempts,
        "created_at": isoformat(item.created_at),
        "started_at": isoformat(item.started_at),
        "completed_at": isoformat(item.completed_at),
        "scheduled_for": isoformat(item.scheduled_for),
        "error_message": item.error_message,
        "metadata": json_parse(item.metadata_json, {}),
    }


def queue_health(
    session: Session,
    *,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> dict[str, Any]:
    """Snapshot of the last 24h of queue activity plus warnings."""
    policy = policy or get_policy()
    now = clock.now()
    since = now - timedelta(hours=24)
    stuck_cutoff = now - timedelta(minutes=policy.stuck_threshold_minutes)

    items = session.execute(select(QueueItem).where(QueueItem.created_at >= since)).scalars().all()
    counts = Counter(item.status for item in items)
    queued = [i for i in items if i.status == QUEUED]
    stuck = [i for i in items if i.status == PROCESSING and i.started_at and as_utc(i.started_at) < stuck_cutoff]
    finished = [i for i in items if i.status == COMPLETED and i.completed_at]

    avg_minutes = 0.0
    if finished:
        total = sum((as_utc(i.completed_at) - as_utc(i.created_at)).total_seconds() for i in finished)
        avg_minutes = round(total / len(finished) / 60, 2)
    oldest = min((as_utc(i.created_at) for i in queued), default=None)

    warnings: list[str] = []
    if len(queued) > 50:
        warnings.append(f"High queue depth: {len(queued)} items waiting")
    if stuck:
        warnings.append(f"{len(stuck)} item(s) stuck in processing for over {policy.stuck_threshold_minutes} minutes")
    if counts[FAILED] > 10:
        warnings.append(f"High failure rate: {counts[FAILED]} failures in 24h")

    return {
        "by_status": {s: counts.get(s, 0) for s in (QUEUED, PROCESSING, COMPLETED, FAILED)},
        "total_queued": len(queued),
        "processing": counts[PROCESSING],
        "stuck_processing": len(stuck),
        "failed_last_24h": counts[FAILED],
        "oldest_queued_at": isoformat(oldest),
        "average_processing_minutes": avg_minutes,
        "warnings": warnings,
        "is_healthy": not warnings and len(queued) < 20,
    }


def analysis_history(session: Session, deal_id: str, limit: int = 50) -> dict[str, Any]:
    """Trigger events and queue items for one deal, newest first."""
    if session.get(Deal, deal_id) is None:
        raise DealNotFound(deal_id)
    events = session.execute(
        select(TriggerEvent).where(TriggerEvent.deal_id == deal_id)
        .order_by(TriggerEvent.triggered_at.desc(), TriggerEvent.id.desc()).limit(limit)
    ).scalars().all()
    items = session.execute(
        select(QueueItem).where(QueueItem.deal_id == deal_id)
        .order_by(QueueItem.created_at.desc(), QueueItem.id.desc()).limit(limit)
    ).scalars().all()
    return {
        "deal_id": deal_id,
        "triggers": [
            {"id": e.id, "trigger_reason": e.trigger_reason, "triggered_by": e.triggered_by,
             "triggered_at": isoformat(e.triggered_at), "queue_item_id": e.queue_item_id,
             "forced": e.forced, "metadata": json_parse(e.metadata_json, {})}
            for e in events
        ],
        "queue_items": [queue_item_dict(i) for i in items],
    }
