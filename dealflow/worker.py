"""Queue worker: claim due items, run their engines, record the outcome."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from dealflow import analysis_queue as aq
from dealflow.config import QueuePolicy, get_policy
from dealflow.engines import EngineClient, EngineResult
from dealflow.models import QueueItem
from dealflow.utils import SYSTEM_CLOCK, Clock, json_parse

log = logging.getLogger(__name__)


async def _run_engines(
    client: EngineClient, item: QueueItem, engines: list[str], timeout: float,
) -> tuple[bool, str | None]:
    """Run the routed engines for one item in order; the first failure stops the chain."""
    context = {
        "fundId": item.fund_id,
        "triggerReason": item.trigger_reason,
        "queueItemId": item.id,
        "attempt": item.attempts,
        "metadata": json_parse(item.metadata_json, {}),
    }
    for name in engines:
        try:
            result: EngineResult = await asyncio.wait_for(
                client.invoke(name, item.deal_id, context), timeout=timeout,
            )
        except asyncio.TimeoutError:
            return False, f"{name} timed out after {timeout:g}s"
        except Exception as exc:
            log.warning("Engine %s raised for deal %s: %s", name, item.deal_id, exc)
            return False, f"{name}: {exc}"
        if not result.success:
            return False, result.error or f"{name} failed"
    return True, None


async def process_queue(
    session: Session,
    client: EngineClient,
    *,
    batch_size: int | None = None,
    max_concurrent: int | None = None,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> dict[str, Any]:
    """One worker pass. Each item's outcome is committed on its own."""
    policy = policy or get_policy()
    claim = aq.claim_batch(
        session, batch_size, max_concurrent, policy=policy, clock=clock,
    )
    session.commit()
    summary: dict[str, Any] = {"status": claim.status, "claimed": len(claim.items), "completed": 0, "failed": 0}
    if claim.throttled or not claim.items:
        return summary

    outcomes = await asyncio.gather(*(
        _run_engines(client, item, policy.engines_for(item.trigger_reason), policy.engine_timeout_seconds)
        for item in claim.items
    ))

    for item, (success, error) in zip(claim.items, outcomes):
        try:
            if aq.complete_item(session, item.id, success, error, clock=clock):
                summary["completed" if success else "failed"] += 1
            session.commit()
        except Exception as exc:
            session.rollback()
            log.error("Could not record outcome of queue item %d: %s", item.id, exc)
    log.info("Worker pass: %d claimed, %d completed, %d failed",
             summary["claimed"], summary["completed"], summary["failed"])
    return summary


def run_maintenance(
    session: Session,
    *,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> dict[str, int]:
    """Reclaim zombies, retry failures, and enforce retention, in that order."""
    policy = policy or get_policy()
    reclaimed = aq.reclaim_stuck(session, policy=policy, clock=clock)
    retried = aq.requeue_failed(session, policy=policy, clock=clock)
    removed = aq.cleanup_old(session, policy=policy, clock=clock)
    stale = aq.cleanup_stale_queued(session, policy=policy, clock=clock)
    session.commit()
    counts = {
        "reclaimed": reclaimed.requeued,
        "exhausted": reclaimed.failed,
        "retried": retried,
        "cleaned_up": removed,
        "stale_removed": stale,
    }
    log.info("Maintenance: %s", counts)
    return counts


async def run_worker(
    session_factory: Callable[[], Session],
    client: EngineClient,
    *,
    poll_seconds: float = 60.0,
    max_cycles: int | None = None,
    policy: QueuePolicy | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> int:
    """Poll the queue until cancelled (or *max_cycles* passes). Returns the number of passes."""
    policy = policy or get_policy()
    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        with session_factory() as session:
            try:
                run_maintenance(session, policy=policy, clock=clock)
                await process_queue(session, client, policy=policy, clock=clock)
            except Exception:
                log.exception("Worker pass %d failed; retrying next poll", cycles + 1)
                session.rollback()
        cycles += 1
        if max_cycles is not None and cycles >= max_cycles:
            break
        await asyncio.sleep(poll_seconds)
    return cycles
