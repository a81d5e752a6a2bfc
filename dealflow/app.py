from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from dealflow import analysis_queue as aq
from dealflow import services
from dealflow.config import QueuePolicy, get_policy
from dealflow.db import get_session, init_db
from dealflow.engines import EngineClient
from dealflow.models import Deal, QueueItem
from dealflow.resolver import UnknownFactError, record_source, resolve_deal
from dealflow.schemas import (
    BlockRequest,
    BulkRefreshOut,
    BulkRefreshRequest,
    DealCreate,
    DealOut,
    DealUpdate,
    EligibilityOut,
    EligibilityRequest,
    HistoryOut,
    MaintenanceOut,
    ProcessOut,
    QueueHealthOut,
    QueueItemOut,
    RefreshOut,
    RefreshRequest,
    ResolvedValueOut,
    SourceRecordIn,
    SourceRecordOut,
)
from dealflow.utils import SYSTEM_CLOCK, Clock, isoformat
from dealflow.worker import process_queue, run_maintenance

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Dealflow",
    version="0.1.0",
    description=(
        "Deal fact resolution and analysis queue API. "
        "Resolve company facts from enrichment sources and control when deals are re-analyzed. "
        "All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Deals", "description": "Register deals and toggle their analysis settings."},
        {"name": "Sources", "description": "Ingest provider snapshots and resolve facts from them."},
        {"name": "Analysis", "description": "Eligibility checks and refresh triggers."},
        {"name": "Queue", "description": "Queue health, worker passes and maintenance."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_clock() -> Clock:
    return SYSTEM_CLOCK


def queue_policy() -> QueuePolicy:
    return get_policy()


def engine_client() -> EngineClient:
    return EngineClient()


def _get_or_404(session: Session, model, entity_id, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Routes: Deals
# ---------------------------------------------------------------------------


@app.get("/api/deals", response_model=list[DealOut],
         tags=["Deals"], summary="List deals")
async def list_deals(
    fund_id: str | None = Query(None, description="Only deals of this fund"),
    session: Session = Depends(db_session),
):
    query = select(Deal).order_by(Deal.created_at.desc(), Deal.id)
    if fund_id:
        query = query.where(Deal.fund_id == fund_id)
    return [services.deal_summary(d) for d in session.execute(query).scalars().all()]


@app.post("/api/deals", response_model=DealOut, status_code=201,
          tags=["Deals"], summary="Register a deal")
async def create_deal(
    body: DealCreate, session: Session = Depends(db_session), clock: Clock = Depends(get_clock),
):
    if session.get(Deal, body.id) is not None:
        raise HTTPException(409, f"Deal {body.id} already exists")
    deal = Deal(
        id=body.id, fund_id=body.fund_id, name=body.name,
        auto_analysis_enabled=body.auto_analysis_enabled, created_at=clock.now(),
    )
    session.add(deal)
    session.commit()
    return services.deal_summary(deal)


@app.get("/api/deals/{deal_id}", response_model=DealOut,
         tags=["Deals"], summary="Get a deal")
async def get_deal(deal_id: str, session: Session = Depends(db_session)):
    return services.deal_summary(_get_or_404(session, Deal, deal_id, "Deal"))


@app.put("/api/deals/{deal_id}", response_model=DealOut,
         tags=["Deals"], summary="Update deal fields")
async def update_deal(deal_id: str, body: DealUpdate, session: Session = Depends(db_session)):
    deal = _get_or_404(session, Deal, deal_id, "Deal")
    for field_name, value in body.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(deal, field_name, value)
    session.commit()
    return services.deal_summary(deal)


@app.post("/api/deals/{deal_id}/block", response_model=DealOut,
          tags=["Deals"], summary="Block new analysis triggers until a given time")
async def block_deal(
    deal_id: str, body: BlockRequest,
    session: Session = Depends(db_session), clock: Clock = Depends(get_clock),
):
    try:
        deal = aq.block_deal(session, deal_id, until=body.until, hours=body.hours, reason=body.reason, clock=clock)
    except LookupError:
        raise HTTPException(404, "Deal not found")
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    session.commit()
    return services.deal_summary(deal)


@app.delete("/api/deals/{deal_id}/block", response_model=DealOut,
            tags=["Deals"], summary="Lift a block")
async def unblock_deal(deal_id: str, session: Session = Depends(db_session)):
    try:
        deal = aq.unblock_deal(session, deal_id)
    except LookupError:
        raise HTTPException(404, "Deal not found")
    session.commit()
    return services.deal_summary(deal)


# ---------------------------------------------------------------------------
# Routes: Sources & facts
# ---------------------------------------------------------------------------


@app.post("/api/deals/{deal_id}/sources", response_model=SourceRecordOut, status_code=201,
          tags=["Sources"], summary="Store a provider snapshot for a deal")
async def add_source(
    deal_id: str, body: SourceRecordIn,
    session: Session = Depends(db_session), clock: Clock = Depends(get_clock),
):
    try:
        rec = record_source(session, deal_id, body.provider, body.payload,
                            retrieved_at=body.retrieved_at, clock=clock)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    session.commit()
    return {"id": rec.id, "deal_id": rec.deal_id, "provider": rec.provider,
            "retrieved_at": isoformat(rec.retrieved_at)}


@app.get("/api/deals/{deal_id}/facts", response_model=dict[str, ResolvedValueOut],
         tags=["Sources"], summary="Resolve every known fact for a deal")
async def get_facts(deal_id: str, session: Session = Depends(db_session)):
    _get_or_404(session, Deal, deal_id, "Deal")
    return services.get_resolved_facts(session, deal_id)


@app.get("/api/deals/{deal_id}/facts/{fact}", response_model=ResolvedValueOut,
         tags=["Sources"], summary="Resolve one fact for a deal")
async def get_fact(deal_id: str, fact: str, session: Session = Depends(db_session)):
    _get_or_404(session, Deal, deal_id, "Deal")
    try:
        return resolve_deal(session, deal_id, fact).to_dict()
    except UnknownFactError:
        raise HTTPException(404, f"Unknown fact: {fact}")


# ---------------------------------------------------------------------------
# Routes: Analysis triggers
# ---------------------------------------------------------------------------


@app.post("/api/deals/{deal_id}/eligibility", response_model=EligibilityOut,
          tags=["Analysis"], summary="Check whether a trigger would be admitted now")
async def check_eligibility(
    deal_id: str, body: EligibilityRequest,
    session: Session = Depends(db_session),
    policy: QueuePolicy = Depends(queue_policy), clock: Clock = Depends(get_clock),
):
    try:
        decision = aq.check_eligibility(
            session, deal_id, body.trigger_reason, body.user_id,
            batch_size=body.batch_size, policy=policy, clock=clock,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return decision.to_dict()


@app.post("/api/deals/{deal_id}/refresh", response_model=RefreshOut,
          tags=["Analysis"], summary="Queue a re-analysis if policy allows it")
async def refresh_deal(
    deal_id: str, body: RefreshRequest,
    session: Session = Depends(db_session),
    policy: QueuePolicy = Depends(queue_policy), clock: Clock = Depends(get_clock),
):
    try:
        outcome = services.ensure_fresh(
            session, deal_id, body.fund_id, body.trigger_reason,
            user_id=body.user_id, force=body.force, metadata=body.metadata,
            policy=policy, clock=clock,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    session.commit()
    return outcome.to_dict()


@app.post("/api/refresh/bulk", response_model=BulkRefreshOut,
          tags=["Analysis"], summary="Queue a bulk re-analysis for several deals")
async def refresh_bulk(
    body: BulkRefreshRequest,
    session: Session = Depends(db_session),
    policy: QueuePolicy = Depends(queue_policy), clock: Clock = Depends(get_clock),
):
    try:
        outcome = services.ensure_fresh_bulk(session, body.deal_ids, user_id=body.user_id, policy=policy, clock=clock)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    session.commit()
    return outcome.to_dict()


@app.get("/api/deals/{deal_id}/history", response_model=HistoryOut,
         tags=["Analysis"], summary="Trigger and queue history for a deal")
async def deal_history(
    deal_id: str, limit: int = Query(50, ge=1, le=500), session: Session = Depends(db_session),
):
    try:
        return aq.analysis_history(session, deal_id, limit=limit)
    except LookupError:
        raise HTTPException(404, "Deal not found")


# ---------------------------------------------------------------------------
# Routes: Queue
# ---------------------------------------------------------------------------


@app.get("/api/queue/health", response_model=QueueHealthOut,
         tags=["Queue"], summary="Queue depth, failures and warnings for the last 24h")
async def queue_health(
    session: Session = Depends(db_session),
    policy: QueuePolicy = Depends(queue_policy), clock: Clock = Depends(get_clock),
):
    return aq.queue_health(session, policy=policy, clock=clock)


@app.get("/api/queue/items/{item_id}", response_model=QueueItemOut,
         tags=["Queue"], summary="Get one queue item")
async def get_queue_item(item_id: int, session: Session = Depends(db_session)):
    return aq.queue_item_dict(_get_or_404(session, QueueItem, item_id, "Queue item"))


@app.post("/api/queue/process", response_model=ProcessOut,
          tags=["Queue"], summary="Run one worker pass now")
async def process_now(
    session: Session = Depends(db_session),
    client: EngineClient = Depends(engine_client),
    policy: QueuePolicy = Depends(queue_policy), clock: Clock = Depends(get_clock),
):
    return await process_queue(session, client, policy=policy, clock=clock)


@app.post("/api/queue/maintenance", response_model=MaintenanceOut,
          tags=["Queue"], summary="Reclaim stuck items, retry failures, apply retention")
async def maintenance(
    session: Session = Depends(db_session),
    policy: QueuePolicy = Depends(queue_policy), clock: Clock = Depends(get_clock),
):
    return run_maintenance(session, policy=policy, clock=clock)


def main():
    import uvicorn
    uvicorn.run("dealflow.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
