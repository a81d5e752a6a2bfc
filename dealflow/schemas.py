"""Pydantic request/response schemas for the Dealflow API."""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, field_validator

from dealflow.config import VALID_TRIGGER_REASONS

_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,64}$")


class DealCreate(BaseModel):
    id: str
    fund_id: str = ""
    name: str = ""
    auto_analysis_enabled: bool = True

    @field_validator("id")
    @classmethod
    def id_must_be_safe(cls, v: str) -> str:
        if not _ID_RE.match(v):
            raise ValueError("id must be 1-64 letters, digits, or one of _ . : -")
        return v


class DealUpdate(BaseModel):
    fund_id: str | None = None
    name: str | None = None
    auto_analysis_enabled: bool | None = None


class DealOut(BaseModel):
    id: str
    fund_id: str
    name: str
    blocked_until: str | None = None
    block_reason: str = ""
    first_analysis_completed: bool
    auto_analysis_enabled: bool
    created_at: str | None = None


class SourceRecordIn(BaseModel):
    provider: str
    payload: dict[str, Any]
    retrieved_at: datetime | None = None


class SourceRecordOut(BaseModel):
    id: int
    deal_id: str
    provider: str
    retrieved_at: str | None = None


class ResolvedValueOut(BaseModel):
    value: Any
    source: str
    confidence: str
    last_updated: str | None = None
    is_fallback: bool


class _TriggerMixin(BaseModel):
    trigger_reason: str
    user_id: str | None = None

    @field_validator("trigger_reason")
    @classmethod
    def reason_must_be_known(cls, v: str) -> str:
        if v not in VALID_TRIGGER_REASONS:
            raise ValueError(f"trigger_reason must be one of: {', '.join(sorted(VALID_TRIGGER_REASONS))}")
        return v


class EligibilityRequest(_TriggerMixin):
    batch_size: int = 1


class EligibilityOut(BaseModel):
    allowed: bool
    reason: str = ""
    priority: str
    delay_minutes: int


class RefreshRequest(_TriggerMixin):
    fund_id: str = ""
    force: bool = False
    metadata: dict[str, Any] = {}


class RefreshOut(BaseModel):
    deal_id: str
    allowed: bool
    queued: bool
    queue_item_id: int | None = None
    reason: str = ""
    priority: str
    delay_minutes: int
    forced: bool = False


class BulkRefreshRequest(BaseModel):
    deal_ids: list[str]
    user_id: str | None = None


class BulkRefreshOut(BaseModel):
    allowed: bool
    reason: str = ""
    queued: int = 0
    results: list[RefreshOut] = []


class BlockRequest(BaseModel):
    until: datetime | None = None
    hours: float | None = None
    reason: str = ""


class QueueItemOut(BaseModel):
    id: int
    deal_id: str
    fund_id: str
    priority: str
    trigger_reason: str
    status: str
    attempts: int
    max_attempts: int
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    scheduled_for: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = {}


class TriggerEventOut(BaseModel):
    id: int
    trigger_reason: str
    triggered_by: str
    triggered_at: str | None = None
    queue_item_id: int | None = None
    forced: bool
    metadata: dict[str, Any] = {}


class HistoryOut(BaseModel):
    deal_id: str
    triggers: list[TriggerEventOut]
    queue_items: list[QueueItemOut]


class QueueHealthOut(BaseModel):
    by_status: dict[str, int]
    total_queued: int
    processing: int
    stuck_processing: int
    failed_last_24h: int
    oldest_queued_at: str | None = None
    average_processing_minutes: float
    warnings: list[str]
    is_healthy: bool


class ProcessOut(BaseModel):
    status: str
    claimed: int
    completed: int
    failed: int


class MaintenanceOut(BaseModel):
    reclaimed: int
    exhausted: int
    retried: int
    cleaned_up: int
    stale_removed: int
