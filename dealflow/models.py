from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Deal(Base):
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    fund_id: Mapped[str] = mapped_column(String(64), default="")
    name: Mapped[str] = mapped_column(String(300), default="")
    blocked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    block_reason: Mapped[str] = mapped_column(Text, default="")
    first_analysis_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_analysis_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    sources: Mapped[list[SourceRecord]] = relationship("SourceRecord", back_populates="deal", cascade="all, delete-orphan")
    queue_items: Mapped[list[QueueItem]] = relationship("QueueItem", back_populates="deal", cascade="all, delete-orphan")
    triggers: Mapped[list[TriggerEvent]] = relationship("TriggerEvent", back_populates="deal", cascade="all, delete-orphan")


class SourceRecord(Base):
    """One provider's snapshot of raw data for one deal."""

    __tablename__ = "source_records"
    __table_args__ = (Index("ix_source_records_deal_provider", "deal_id", "provider", "retrieved_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(String(64), ForeignKey("deals.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)  # "linkedin_export" | "crunchbase_export" | ...
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    retrieved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    deal: Mapped[Deal] = relationship("Deal", back_populates="sources")


class QueueItem(Base):
    __tablename__ = "queue_items"
    __table_args__ = (
        Index("ix_queue_items_status_scheduled", "status", "scheduled_for"),
        Index("ix_queue_items_deal_status", "deal_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(String(64), ForeignKey("deals.id"), nullable=False)
    fund_id: Mapped[str] = mapped_column(String(64), default="")
    priority: Mapped[str] = mapped_column(String(10), default="normal")  # high | normal | low
    trigger_reason: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="queued")  # queued | processing | completed | failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")

    deal: Mapped[Deal] = relationship("Deal", back_populates="queue_items")


class TriggerEvent(Base):
    """Audit row for every trigger that was admitted (or forced) onto the queue."""

    __tablename__ = "trigger_events"
    __table_args__ = (Index("ix_trigger_events_deal_reason", "deal_id", "trigger_reason", "triggered_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(String(64), ForeignKey("deals.id"), nullable=False)
    trigger_reason: Mapped[str] = mapped_column(String(30), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(64), default="")
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    queue_item_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("queue_items.id", ondelete="SET NULL"), nullable=True)
    forced: Mapped[bool] = mapped_column(Boolean, default=False)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")

    deal: Mapped[Deal] = relationship("Deal", back_populates="triggers")
