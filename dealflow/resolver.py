"""Waterfall resolution of deal facts from redundant, variably-trusted sources.

For one fact, walk the registry's candidates from most to least trusted,
read the latest record of each candidate's provider, normalize, and stop
at the first value that is not missing. No blending: the ``source`` field
of the result is the whole audit trail.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dealflow.models import Deal, SourceRecord
from dealflow.sources import KNOWN_PROVIDERS, REGISTRY, get_nested_value, is_missing
from dealflow.utils import SYSTEM_CLOCK, Clock, as_utc, isoformat, json_dump, json_parse

log = logging.getLogger(__name__)

FALLBACK_SOURCE = "fallback"


class UnknownFactError(KeyError):
    """Raised when a fact name has no entry in the source registry."""


@dataclass(frozen=True)
class ResolvedValue:
    value: Any
    source: str
    confidence: str
    last_updated: datetime | None = None
    is_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_updated"] = isoformat(self.last_updated)
        return data


@dataclass(frozen=True)
class SourceSnapshot:
    """Most recent payload from one provider for one deal."""

    provider: str
    payload: Mapping[str, Any]
    retrieved_at: datetime | None = None


# ---------------------------------------------------------------------------
# Pure resolution
# ---------------------------------------------------------------------------


def resolve(fact: str, bundle: Mapping[str, SourceSnapshot]) -> ResolvedValue:
    """Resolve *fact* against a provider -> snapshot bundle.

    Absent providers and missing values fall through silently. Programmer
    errors inside a normalizer propagate.
    """
    spec = REGISTRY.get(fact)
    if spec is None:
        raise UnknownFactError(fact)

    for candidate in spec.candidates:
        snapshot = bundle.get(candidate.provider)
        if snapshot is None:
            continue
        raw = get_nested_value(snapshot.payload, candidate.path)
        if is_missing(raw):
            continue
        value = candidate.normalizer(raw)
        if is_missing(value):
            continue
        return ResolvedValue(
            value=value,
            source=candidate.label,
            confidence=candidate.confidence,
            last_updated=as_utc(snapshot.retrieved_at),
            is_fallback=False,
        )

    return ResolvedValue(
        value=spec.fallback_message,
        source=FALLBACK_SOURCE,
        confidence="low",
        last_updated=None,
        is_fallback=True,
    )


def resolve_all(bundle: Mapping[str, SourceSnapshot]) -> dict[str, ResolvedValue]:
    return {fact: resolve(fact, bundle) for fact in REGISTRY}


# ---------------------------------------------------------------------------
# Source Record Store
# ---------------------------------------------------------------------------


def latest_sources(session: Session, deal_id: str) -> dict[str, SourceSnapshot]:
    """Most recent record per provider for *deal_id*; ties go to the later insert."""
    if not deal_id:
        raise ValueError("deal_id is required")
    latest = (
        select(SourceRecord.provider, func.max(SourceRecord.retrieved_at).label("retrieved_at"))
        .where(SourceRecord.deal_id == deal_id)
        .group_by(SourceRecord.provider)
        .subquery()
    )
    rows = session.execute(
        select(SourceRecord)
        .join(latest, (SourceRecord.provider == latest.c.provider)
              & (SourceRecord.retrieved_at == latest.c.retrieved_at))
        .where(SourceRecord.deal_id == deal_id)
        .order_by(SourceRecord.id)
    ).scalars().all()

    bundle: dict[str, SourceSnapshot] = {}
    for rec in rows:
        payload = json_parse(rec.payload_json, {})
        if not isinstance(payload, Mapping):
            payload = {}
        bundle[rec.provider] = SourceSnapshot(rec.provider, payload, as_utc(rec.retrieved_at))
    return bundle


def resolve_deal(session: Session, deal_id: str, fact: str) -> ResolvedValue:
    return resolve(fact, latest_sources(session, deal_id))


def resolve_deal_all(session: Session, deal_id: str) -> dict[str, ResolvedValue]:
    return resolve_all(latest_sources(session, deal_id))


def record_source(
    session: Session,
    deal_id: str,
    provider: str,
    payload: Mapping[str, Any],
    *,
    retrieved_at: datetime | None = None,
    fund_id: str = "",
    clock: Clock = SYSTEM_CLOCK,
) -> SourceRecord:
    """Store a provider snapshot, creating the deal row on first sight. Caller commits."""
    if not deal_id:
        raise ValueError("deal_id is required")
    if not provider:
        raise ValueError("provider is required")
    if not isinstance(payload, Mapping):
        raise TypeError(f"payload must be a mapping, got {type(payload).__name__}")
    if provider not in KNOWN_PROVIDERS:
        log.warning("Provider %r is not consulted by any fact; storing snapshot anyway", provider)

    if session.get(Deal, deal_id) is None:
        session.add(Deal(id=deal_id, fund_id=fund_id, created_at=clock.now()))

    rec = SourceRecord(
        deal_id=deal_id,
        provider=provider,
        payload_json=json_dump(dict(payload)),
        retrieved_at=as_utc(retrieved_at) or clock.now(),
    )
    session.add(rec)
    session.flush()
    log.info("Recorded %s snapshot for deal %s", provider, deal_id)
    return rec
