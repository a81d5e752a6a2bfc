"""Source registry: which provider is asked for which fact, and in what order.

Each fact owns a fixed priority list of candidates. A candidate names the
provider whose latest record is consulted, the dotted path into that
record's payload, the normalizer applied to the raw value, the confidence
tier granted when that candidate answers, and the label reported as the
value's source.

Providers
---------
- ``linkedin_export``    -- professional-network company export
- ``crunchbase_export``  -- company-database export
- ``vc_datapoints``      -- cached JSON blob holding copies of both exports
- ``documents``          -- data points extracted from uploaded deal documents
- ``perplexity_company`` / ``perplexity_market`` -- research engine exports
"""
from __future__ import annotations

import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

LINKEDIN_EXPORT = "linkedin_export"
CRUNCHBASE_EXPORT = "crunchbase_export"
VC_DATAPOINTS = "vc_datapoints"
DOCUMENTS = "documents"
PERPLEXITY_COMPANY = "perplexity_company"
PERPLEXITY_MARKET = "perplexity_market"

KNOWN_PROVIDERS = {
    LINKEDIN_EXPORT, CRUNCHBASE_EXPORT, VC_DATAPOINTS,
    DOCUMENTS, PERPLEXITY_COMPANY, PERPLEXITY_MARKET,
}

_MISSING_STRINGS = {"", "not found", "not listed"}
_FIRST_INT_RE = re.compile(r"(\d+)")
_YEAR_RE = re.compile(r"\b(\d{4})\b")


# ---------------------------------------------------------------------------
# Shared predicates
# ---------------------------------------------------------------------------


def is_missing(value: Any) -> bool:
    """True for ``None`` and for the placeholder strings providers use for "no data"."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in _MISSING_STRINGS
    return False


def get_nested_value(obj: Any, path: str) -> Any:
    """Walk a dotted path through nested mappings; ``None`` when any segment is absent."""
    if not isinstance(path, str):
        raise TypeError(f"path must be a dotted string, got {type(path).__name__}")
    current = obj
    for key in path.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return None
        current = current[key]
    return current


# ---------------------------------------------------------------------------
# Normalizers (raw provider value -> typed value, or None for a miss)
# ---------------------------------------------------------------------------


def normalize_employee_count(raw: Any) -> int | float | None:
    """Numbers pass through; strings yield their first integer ("11-50" -> 11), else 0."""
    if is_missing(raw):
        return None
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, (int, float)):
        return raw
    if isinstance(raw, str):
        m = _FIRST_INT_RE.search(raw)
        return int(m.group(1)) if m else 0
    return None


def normalize_founding_year(raw: Any) -> int | None:
    """Year numbers pass through; date strings yield their calendar year."""
    if is_missing(raw):
        return None
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if math.isfinite(raw) else None  # NaN and infinities are misses
    if isinstance(raw, datetime):
        return raw.year
    if isinstance(raw, str):
        text = raw.strip()
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).year
        except ValueError:
            pass
        m = _YEAR_RE.search(text)
        return int(m.group(1)) if m else None
    return None


def normalize_text(raw: Any) -> str | None:
    """Strings only; anything else is treated as absent."""
    if not isinstance(raw, str) or is_missing(raw):
        return None
    return raw.strip()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceCandidate:
    provider: str
    path: str
    normalizer: Callable[[Any], Any]
    confidence: str
    label: str


@dataclass(frozen=True)
class FactSpec:
    name: str
    candidates: tuple[SourceCandidate, ...]
    fallback_message: str


FALLBACK_COMPANY_PROFILE = "Require more information. Add LinkedIn or Crunchbase"
FALLBACK_BUSINESS_MODEL = "Require more information. Add business documents or market research"

EMPLOYEE_COUNT = FactSpec(
    name="employee_count",
    candidates=(
        SourceCandidate(LINKEDIN_EXPORT, "employees_in_linkedin", normalize_employee_count, "high", "LinkedIn Export"),
        SourceCandidate(CRUNCHBASE_EXPORT, "num_employees", normalize_employee_count, "medium", "Crunchbase"),
        SourceCandidate(VC_DATAPOINTS, "deal_enrichment_linkedin_export.employees_in_linkedin",
                        normalize_employee_count, "medium", "LinkedIn Export (Stored)"),
        SourceCandidate(VC_DATAPOINTS, "deal_enrichment_crunchbase_export.num_employees",
                        normalize_employee_count, "medium", "Crunchbase (Stored)"),
    ),
    fallback_message=FALLBACK_COMPANY_PROFILE,
)

FOUNDING_YEAR = FactSpec(
    name="founding_year",
    candidates=(
        SourceCandidate(LINKEDIN_EXPORT, "founded", normalize_founding_year, "high", "LinkedIn Export"),
        SourceCandidate(CRUNCHBASE_EXPORT, "founded_date", normalize_founding_year, "high", "Crunchbase"),
    ),
    fallback_message=FALLBACK_COMPANY_PROFILE,
)

BUSINESS_MODEL = FactSpec(
    name="business_model",
    candidates=(
        SourceCandidate(DOCUMENTS, "data_points_vc.business_model", normalize_text, "high", "Documents"),
        SourceCandidate(PERPLEXITY_COMPANY, "business_model", normalize_text, "medium", "Perplexity Research"),
        SourceCandidate(PERPLEXITY_MARKET, "business_model", normalize_text, "medium", "Perplexity Research"),
    ),
    fallback_message=FALLBACK_BUSINESS_MODEL,
)

REGISTRY: dict[str, FactSpec] = {
    spec.name: spec for spec in (EMPLOYEE_COUNT, FOUNDING_YEAR, BUSINESS_MODEL)
}


def providers_for(fact: str) -> list[str]:
    """Distinct providers consulted for *fact*, in priority order."""
    seen: list[str] = []
    for candidate in REGISTRY[fact].candidates:
        if candidate.provider not in seen:
            seen.append(candidate.provider)
    return seen
