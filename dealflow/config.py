from __future__ import annotations

import os
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"

TRIGGER_UPLOAD = "upload"
TRIGGER_MANUAL = "manual"
TRIGGER_BULK = "bulk"
TRIGGER_SCHEDULED = "scheduled"
TRIGGER_FIRST_TIME = "first_time"

VALID_TRIGGER_REASONS = {
    TRIGGER_UPLOAD, TRIGGER_MANUAL, TRIGGER_BULK, TRIGGER_SCHEDULED, TRIGGER_FIRST_TIME,
}
VALID_PRIORITIES = {"high", "normal", "low"}


class QueuePolicy(BaseModel):
    """Admission, retry and retention knobs for the analysis queue."""

    cooldown_hours: dict[str, float] = Field(default_factory=lambda: {
        TRIGGER_UPLOAD: 24.0,
        TRIGGER_BULK: 24.0,
        TRIGGER_SCHEDULED: 24.0,
        TRIGGER_FIRST_TIME: 0.0,
        TRIGGER_MANUAL: 0.0,
    })
    priorities: dict[str, str] = Field(default_factory=lambda: {
        TRIGGER_MANUAL: "high",
        TRIGGER_FIRST_TIME: "high",
        TRIGGER_UPLOAD: "normal",
        TRIGGER_BULK: "low",
        TRIGGER_SCHEDULED: "low",
    })
    delay_minutes: dict[str, int] = Field(default_factory=lambda: {
        TRIGGER_MANUAL: 0,
        TRIGGER_FIRST_TIME: 0,
    })
    default_delay_minutes: int = 5
    bulk_batch_cap: int = 5

    claim_batch_size: int = 10
    max_concurrent: int = 10
    stuck_threshold_minutes: int = 10
    reclaim_delay_minutes: int = 5
    max_attempts: int = 3
    retry_backoff_minutes: float = 1.0
    retention_days: int = 7
    stale_queued_days: int = 7

    engine_timeout_seconds: float = 30.0
    wait_timeout_seconds: float = 30.0
    engine_routes: dict[str, list[str]] = Field(default_factory=lambda: {
        TRIGGER_UPLOAD: ["document-processor"],
    })
    default_engines: list[str] = Field(default_factory=lambda: ["enhanced-deal-analysis"])

    def cooldown_for(self, trigger_reason: str) -> timedelta:
        return timedelta(hours=self.cooldown_hours.get(trigger_reason, 0.0))

    def priority_for(self, trigger_reason: str) -> str:
        return self.priorities.get(trigger_reason, "normal")

    def delay_for(self, trigger_reason: str) -> int:
        return self.delay_minutes.get(trigger_reason, self.default_delay_minutes)

    def engines_for(self, trigger_reason: str) -> list[str]:
        return list(self.engine_routes.get(trigger_reason, self.default_engines))


def _default_database_url() -> str:
    return f"sqlite:///{DATA_DIR / 'dealflow.db'}"


class Settings(BaseModel):
    database_url: str = Field(
        default_factory=lambda: os.getenv("DEALFLOW_DATABASE_URL", "").strip() or _default_database_url()
    )
    functions_url: str = Field(default_factory=lambda: os.getenv("DEALFLOW_FUNCTIONS_URL", "").strip())
    service_key: str = Field(default_factory=lambda: os.getenv("DEALFLOW_SERVICE_KEY", "").strip())
    policy_file: Path | None = Field(
        default_factory=lambda: Path(p) if (p := os.getenv("DEALFLOW_POLICY_FILE", "").strip()) else None
    )
    worker_poll_seconds: float = Field(
        default_factory=lambda: float(os.getenv("DEALFLOW_WORKER_POLL_SECONDS", "60"))
    )
    user_agent: str = "DealflowWorker/1.0"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_policy(self) -> QueuePolicy:
        """Defaults, overridden by the optional ``queue_policy`` section of the policy file."""
        if self.policy_file is None:
            return QueuePolicy()
        raw = self.load_yaml(self.policy_file)
        overrides = raw.get("queue_policy", raw)
        if not isinstance(overrides, dict):
            return QueuePolicy()
        merged = QueuePolicy().model_dump()
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        return QueuePolicy(**merged)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=1)
def get_policy() -> QueuePolicy:
    return get_settings().load_policy()
