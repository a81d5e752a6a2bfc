"""Client for the hosted enrichment/analysis engines.

Engines are black boxes invoked by name with ``{entityId, context}`` and
answering ``{success, data?, error?}``. Only ``success`` is interpreted.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from dealflow.config import get_settings

log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30.0


@dataclass
class EngineResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class EngineClient:
    """Invoke engines at ``{base_url}/functions/v1/{name}``."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.functions_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.service_key
        self.timeout = timeout
        self._transport = transport
        self._user_agent = settings.user_agent

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": self._user_agent}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def invoke(self, name: str, deal_id: str, context: dict[str, Any] | None = None) -> EngineResult:
        if not self.base_url:
            return EngineResult(False, error="Engine endpoint not configured (set DEALFLOW_FUNCTIONS_URL)")
        url = f"{self.base_url}/functions/v1/{name}"
        body = {"entityId": deal_id, "context": context or {}}
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout), headers=self._headers(), transport=self._transport,
            ) as client:
                resp = await client.post(url, json=body)
        except httpx.HTTPError as exc:
            log.warning("Engine %s request failed for deal %s: %s", name, deal_id, exc)
            return EngineResult(False, error=f"{name}: {exc.__class__.__name__}: {exc}")

        if resp.status_code >= 400:
            log.warning("Engine %s returned HTTP %d for deal %s", name, resp.status_code, deal_id)
            return EngineResult(False, error=f"{name}: HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError:
            return EngineResult(False, error=f"{name}: response was not JSON")
        if not isinstance(payload, dict):
            return EngineResult(False, error=f"{name}: unexpected response shape")

        data = payload.get("data")
        result = EngineResult(
            success=bool(payload.get("success")),
            data=data if isinstance(data, dict) else {},
            error=payload.get("error"),
        )
        if not result.success and not result.error:
            result.error = f"{name}: engine reported failure"
        return result
