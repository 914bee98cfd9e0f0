"""Async HTTP client for the one-time-code relay."""

from __future__ import annotations

import logging
from typing import Any

import aiohttp
from pydantic import BaseModel

from portal_agent.errors import TransportFailure

logger = logging.getLogger(__name__)


class RelayCode(BaseModel):
    id: str
    code: str
    timestamp: int
    sender: str
    subject: str


class OTPRelayClient:
    """Poll the relay's query endpoint for the most recent code."""

    def __init__(self, endpoint: str, *, timeout_s: float = 10.0) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout_s = timeout_s

    async def fetch_latest(self, *, min_age_ms: int = 0, claim: bool = True) -> RelayCode | None:
        params = {"minAgeMs": str(min_age_ms), "claim": "true" if claim else "false"}
        payload = await self._request("GET", "/code/latest", params=params)
        if not payload.get("success"):
            return None
        try:
            return RelayCode.model_validate(payload)
        except ValueError as exc:
            raise TransportFailure(f"Relay returned malformed code payload: {exc}") from exc

    async def mark_used(self, code_id: str) -> bool:
        payload = await self._request("POST", f"/code/{code_id}/use")
        return bool(payload.get("success"))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.endpoint}{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, params=params) as response:
                    # 404 carries a structured "not found" body.
                    if response.status >= 400 and response.status != 404:
                        text = await response.text()
                        raise TransportFailure(
                            f"Relay request failed with status {response.status}: {text[:200]}"
                        )
                    return await response.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
            raise TransportFailure(f"Relay request failed: {exc}") from exc
