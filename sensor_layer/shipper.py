"""Result shipper, uploads a finished audit run to a central collector.

Optional: used only when a collector URL is configured. Shipping failures
are reported in the returned ShipResult and never fail the audit.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

log = logging.getLogger(__name__)


@dataclass(slots=True)
class ShipResult:
    """Result of a ship operation."""

    success: bool
    timestamp: str
    message: str
    attempts: int = 0
    response_data: dict[str, Any] = field(default_factory=dict)


class ResultShipper:
    """POSTs run payloads to the collector with bounded retries."""

    def __init__(
        self,
        collector_url: str,
        hostname: str,
        api_key: str = "",
        http_client: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        backoff: float = 0.5,
    ):
        self.collector_url = collector_url.rstrip("/")
        self.hostname = hostname
        self.api_key = api_key
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._endpoint = f"{self.collector_url}/api/v1/audit-runs"
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            http2=True,
            limits=httpx.Limits(max_connections=2, max_keepalive_connections=2),
        )

    def _build_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Audit-Hostname": self.hostname,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _result(self, success: bool, message: str, attempts: int, data: Any = None) -> ShipResult:
        return ShipResult(
            success=success,
            timestamp=datetime.now(timezone.utc).isoformat(),
            message=message,
            attempts=attempts,
            response_data=data if isinstance(data, dict) else {},
        )

    async def ship(self, payload: dict[str, Any]) -> ShipResult:
        """Upload one run payload (host, summary, results)."""
        backoff = self.backoff

        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = await self._http.post(
                    self._endpoint, json=payload, headers=self._build_headers()
                )
                resp.raise_for_status()
                try:
                    data = resp.json()
                except ValueError:
                    data = {}
                log.info("shipped audit run to %s", self._endpoint)
                return self._result(True, "Run shipped", attempt, data)

            except httpx.HTTPStatusError as e:
                # Retry server errors; surface client errors immediately.
                if e.response.status_code < 500:
                    log.error("collector rejected run: %s", e)
                    return self._result(False, str(e), attempt)
                log.warning(
                    "ship failed (attempt %d/%d): %s", attempt, self.max_attempts, e
                )
            except httpx.RequestError as e:
                log.warning(
                    "ship network error (attempt %d/%d): %s",
                    attempt,
                    self.max_attempts,
                    e,
                )

            if attempt < self.max_attempts:
                await asyncio.sleep(backoff)
                backoff *= 2

        return self._result(
            False, f"ship failed after {self.max_attempts} attempts", self.max_attempts
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> ResultShipper:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
