from __future__ import annotations

import asyncio
import json

import httpx

from sensor_layer.shipper import ResultShipper, ShipResult


def _sample_payload() -> dict:
    return {
        "run_id": "0f3c",
        "summary": {"compliance_rate": 87.5},
        "results": [{"rule_id": "5.2.2", "status": "fail"}],
    }


def _ship(statuses: list[int], api_key: str = "") -> tuple[ShipResult, list[httpx.Request]]:
    requests: list[httpx.Request] = []
    replies = iter(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status = next(replies)
        return httpx.Response(status, json={"accepted": status < 300})

    async def _run() -> ShipResult:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        shipper = ResultShipper(
            "https://collector.example.com/",
            hostname="rhel8-test",
            api_key=api_key,
            http_client=client,
            backoff=0,
        )
        try:
            return await shipper.ship(_sample_payload())
        finally:
            await shipper.close()
            await client.aclose()

    return asyncio.run(_run()), requests


def test_ship_success_sends_payload_and_headers() -> None:
    result, requests = _ship([201], api_key="s3cret")

    assert result.success
    assert result.attempts == 1
    assert result.response_data == {"accepted": True}
    (request,) = requests
    assert str(request.url) == "https://collector.example.com/api/v1/audit-runs"
    assert request.headers["Authorization"] == "Bearer s3cret"
    assert request.headers["X-Audit-Hostname"] == "rhel8-test"
    assert json.loads(request.content)["run_id"] == "0f3c"


def test_server_errors_are_retried() -> None:
    result, requests = _ship([503, 502, 200])
    assert result.success
    assert result.attempts == 3
    assert len(requests) == 3
    assert "Authorization" not in requests[0].headers


def test_client_errors_are_not_retried() -> None:
    result, requests = _ship([401, 200])
    assert not result.success
    assert result.attempts == 1
    assert len(requests) == 1


def test_gives_up_after_max_attempts() -> None:
    result, requests = _ship([500, 500, 500])
    assert not result.success
    assert result.message == "ship failed after 3 attempts"
    assert len(requests) == 3


def test_network_errors_are_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={})

    async def _run() -> ShipResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            async with ResultShipper(
                "https://collector.example.com", "rhel8-test", http_client=client, backoff=0
            ) as shipper:
                return await shipper.ship(_sample_payload())

    result = asyncio.run(_run())
    assert result.success
    assert calls == 2
