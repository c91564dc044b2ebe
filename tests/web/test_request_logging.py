from __future__ import annotations

import logging

import pytest
from httpx import ASGITransport, AsyncClient

from cadence.app import create_app
from cadence.services import SeriesNotFoundError


@pytest.mark.asyncio
async def test_request_id_is_generated_and_feed_token_not_logged(
    client: AsyncClient, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="cadence.http")

    resp = await client.get("/calendar-feed/secret-token-value")

    assert resp.status_code == 404
    assert len(resp.headers["x-request-id"]) == 32
    messages = [r.getMessage() for r in caplog.records if r.name == "cadence.http"]
    assert any("path=/calendar-feed/<token>" in m and "status_code=404" in m for m in messages)
    assert not any("secret-token-value" in m for m in messages)


@pytest.mark.asyncio
async def test_lookup_errors_map_to_404() -> None:
    app = create_app()

    async def missing_series() -> None:
        raise SeriesNotFoundError("7a1c2a1e-0000-4000-8000-000000000001")

    app.add_api_route("/series/missing", missing_series)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as c:
        resp = await c.get("/series/missing")
        health = await c.get("/healthz")

    assert resp.status_code == 404
    assert resp.json() == {"detail": "Not found"}
    assert health.json() == {"status": "ok"}
