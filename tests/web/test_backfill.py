from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.models import Event, Organization
from cadence.recurrence import PatternKind, RecurrencePattern
from cadence.services import create_series_with_occurrences
from cadence.settings import Settings
from cadence.web.routes.maintenance import clamp_target_months

BACKFILL_URL = "/maintenance/recurrence/backfill"


async def _weekly_series(
    db_session: AsyncSession, organization: Organization, name: str
) -> Event:
    start = datetime.now(UTC).replace(minute=0, second=0, microsecond=0) + timedelta(days=1)
    root, _ = await create_series_with_occurrences(
        db_session,
        organization_id=organization.id,
        name=name,
        start_time=start,
        end_time=start + timedelta(hours=1),
        pattern=RecurrencePattern(kind=PatternKind.weekly),
        settings=Settings(expansion_horizon_months=1),
    )
    return root


def test_clamp_target_months() -> None:
    assert clamp_target_months(None, 6) == 6
    assert clamp_target_months(0, 6) == 1
    assert clamp_target_months(-4, 6) == 1
    assert clamp_target_months(99, 6) == 12


@pytest.mark.asyncio
async def test_backfill_disabled_without_configured_secret(
    client: AsyncClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("CADENCE_BACKFILL_SECRET", raising=False)

    resp = await client.post(BACKFILL_URL, headers={"X-Backfill-Secret": "anything"})

    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_backfill_rejects_wrong_secret(
    client: AsyncClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CADENCE_BACKFILL_SECRET", "s3cret")

    assert (await client.post(BACKFILL_URL)).status_code == 403
    wrong = await client.post(BACKFILL_URL, headers={"X-Backfill-Secret": "guess"})
    assert wrong.status_code == 403


@pytest.mark.asyncio
async def test_backfill_extends_series_once(
    client: AsyncClient,
    db_session: AsyncSession,
    organization: Organization,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CADENCE_BACKFILL_SECRET", "s3cret")
    root = await _weekly_series(db_session, organization, "Sunday Service")

    resp = await client.post(
        BACKFILL_URL,
        headers={"X-Backfill-Secret": "s3cret"},
        json={"targetMonths": 3},
    )

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["processed"] == 1
    [result] = payload["results"]
    assert result["rootEventId"] == str(root.id)
    assert result["organizationId"] == str(organization.id)
    assert result["name"] == "Sunday Service"
    assert result["created"] > 0
    assert result["error"] is None

    again = await client.post(
        BACKFILL_URL,
        headers={"X-Backfill-Secret": "s3cret"},
        json={"targetMonths": 3},
    )
    assert again.json()["results"][0]["created"] == 0


@pytest.mark.asyncio
async def test_backfill_can_target_one_root(
    client: AsyncClient,
    db_session: AsyncSession,
    organization: Organization,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CADENCE_BACKFILL_SECRET", "s3cret")
    await _weekly_series(db_session, organization, "Morning")
    evening = await _weekly_series(db_session, organization, "Evening")

    resp = await client.post(
        BACKFILL_URL,
        headers={"X-Backfill-Secret": "s3cret"},
        json={"rootEventId": str(evening.id), "organizationId": str(organization.id)},
    )

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["processed"] == 1
    assert payload["results"][0]["name"] == "Evening"
