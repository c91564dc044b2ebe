from __future__ import annotations

import logging
import secrets
import uuid
from datetime import UTC, datetime

from dateutil.relativedelta import relativedelta
from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db import get_session
from cadence.logging_config import log_with_fields
from cadence.services import extend_all_series
from cadence.settings import get_settings

logger = logging.getLogger("cadence.series")

router = APIRouter()

MIN_TARGET_MONTHS = 1
MAX_TARGET_MONTHS = 12


class BackfillRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_months: int | None = Field(default=None, alias="targetMonths")
    organization_id: uuid.UUID | None = Field(default=None, alias="organizationId")
    root_event_id: uuid.UUID | None = Field(default=None, alias="rootEventId")


class BackfillResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    root_event_id: uuid.UUID = Field(alias="rootEventId")
    name: str
    created: int
    organization_id: uuid.UUID = Field(alias="organizationId")
    error: str | None = None


class BackfillResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    processed: int
    target_date: datetime = Field(alias="targetDate")
    results: list[BackfillResult]


def clamp_target_months(requested: int | None, default: int) -> int:
    months = default if requested is None else requested
    return max(MIN_TARGET_MONTHS, min(MAX_TARGET_MONTHS, months))


def _require_backfill_secret(provided: str | None) -> None:
    configured = get_settings().backfill_secret
    if configured is None or provided is None:
        raise HTTPException(status_code=403, detail="Backfill disabled or secret missing")
    if not secrets.compare_digest(provided.encode(), configured.get_secret_value().encode()):
        raise HTTPException(status_code=403, detail="Invalid backfill secret")


@router.post(
    "/maintenance/recurrence/backfill",
    response_model=BackfillResponse,
    response_model_by_alias=True,
)
async def backfill_recurrence(
    payload: BackfillRequest | None = None,
    x_backfill_secret: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> BackfillResponse:
    _require_backfill_secret(x_backfill_secret)

    settings = get_settings()
    request = payload if payload is not None else BackfillRequest()
    months = clamp_target_months(request.target_months, settings.backfill_target_months)
    target_date = datetime.now(UTC) + relativedelta(months=months)

    results = await extend_all_series(
        session,
        target_date=target_date,
        settings=settings,
        organization_id=request.organization_id,
        root_id=request.root_event_id,
    )
    log_with_fields(
        logger,
        logging.INFO,
        "recurrence backfill complete",
        processed=len(results),
        created=sum(result.created for result in results),
        target_months=months,
    )
    return BackfillResponse(
        processed=len(results),
        target_date=target_date,
        results=[
            BackfillResult(
                root_event_id=result.root_event_id,
                name=result.name,
                created=result.created,
                organization_id=result.organization_id,
                error=result.error,
            )
            for result in results
        ],
    )
