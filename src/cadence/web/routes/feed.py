from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response

from cadence.db import get_session
from cadence.services import build_subscription_feed
from cadence.settings import get_settings

router = APIRouter()

CALENDAR_MEDIA_TYPE = "text/calendar; charset=utf-8"


@router.get("/calendar-feed/{token}", name="calendar_feed")
async def calendar_feed(
    token: str,
    session: AsyncSession = Depends(get_session),
) -> Response:
    feed = await build_subscription_feed(session, token=token, settings=get_settings())
    if feed is None:
        raise HTTPException(status_code=404, detail="Calendar not found")

    return Response(
        content=feed.body,
        media_type=CALENDAR_MEDIA_TYPE,
        headers={
            "Content-Disposition": f'inline; filename="{feed.filename}"',
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )
