from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cadence.db.models import CalendarSubscription
from cadence.db.repos.base import BaseRepository


class CalendarSubscriptionRepository(BaseRepository[CalendarSubscription]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, CalendarSubscription)

    async def get_by_token(self, token: str) -> CalendarSubscription | None:
        result = await self.session.execute(
            select(CalendarSubscription)
            .options(selectinload(CalendarSubscription.organization))
            .where(CalendarSubscription.token == token)
        )
        return result.scalar_one_or_none()
