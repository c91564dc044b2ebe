from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.models import CancellationNotification, User
from cadence.db.repos.base import BaseRepository


class CancellationNotificationRepository(BaseRepository[CancellationNotification]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, CancellationNotification)

    async def list_unsent_for_batch(self, batch_key: str) -> list[CancellationNotification]:
        result = await self.session.execute(
            select(CancellationNotification)
            .where(
                CancellationNotification.batch_key == batch_key,
                CancellationNotification.sent_at.is_(None),
            )
            .order_by(CancellationNotification.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_due_batch_keys(self, now: datetime) -> list[str]:
        result = await self.session.execute(
            select(CancellationNotification.batch_key)
            .where(
                CancellationNotification.sent_at.is_(None),
                CancellationNotification.process_after <= now,
            )
            .distinct()
            .order_by(CancellationNotification.batch_key.asc())
        )
        return list(result.scalars().all())

    async def list_recipients(self, organization_id: uuid.UUID) -> list[User]:
        result = await self.session.execute(
            select(User)
            .where(
                User.organization_id == organization_id,
                User.email_notifications.is_(True),
            )
            .order_by(User.email.asc())
        )
        return list(result.scalars().all())
