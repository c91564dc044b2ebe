from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cadence.db.models import (
    CancellationNotification,
    Event,
    EventAssignment,
    EventStatus,
    MusicItem,
)
from cadence.db.repos.base import BaseRepository


class EventRepository(BaseRepository[Event]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Event)

    async def get_by_id(self, event_id: uuid.UUID) -> Event | None:
        return await self.get(event_id)

    async def get_with_roster(self, event_id: uuid.UUID) -> Event | None:
        result = await self.session.execute(
            select(Event)
            .options(
                selectinload(Event.assignments).selectinload(EventAssignment.user),
                selectinload(Event.music_items),
            )
            .where(Event.id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_root(self, root_id: uuid.UUID, *, with_roster: bool = False) -> Event | None:
        stmt = select(Event).where(Event.id == root_id, Event.is_root_event.is_(True))
        if with_roster:
            # Roster rows may have been added since the root was first loaded.
            stmt = stmt.options(
                selectinload(Event.assignments), selectinload(Event.music_items)
            ).execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_recurring_roots(
        self,
        *,
        organization_id: uuid.UUID | None = None,
        root_id: uuid.UUID | None = None,
    ) -> list[Event]:
        stmt = select(Event).where(Event.is_root_event.is_(True), Event.is_recurring.is_(True))
        if organization_id is not None:
            stmt = stmt.where(Event.organization_id == organization_id)
        if root_id is not None:
            stmt = stmt.where(Event.id == root_id)
        result = await self.session.execute(stmt.order_by(Event.created_at.asc()))
        return list(result.scalars().all())

    async def get_latest_occurrence(self, root_id: uuid.UUID) -> Event | None:
        """Occurrence holding the latest generated slot, wherever a user has moved it."""

        slot = func.coalesce(Event.original_start_time, Event.start_time)
        result = await self.session.execute(
            select(Event)
            .where(Event.generated_from == root_id)
            .order_by(slot.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_occurrences(self, root_id: uuid.UUID) -> list[Event]:
        result = await self.session.execute(
            select(Event)
            .where(Event.generated_from == root_id)
            .order_by(Event.start_time.asc())
        )
        return list(result.scalars().all())

    async def count_occurrences(self, root_id: uuid.UUID) -> int:
        return await self.count_where(Event.generated_from == root_id)

    async def list_for_feed(
        self,
        organization_id: uuid.UUID,
        *,
        starts_from: datetime,
        category_ids: Sequence[uuid.UUID] | None = None,
        limit: int = 1000,
    ) -> list[Event]:
        stmt = (
            select(Event)
            .options(
                selectinload(Event.assignments).selectinload(EventAssignment.user),
                selectinload(Event.music_items),
            )
            .where(
                Event.organization_id == organization_id,
                Event.start_time >= starts_from,
                Event.status != EventStatus.tentative,
            )
        )
        if category_ids is not None:
            stmt = stmt.where(Event.category_id.in_(list(category_ids)))
        result = await self.session.execute(
            stmt.order_by(Event.start_time.asc()).limit(limit)
        )
        return list(result.scalars().all())

    async def delete_occurrences(
        self,
        root_id: uuid.UUID,
        *,
        starting_after: datetime | None = None,
        include_customized: bool = True,
    ) -> int:
        """Delete generated occurrences of a root along with their roster rows.

        Returns the number of occurrences removed.
        """

        predicates = [Event.generated_from == root_id]
        if starting_after is not None:
            predicates.append(Event.start_time > starting_after)
        if not include_customized:
            predicates.append(Event.is_customized.is_(False))

        result = await self.session.execute(select(Event.id).where(*predicates))
        event_ids = list(result.scalars().all())
        if not event_ids:
            return 0

        await self.delete_dependents(event_ids)
        await self.delete_where(Event.id.in_(event_ids))
        return len(event_ids)

    async def delete_dependents(self, event_ids: Sequence[uuid.UUID]) -> None:
        if not event_ids:
            return
        await self.session.execute(
            delete(CancellationNotification).where(
                CancellationNotification.event_id.in_(list(event_ids))
            )
        )
        await self.session.execute(
            delete(EventAssignment).where(EventAssignment.event_id.in_(list(event_ids)))
        )
        await self.session.execute(
            delete(MusicItem).where(MusicItem.event_id.in_(list(event_ids)))
        )
