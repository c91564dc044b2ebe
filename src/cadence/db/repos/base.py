from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from cadence.db.models import Base

ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):  # noqa: UP046
    """Session-bound query helpers shared by the entity repositories.

    Nothing here commits; services own transaction boundaries.
    """

    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self.session = session
        self.model = model

    async def get(self, id_: Any) -> ModelT | None:
        return await self.session.get(self.model, id_)

    async def add_many(self, objs: Sequence[ModelT], *, flush: bool = True) -> list[ModelT]:
        self.session.add_all(objs)
        if flush:
            await self.session.flush()  # assigns ids for dependent rows
        return list(objs)

    async def count_where(self, *predicates: ColumnElement[bool]) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(self.model).where(*predicates)
        )
        return int(result.scalar_one())

    async def delete_where(self, *predicates: ColumnElement[bool]) -> None:
        await self.session.execute(delete(self.model).where(*predicates))

    async def patch(self, obj: ModelT, changes: Mapping[str, Any], *, flush: bool = True) -> ModelT:
        """Apply `changes`, leaving attributes whose new value is None untouched."""

        for key, value in changes.items():
            if value is None:
                continue
            setattr(obj, key, value)
        if flush:
            await self.session.flush()
        return obj
