from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime, tzinfo

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.models import (
    AssignmentStatus,
    Event,
    EventAssignment,
    EventStatus,
    MusicItem,
    Organization,
)
from cadence.db.repos import EventRepository
from cadence.logging_config import log_with_fields
from cadence.recurrence import (
    PatternKind,
    RecurrencePattern,
    as_utc,
    expand,
    format_pattern,
    months_between,
    parse_pattern,
    pattern_problems,
    resolve_timezone,
)
from cadence.settings import Settings

logger = logging.getLogger("cadence.series")


class SeriesNotFoundError(LookupError):
    pass


@dataclass(frozen=True, slots=True)
class RoleSlot:
    role_name: str | None
    user_id: uuid.UUID | None = None


@dataclass(frozen=True, slots=True)
class MusicSelection:
    title: str
    notes: str | None = None
    service_part: str | None = None


@dataclass(frozen=True, slots=True)
class ExtensionResult:
    root_event_id: uuid.UUID
    name: str
    organization_id: uuid.UUID
    created: int
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RegenerationResult:
    deleted: int
    created: list[uuid.UUID]


def slot_time(occurrence: Event) -> datetime:
    """The instant an occurrence was generated for, in UTC."""

    return as_utc(occurrence.original_start_time or occurrence.start_time)


async def organization_timezone(session: AsyncSession, organization_id: uuid.UUID) -> tzinfo:
    organization = await session.get(Organization, organization_id)
    return resolve_timezone(organization.timezone if organization is not None else None)


def build_occurrences(root: Event, timestamps: Sequence[datetime]) -> list[Event]:
    """Turn expanded instants into occurrence rows copied from `root`.

    Descriptive fields are copied, not linked. The root's duration is
    re-applied to each instant; a root without an end time yields occurrences
    without one.
    """

    duration = None
    if root.end_time is not None:
        duration = as_utc(root.end_time) - as_utc(root.start_time)
        if duration.total_seconds() <= 0:
            duration = None

    occurrences: list[Event] = []
    for timestamp in timestamps:
        start = as_utc(timestamp)
        occurrences.append(
            Event(
                organization_id=root.organization_id,
                category_id=root.category_id,
                name=root.name,
                description=root.description,
                location=root.location,
                start_time=start,
                end_time=(start + duration) if duration is not None else None,
                status=EventStatus.confirmed,
                is_recurring=False,
                is_root_event=False,
                recurrence_pattern=None,
                parent_event_id=root.id,
                generated_from=root.id,
                original_start_time=start,
                is_customized=False,
                sequence=0,
            )
        )
    return occurrences


async def copy_roster(session: AsyncSession, *, root: Event, occurrences: Sequence[Event]) -> None:
    """Give each occurrence a point-in-time copy of the root's roster.

    Assignments restart as pending. The root must have its assignments and
    music items loaded.
    """

    rows: list[EventAssignment | MusicItem] = []
    for occurrence in occurrences:
        rows.extend(
            EventAssignment(
                event_id=occurrence.id,
                user_id=assignment.user_id,
                role_name=assignment.role_name,
                status=AssignmentStatus.pending,
            )
            for assignment in root.assignments
        )
        rows.extend(
            MusicItem(
                event_id=occurrence.id,
                title=item.title,
                notes=item.notes,
                service_part=item.service_part,
                position=item.position,
            )
            for item in root.music_items
        )
    if rows:
        session.add_all(rows)
        await session.flush()


async def materialize_occurrences(
    session: AsyncSession,
    *,
    root: Event,
    timestamps: Sequence[datetime],
    batch_size: int,
    with_roster: bool = True,
) -> list[Event]:
    """Persist occurrences for `timestamps` in batches, one commit per batch.

    Roster rows for a batch are written in the same commit as its occurrences.
    """

    events = EventRepository(session)
    occurrences = build_occurrences(root, timestamps)
    size = max(batch_size, 1)

    for offset in range(0, len(occurrences), size):
        batch = occurrences[offset : offset + size]
        await events.add_many(batch)
        if with_roster:
            await copy_roster(session, root=root, occurrences=batch)
        await session.commit()

    if occurrences:
        log_with_fields(
            logger,
            logging.INFO,
            "materialized occurrences",
            root_event_id=root.id,
            count=len(occurrences),
            first=occurrences[0].start_time,
            last=occurrences[-1].start_time,
        )
    return occurrences


async def create_series_with_occurrences(
    session: AsyncSession,
    *,
    organization_id: uuid.UUID,
    name: str,
    start_time: datetime,
    end_time: datetime | None,
    pattern: RecurrencePattern,
    settings: Settings,
    description: str | None = None,
    location: str | None = None,
    category_id: uuid.UUID | None = None,
    roles: Sequence[RoleSlot] = (),
    music: Sequence[MusicSelection] = (),
) -> tuple[Event, list[Event]]:
    problems = pattern_problems(pattern)
    if problems:
        raise ValueError(problems[0])

    root = Event(
        organization_id=organization_id,
        category_id=category_id,
        name=name,
        description=description,
        location=location,
        start_time=as_utc(start_time),
        end_time=as_utc(end_time) if end_time is not None else None,
        status=EventStatus.confirmed,
        is_recurring=True,
        is_root_event=True,
        recurrence_pattern=format_pattern(pattern),
        assignments=[
            EventAssignment(user_id=slot.user_id, role_name=slot.role_name) for slot in roles
        ],
        music_items=[
            MusicItem(
                title=selection.title,
                notes=selection.notes,
                service_part=selection.service_part,
                position=position,
            )
            for position, selection in enumerate(music)
        ],
    )
    session.add(root)
    await session.flush()

    tz = await organization_timezone(session, organization_id)
    scheduled = expand(
        root.start_time,
        pattern,
        settings.expansion_horizon_months,
        tz=tz,
        ceiling=settings.occurrence_ceiling,
    )
    if not scheduled:
        log_with_fields(
            logger,
            logging.WARNING,
            "no occurrences generated",
            root_event_id=root.id,
            pattern=root.recurrence_pattern,
        )
        await session.commit()
        return root, []

    occurrences = await materialize_occurrences(
        session,
        root=root,
        timestamps=scheduled,
        batch_size=settings.materialize_batch_size,
    )
    await session.commit()
    return root, occurrences


async def extend_series(
    session: AsyncSession,
    *,
    root_id: uuid.UUID,
    target_date: datetime,
    settings: Settings,
) -> list[uuid.UUID]:
    """Append occurrences so the series reaches `target_date`.

    Only ever appends after the latest materialized occurrence, so calling it
    again before new occurrences are due writes nothing. Callers must serialize
    extension per root.
    """

    events = EventRepository(session)
    root = await events.get_root(root_id, with_roster=True)
    if root is None or not root.is_recurring:
        return []

    pattern = parse_pattern(root.recurrence_pattern)
    if pattern is None:
        log_with_fields(
            logger,
            logging.WARNING,
            "series has no usable recurrence pattern",
            root_event_id=root.id,
        )
        return []

    latest = await events.get_latest_occurrence(root.id)
    if latest is None:
        return []

    # Seed from the slot the occurrence was generated for; a moved occurrence
    # must not shift the phase of later ones.
    latest_start = slot_time(latest)
    target = as_utc(target_date)
    if latest_start >= target:
        return []

    tz = await organization_timezone(session, root.organization_id)
    if pattern.end_date is not None and latest_start.astimezone(tz).date() >= pattern.end_date:
        log_with_fields(logger, logging.DEBUG, "series already ended", root_event_id=root.id)
        return []

    if pattern.max_occurrences is not None:
        remaining = pattern.max_occurrences - await events.count_occurrences(root.id)
        if remaining <= 0:
            return []
        pattern = replace(pattern, max_occurrences=remaining)

    window_end = target.astimezone(tz) + relativedelta(months=settings.extension_lookahead_months)

    # Month-day series re-anchor on the root so a clamped month (Feb 28) does
    # not pull every later occurrence to the 28th.
    seed = latest_start
    after: datetime | None = None
    if pattern.kind == PatternKind.monthly_by_date:
        seed = as_utc(root.start_time)
        after = latest_start

    new_dates = expand(
        seed,
        pattern,
        months_between(seed, window_end),
        after=after,
        until=window_end,
        tz=tz,
        ceiling=settings.occurrence_ceiling,
    )
    if not new_dates:
        return []

    occurrences = await materialize_occurrences(
        session,
        root=root,
        timestamps=new_dates,
        batch_size=settings.materialize_batch_size,
    )
    log_with_fields(
        logger,
        logging.INFO,
        "extended series",
        root_event_id=root.id,
        created=len(occurrences),
        target=target,
    )
    return [occ.id for occ in occurrences]


async def extend_all_series(
    session: AsyncSession,
    *,
    target_date: datetime,
    settings: Settings,
    organization_id: uuid.UUID | None = None,
    root_id: uuid.UUID | None = None,
) -> list[ExtensionResult]:
    events = EventRepository(session)
    roots = await events.list_recurring_roots(organization_id=organization_id, root_id=root_id)
    # Snapshot identity first; a rollback below expires loaded instances.
    targets = [(root.id, root.name, root.organization_id) for root in roots]

    results: list[ExtensionResult] = []
    for rid, name, org_id in targets:
        try:
            created = await extend_series(
                session, root_id=rid, target_date=target_date, settings=settings
            )
        except SQLAlchemyError as exc:
            await session.rollback()
            log_with_fields(
                logger,
                logging.ERROR,
                "series extension failed",
                root_event_id=rid,
                exc_info=True,
            )
            results.append(
                ExtensionResult(
                    root_event_id=rid,
                    name=name,
                    organization_id=org_id,
                    created=0,
                    error=type(exc).__name__,
                )
            )
            continue
        results.append(
            ExtensionResult(
                root_event_id=rid, name=name, organization_id=org_id, created=len(created)
            )
        )
    return results


async def regenerate_future_occurrences(
    session: AsyncSession,
    *,
    root_id: uuid.UUID,
    settings: Settings,
    now: datetime | None = None,
) -> RegenerationResult:
    """Rebuild future occurrences from the root's current definition.

    Occurrences flagged customized survive, as do past ones; their slots are
    never generated again.
    """

    events = EventRepository(session)
    root = await events.get_root(root_id, with_roster=True)
    if root is None:
        raise SeriesNotFoundError(str(root_id))

    now_utc = as_utc(now) if now is not None else datetime.now(UTC)
    deleted = await events.delete_occurrences(
        root.id, starting_after=now_utc, include_customized=False
    )
    await session.flush()

    pattern = parse_pattern(root.recurrence_pattern) if root.is_recurring else None
    if pattern is None:
        await session.commit()
        return RegenerationResult(deleted=deleted, created=[])

    surviving = await events.list_occurrences(root.id)
    taken_slots = {slot_time(occ) for occ in surviving}
    if pattern.max_occurrences is not None:
        remaining = pattern.max_occurrences - len(surviving)
        if remaining <= 0:
            await session.commit()
            return RegenerationResult(deleted=deleted, created=[])
        pattern = replace(pattern, max_occurrences=remaining)

    tz = await organization_timezone(session, root.organization_id)
    seed = as_utc(root.start_time)
    until = now_utc.astimezone(tz) + relativedelta(months=settings.expansion_horizon_months)
    scheduled = [
        dt
        for dt in expand(
            seed,
            pattern,
            months_between(seed, until),
            after=now_utc,
            until=until,
            tz=tz,
            ceiling=settings.occurrence_ceiling,
        )
        if as_utc(dt) not in taken_slots
    ]

    occurrences = await materialize_occurrences(
        session,
        root=root,
        timestamps=scheduled,
        batch_size=settings.materialize_batch_size,
    )
    await session.commit()
    log_with_fields(
        logger,
        logging.INFO,
        "regenerated series",
        root_event_id=root.id,
        deleted=deleted,
        created=len(occurrences),
        kept=len(surviving),
    )
    return RegenerationResult(deleted=deleted, created=[occ.id for occ in occurrences])


async def update_series_definition(
    session: AsyncSession,
    *,
    root_id: uuid.UUID,
    settings: Settings,
    name: str | None = None,
    description: str | None = None,
    location: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    pattern: RecurrencePattern | None = None,
    now: datetime | None = None,
) -> RegenerationResult:
    events = EventRepository(session)
    root = await events.get_root(root_id)
    if root is None:
        raise SeriesNotFoundError(str(root_id))

    if pattern is not None:
        problems = pattern_problems(pattern)
        if problems:
            raise ValueError(problems[0])

    await events.patch(
        root,
        {
            "name": name,
            "description": description,
            "location": location,
            "start_time": as_utc(start_time) if start_time is not None else None,
            "end_time": as_utc(end_time) if end_time is not None else None,
            "recurrence_pattern": format_pattern(pattern) if pattern is not None else None,
        },
        flush=False,
    )
    root.sequence += 1
    await session.flush()

    return await regenerate_future_occurrences(
        session, root_id=root.id, settings=settings, now=now
    )


async def edit_occurrence(
    session: AsyncSession,
    *,
    occurrence_id: uuid.UUID,
    name: str | None = None,
    description: str | None = None,
    location: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
) -> Event:
    """Apply a direct user edit to one event and flag it as customized."""

    events = EventRepository(session)
    occurrence = await events.get_by_id(occurrence_id)
    if occurrence is None:
        raise SeriesNotFoundError(str(occurrence_id))

    await events.patch(
        occurrence,
        {
            "name": name,
            "description": description,
            "location": location,
            "start_time": as_utc(start_time) if start_time is not None else None,
            "end_time": as_utc(end_time) if end_time is not None else None,
        },
        flush=False,
    )
    mark_customized(occurrence)
    await session.commit()
    return occurrence


def mark_customized(event: Event) -> None:
    if not event.is_root_event:
        event.is_customized = True
    event.sequence += 1


async def delete_series(session: AsyncSession, *, root_id: uuid.UUID) -> int:
    """Delete a root event and every occurrence generated from it."""

    events = EventRepository(session)
    root = await events.get_root(root_id)
    if root is None:
        raise SeriesNotFoundError(str(root_id))

    deleted = await events.delete_occurrences(root.id)
    await events.delete_dependents([root.id])
    await events.delete_where(Event.id == root.id)
    await session.commit()
    log_with_fields(logger, logging.INFO, "deleted series", root_event_id=root_id, deleted=deleted)
    return deleted


async def convert_to_single_event(session: AsyncSession, *, root_id: uuid.UUID) -> Event:
    """Drop a root's recurrence, keeping the root as a standalone event."""

    events = EventRepository(session)
    root = await events.get_root(root_id)
    if root is None:
        raise SeriesNotFoundError(str(root_id))

    deleted = await events.delete_occurrences(root.id)
    root.is_recurring = False
    root.is_root_event = False
    root.recurrence_pattern = None
    root.sequence += 1
    await session.commit()
    log_with_fields(
        logger,
        logging.INFO,
        "converted series to single event",
        root_event_id=root.id,
        deleted=deleted,
    )
    return root
