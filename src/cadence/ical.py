"""RFC 5545 calendar feed encoding.

Documents are built with the `icalendar` library, which handles TEXT escaping
and 75-octet line folding. Events are normalized to UTC (no VTIMEZONE blocks),
which is what Google, Apple and Outlook clients accept most reliably for
subscribed feeds.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from icalendar import Calendar, vDatetime, vDuration
from icalendar import Event as VEvent

from cadence.db.models import AssignmentStatus, Event, EventStatus
from cadence.logging_config import log_with_fields
from cadence.recurrence import as_utc
from cadence.settings import Settings

logger = logging.getLogger("cadence.feed")

DEFAULT_DURATION = timedelta(hours=1)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_STATUS_VALUES: dict[EventStatus, str] = {
    EventStatus.confirmed: "CONFIRMED",
    EventStatus.tentative: "TENTATIVE",
    EventStatus.cancelled: "CANCELLED",
}


@dataclass(frozen=True, slots=True)
class AssignmentView:
    role_name: str | None
    first_name: str
    last_name: str
    status: AssignmentStatus


@dataclass(frozen=True, slots=True)
class MusicView:
    title: str
    notes: str | None = None


@dataclass(frozen=True, slots=True)
class EventView:
    id: uuid.UUID | str
    name: str
    start_time: datetime
    end_time: datetime | None
    created_at: datetime
    updated_at: datetime
    sequence: int = 0
    status: EventStatus = EventStatus.confirmed
    description: str | None = None
    location: str | None = None
    assignments: tuple[AssignmentView, ...] = ()
    music: tuple[MusicView, ...] = ()


@dataclass(frozen=True, slots=True)
class FeedOptions:
    product_id: str = "-//Cadence//Service Scheduler 1.0//EN"
    uid_domain: str = "cadence.app"
    text_max_length: int = 200
    description_max_length: int = 1000
    refresh_minutes: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> FeedOptions:
        return cls(
            product_id=settings.feed_product_id,
            uid_domain=settings.feed_uid_domain,
            text_max_length=settings.feed_text_max_length,
            description_max_length=settings.feed_description_max_length,
            refresh_minutes=settings.feed_refresh_minutes,
        )


def event_view_from_model(event: Event) -> EventView:
    """Snapshot an ORM event (with assignments and music loaded) for encoding."""

    assignments = tuple(
        AssignmentView(
            role_name=a.role_name,
            first_name=a.user.first_name if a.user is not None else "",
            last_name=a.user.last_name if a.user is not None else "",
            status=a.status,
        )
        for a in event.assignments
    )
    music = tuple(
        MusicView(title=m.title, notes=m.notes)
        for m in sorted(event.music_items, key=lambda m: m.position)
    )
    return EventView(
        id=event.id,
        name=event.name,
        start_time=event.start_time,
        end_time=event.end_time,
        created_at=event.created_at,
        updated_at=event.updated_at,
        sequence=event.sequence,
        status=event.status,
        description=event.description,
        location=event.location,
        assignments=assignments,
        music=music,
    )


def format_utc(value: datetime) -> str:
    return vDatetime(as_utc(value)).to_ical().decode("ascii")


def build_uid(event_id: uuid.UUID | str, updated_at: datetime, domain: str) -> str:
    millis = (as_utc(updated_at) - _EPOCH) // timedelta(milliseconds=1)
    return f"{event_id}_{millis}@{domain}"


def clean_text(value: str | None, *, max_length: int = 200) -> str:
    """Collapse whitespace and line breaks to single spaces, then trim.

    Trimming happens on the plain text, before any escaping, so an escape
    sequence is never cut in half.
    """

    if not value:
        return ""
    return " ".join(value.split())[:max_length].rstrip()


def clean_multiline_text(lines: Sequence[str], *, max_length: int = 1000) -> str:
    remaining = max_length
    parts: list[str] = []
    for line in lines:
        if remaining <= 0:
            break
        cleaned = " ".join(line.split())[:remaining]
        remaining -= len(cleaned) + 1
        parts.append(cleaned)
    while parts and not parts[-1]:
        parts.pop()
    return "\n".join(parts)


def description_lines(event: EventView) -> list[str]:
    blocks: list[list[str]] = []

    if event.description and event.description.strip():
        blocks.append([event.description])

    musicians = [
        f"{a.role_name or 'Musician'}: {a.first_name} {a.last_name}".strip()
        for a in event.assignments
        if a.status == AssignmentStatus.accepted and (a.first_name or a.last_name)
    ]
    if musicians:
        blocks.append(["Musicians:", *musicians])

    titles = [f"- {m.title.strip()}" for m in event.music if m.title and m.title.strip()]
    if titles:
        blocks.append(["Music:", *titles])

    lines: list[str] = []
    for block in blocks:
        if lines:
            lines.append("")
        lines.extend(block)
    return lines


def build_vevent(event: EventView, *, stamp: datetime, options: FeedOptions) -> VEvent:
    start = as_utc(event.start_time)
    end = as_utc(event.end_time) if event.end_time is not None else None
    if end is None or end <= start:
        end = start + DEFAULT_DURATION

    summary = clean_text(event.name, max_length=options.text_max_length) or "(No title)"
    if event.status == EventStatus.cancelled:
        summary = f"CANCELLED: {summary}"

    vevent = VEvent()
    vevent.add("dtstart", start)
    vevent.add("dtend", end)
    vevent.add("dtstamp", as_utc(stamp))
    vevent.add("uid", build_uid(event.id, event.updated_at, options.uid_domain))
    vevent.add("created", as_utc(event.created_at))
    vevent.add("last-modified", as_utc(event.updated_at))
    vevent.add("sequence", max(event.sequence, 0))
    vevent.add("status", _STATUS_VALUES.get(event.status, "CONFIRMED"))
    vevent.add("summary", summary)

    description = clean_multiline_text(
        description_lines(event), max_length=options.description_max_length
    )
    if description:
        vevent.add("description", description)

    location = clean_text(event.location, max_length=options.text_max_length)
    if location:
        vevent.add("location", location)
    return vevent


def build_calendar(calendar_name: str, options: FeedOptions) -> Calendar:
    name = clean_text(calendar_name, max_length=options.text_max_length) or "Calendar"

    calendar = Calendar()
    calendar.add("version", "2.0")
    calendar.add("prodid", options.product_id)
    calendar.add("calscale", "GREGORIAN")
    calendar.add("method", "PUBLISH")
    calendar.add("x-wr-calname", name)
    calendar.add("x-wr-caldesc", f"{name} schedule")
    calendar.add("x-wr-timezone", "UTC")
    if options.refresh_minutes > 0:
        refresh = timedelta(minutes=options.refresh_minutes)
        calendar.add("refresh-interval", vDuration(refresh), parameters={"VALUE": "DURATION"})
        calendar.add("x-published-ttl", vDuration(refresh))
    return calendar


def encode_calendar(
    events: Iterable[EventView],
    calendar_name: str,
    *,
    options: FeedOptions | None = None,
    now: datetime | None = None,
) -> bytes:
    """Encode events as an iCalendar document.

    A single event that cannot be encoded is logged and left out; it never
    invalidates the rest of the feed.
    """

    selected = options if options is not None else FeedOptions()
    stamp = now if now is not None else datetime.now(UTC)

    calendar = build_calendar(calendar_name, selected)
    for event in events:
        try:
            vevent = build_vevent(event, stamp=stamp, options=selected)
        except (AttributeError, TypeError, ValueError, OverflowError):
            log_with_fields(
                logger,
                logging.WARNING,
                "skipping unencodable event",
                event_id=getattr(event, "id", None),
                exc_info=True,
            )
            continue
        calendar.add_component(vevent)
    # Keep insertion order; clients read DTSTART/UID first.
    return calendar.to_ical(sorted=False)


def encode_single_event(
    event: EventView,
    calendar_name: str,
    *,
    options: FeedOptions | None = None,
    now: datetime | None = None,
) -> bytes:
    """Encode one event as a standalone document (email attachments)."""

    return encode_calendar([event], calendar_name, options=options, now=now)
