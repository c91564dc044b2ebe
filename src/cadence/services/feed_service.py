from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.models import CalendarSubscription, Event, SubscriptionFilter
from cadence.db.repos import CalendarSubscriptionRepository, EventRepository
from cadence.ical import FeedOptions, encode_calendar, event_view_from_model
from cadence.logging_config import log_with_fields
from cadence.settings import Settings

logger = logging.getLogger("cadence.feed")

_FILENAME_UNSAFE = re.compile(r"[^a-zA-Z0-9]")


@dataclass(frozen=True, slots=True)
class CalendarFeed:
    body: bytes
    filename: str
    event_count: int


def normalize_token(raw: str) -> str:
    token = raw.strip()
    if token.lower().endswith(".ics"):
        token = token[: -len(".ics")]
    return token


def feed_filename(calendar_name: str) -> str:
    return f"{_FILENAME_UNSAFE.sub('_', calendar_name) or 'calendar'}.ics"


def _category_filter(subscription: CalendarSubscription) -> list[uuid.UUID] | None:
    if subscription.filter_type != SubscriptionFilter.event_categories:
        return None
    selected: list[uuid.UUID] = []
    for raw in subscription.category_ids or []:
        try:
            selected.append(uuid.UUID(str(raw)))
        except ValueError:
            log_with_fields(
                logger,
                logging.WARNING,
                "ignoring malformed category id",
                subscription_id=subscription.id,
                category_id=raw,
            )
    return selected


async def build_subscription_feed(
    session: AsyncSession,
    *,
    token: str,
    settings: Settings,
    now: datetime | None = None,
) -> CalendarFeed | None:
    """Render the calendar for a subscription token.

    Returns None when the token is unknown or inactive. A store failure while
    loading events yields an empty calendar instead of an error so clients do
    not drop the subscription.
    """

    subscriptions = CalendarSubscriptionRepository(session)
    subscription = await subscriptions.get_by_token(normalize_token(token))
    if subscription is None or not subscription.is_active:
        return None

    now_utc = now if now is not None else datetime.now(UTC)
    organization_id = subscription.organization_id
    calendar_name = subscription.organization.name
    options = FeedOptions.from_settings(settings)
    category_ids = _category_filter(subscription)

    events: list[Event] = []
    if category_ids is None or category_ids:
        try:
            events = await EventRepository(session).list_for_feed(
                organization_id,
                starts_from=now_utc,
                category_ids=category_ids,
                limit=settings.feed_max_events,
            )
            subscription.last_fetched_at = now_utc
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            log_with_fields(
                logger,
                logging.ERROR,
                "feed query failed",
                organization_id=organization_id,
                exc_info=True,
            )
            events = []

    body = encode_calendar(
        [event_view_from_model(event) for event in events],
        calendar_name,
        options=options,
        now=now_utc,
    )
    log_with_fields(
        logger,
        logging.INFO,
        "feed generated",
        organization_id=organization_id,
        events=len(events),
        bytes=len(body),
    )
    return CalendarFeed(body=body, filename=feed_filename(calendar_name), event_count=len(events))
