from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import cadence.db as db
from cadence.cli import _run_due_notifications
from cadence.db.models import (
    AssignmentStatus,
    CancellationNotification,
    Event,
    EventAssignment,
    EventStatus,
    Organization,
    User,
)
from cadence.notifications import (
    CancellationEmail,
    NoopNotificationSender,
    NotificationSender,
    SmtpNotificationSender,
    batch_key_for,
    build_notification_sender,
    cancel_event,
    is_urgent,
    process_due_notifications,
)
from cadence.services import SeriesNotFoundError
from cadence.settings import Settings

NOW = datetime(2030, 3, 10, 8, 20, tzinfo=UTC)


@dataclass
class CapturingSender(NotificationSender):
    sent: list[CancellationEmail]

    async def send_cancellation(self, email: CancellationEmail) -> None:
        self.sent.append(email)


async def _seed_event(
    session: AsyncSession, organization: Organization, *, starts_in: timedelta
) -> Event:
    pianist = User(
        organization_id=organization.id,
        email="pianist@example.com",
        first_name="Ada",
        last_name="Lovelace",
    )
    session.add_all(
        [
            pianist,
            User(
                organization_id=organization.id,
                email="leader@example.com",
                first_name="Grace",
                last_name="Hopper",
            ),
            User(
                organization_id=organization.id,
                email="quiet@example.com",
                first_name="No",
                last_name="Mail",
                email_notifications=False,
            ),
        ]
    )
    await session.flush()

    event = Event(
        organization_id=organization.id,
        name="Evening Prayer",
        start_time=NOW + starts_in,
        end_time=NOW + starts_in + timedelta(hours=1),
    )
    event.assignments.append(
        EventAssignment(user_id=pianist.id, role_name="Piano", status=AssignmentStatus.accepted)
    )
    session.add(event)
    await session.commit()
    return event


def test_batch_key_groups_by_clock_hour() -> None:
    event_id = uuid.UUID("7a1c2a1e-0000-4000-8000-000000000001")
    first = batch_key_for(event_id, datetime(2030, 3, 10, 8, 1, tzinfo=UTC))
    second = batch_key_for(event_id, datetime(2030, 3, 10, 8, 59, tzinfo=UTC))
    later = batch_key_for(event_id, datetime(2030, 3, 10, 9, 0, tzinfo=UTC))

    assert first == second == f"{event_id}-1899360000000"
    assert later != first


def test_is_urgent_within_two_hours() -> None:
    assert is_urgent(NOW + timedelta(hours=2), NOW) is True
    assert is_urgent(NOW + timedelta(hours=2, minutes=1), NOW) is False


def test_build_notification_sender_defaults_to_noop() -> None:
    assert isinstance(build_notification_sender(Settings(smtp_host=None)), NoopNotificationSender)

    smtp = build_notification_sender(
        Settings(smtp_host="smtp.example.com", smtp_from_email="noreply@example.com")
    )
    assert isinstance(smtp, SmtpNotificationSender)
    assert smtp.host == "smtp.example.com"


def test_smtp_message_carries_calendar_attachment() -> None:
    sender = SmtpNotificationSender(
        host="smtp.example.com",
        port=587,
        from_email="noreply@example.com",
        username=None,
        password=None,
        use_ssl=False,
        use_starttls=True,
        timeout_seconds=5.0,
    )
    message = sender._build_message(
        CancellationEmail(
            recipient_email="leader@example.com",
            recipient_name="Grace Hopper",
            event_name="Evening Prayer",
            starts_at=NOW,
            urgent=True,
            roles=["Piano"],
            attachment=b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n",
        )
    )

    assert message["Subject"] == "URGENT: Cancelled: Evening Prayer"
    attachments = list(message.iter_attachments())
    assert len(attachments) == 1
    assert attachments[0].get_content_type() == "text/calendar"


@pytest.mark.asyncio
async def test_cancel_event_marks_event_and_enqueues(
    db_session: AsyncSession, organization: Organization, settings: Settings
) -> None:
    event = await _seed_event(db_session, organization, starts_in=timedelta(days=1))

    notification = await cancel_event(
        db_session, event_id=event.id, settings=settings, role_name="Piano", now=NOW
    )

    assert event.status == EventStatus.cancelled
    assert event.is_customized is True
    assert event.sequence == 1
    assert notification.batch_key == batch_key_for(event.id, NOW)
    assert notification.process_after == NOW + timedelta(minutes=5)
    assert notification.sent_at is None


@pytest.mark.asyncio
async def test_cancel_unknown_event_raises(
    db_session: AsyncSession, organization: Organization, settings: Settings
) -> None:
    _ = organization
    with pytest.raises(SeriesNotFoundError):
        await cancel_event(db_session, event_id=uuid.uuid4(), settings=settings)


@pytest.mark.asyncio
async def test_process_due_notifications_waits_for_batch_window(
    db_session: AsyncSession, organization: Organization, settings: Settings
) -> None:
    event = await _seed_event(db_session, organization, starts_in=timedelta(hours=1))
    await cancel_event(db_session, event_id=event.id, settings=settings, role_name="Piano", now=NOW)
    await cancel_event(
        db_session,
        event_id=event.id,
        settings=settings,
        role_name="Vocals",
        now=NOW + timedelta(minutes=2),
    )

    sender = CapturingSender(sent=[])
    early = await process_due_notifications(
        db_session, sender=sender, settings=settings, now=NOW + timedelta(minutes=4)
    )
    assert early.batches == 0
    assert sender.sent == []

    result = await process_due_notifications(
        db_session, sender=sender, settings=settings, now=NOW + timedelta(minutes=10)
    )
    assert result.batches == 1
    assert result.sent == 2
    assert sorted(email.recipient_email for email in sender.sent) == [
        "leader@example.com",
        "pianist@example.com",
    ]
    first = sender.sent[0]
    assert first.urgent is True
    assert first.roles == ["Piano", "Vocals"]
    assert first.attachment is not None
    assert b"STATUS:CANCELLED" in first.attachment
    assert b"Piano: Ada Lovelace" in first.attachment.replace(b"\r\n ", b"")

    again = await process_due_notifications(
        db_session, sender=sender, settings=settings, now=NOW + timedelta(minutes=20)
    )
    assert again.batches == 0
    assert len(sender.sent) == 2


@dataclass
class FailingSender(NotificationSender):
    sent: list[CancellationEmail]
    failing: set[tuple[str, str]]

    async def send_cancellation(self, email: CancellationEmail) -> None:
        if (email.event_name, email.recipient_email) in self.failing:
            raise ConnectionRefusedError("smtp unavailable")
        self.sent.append(email)


@pytest.mark.asyncio
async def test_send_failure_does_not_block_other_batches_or_resend(
    db_session: AsyncSession, organization: Organization, settings: Settings
) -> None:
    prayer = await _seed_event(db_session, organization, starts_in=timedelta(days=1))
    rehearsal = Event(
        organization_id=organization.id,
        name="Choir Rehearsal",
        start_time=NOW + timedelta(days=2),
        end_time=NOW + timedelta(days=2, hours=1),
    )
    db_session.add(rehearsal)
    await db_session.commit()

    await cancel_event(db_session, event_id=prayer.id, settings=settings, now=NOW)
    await cancel_event(db_session, event_id=rehearsal.id, settings=settings, now=NOW)

    sender = FailingSender(sent=[], failing={("Evening Prayer", "pianist@example.com")})
    result = await process_due_notifications(
        db_session, sender=sender, settings=settings, now=NOW + timedelta(minutes=10)
    )

    assert result.batches == 2
    assert result.sent == 3
    assert result.failed == 1
    assert sorted((email.event_name, email.recipient_email) for email in sender.sent) == [
        ("Choir Rehearsal", "leader@example.com"),
        ("Choir Rehearsal", "pianist@example.com"),
        ("Evening Prayer", "leader@example.com"),
    ]

    again = await process_due_notifications(
        db_session, sender=sender, settings=settings, now=NOW + timedelta(minutes=20)
    )
    assert again.batches == 0
    assert len(sender.sent) == 3


@pytest.mark.asyncio
async def test_run_due_notifications_cli_marks_rows_sent(
    db_session: AsyncSession, organization: Organization, settings: Settings
) -> None:
    event = await _seed_event(db_session, organization, starts_in=timedelta(days=3))
    await cancel_event(
        db_session,
        event_id=event.id,
        settings=settings,
        now=datetime.now(UTC) - timedelta(minutes=30),
    )

    sender = CapturingSender(sent=[])
    await _run_due_notifications(sender=sender)

    assert len(sender.sent) == 2
    assert sender.sent[0].urgent is False
    async with db.SessionMaker() as verify_session:
        rows = (await verify_session.execute(select(CancellationNotification))).scalars().all()
        assert [row.sent_at is not None for row in rows] == [True]
