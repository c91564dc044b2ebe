from __future__ import annotations

import asyncio
import logging
import smtplib
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from email.message import EmailMessage
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.models import CancellationNotification, EventStatus
from cadence.db.repos import CancellationNotificationRepository, EventRepository
from cadence.ical import FeedOptions, encode_single_event, event_view_from_model
from cadence.logging_config import log_with_fields
from cadence.recurrence import as_utc
from cadence.services.series_service import SeriesNotFoundError, mark_customized
from cadence.settings import Settings

logger = logging.getLogger("cadence.notifications")

URGENT_WINDOW = timedelta(hours=2)


@dataclass(slots=True)
class CancellationEmail:
    recipient_email: str
    recipient_name: str
    event_name: str
    starts_at: datetime
    urgent: bool = False
    roles: list[str] = field(default_factory=list)
    attachment: bytes | None = None


@dataclass(slots=True)
class ProcessResult:
    batches: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(frozen=True, slots=True)
class BatchOutcome:
    sent: int = 0
    skipped: int = 0
    failed: int = 0


class NotificationSender(Protocol):
    async def send_cancellation(self, email: CancellationEmail) -> None: ...


def batch_key_for(event_id: uuid.UUID, now: datetime) -> str:
    """Key that groups cancellations of one event within the same clock hour."""

    hour = as_utc(now).replace(minute=0, second=0, microsecond=0)
    millis = (hour - datetime(1970, 1, 1, tzinfo=UTC)) // timedelta(milliseconds=1)
    return f"{event_id}-{millis}"


def is_urgent(starts_at: datetime, now: datetime) -> bool:
    return as_utc(starts_at) - as_utc(now) <= URGENT_WINDOW


class NoopNotificationSender:
    async def send_cancellation(self, email: CancellationEmail) -> None:
        _ = email


class SmtpNotificationSender:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        from_email: str,
        username: str | None,
        password: str | None,
        use_ssl: bool,
        use_starttls: bool,
        timeout_seconds: float,
    ) -> None:
        self.host = host
        self.port = port
        self.from_email = from_email
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.use_starttls = use_starttls
        self.timeout_seconds = timeout_seconds

    async def send_cancellation(self, email: CancellationEmail) -> None:
        await asyncio.to_thread(self._send_sync, email)

    def _build_message(self, email: CancellationEmail) -> EmailMessage:
        message = EmailMessage()
        prefix = "URGENT: " if email.urgent else ""
        message["Subject"] = f"{prefix}Cancelled: {email.event_name}"
        message["From"] = self.from_email
        message["To"] = email.recipient_email
        body_lines = [
            f"Hi {email.recipient_name or email.recipient_email},",
            "",
            f"{email.event_name} on {email.starts_at.isoformat()} has been cancelled.",
        ]
        if email.roles:
            body_lines.extend(["", "Affected roles:"])
            body_lines.extend(f"- {role}" for role in email.roles)
        message.set_content("\n".join(body_lines))

        if email.attachment is not None:
            message.add_attachment(
                email.attachment,
                maintype="text",
                subtype="calendar",
                filename="cancellation.ics",
                params={"method": "PUBLISH"},
            )
        return message

    def _send_sync(self, email: CancellationEmail) -> None:
        message = self._build_message(email)

        if self.use_ssl:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout_seconds) as smtp:
                self._login_if_configured(smtp)
                smtp.send_message(message)
            return

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as smtp:
            if self.use_starttls:
                smtp.starttls()
            self._login_if_configured(smtp)
            smtp.send_message(message)

    def _login_if_configured(self, smtp: smtplib.SMTP) -> None:
        if self.username is None:
            return
        if self.password is None:
            return
        smtp.login(self.username, self.password)


def build_notification_sender(settings: Settings) -> NotificationSender:
    if settings.smtp_host is None or settings.smtp_from_email is None:
        return NoopNotificationSender()

    return SmtpNotificationSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        from_email=settings.smtp_from_email,
        username=settings.smtp_username,
        password=(
            settings.smtp_password.get_secret_value()
            if settings.smtp_password is not None
            else None
        ),
        use_ssl=settings.smtp_use_ssl,
        use_starttls=settings.smtp_use_starttls,
        timeout_seconds=settings.smtp_timeout_seconds,
    )


async def cancel_event(
    session: AsyncSession,
    *,
    event_id: uuid.UUID,
    settings: Settings,
    cancelled_by_user_id: uuid.UUID | None = None,
    role_name: str | None = None,
    now: datetime | None = None,
) -> CancellationNotification:
    """Mark an event cancelled and enqueue its notification.

    Delivery happens later in `process_due_notifications`; cancellations of
    the same event within one hour share a batch and produce one email per
    recipient.
    """

    events = EventRepository(session)
    event = await events.get_by_id(event_id)
    if event is None:
        raise SeriesNotFoundError(str(event_id))

    now_utc = as_utc(now) if now is not None else datetime.now(UTC)
    if event.status != EventStatus.cancelled:
        event.status = EventStatus.cancelled
        mark_customized(event)

    notification = CancellationNotification(
        event_id=event.id,
        cancelled_by_user_id=cancelled_by_user_id,
        role_name=role_name,
        batch_key=batch_key_for(event.id, now_utc),
        process_after=now_utc + timedelta(minutes=settings.cancellation_batch_delay_minutes),
    )
    session.add(notification)
    await session.commit()
    log_with_fields(
        logger,
        logging.INFO,
        "cancellation queued",
        event_id=event.id,
        batch_key=notification.batch_key,
    )
    return notification


async def _process_batch(
    session: AsyncSession,
    *,
    batch_key: str,
    sender: NotificationSender,
    settings: Settings,
    now: datetime,
) -> BatchOutcome:
    repo = CancellationNotificationRepository(session)
    rows = await repo.list_unsent_for_batch(batch_key)
    if not rows:
        return BatchOutcome()

    event = await EventRepository(session).get_with_roster(rows[0].event_id)
    if event is None:
        return BatchOutcome()
    roles = sorted({row.role_name for row in rows if row.role_name})
    recipients = await repo.list_recipients(event.organization_id)

    attachment = encode_single_event(
        event_view_from_model(event),
        event.name,
        options=FeedOptions.from_settings(settings),
        now=now,
    )
    urgent = is_urgent(event.start_time, now)

    sent = 0
    failed = 0
    for user in recipients:
        try:
            await sender.send_cancellation(
                CancellationEmail(
                    recipient_email=user.email,
                    recipient_name=f"{user.first_name} {user.last_name}".strip(),
                    event_name=event.name,
                    starts_at=as_utc(event.start_time),
                    urgent=urgent,
                    roles=roles,
                    attachment=attachment,
                )
            )
        except (OSError, smtplib.SMTPException):
            failed += 1
            log_with_fields(
                logger,
                logging.ERROR,
                "cancellation email failed",
                batch_key=batch_key,
                recipient=user.email,
                exc_info=True,
            )
            continue
        sent += 1

    # Marked sent even with failures so delivered recipients are not emailed twice.
    for row in rows:
        row.sent_at = now
    await session.commit()

    skipped = 0 if recipients else len(rows)
    log_with_fields(
        logger,
        logging.INFO,
        "cancellation batch processed",
        batch_key=batch_key,
        recipients=sent,
        failed=failed or None,
        urgent=urgent,
    )
    return BatchOutcome(sent=sent, skipped=skipped, failed=failed)


async def process_due_notifications(
    session: AsyncSession,
    *,
    sender: NotificationSender,
    settings: Settings,
    now: datetime | None = None,
) -> ProcessResult:
    now_utc = as_utc(now) if now is not None else datetime.now(UTC)
    repo = CancellationNotificationRepository(session)

    result = ProcessResult()
    for batch_key in await repo.list_due_batch_keys(now_utc):
        outcome = await _process_batch(
            session, batch_key=batch_key, sender=sender, settings=settings, now=now_utc
        )
        result.batches += 1
        result.sent += outcome.sent
        result.skipped += outcome.skipped
        result.failed += outcome.failed
    return result
