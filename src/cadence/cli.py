from __future__ import annotations

import argparse
import asyncio
import uuid
from datetime import UTC, datetime

from dateutil.relativedelta import relativedelta

import cadence.db as db
from cadence.db.models import Base
from cadence.logging_config import configure_logging
from cadence.notifications import (
    NotificationSender,
    build_notification_sender,
    process_due_notifications,
)
from cadence.services import extend_all_series
from cadence.settings import get_settings


async def _init_db() -> None:
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def _run_extend_series(months: int, organization_id: uuid.UUID | None = None) -> None:
    settings = get_settings()
    target_date = datetime.now(UTC) + relativedelta(months=months)
    async with db.session_scope() as session:
        results = await extend_all_series(
            session,
            target_date=target_date,
            settings=settings,
            organization_id=organization_id,
        )

    created = sum(result.created for result in results)
    failed = sum(1 for result in results if result.error is not None)
    print(f"Extended {len(results)} series; created {created} occurrences; {failed} failed")


async def _run_due_notifications(sender: NotificationSender | None = None) -> None:
    settings = get_settings()
    selected_sender = sender if sender is not None else build_notification_sender(settings)
    async with db.session_scope() as session:
        result = await process_due_notifications(
            session, sender=selected_sender, settings=settings
        )

    print(
        f"Processed {result.batches} cancellation batches; "
        f"sent {result.sent} emails; failed {result.failed}; "
        f"skipped {result.skipped} notifications"
    )


async def _run_notifications_worker(poll_seconds: int) -> None:
    while True:
        await _run_due_notifications()
        await asyncio.sleep(poll_seconds)


def main() -> None:
    parser = argparse.ArgumentParser(prog="cadence")
    sub = parser.add_subparsers(dest="cmd", required=True)
    settings = get_settings()

    sub.add_parser("init-db")
    extend = sub.add_parser("extend-series")
    extend.add_argument("--months", type=int, default=settings.backfill_target_months)
    extend.add_argument("--organization", type=uuid.UUID, default=None)
    sub.add_parser("run-notifications")
    worker = sub.add_parser("run-notifications-worker")
    worker.add_argument(
        "--poll-seconds",
        type=int,
        default=settings.notification_worker_poll_seconds,
    )

    args = parser.parse_args()
    configure_logging(settings)

    if args.cmd == "init-db":
        asyncio.run(_init_db())
    elif args.cmd == "extend-series":
        months = max(1, min(12, int(args.months)))
        asyncio.run(_run_extend_series(months, args.organization))
    elif args.cmd == "run-notifications":
        asyncio.run(_run_due_notifications())
    elif args.cmd == "run-notifications-worker":
        poll_seconds = max(1, int(args.poll_seconds))
        asyncio.run(_run_notifications_worker(poll_seconds))
    else:
        raise SystemExit(2)
