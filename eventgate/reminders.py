"""Reminder emails for events that are about to start."""

from __future__ import annotations

import logging
from datetime import datetime

from .config import settings
from .database import get_session
from .mail import build_transport
from .notifications import NotificationDispatcher
from .repositories import Repositories
from .utils import utcnow

# Use uvicorn's error logger so reminder messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")


def run_reminder_cycle(now: datetime | None = None, *, transport=None) -> dict:
    """Send one reminder to each approved attendee of upcoming events.

    Attendees already holding a sent reminder for the event are skipped, so
    running the cycle repeatedly never duplicates a successful reminder.
    """
    stats = {"events": 0, "sent": 0, "failed": 0, "skipped": 0}
    now = now or utcnow()
    window_end = now + settings.reminder_window
    transport = transport or build_transport(settings)

    logger.info(
        "Reminder cycle started (window=%dh)", settings.reminder_window_hours
    )

    with get_session() as session:
        repos = Repositories(session)
        dispatcher = NotificationDispatcher(repos, transport, settings=settings)
        for event in repos.events.starting_between(now, window_end):
            stats["events"] += 1
            already_reminded = repos.sent_emails.reminded_recipients(event.id)
            organizer = event.organizer.full_name if event.organizer else None
            payloads = []
            for submission in repos.submissions.approved_attendees(event.id):
                email = (submission.user_email or "").strip()
                if email.lower() in already_reminded:
                    stats["skipped"] += 1
                    continue
                already_reminded.add(email.lower())
                payloads.append(
                    {
                        "id": submission.id,
                        "to": email,
                        "name": submission.user_name,
                        "event": event,
                        "ticket_number": submission.ticket_number,
                        "organizer_name": organizer,
                    }
                )
            if not payloads:
                continue
            results = dispatcher.notify_batch("reminder", payloads)
            sent = sum(result.success for result in results)
            stats["sent"] += sent
            stats["failed"] += len(results) - sent

    logger.info(
        "Reminder cycle finished: %d events, %d sent, %d failed, %d skipped",
        stats["events"],
        stats["sent"],
        stats["failed"],
        stats["skipped"],
    )
    return stats
