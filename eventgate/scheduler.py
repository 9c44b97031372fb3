"""APScheduler integration."""

from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .reminders import run_reminder_cycle

_scheduler: BackgroundScheduler | None = None


def start_scheduler() -> BackgroundScheduler | None:
    """Run the reminder cycle in the background; a zero interval disables it."""
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    if settings.reminder_interval_minutes <= 0:
        return None
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_reminder_cycle,
        "interval",
        minutes=settings.reminder_interval_minutes,
        id="reminder-cycle",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
