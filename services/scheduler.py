"""
Scheduler for the Shopify polling loop.

Uses APScheduler to run:
- a window sync every few minutes (orders updated in the last day),
- an hourly deep sync over the last week,
- one full sync right after startup.
"""
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Settings, settings as default_settings
from services.order_sync_runner import OrderSyncRunner
from utils import get_logger

log = get_logger("scheduler")


def _run(runner: OrderSyncRunner, label: str, hours: Optional[int] = None) -> None:
    try:
        log.info("Starting %s...", label)
        if hours is None:
            summary = runner.run_sync(source=label)
        else:
            summary = runner.sync_recent(hours=hours, source=label)
        log.info(
            "%s completed: imported=%d updated=%d errors=%d",
            label, summary.imported, summary.updated, len(summary.errors),
        )
    except Exception as e:
        # The next tick retries; the failure is already recorded on the sync run.
        log.error("%s failed: %s", label, e)


def poll_recent(runner: OrderSyncRunner, hours: int) -> None:
    _run(runner, "poll", hours)


def deep_sync(runner: OrderSyncRunner, hours: int) -> None:
    _run(runner, "deep", hours)


def full_sync(runner: OrderSyncRunner) -> None:
    _run(runner, "startup")


def build_scheduler(runner: OrderSyncRunner, settings: Settings = default_settings) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone=timezone.utc)

    scheduler.add_job(
        poll_recent,
        trigger=IntervalTrigger(minutes=settings.sync_poll_interval_minutes),
        args=[runner, settings.sync_poll_window_hours],
        id="shopify_poll",
        name="Shopify Orders Sync (recent)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        deep_sync,
        trigger=CronTrigger(minute=0, timezone=timezone.utc),
        args=[runner, settings.sync_deep_window_days * 24],
        id="shopify_deep_sync",
        name="Shopify Orders Deep Sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if settings.sync_run_on_startup:
        scheduler.add_job(
            full_sync,
            trigger="date",
            run_date=datetime.now(timezone.utc),
            args=[runner],
            id="shopify_initial_sync",
            name="Shopify Orders Initial Sync",
            replace_existing=True,
        )

    return scheduler


def start_scheduler(runner: OrderSyncRunner, settings: Settings = default_settings) -> BackgroundScheduler:
    scheduler = build_scheduler(runner, settings)
    scheduler.start()
    log.info("Scheduler started with %d jobs", len(scheduler.get_jobs()))
    return scheduler


def stop_scheduler(scheduler: Optional[BackgroundScheduler]) -> None:
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        log.info("Scheduler stopped")
