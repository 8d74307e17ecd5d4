from datetime import UTC, datetime
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from monthly_report.config import Settings
from monthly_report.pipeline import PipelineRunner
from monthly_report.record_source import build_ledger_query


logger = logging.getLogger(__name__)


def scheduled_run_key(run_date) -> str:
    return f"scheduled-{build_ledger_query(run_date).period_label}"


def _run_monthly_report(settings: Settings, session_factory: sessionmaker[Session]) -> None:
    run_date = datetime.now(UTC).date()
    run_key = scheduled_run_key(run_date)

    runner = PipelineRunner.from_settings(settings, session_factory)
    summary = runner.run(run_date=run_date, run_key=run_key, trigger_source="scheduled")
    context = {
        "run_key": summary.run_key,
        "status": summary.status,
        "partitions": summary.partitions,
        "notifications_sent": summary.notifications_sent,
        "reused_existing_run": summary.reused_existing_run,
    }
    if summary.status == "failed":
        logger.error("scheduled report run failed: run_key=%s", summary.run_key, extra=context)
        return
    logger.info("scheduled report run completed", extra=context)


def build_scheduler(settings: Settings, session_factory: sessionmaker[Session]) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_monthly_report,
        "cron",
        args=[settings, session_factory],
        day=settings.schedule_day,
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="monthly_sales_report",
        replace_existing=True,
    )
    return scheduler


def start_scheduler(settings: Settings, session_factory: sessionmaker[Session], *, run_now: bool = False) -> None:
    scheduler = build_scheduler(settings, session_factory)

    logger.info(
        "scheduler started",
        extra={
            "schedule_day": settings.schedule_day,
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        _run_monthly_report(settings, session_factory)

    scheduler.start()
