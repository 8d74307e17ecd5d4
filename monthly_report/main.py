import argparse
from datetime import UTC, date, datetime
import logging

from monthly_report.config import get_settings
from monthly_report.database import build_session_factory
from monthly_report.pipeline import PipelineRunner
from monthly_report.record_source import build_ledger_query
from monthly_report.scheduler import start_scheduler


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="run-monthly-report",
        description="Send last month's sales details to each sales rep",
    )
    parser.add_argument("--run-date", help="Run date in YYYY-MM-DD format (defaults to today, UTC)")
    parser.add_argument("--run-key", help="Idempotency key for this run (defaults to the reported month)")
    parser.add_argument(
        "--trigger-source",
        default="manual",
        choices=["manual", "scheduled"],
        help="Metadata label for how this run was triggered",
    )
    parser.add_argument("--schedule", action="store_true", help="start the monthly scheduler instead of running once")
    parser.add_argument("--run-now", action="store_true", help="with --schedule, also run once immediately")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    session_factory = build_session_factory(settings.database_url)
    if args.schedule:
        start_scheduler(settings, session_factory, run_now=args.run_now)
        return

    run_date = date.fromisoformat(args.run_date) if args.run_date else datetime.now(UTC).date()
    run_key = args.run_key or build_ledger_query(run_date).period_label

    runner = PipelineRunner.from_settings(settings, session_factory)
    summary = runner.run(run_date=run_date, run_key=run_key, trigger_source=args.trigger_source)

    print(
        "run_id={run_id} run_key={run_key} period={start}..{end} status={status} fetched={fetched} "
        "transformed={transformed} invalid={invalid} partitions={partitions} artifacts={artifacts} "
        "sent={sent} failed={failed} skipped={skipped} reused={reused} report={report}".format(
            run_id=summary.run_id,
            run_key=summary.run_key,
            start=summary.period_start.isoformat(),
            end=summary.period_end.isoformat(),
            status=summary.status,
            fetched=summary.records_fetched,
            transformed=summary.records_transformed,
            invalid=summary.records_failed,
            partitions=summary.partitions,
            artifacts=summary.artifacts_created,
            sent=summary.notifications_sent,
            failed=summary.notifications_failed + summary.persist_failures,
            skipped=summary.notifications_skipped,
            reused=summary.reused_existing_run,
            report=summary.report_path,
        )
    )
    if summary.status == "failed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
