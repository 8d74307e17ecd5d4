from collections.abc import Iterable
from datetime import UTC, date, datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from monthly_report.db_models import DeadLetterRecord, PartitionDelivery, PipelineRun, StepRun
from monthly_report.schemas import InvalidRecord, NotificationOutcome


RERUNNABLE_STATUSES = frozenset({"failed", "completed_with_errors"})
IN_PROGRESS_STATUSES = frozenset({"queued", "running"})


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def get_run_by_key(db: Session, run_key: str) -> PipelineRun | None:
    stmt = select(PipelineRun).where(PipelineRun.run_key == run_key)
    return db.execute(stmt).scalar_one_or_none()


def create_or_get_run(
    db: Session,
    *,
    run_key: str,
    run_date: date,
    period: tuple[date, date],
    trigger_source: str,
) -> tuple[PipelineRun, bool]:
    run = PipelineRun(
        run_key=run_key,
        run_date=run_date,
        period_start=period[0],
        period_end=period[1],
        trigger_source=trigger_source,
        status="queued",
    )
    db.add(run)
    try:
        db.commit()
    except IntegrityError:
        # Unique run_key enforces idempotent run creation.
        db.rollback()
        existing = get_run_by_key(db, run_key)
        if existing:
            return existing, False
        raise

    db.refresh(run)
    return run, True


def is_rerunnable(run: PipelineRun, *, lease_seconds: float, now: datetime | None = None) -> bool:
    if run.status in RERUNNABLE_STATUSES:
        return True
    # A run still marked in progress after its lease was abandoned by a killed process.
    if run.status in IN_PROGRESS_STATUSES:
        now = now or utc_now()
        return run.started_at < now - timedelta(seconds=lease_seconds)
    return False


def reset_run_for_retry(db: Session, run: PipelineRun) -> None:
    """Clear per-attempt state but keep deliveries that already reached their recipient."""
    db.execute(delete(DeadLetterRecord).where(DeadLetterRecord.run_id == run.id))
    db.execute(
        delete(PartitionDelivery).where(
            PartitionDelivery.run_id == run.id,
            PartitionDelivery.status != "notified",
        )
    )

    run.status = "queued"
    run.stage = "initializing"
    run.error = None
    run.completed_at = None
    db.commit()


def delivered_partition_keys(db: Session, run_id: int) -> set[str]:
    stmt = select(PartitionDelivery.partition_key).where(
        PartitionDelivery.run_id == run_id,
        PartitionDelivery.status == "notified",
    )
    return set(db.execute(stmt).scalars().all())


def mark_run_running(db: Session, run: PipelineRun) -> None:
    run.status = "running"
    run.started_at = utc_now()
    run.error = None
    db.commit()


def mark_run_stage(db: Session, run: PipelineRun, stage: str) -> None:
    run.stage = stage
    db.commit()


def finish_run(db: Session, run: PipelineRun, *, status: str, counts: dict[str, int], error: str | None = None) -> None:
    run.status = status
    for name, value in counts.items():
        setattr(run, name, value)
    run.error = error
    run.completed_at = utc_now()
    db.commit()


def next_step_attempt(db: Session, run_id: int, step_name: str) -> int:
    stmt = select(func.max(StepRun.attempt)).where(StepRun.run_id == run_id, StepRun.step_name == step_name)
    current = db.execute(stmt).scalar_one_or_none()
    return 1 if current is None else current + 1


def create_step_attempt(db: Session, *, run_id: int, step_name: str) -> StepRun:
    step = StepRun(
        run_id=run_id,
        step_name=step_name,
        attempt=next_step_attempt(db, run_id, step_name),
        status="started",
        started_at=utc_now(),
    )
    db.add(step)
    db.commit()
    db.refresh(step)
    return step


def finish_step_success(db: Session, step: StepRun) -> None:
    finished_at = utc_now()
    step.status = "succeeded"
    step.completed_at = finished_at
    step.duration_ms = (finished_at - step.started_at).total_seconds() * 1000
    step.error = None
    db.commit()


def finish_step_failure(db: Session, step: StepRun, error: str) -> None:
    finished_at = utc_now()
    step.status = "failed"
    step.completed_at = finished_at
    step.duration_ms = (finished_at - step.started_at).total_seconds() * 1000
    step.error = error
    db.commit()


def store_dead_letters(db: Session, *, run_id: int, invalid_records: Iterable[InvalidRecord]) -> None:
    for invalid in invalid_records:
        db.add(
            DeadLetterRecord(
                run_id=run_id,
                record_index=invalid.record_index,
                raw_record=str(invalid.record),
                reason=invalid.reason,
            )
        )
    db.commit()


def record_delivery(db: Session, *, run_id: int, outcome: NotificationOutcome) -> None:
    stmt = select(PartitionDelivery).where(
        PartitionDelivery.run_id == run_id,
        PartitionDelivery.partition_key == outcome.partition_key,
    )
    delivery = db.execute(stmt).scalar_one_or_none()
    if delivery is None:
        delivery = PartitionDelivery(run_id=run_id, partition_key=outcome.partition_key)
        db.add(delivery)
    elif delivery.status == "notified":
        # Never downgrade a partition that already reached its recipient.
        return

    delivery.status = outcome.status
    delivery.line_count = outcome.line_count
    delivery.recipient = outcome.recipient
    delivery.artifact_name = outcome.artifact_name
    delivery.error = outcome.error
    db.commit()
