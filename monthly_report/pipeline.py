from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from itertools import chain
import json
import logging
from pathlib import Path
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from monthly_report.accumulator import PartitionAccumulator
from monthly_report.artifacts import ArtifactBuilder, ArtifactStore, FileArtifactStore
from monthly_report.config import Settings
from monthly_report.database import build_engine
from monthly_report.db_models import PartitionDelivery, PipelineRun
from monthly_report.errors import PersistFailure, SourceUnavailable, TransformError
from monthly_report.notifier import MailTransport, Notifier, SmtpTransport
from monthly_report.record_source import LedgerQuery, RecordSearch, RecordSource, SqlLedgerSearch, previous_month_window
from monthly_report.run_store import (
    create_or_get_run,
    create_step_attempt,
    delivered_partition_keys,
    finish_run,
    finish_step_failure,
    finish_step_success,
    is_rerunnable,
    mark_run_running,
    mark_run_stage,
    record_delivery,
    reset_run_for_retry,
    store_dead_letters,
)
from monthly_report.schemas import InvalidRecord, NotificationOutcome, Partition, RunSummary
from monthly_report.transform import map_row


logger = logging.getLogger(__name__)
T = TypeVar("T")
_END = object()


class RunStage(str, Enum):
    INITIALIZING = "initializing"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    ACCUMULATING = "accumulating"
    EMITTING = "emitting"
    SUMMARIZING = "summarizing"
    DONE = "done"


@dataclass
class _MapStats:
    fetched: int = 0
    transformed: int = 0
    invalid: list[InvalidRecord] = field(default_factory=list)


class PipelineRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        search: RecordSearch,
        artifact_store: ArtifactStore,
        transport: MailTransport,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.search = search
        self.artifact_builder = ArtifactBuilder(
            artifact_store,
            folder=settings.artifact_folder,
            include_header=settings.artifact_include_header,
        )
        self.notifier = Notifier(transport, settings.notification_config())

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: sessionmaker[Session]) -> "PipelineRunner":
        return cls(
            settings,
            session_factory,
            search=SqlLedgerSearch(build_engine(settings.ledger_database_url)),
            artifact_store=FileArtifactStore(Path(settings.output_dir) / "artifacts"),
            transport=SmtpTransport(
                settings.smtp_host,
                settings.smtp_port,
                user=settings.smtp_user,
                password=settings.smtp_password,
                use_tls=settings.smtp_use_tls,
            ),
        )

    def run(self, *, run_date: date, run_key: str, trigger_source: str = "manual") -> RunSummary:
        period = previous_month_window(run_date)
        with self.session_factory() as db:
            run, created = create_or_get_run(
                db,
                run_key=run_key,
                run_date=run_date,
                period=period,
                trigger_source=trigger_source,
            )
            if not created:
                if is_rerunnable(run, lease_seconds=self.settings.run_lease_seconds):
                    logger.info("re-executing run", extra={"run_key": run_key, "previous_status": run.status})
                    reset_run_for_retry(db, run)
                else:
                    logger.info("idempotent run reused", extra={"run_key": run_key, "status": run.status})
                    return self._summary_from_run(db, run, reused_existing_run=True)

            mark_run_running(db, run)
            try:
                return self._execute(db, run, LedgerQuery(date_window=period))
            except (KeyboardInterrupt, SystemExit):
                context = {"run_key": run_key, "stage": run.stage}
                logger.error("run cancelled: run_key=%s stage=%s", run_key, run.stage, extra=context)
                finish_run(db, run, status="failed", counts={}, error="run cancelled")
                raise
            except Exception as exc:
                context = {"run_key": run_key, "stage": run.stage}
                logger.exception("report run failed: run_key=%s stage=%s", run_key, run.stage, extra=context)
                finish_run(db, run, status="failed", counts={}, error=str(exc))
                return self._summary_from_run(db, run, reused_existing_run=False)

    def _execute(self, db: Session, run: PipelineRun, query: LedgerQuery) -> RunSummary:
        already_delivered = delivered_partition_keys(db, run.id)
        source = RecordSource(
            self.search,
            query,
            page_size=self.settings.page_size,
            max_retries=self.settings.max_fetch_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
        )
        stats = _MapStats()
        accumulator = PartitionAccumulator()
        partitions: list[Partition] = []
        source_error: str | None = None

        try:
            rows = source.records()
            first_row = self._run_stage(db, run, RunStage.FETCHING, lambda: next(rows, _END))
            if first_row is not _END:
                rows = chain([first_row], rows)
                self._run_stage(
                    db,
                    run,
                    RunStage.TRANSFORMING,
                    lambda: self._transform_all(rows, accumulator, stats),
                )
        except SourceUnavailable as exc:
            # Nothing is emitted from a partially read ledger.
            source_error = str(exc)
            logger.error(
                "ledger source unavailable; no reports will be sent: run_key=%s error=%s",
                run.run_key,
                source_error,
                extra={"run_key": run.run_key, "records_fetched": stats.fetched, "error": source_error},
            )
        else:
            partitions = self._run_stage(db, run, RunStage.ACCUMULATING, accumulator.finalize)

        store_dead_letters(db, run_id=run.id, invalid_records=stats.invalid)

        outcomes: list[NotificationOutcome] = []
        if partitions:
            outcomes = self._run_stage(
                db,
                run,
                RunStage.EMITTING,
                lambda: self._emit_all(db, run, partitions, already_delivered),
            )

        return self._summarize(db, run, stats=stats, partitions=partitions, outcomes=outcomes, source_error=source_error)

    def _run_stage(self, db: Session, run: PipelineRun, stage: RunStage, fn: Callable[[], T]) -> T:
        mark_run_stage(db, run, stage.value)
        # Persist each stage attempt so re-executions stay auditable.
        step = create_step_attempt(db, run_id=run.id, step_name=stage.value)
        try:
            result = fn()
        except BaseException as exc:
            finish_step_failure(db, step, str(exc) or type(exc).__name__)
            raise
        finish_step_success(db, step)
        return result

    def _transform_all(
        self,
        rows: Iterator[Mapping[str, object]],
        accumulator: PartitionAccumulator,
        stats: _MapStats,
    ) -> None:
        window = max(1, self.settings.max_workers) * 4
        pending: dict[Future[None], tuple[int, Mapping[str, object]]] = {}
        executor = ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="report-map")
        try:
            for index, row in enumerate(rows):
                stats.fetched += 1
                pending[executor.submit(self._map_unit, accumulator, index, row)] = (index, row)
                if len(pending) >= window:
                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    self._collect_map_results(done, pending, stats)
            done, _ = wait(pending)
            self._collect_map_results(done, pending, stats)
        except BaseException:
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

    @staticmethod
    def _map_unit(accumulator: PartitionAccumulator, index: int, row: Mapping[str, object]) -> None:
        key, line, owner_email = map_row(row)
        accumulator.add(key, line, ordinal=index, owner_email=owner_email)

    def _collect_map_results(
        self,
        done: set[Future[None]],
        pending: dict[Future[None], tuple[int, Mapping[str, object]]],
        stats: _MapStats,
    ) -> None:
        for future in done:
            index, row = pending.pop(future)
            exc = future.exception()
            if exc is None:
                stats.transformed += 1
                continue

            reason = str(exc) if isinstance(exc, TransformError) else f"{type(exc).__name__}: {exc}"
            transaction_id = row.get("transaction_id") if isinstance(row, Mapping) else None
            logger.warning(
                "record transform failed: index=%s transaction_id=%s reason=%s",
                index,
                transaction_id,
                reason,
                extra={"record_index": index, "transaction_id": transaction_id, "reason": reason},
            )
            record = dict(row) if isinstance(row, Mapping) else {"value": row}
            stats.invalid.append(InvalidRecord(index, record, reason))

    def _emit_all(
        self,
        db: Session,
        run: PipelineRun,
        partitions: list[Partition],
        already_delivered: set[str],
    ) -> list[NotificationOutcome]:
        outcomes: list[NotificationOutcome] = []
        to_emit: list[Partition] = []
        for partition in partitions:
            if partition.key in already_delivered:
                logger.info("partition already delivered", extra={"run_key": run.run_key, "partition_key": partition.key})
                outcomes.append(NotificationOutcome(partition.key, "already_delivered", len(partition.lines)))
            else:
                to_emit.append(partition)

        executor = ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="report-emit")
        try:
            futures = {executor.submit(self._emit_partition, partition, run.run_key): partition for partition in to_emit}
            for future in as_completed(futures):
                partition = futures[future]
                try:
                    outcome = future.result()
                except Exception as exc:
                    logger.exception(
                        "partition emit failed: partition_key=%s", partition.key, extra={"partition_key": partition.key}
                    )
                    outcome = NotificationOutcome(partition.key, "failed", len(partition.lines), error=str(exc))
                # Recorded as each unit finishes so a cancelled run keeps what was delivered.
                record_delivery(db, run_id=run.id, outcome=outcome)
                outcomes.append(outcome)
        except BaseException:
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        return sorted(outcomes, key=lambda outcome: outcome.partition_key)

    def _emit_partition(self, partition: Partition, run_key: str) -> NotificationOutcome:
        try:
            artifact = self.artifact_builder.build(partition, run_key)
        except PersistFailure as exc:
            logger.error(
                "artifact persist failed; notification skipped: partition_key=%s error=%s",
                partition.key,
                exc.reason,
                extra={"partition_key": partition.key, "error": exc.reason},
            )
            return NotificationOutcome(partition.key, "persist_failed", len(partition.lines), error=str(exc))
        return self.notifier.notify(partition, artifact)

    def _summarize(
        self,
        db: Session,
        run: PipelineRun,
        *,
        stats: _MapStats,
        partitions: list[Partition],
        outcomes: list[NotificationOutcome],
        source_error: str | None,
    ) -> RunSummary:
        mark_run_stage(db, run, RunStage.SUMMARIZING.value)

        counts = {
            "records_fetched": stats.fetched,
            "records_transformed": stats.transformed,
            "records_failed": len(stats.invalid),
            "partitions": len(partitions),
            "artifacts_created": sum(1 for o in outcomes if o.status in {"notified", "send_failed"}),
            "persist_failures": sum(1 for o in outcomes if o.status == "persist_failed"),
            "notifications_sent": sum(1 for o in outcomes if o.status == "notified"),
            "notifications_failed": sum(1 for o in outcomes if o.status in {"send_failed", "failed"}),
            "notifications_skipped": sum(1 for o in outcomes if o.status == "already_delivered"),
        }
        if source_error is not None:
            status = "failed"
        elif stats.invalid or any(not outcome.succeeded for outcome in outcomes):
            status = "completed_with_errors"
        else:
            status = "succeeded"

        summary = RunSummary(
            run_id=run.id,
            run_key=run.run_key,
            run_date=run.run_date,
            period_start=run.period_start,
            period_end=run.period_end,
            trigger_source=run.trigger_source,
            status=status,
            stage=RunStage.DONE.value,
            outcomes=tuple(outcomes),
            error=source_error,
            report_path=self._report_path(run.run_key),
            **counts,
        )
        write_json(Path(summary.report_path), summary.as_dict())

        run.stage = RunStage.DONE.value
        finish_run(db, run, status=status, counts=counts, error=source_error)
        logger.info("report run summary", extra=summary.as_dict())
        return summary

    def _summary_from_run(self, db: Session, run: PipelineRun, *, reused_existing_run: bool) -> RunSummary:
        deliveries = db.execute(
            select(PartitionDelivery)
            .where(PartitionDelivery.run_id == run.id)
            .order_by(PartitionDelivery.partition_key)
        ).scalars()
        outcomes = tuple(
            NotificationOutcome(
                partition_key=delivery.partition_key,
                status=delivery.status,
                line_count=delivery.line_count,
                recipient=delivery.recipient,
                artifact_name=delivery.artifact_name,
                error=delivery.error,
            )
            for delivery in deliveries
        )
        return RunSummary(
            run_id=run.id,
            run_key=run.run_key,
            run_date=run.run_date,
            period_start=run.period_start,
            period_end=run.period_end,
            trigger_source=run.trigger_source,
            status=run.status,
            stage=run.stage,
            records_fetched=run.records_fetched,
            records_transformed=run.records_transformed,
            records_failed=run.records_failed,
            partitions=run.partitions,
            artifacts_created=run.artifacts_created,
            persist_failures=run.persist_failures,
            notifications_sent=run.notifications_sent,
            notifications_failed=run.notifications_failed,
            notifications_skipped=run.notifications_skipped,
            outcomes=outcomes,
            reused_existing_run=reused_existing_run,
            error=run.error,
            report_path=self._report_path(run.run_key),
        )

    def _report_path(self, run_key: str) -> str:
        return str(Path(self.settings.output_dir) / "reports" / f"{run_key}.json")


def write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True)
        outfile.write("\n")
