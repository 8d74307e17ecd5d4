from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation

from monthly_report.errors import TransformError


PartitionKey = str
UNASSIGNED: PartitionKey = "Unassigned"


def _unwrap(value: object, attr: str) -> object:
    # Search engines return select fields as [{"value": ..., "text": ...}].
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        value = value[0]
    if isinstance(value, Mapping):
        return value.get(attr)
    return value


def _clean(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_amount(value: object) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(_clean(value))
    except (InvalidOperation, ValueError) as exc:
        raise TransformError(f"amount is not a number: {value!r}") from exc
    if not amount.is_finite():
        raise TransformError(f"amount is not finite: {value!r}")
    return amount


@dataclass(frozen=True)
class RawRecord:
    transaction_id: str
    customer_name: str
    customer_email: str
    amount: Decimal
    owner_ref: str | None = None
    owner_email: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> "RawRecord":
        if not isinstance(row, Mapping):
            raise TransformError(f"record must be a mapping, got {type(row).__name__}")

        transaction_id = _clean(_unwrap(row.get("transaction_id"), "value"))
        if not transaction_id:
            raise TransformError("transaction_id is required")

        customer_name = _clean(_unwrap(row.get("customer_name"), "text"))
        if not customer_name:
            raise TransformError(f"customer_name is required for transaction {transaction_id}")

        if "amount" not in row or row["amount"] in (None, ""):
            raise TransformError(f"amount is required for transaction {transaction_id}")

        owner_ref = _clean(_unwrap(row.get("owner_ref"), "value")) or None
        owner_email = _clean(_unwrap(row.get("owner_email"), "value")) or None

        return cls(
            transaction_id=transaction_id,
            customer_name=customer_name,
            customer_email=_clean(_unwrap(row.get("customer_email"), "value")),
            amount=_parse_amount(row["amount"]),
            owner_ref=owner_ref,
            owner_email=owner_email,
        )


@dataclass(frozen=True)
class ReportLine:
    customer_name: str
    customer_email: str
    transaction_id: str
    amount: Decimal

    def as_row(self) -> list[str]:
        return [self.customer_name, self.customer_email, self.transaction_id, str(self.amount)]


@dataclass(frozen=True)
class Partition:
    key: PartitionKey
    lines: tuple[ReportLine, ...]
    owner_email: str | None = None

    @property
    def is_unassigned(self) -> bool:
        return self.key == UNASSIGNED


@dataclass(frozen=True)
class ArtifactHandle:
    name: str
    path: str
    content_type: str
    folder: str
    online: bool
    size_bytes: int


@dataclass(frozen=True)
class InvalidRecord:
    record_index: int
    record: dict[str, object]
    reason: str


@dataclass(frozen=True)
class NotificationOutcome:
    partition_key: PartitionKey
    status: str
    line_count: int
    recipient: str | None = None
    artifact_name: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in {"notified", "already_delivered"}


@dataclass(frozen=True)
class RunSummary:
    run_id: int
    run_key: str
    run_date: date
    period_start: date
    period_end: date
    trigger_source: str
    status: str
    stage: str
    records_fetched: int = 0
    records_transformed: int = 0
    records_failed: int = 0
    partitions: int = 0
    artifacts_created: int = 0
    persist_failures: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    notifications_skipped: int = 0
    outcomes: tuple[NotificationOutcome, ...] = field(default_factory=tuple)
    reused_existing_run: bool = False
    error: str | None = None
    report_path: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "run_key": self.run_key,
            "run_date": self.run_date.isoformat(),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "trigger_source": self.trigger_source,
            "status": self.status,
            "stage": self.stage,
            "records_fetched": self.records_fetched,
            "records_transformed": self.records_transformed,
            "records_failed": self.records_failed,
            "partitions": self.partitions,
            "artifacts_created": self.artifacts_created,
            "persist_failures": self.persist_failures,
            "notifications_sent": self.notifications_sent,
            "notifications_failed": self.notifications_failed,
            "notifications_skipped": self.notifications_skipped,
            "error": self.error,
            "outcomes": [
                {
                    "partition_key": outcome.partition_key,
                    "status": outcome.status,
                    "recipient": outcome.recipient,
                    "artifact_name": outcome.artifact_name,
                    "line_count": outcome.line_count,
                    "error": outcome.error,
                }
                for outcome in self.outcomes
            ],
        }
