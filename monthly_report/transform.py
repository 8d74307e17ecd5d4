import csv
from collections.abc import Iterable, Mapping
from decimal import Decimal, InvalidOperation
import io

from monthly_report.errors import TransformError
from monthly_report.schemas import UNASSIGNED, PartitionKey, RawRecord, ReportLine


CSV_HEADER = ["Customer", "Email", "Document Number", "Amount"]


def transform_record(record: RawRecord) -> tuple[PartitionKey, ReportLine]:
    key = record.owner_ref or UNASSIGNED
    line = ReportLine(
        customer_name=record.customer_name,
        customer_email=record.customer_email or "",
        transaction_id=record.transaction_id,
        amount=record.amount,
    )
    return key, line


def map_row(row: Mapping[str, object]) -> tuple[PartitionKey, ReportLine, str | None]:
    record = RawRecord.from_row(row)
    key, line = transform_record(record)
    return key, line, record.owner_email


def serialize_lines(lines: Iterable[ReportLine], *, header: bool = False) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    if header:
        writer.writerow(CSV_HEADER)
    for line in lines:
        writer.writerow(line.as_row())
    return buffer.getvalue().encode("utf-8")


def parse_artifact(contents: bytes, *, header: bool = False) -> list[ReportLine]:
    reader = csv.reader(io.StringIO(contents.decode("utf-8")))
    if header:
        next(reader, None)

    lines: list[ReportLine] = []
    for row_number, row in enumerate(reader, start=1):
        if not row:
            continue
        if len(row) != 4:
            raise TransformError(f"row {row_number} has {len(row)} columns, expected 4")
        name, email, transaction_id, amount = row
        try:
            parsed_amount = Decimal(amount)
        except InvalidOperation as exc:
            raise TransformError(f"row {row_number} amount is not a number: {amount!r}") from exc
        lines.append(ReportLine(name, email, transaction_id, parsed_amount))
    return lines
