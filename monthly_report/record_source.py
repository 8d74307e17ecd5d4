"""Paginated retrieval of last month's invoice and cash-sale rows.

The query definition is an explicit ``LedgerQuery`` passed in by the caller;
the search backend only has to honour it page by page.
"""

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
import logging
from typing import Protocol

from sqlalchemy import Engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from monthly_report.db_models import LedgerTransaction
from monthly_report.errors import RetryExhaustedError, SourceUnavailable
from monthly_report.retry import run_with_retries


logger = logging.getLogger(__name__)

DEFAULT_RECORD_TYPES = frozenset({"invoice", "cash_sale"})
REPORT_FIELDS = (
    "transaction_id",
    "owner_ref",
    "owner_email",
    "customer_name",
    "customer_email",
    "amount",
)


def previous_month_window(run_date: date) -> tuple[date, date]:
    last_day = run_date.replace(day=1) - timedelta(days=1)
    return last_day.replace(day=1), last_day


@dataclass(frozen=True)
class LedgerQuery:
    date_window: tuple[date, date]
    record_types: frozenset[str] = DEFAULT_RECORD_TYPES
    mainline_only: bool = True

    @property
    def period_label(self) -> str:
        return self.date_window[0].strftime("%Y-%m")


def build_ledger_query(run_date: date) -> LedgerQuery:
    return LedgerQuery(date_window=previous_month_window(run_date))


@dataclass(frozen=True)
class SearchPage:
    rows: list[dict[str, object]]
    next_cursor: str | None = None


class RecordSearch(Protocol):
    def search(
        self,
        query: LedgerQuery,
        fields: Sequence[str],
        *,
        after: str | None,
        limit: int,
    ) -> SearchPage: ...


@dataclass
class SqlLedgerSearch:
    engine: Engine
    _columns: dict[str, object] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._columns = {
            "transaction_id": LedgerTransaction.transaction_id,
            "owner_ref": LedgerTransaction.owner_ref,
            "owner_email": LedgerTransaction.owner_email,
            "customer_name": LedgerTransaction.customer_name,
            "customer_email": LedgerTransaction.customer_email,
            "amount": LedgerTransaction.amount,
        }

    def search(
        self,
        query: LedgerQuery,
        fields: Sequence[str],
        *,
        after: str | None,
        limit: int,
    ) -> SearchPage:
        unknown = [name for name in fields if name not in self._columns]
        if unknown:
            raise ValueError(f"unknown ledger fields: {', '.join(unknown)}")

        start, end = query.date_window
        stmt = (
            select(LedgerTransaction.id, *(self._columns[name] for name in fields))
            .where(
                LedgerTransaction.transaction_date >= start,
                LedgerTransaction.transaction_date <= end,
                LedgerTransaction.record_type.in_(sorted(query.record_types)),
            )
            .order_by(LedgerTransaction.id)
            .limit(limit)
        )
        if query.mainline_only:
            stmt = stmt.where(LedgerTransaction.mainline.is_(True))
        if after is not None:
            stmt = stmt.where(LedgerTransaction.id > int(after))

        try:
            with Session(self.engine) as db:
                result = db.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise SourceUnavailable(f"ledger query failed: {exc}") from exc

        rows = [dict(zip(fields, row[1:])) for row in result]
        next_cursor = str(result[-1][0]) if len(result) == limit else None
        return SearchPage(rows=rows, next_cursor=next_cursor)


class RecordSource:
    def __init__(
        self,
        search: RecordSearch,
        query: LedgerQuery,
        *,
        page_size: int,
        max_retries: int,
        backoff_seconds: float,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.search = search
        self.query = query
        self.page_size = page_size
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.pages_fetched = 0

    def records(self) -> Iterator[dict[str, object]]:
        """Yield raw rows one page at a time.

        Raises ``SourceUnavailable`` once a page keeps failing after retries.
        Retrying a page reuses its cursor, so rows are never yielded twice.
        """
        cursor: str | None = None
        while True:
            page = self._fetch_page(cursor)
            self.pages_fetched += 1
            yield from page.rows
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    def _fetch_page(self, cursor: str | None) -> SearchPage:
        try:
            return run_with_retries(
                lambda: self.search.search(self.query, REPORT_FIELDS, after=cursor, limit=self.page_size),
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
                label=f"ledger page {self.pages_fetched + 1}",
                # A bad field list is a caller bug, not a flaky backend.
                should_retry=lambda exc: not isinstance(exc, ValueError),
            )
        except RetryExhaustedError as exc:
            logger.error(
                "ledger search unavailable: period=%s pages_fetched=%s",
                self.query.period_label,
                self.pages_fetched,
                extra={"period": self.query.period_label, "pages_fetched": self.pages_fetched},
            )
            raise SourceUnavailable(str(exc)) from exc
