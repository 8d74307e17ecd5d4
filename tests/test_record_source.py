from datetime import date
from decimal import Decimal

import pytest

from monthly_report.database import build_engine
from monthly_report.errors import SourceUnavailable
from monthly_report.record_source import (
    REPORT_FIELDS,
    LedgerQuery,
    RecordSource,
    SearchPage,
    SqlLedgerSearch,
    build_ledger_query,
    previous_month_window,
)


@pytest.mark.parametrize(
    ("run_date", "expected"),
    [
        (date(2026, 10, 5), (date(2026, 9, 1), date(2026, 9, 30))),
        (date(2026, 1, 1), (date(2025, 12, 1), date(2025, 12, 31))),
        (date(2024, 3, 31), (date(2024, 2, 1), date(2024, 2, 29))),
    ],
)
def test_previous_month_window(run_date: date, expected: tuple[date, date]) -> None:
    assert previous_month_window(run_date) == expected


def test_default_query_covers_invoices_and_cash_sales() -> None:
    query = build_ledger_query(date(2026, 10, 5))

    assert query.record_types == frozenset({"invoice", "cash_sale"})
    assert query.mainline_only is True
    assert query.period_label == "2026-09"


class FlakySearch:
    def __init__(self, failures: int, pages: list[list[dict[str, object]]]) -> None:
        self.failures = failures
        self.pages = pages
        self.cursors: list[str | None] = []

    def search(self, query, fields, *, after, limit):
        self.cursors.append(after)
        if self.failures:
            self.failures -= 1
            raise SourceUnavailable("timeout")
        index = 0 if after is None else int(after)
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return SearchPage(rows=self.pages[index], next_cursor=next_cursor)


def _source(search, **overrides) -> RecordSource:
    options = {"page_size": 2, "max_retries": 2, "backoff_seconds": 0}
    options.update(overrides)
    return RecordSource(search, build_ledger_query(date(2026, 10, 5)), **options)


def test_records_are_read_page_by_page() -> None:
    search = FlakySearch(0, [[{"n": 1}, {"n": 2}], [{"n": 3}]])
    source = _source(search)

    rows = source.records()
    assert next(rows) == {"n": 1}
    assert source.pages_fetched == 1

    assert [row["n"] for row in rows] == [2, 3]
    assert source.pages_fetched == 2
    assert search.cursors == [None, "1"]


def test_failed_page_is_retried_with_same_cursor() -> None:
    search = FlakySearch(1, [[{"n": 1}]])

    assert list(_source(search).records()) == [{"n": 1}]
    assert search.cursors == [None, None]


def test_exhausted_retries_raise_source_unavailable() -> None:
    search = FlakySearch(5, [[{"n": 1}]])

    with pytest.raises(SourceUnavailable, match="timeout"):
        list(_source(search, max_retries=1).records())
    assert len(search.cursors) == 2


def test_page_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        _source(FlakySearch(0, [[]]), page_size=0)


def test_sql_search_pages_with_keyset_cursor(session_factory, add_sale, test_settings) -> None:
    for number in range(5):
        add_sale(transaction_id=f"INV-{number}", amount=Decimal("10.50"))
    search = SqlLedgerSearch(build_engine(test_settings.ledger_database_url))
    query = LedgerQuery(date_window=(date(2026, 9, 1), date(2026, 9, 30)))

    first = search.search(query, REPORT_FIELDS, after=None, limit=2)
    second = search.search(query, REPORT_FIELDS, after=first.next_cursor, limit=2)
    third = search.search(query, REPORT_FIELDS, after=second.next_cursor, limit=2)

    assert [row["transaction_id"] for row in first.rows] == ["INV-0", "INV-1"]
    assert [row["transaction_id"] for row in second.rows] == ["INV-2", "INV-3"]
    assert [row["transaction_id"] for row in third.rows] == ["INV-4"]
    assert third.next_cursor is None
    assert set(first.rows[0]) == set(REPORT_FIELDS)
    assert first.rows[0]["amount"] == Decimal("10.50")


def test_sql_search_can_include_non_mainline_rows(session_factory, add_sale, test_settings) -> None:
    add_sale(transaction_id="HEAD")
    add_sale(transaction_id="LINE", mainline=False)
    search = SqlLedgerSearch(build_engine(test_settings.ledger_database_url))
    query = LedgerQuery(date_window=(date(2026, 9, 1), date(2026, 9, 30)), mainline_only=False)

    page = search.search(query, ["transaction_id"], after=None, limit=10)

    assert [row["transaction_id"] for row in page.rows] == ["HEAD", "LINE"]


def test_sql_search_rejects_unknown_fields(test_settings) -> None:
    search = SqlLedgerSearch(build_engine(test_settings.ledger_database_url))
    query = build_ledger_query(date(2026, 10, 5))

    with pytest.raises(ValueError, match="unknown ledger fields"):
        search.search(query, ["transaction_id", "memo"], after=None, limit=10)


def test_sql_search_wraps_database_errors(tmp_path) -> None:
    # A fresh database without the ledger table.
    search = SqlLedgerSearch(build_engine(f"sqlite:///{tmp_path / 'empty.db'}"))

    with pytest.raises(SourceUnavailable, match="ledger query failed"):
        search.search(build_ledger_query(date(2026, 10, 5)), REPORT_FIELDS, after=None, limit=10)
