from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
import random

import pytest

from monthly_report.accumulator import PartitionAccumulator
from monthly_report.schemas import UNASSIGNED, ReportLine


def _line(number: int) -> ReportLine:
    return ReportLine(f"Customer {number}", "", f"INV-{number}", Decimal(number))


def test_groups_lines_by_key() -> None:
    accumulator = PartitionAccumulator()
    accumulator.add("Rep1", _line(1), ordinal=0, owner_email="rep1@example.com")
    accumulator.add(UNASSIGNED, _line(2), ordinal=1)
    accumulator.add("Rep1", _line(3), ordinal=2, owner_email="rep1@example.com")

    partitions = accumulator.finalize()

    assert [partition.key for partition in partitions] == ["Rep1", UNASSIGNED]
    assert [line.transaction_id for line in partitions[0].lines] == ["INV-1", "INV-3"]
    assert partitions[0].owner_email == "rep1@example.com"
    assert partitions[1].owner_email is None
    assert partitions[1].is_unassigned


def test_empty_accumulator_has_no_partitions() -> None:
    assert PartitionAccumulator().finalize() == []


def test_lines_ordered_by_ordinal_not_arrival() -> None:
    accumulator = PartitionAccumulator()
    for ordinal in (4, 0, 3, 1, 2):
        accumulator.add("Rep1", _line(ordinal), ordinal=ordinal)

    (partition,) = accumulator.finalize()

    assert [line.transaction_id for line in partition.lines] == [f"INV-{n}" for n in range(5)]


def test_owner_email_comes_from_earliest_record() -> None:
    accumulator = PartitionAccumulator()
    accumulator.add("Rep1", _line(2), ordinal=2, owner_email="late@example.com")
    accumulator.add("Rep1", _line(1), ordinal=1, owner_email="early@example.com")
    accumulator.add("Rep1", _line(0), ordinal=0)

    (partition,) = accumulator.finalize()

    assert partition.owner_email == "early@example.com"


def test_finalize_is_a_one_way_barrier() -> None:
    accumulator = PartitionAccumulator()
    accumulator.add("Rep1", _line(1), ordinal=0)
    accumulator.finalize()

    with pytest.raises(RuntimeError):
        accumulator.add("Rep1", _line(2), ordinal=1)
    with pytest.raises(RuntimeError):
        accumulator.finalize()


def test_concurrent_adds_lose_nothing() -> None:
    keys = ["Rep1", "Rep2", "Rep3", UNASSIGNED]
    assignments = [(ordinal, random.Random(ordinal).choice(keys)) for ordinal in range(2000)]
    accumulator = PartitionAccumulator()

    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(lambda item: accumulator.add(item[1], _line(item[0]), ordinal=item[0]), assignments))

    partitions = accumulator.finalize()
    assert sum(len(partition.lines) for partition in partitions) == 2000
    for partition in partitions:
        expected = [f"INV-{ordinal}" for ordinal, key in assignments if key == partition.key]
        assert [line.transaction_id for line in partition.lines] == expected
