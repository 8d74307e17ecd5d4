from dataclasses import dataclass, field
from threading import Lock

from monthly_report.schemas import Partition, PartitionKey, ReportLine


@dataclass
class _Bucket:
    lock: Lock = field(default_factory=Lock)
    entries: list[tuple[int, ReportLine]] = field(default_factory=list)
    owner_email: str | None = None
    owner_email_ordinal: int | None = None


class PartitionAccumulator:
    """Groups report lines by partition key while map workers run.

    Appends lock only the bucket they touch. The registry lock is held just long
    enough to create a bucket the first time a key is seen.
    """

    def __init__(self) -> None:
        self._buckets: dict[PartitionKey, _Bucket] = {}
        self._registry_lock = Lock()
        self._finalized = False

    def add(
        self,
        key: PartitionKey,
        line: ReportLine,
        *,
        ordinal: int,
        owner_email: str | None = None,
    ) -> None:
        if self._finalized:
            raise RuntimeError("accumulator is finalized")

        bucket = self._buckets.get(key)
        if bucket is None:
            with self._registry_lock:
                bucket = self._buckets.setdefault(key, _Bucket())

        with bucket.lock:
            bucket.entries.append((ordinal, line))
            # Earliest record wins so the recipient does not depend on worker timing.
            if owner_email and (bucket.owner_email_ordinal is None or ordinal < bucket.owner_email_ordinal):
                bucket.owner_email = owner_email
                bucket.owner_email_ordinal = ordinal

    def finalize(self) -> list[Partition]:
        """Close the accumulator and return one partition per key.

        Lines are ordered by their position in the source stream, not by the
        order in which workers finished.
        """
        with self._registry_lock:
            if self._finalized:
                raise RuntimeError("accumulator already finalized")
            self._finalized = True

        partitions = []
        for key in sorted(self._buckets):
            bucket = self._buckets[key]
            with bucket.lock:
                ordered = sorted(bucket.entries, key=lambda entry: entry[0])
            partitions.append(
                Partition(key=key, lines=tuple(line for _, line in ordered), owner_email=bucket.owner_email)
            )
        return partitions

