import logging
import os
from pathlib import Path
import tempfile
from typing import Protocol
from urllib.parse import quote

from monthly_report.errors import PersistFailure
from monthly_report.schemas import ArtifactHandle, Partition, PartitionKey
from monthly_report.transform import serialize_lines


logger = logging.getLogger(__name__)

CSV_CONTENT_TYPE = "text/csv"


def artifact_name(key: PartitionKey, run_key: str) -> str:
    # Percent-encoding keeps distinct keys distinct and strips path separators.
    safe_key = quote(key, safe=" ")
    safe_run_key = quote(run_key, safe=" ")
    return f"Previous Month Sales Details For {safe_key} ({safe_run_key}).csv"


class ArtifactStore(Protocol):
    def persist(
        self,
        name: str,
        contents: bytes,
        content_type: str,
        folder: str,
        online: bool,
    ) -> ArtifactHandle: ...


class FileArtifactStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def persist(
        self,
        name: str,
        contents: bytes,
        content_type: str,
        folder: str,
        online: bool,
    ) -> ArtifactHandle:
        target = self.root / folder / name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Write beside the target and swap in, so readers never see a partial file.
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".partial-", suffix=".csv")
            try:
                with os.fdopen(fd, "wb") as outfile:
                    outfile.write(contents)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistFailure(name, str(exc)) from exc

        return ArtifactHandle(
            name=name,
            path=str(target),
            content_type=content_type,
            folder=folder,
            online=online,
            size_bytes=len(contents),
        )


class ArtifactBuilder:
    def __init__(self, store: ArtifactStore, *, folder: str, include_header: bool = False) -> None:
        self.store = store
        self.folder = folder
        self.include_header = include_header

    def build(self, partition: Partition, run_key: str) -> ArtifactHandle:
        if not partition.lines:
            raise ValueError(f"partition '{partition.key}' has no lines")

        name = artifact_name(partition.key, run_key)
        contents = serialize_lines(partition.lines, header=self.include_header)
        handle = self.store.persist(name, contents, CSV_CONTENT_TYPE, self.folder, True)
        logger.info(
            "artifact persisted",
            extra={"partition_key": partition.key, "artifact": handle.name, "line_count": len(partition.lines)},
        )
        return handle
