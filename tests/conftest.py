from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from monthly_report.artifacts import FileArtifactStore
from monthly_report.config import Settings
from monthly_report.database import build_engine, build_session_factory
from monthly_report.db_models import LedgerTransaction
from monthly_report.errors import SendFailure
from monthly_report.pipeline import PipelineRunner
from monthly_report.record_source import SqlLedgerSearch
from monthly_report.schemas import ArtifactHandle


RUN_DATE = date(2026, 10, 5)


@dataclass(frozen=True)
class SentMessage:
    sender: str
    recipient: str
    subject: str
    body: str
    attachments: tuple[ArtifactHandle, ...]


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self.fail_for: set[str] = set()

    def send(
        self,
        sender: str,
        recipient: str,
        subject: str,
        body: str,
        attachments: Sequence[ArtifactHandle],
    ) -> None:
        if recipient in self.fail_for:
            raise SendFailure(recipient, "mailbox unavailable")
        self.sent.append(SentMessage(sender, recipient, subject, body, tuple(attachments)))

    def recipients(self) -> list[str]:
        return sorted(message.recipient for message in self.sent)


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    database_url = f"sqlite:///{temp_workspace / 'test.db'}"
    return Settings(
        app_name="monthly-sales-report",
        database_url=database_url,
        ledger_database_url=database_url,
        log_level="INFO",
        output_dir=str(temp_workspace / "outputs"),
        artifact_folder="sales-reports",
        artifact_include_header=False,
        page_size=2,
        max_workers=4,
        max_fetch_retries=1,
        retry_backoff_seconds=0,
        run_lease_seconds=3600,
        sender_email="reports@example.com",
        fallback_recipient="admin@example.com",
        smtp_host="localhost",
        smtp_port=25,
        smtp_user=None,
        smtp_password=None,
        smtp_use_tls=False,
        schedule_day=1,
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def add_sale(session_factory: sessionmaker[Session]) -> Callable[..., None]:
    counter = {"next": 1}

    def _add(**overrides: object) -> None:
        number = counter["next"]
        counter["next"] += 1
        values: dict[str, object] = {
            "transaction_id": f"INV-{number}",
            "record_type": "invoice",
            "transaction_date": date(2026, 9, 15),
            "mainline": True,
            "customer_name": f"Customer {number}",
            "customer_email": f"customer{number}@example.com",
            "amount": Decimal("100.00"),
            "owner_ref": "Rep1",
            "owner_email": "rep1@example.com",
        }
        values.update(overrides)
        with session_factory() as db:
            db.add(LedgerTransaction(**values))
            db.commit()

    return _add


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def build_runner(
    test_settings: Settings,
    session_factory: sessionmaker[Session],
    transport: RecordingTransport,
) -> Callable[..., PipelineRunner]:
    def _build(**overrides: object) -> PipelineRunner:
        collaborators: dict[str, object] = {
            "search": SqlLedgerSearch(build_engine(test_settings.ledger_database_url)),
            "artifact_store": FileArtifactStore(Path(test_settings.output_dir) / "artifacts"),
            "transport": transport,
        }
        collaborators.update(overrides)
        return PipelineRunner(test_settings, session_factory, **collaborators)

    return _build


@pytest.fixture()
def runner(build_runner: Callable[..., PipelineRunner]) -> PipelineRunner:
    return build_runner()
