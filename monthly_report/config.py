from dataclasses import dataclass
import os

from dotenv import load_dotenv

from monthly_report.notifier import NotificationConfig


load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    ledger_database_url: str
    log_level: str
    output_dir: str
    artifact_folder: str
    artifact_include_header: bool
    page_size: int
    max_workers: int
    max_fetch_retries: int
    retry_backoff_seconds: float
    run_lease_seconds: float
    sender_email: str
    fallback_recipient: str
    smtp_host: str
    smtp_port: int
    smtp_user: str | None
    smtp_password: str | None
    smtp_use_tls: bool
    schedule_day: int
    schedule_hour_utc: int
    schedule_minute_utc: int

    def notification_config(self) -> NotificationConfig:
        return NotificationConfig(sender=self.sender_email, fallback_recipient=self.fallback_recipient)


def get_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL", "sqlite:///./report_runs.db")
    return Settings(
        app_name=os.getenv("APP_NAME", "monthly-sales-report"),
        database_url=database_url,
        ledger_database_url=os.getenv("LEDGER_DATABASE_URL", database_url),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        artifact_folder=os.getenv("ARTIFACT_FOLDER", "sales-reports"),
        artifact_include_header=_env_bool("ARTIFACT_INCLUDE_HEADER", "false"),
        page_size=int(os.getenv("PAGE_SIZE", "1000")),
        max_workers=int(os.getenv("MAX_WORKERS", "4")),
        max_fetch_retries=int(os.getenv("MAX_FETCH_RETRIES", "2")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        run_lease_seconds=float(os.getenv("RUN_LEASE_SECONDS", "21600")),
        sender_email=os.getenv("SENDER_EMAIL", "reports@example.com"),
        fallback_recipient=os.getenv("FALLBACK_RECIPIENT", "admin@example.com"),
        smtp_host=os.getenv("SMTP_HOST", "localhost"),
        smtp_port=int(os.getenv("SMTP_PORT", "25")),
        smtp_user=os.getenv("SMTP_USER") or None,
        smtp_password=os.getenv("SMTP_PASSWORD") or None,
        smtp_use_tls=_env_bool("SMTP_USE_TLS", "false"),
        schedule_day=int(os.getenv("SCHEDULE_DAY", "1")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
    )
