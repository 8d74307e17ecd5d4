from collections.abc import Sequence
from dataclasses import dataclass
from email.message import EmailMessage
import logging
from pathlib import Path
import smtplib
from typing import Protocol

from monthly_report.errors import SendFailure
from monthly_report.schemas import UNASSIGNED, ArtifactHandle, NotificationOutcome, Partition, PartitionKey


logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "Last Month Sales Details of Customers"

OWNER_BODY = (
    "Hi,\n\n"
    "I hope this email finds you well. I have attached the customers sales details to this email. "
    "Please check.\n\n"
    "Thank you"
)

UNASSIGNED_BODY = (
    "Hi,\n\n"
    "I hope this email finds you well. Please assign a sales rep to the customer. "
    "I have attached the customers sales details to this email.\n\n"
    "Thank you"
)


@dataclass(frozen=True)
class NotificationConfig:
    sender: str
    fallback_recipient: str
    subject: str = DEFAULT_SUBJECT


class MailTransport(Protocol):
    def send(
        self,
        sender: str,
        recipient: str,
        subject: str,
        body: str,
        attachments: Sequence[ArtifactHandle],
    ) -> None: ...


class SmtpTransport:
    """Delivers report mails through an SMTP relay."""

    def __init__(
        self,
        host: str,
        port: int = 25,
        *,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(
        self,
        sender: str,
        recipient: str,
        subject: str,
        body: str,
        attachments: Sequence[ArtifactHandle],
    ) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = sender
        message["To"] = recipient
        message.set_content(body)
        for artifact in attachments:
            maintype, _, subtype = artifact.content_type.partition("/")
            message.add_attachment(
                Path(artifact.path).read_bytes(),
                maintype=maintype,
                subtype=subtype or "octet-stream",
                filename=artifact.name,
            )
        return message

    def send(
        self,
        sender: str,
        recipient: str,
        subject: str,
        body: str,
        attachments: Sequence[ArtifactHandle],
    ) -> None:
        try:
            message = self.build_message(sender, recipient, subject, body, attachments)
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise SendFailure(recipient, str(exc)) from exc


def compose_message(key: PartitionKey, config: NotificationConfig) -> tuple[str, str]:
    if key == UNASSIGNED:
        return config.subject, UNASSIGNED_BODY
    return config.subject, OWNER_BODY


def resolve_recipient(partition: Partition, config: NotificationConfig) -> str:
    if partition.is_unassigned:
        return config.fallback_recipient
    return partition.owner_email or partition.key


class Notifier:
    def __init__(self, transport: MailTransport, config: NotificationConfig) -> None:
        self.transport = transport
        self.config = config

    def notify(self, partition: Partition, artifact: ArtifactHandle) -> NotificationOutcome:
        recipient = resolve_recipient(partition, self.config)
        subject, body = compose_message(partition.key, self.config)
        try:
            self.transport.send(self.config.sender, recipient, subject, body, [artifact])
        except SendFailure as exc:
            logger.error(
                "report notification failed: partition_key=%s recipient=%s error=%s",
                partition.key,
                recipient,
                exc.reason,
                extra={"partition_key": partition.key, "recipient": recipient, "error": exc.reason},
            )
            return NotificationOutcome(
                partition_key=partition.key,
                status="send_failed",
                line_count=len(partition.lines),
                recipient=recipient,
                artifact_name=artifact.name,
                error=str(exc),
            )

        logger.info("report notification sent", extra={"partition_key": partition.key, "recipient": recipient})
        return NotificationOutcome(
            partition_key=partition.key,
            status="notified",
            line_count=len(partition.lines),
            recipient=recipient,
            artifact_name=artifact.name,
        )
