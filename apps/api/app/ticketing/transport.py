from __future__ import annotations

import email.utils
import logging
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import Settings
from app.ticketing.schemas import RenderedEmail


logger = logging.getLogger("app.ticketing.transport")

_SES_TAG_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-]")


class EmailTransportError(Exception):
    pass


class EmailTransport(Protocol):
    def send(self, message: RenderedEmail, *, correlation_id: str) -> str: ...


def build_mime_message(
    message: RenderedEmail,
    from_address: str,
    correlation_id: str,
    *,
    from_name: str | None = None,
) -> MIMEMultipart:
    mime = MIMEMultipart("alternative")
    mime["Subject"] = message.subject
    mime["From"] = email.utils.formataddr((from_name or "", from_address))
    mime["To"] = message.recipient
    mime["Date"] = email.utils.formatdate(localtime=False)
    mime["Message-ID"] = email.utils.make_msgid()
    mime["X-Correlation-Id"] = correlation_id
    mime.attach(MIMEText(message.text, "plain", "utf-8"))
    mime.attach(MIMEText(message.html, "html", "utf-8"))
    return mime


class SesEmailTransport:
    """Deliver quotation emails as raw MIME through Amazon SES."""

    def __init__(
        self,
        client: Any,
        from_address: str,
        *,
        from_name: str | None = None,
        configuration_set: str | None = None,
    ):
        self.client = client
        self.from_address = from_address
        self.from_name = from_name
        self.configuration_set = configuration_set

    def send(self, message: RenderedEmail, *, correlation_id: str) -> str:
        mime = build_mime_message(message, self.from_address, correlation_id, from_name=self.from_name)
        params: dict[str, Any] = {
            "Source": mime["From"],
            "Destinations": [message.recipient],
            "RawMessage": {"Data": mime.as_string()},
            "Tags": [
                {"Name": "correlation_id", "Value": _SES_TAG_UNSAFE.sub("_", correlation_id)},
                {"Name": "email_type", "Value": "quotation"},
            ],
        }
        if self.configuration_set:
            params["ConfigurationSetName"] = self.configuration_set

        try:
            response = self.client.send_raw_email(**params)
        except (ClientError, BotoCoreError) as exc:
            logger.warning(
                "email.send_failed",
                extra={"channel": "email", "error": str(exc)},
            )
            raise EmailTransportError(f"AWS SES error: {exc}") from exc
        return response.get("MessageId") or mime["Message-ID"]


class SmtpEmailTransport:
    def __init__(
        self,
        host: str,
        port: int,
        from_address: str,
        *,
        from_name: str | None = None,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.from_address = from_address
        self.from_name = from_name
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, message: RenderedEmail, *, correlation_id: str) -> str:
        """Deliver the message and return its Message-ID.

        Any SMTP or socket failure is raised as ``EmailTransportError``; the
        caller treats it as "not sent".
        """
        mime = build_mime_message(message, self.from_address, correlation_id, from_name=self.from_name)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
                if self.use_tls:
                    client.starttls()
                if self.username and self.password:
                    client.login(self.username, self.password)
                client.send_message(mime)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(
                "email.send_failed",
                extra={"channel": "email", "error": str(exc)},
            )
            raise EmailTransportError(str(exc)) from exc
        return mime["Message-ID"]


def build_email_transport(settings: Settings) -> EmailTransport | None:
    """Transport selected by ``email_provider``; ``None`` means send manually."""
    provider = settings.email_provider.lower()
    if provider == "ses":
        return SesEmailTransport(
            boto3.client("ses", region_name=settings.aws_region),
            settings.email_from_address,
            from_name=settings.company_name,
            configuration_set=settings.ses_configuration_set,
        )
    if provider == "smtp" and settings.smtp_host:
        return SmtpEmailTransport(
            settings.smtp_host,
            settings.smtp_port,
            settings.email_from_address,
            from_name=settings.company_name,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout=settings.smtp_timeout_seconds,
        )
    return None
