"""SMTP email delivery provider."""

import logging
import smtplib
import ssl
import time
import uuid
from collections.abc import Callable
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from email_validator import EmailNotValidError, validate_email

from shared.db.models import DeliveryRecord, Notification
from shared.enums import Channel, FailureClass

from delivery_worker.config import EmailConfig
from delivery_worker.providers.base import DeliveryOutcome, truncate

logger = logging.getLogger(__name__)


class EmailProvider:
    """Sends one message per attempt over SMTP.

    Confirmation is synchronous: the relay accepting the message counts
    as success, so ``check_status`` only echoes the record.
    """

    channel = Channel.EMAIL
    name = "smtp"

    def __init__(
        self,
        config: EmailConfig | None = None,
        smtp_factory: Callable[..., smtplib.SMTP] | None = None,
        smtp_ssl_factory: Callable[..., smtplib.SMTP_SSL] | None = None,
    ) -> None:
        self._config = config if config is not None else EmailConfig()
        self._smtp_factory = smtp_factory or smtplib.SMTP
        self._smtp_ssl_factory = smtp_ssl_factory or smtplib.SMTP_SSL

    def is_available(self) -> bool:
        if self._config.mock_mode:
            return True
        return bool(self._config.smtp_host and self._config.sender_address)

    def rate_limit(self) -> int:
        return self._config.rate_limit

    def can_handle(self, notification: Notification) -> bool:
        if notification.channel != self.channel:
            return False
        try:
            validate_email(notification.recipient_address, check_deliverability=False)
        except EmailNotValidError:
            return False
        return True

    def deliver(self, notification: Notification) -> DeliveryOutcome:
        if self._config.mock_mode:
            logger.info(
                "Email sent (mock)",
                extra={"notification_id": str(notification.id)},
            )
            return DeliveryOutcome.success(
                external_id=f"mock-{uuid.uuid4()}", response_code="250", latency_ms=0
            )

        message = self._build_message(notification)
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        smtp = None
        try:
            smtp = self._connect()
            refused = smtp.send_message(message)
        except smtplib.SMTPRecipientsRefused as exc:
            return DeliveryOutcome.failure(
                FailureClass.INVALID_RECIPIENT,
                f"Recipient refused: {exc.recipients}",
                latency_ms=elapsed(),
            )
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "SMTP authentication failed",
                extra={"smtp_host": self._config.smtp_host, "smtp_code": exc.smtp_code},
            )
            return DeliveryOutcome.failure(
                FailureClass.PROVIDER_ERROR,
                "SMTP authentication failed",
                response_code=str(exc.smtp_code),
                latency_ms=elapsed(),
            )
        except smtplib.SMTPResponseException as exc:
            return DeliveryOutcome.failure(
                _classify_reply(exc.smtp_code),
                _decode(exc.smtp_error),
                response_code=str(exc.smtp_code),
                latency_ms=elapsed(),
            )
        except TimeoutError as exc:
            return DeliveryOutcome.failure(
                FailureClass.TIMEOUT, f"SMTP timeout: {exc}", latency_ms=elapsed()
            )
        except (smtplib.SMTPException, OSError) as exc:
            return DeliveryOutcome.failure(
                FailureClass.PROVIDER_ERROR, f"SMTP error: {exc}", latency_ms=elapsed()
            )
        finally:
            if smtp is not None:
                try:
                    smtp.quit()
                except (smtplib.SMTPException, OSError) as exc:
                    logger.warning("Error closing SMTP connection", extra={"error": str(exc)})

        if refused:
            return DeliveryOutcome.failure(
                FailureClass.INVALID_RECIPIENT,
                f"Recipient refused: {refused}",
                latency_ms=elapsed(),
            )

        return DeliveryOutcome.success(
            external_id=message["Message-ID"],
            response_code="250",
            latency_ms=elapsed(),
        )

    def check_status(self, record: DeliveryRecord) -> DeliveryOutcome:
        return DeliveryOutcome.from_record(record)

    def _connect(self) -> smtplib.SMTP:
        cfg = self._config
        if cfg.smtp_port == 465:
            smtp = self._smtp_ssl_factory(
                cfg.smtp_host,
                cfg.smtp_port,
                timeout=cfg.timeout_seconds,
                context=ssl.create_default_context(),
            )
        else:
            smtp = self._smtp_factory(
                cfg.smtp_host, cfg.smtp_port, timeout=cfg.timeout_seconds
            )
            if cfg.use_tls:
                smtp.starttls(context=ssl.create_default_context())

        if cfg.smtp_username and cfg.smtp_password:
            smtp.login(cfg.smtp_username, cfg.smtp_password)
        return smtp

    def _build_message(self, notification: Notification) -> EmailMessage:
        cfg = self._config
        message = EmailMessage()
        message["From"] = formataddr((cfg.sender_name, cfg.sender_address))
        message["To"] = notification.recipient_address
        message["Subject"] = notification.subject or ""
        message["Message-ID"] = make_msgid(domain=cfg.sender_address.partition("@")[2] or None)
        if cfg.reply_to:
            message["Reply-To"] = cfg.reply_to
        message.set_content(truncate(notification.body, cfg.max_content_length))
        return message


def _decode(error: bytes | str) -> str:
    if isinstance(error, bytes):
        return error.decode("utf-8", errors="replace")
    return str(error)


# Transient 4xx replies that relays also send when rate limiting a sender.
_THROTTLE_CODES = frozenset({421, 450, 451, 452})


def _classify_reply(smtp_code: int) -> FailureClass:
    if smtp_code in _THROTTLE_CODES:
        return FailureClass.THROTTLED
    if smtp_code >= 500:
        return FailureClass.REJECTED
    return FailureClass.PROVIDER_ERROR
