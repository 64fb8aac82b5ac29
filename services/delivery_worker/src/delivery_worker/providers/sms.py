"""SMS delivery provider backed by the Twilio REST API."""

import logging
import re
import time
import uuid

import httpx

from shared.db.models import DeliveryRecord, Notification
from shared.enums import Channel, FailureClass

from delivery_worker.config import SmsConfig
from delivery_worker.providers.base import DeliveryOutcome, truncate

logger = logging.getLogger(__name__)

_E164 = re.compile(r"^\+?[1-9]\d{1,14}$")

# Carrier error codes that mean the number itself is unusable.
_INVALID_NUMBER_CODES = frozenset({21211, 21214, 21217, 21610, 21612, 21614})

_PENDING_STATES = frozenset({"queued", "accepted", "sending", "sent", "scheduled"})


class SmsProvider:
    """Submits messages to the carrier; delivery is confirmed asynchronously.

    ``deliver`` returns ``accepted`` with the carrier's message SID and the
    dispatcher later polls ``check_status`` for the final state.
    """

    channel = Channel.SMS
    name = "twilio"

    def __init__(
        self,
        config: SmsConfig | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._config = config if config is not None else SmsConfig()
        self._client = client if client is not None else httpx.Client(
            timeout=self._config.timeout_seconds
        )

    def is_available(self) -> bool:
        if self._config.mock_mode:
            return True
        cfg = self._config
        return bool(cfg.account_sid and cfg.auth_token and cfg.sender_number)

    def rate_limit(self) -> int:
        return self._config.rate_limit

    def can_handle(self, notification: Notification) -> bool:
        if notification.channel != self.channel:
            return False
        return bool(_E164.match(_normalise(notification.recipient_address)))

    def deliver(self, notification: Notification) -> DeliveryOutcome:
        if self._config.mock_mode:
            logger.info(
                "SMS sent (mock)",
                extra={"notification_id": str(notification.id)},
            )
            return DeliveryOutcome.success(
                external_id=f"mock-{uuid.uuid4()}", response_code="201", latency_ms=0
            )

        cfg = self._config
        form = {
            "To": _normalise(notification.recipient_address),
            "From": cfg.sender_number,
            "Body": truncate(notification.body, cfg.max_message_length),
        }
        if cfg.status_callback_url:
            form["StatusCallback"] = cfg.status_callback_url

        started = time.monotonic()
        try:
            response = self._client.post(
                f"{self._messages_url()}.json",
                data=form,
                auth=(cfg.account_sid or "", cfg.auth_token or ""),
            )
        except httpx.TimeoutException as exc:
            return DeliveryOutcome.failure(
                FailureClass.TIMEOUT, f"SMS request timed out: {exc}",
                latency_ms=_elapsed(started),
            )
        except httpx.HTTPError as exc:
            return DeliveryOutcome.failure(
                FailureClass.PROVIDER_ERROR, f"SMS transport error: {exc}",
                latency_ms=_elapsed(started),
            )

        latency_ms = _elapsed(started)
        code = str(response.status_code)
        if response.is_success:
            body = _json(response)
            sid = body.get("sid")
            if not sid:
                # Taken by the carrier but not pollable: settle now, never resend.
                logger.warning(
                    "SMS accepted without a message SID",
                    extra={"notification_id": str(notification.id), "status_code": code},
                )
                return DeliveryOutcome.success(response_code=code, latency_ms=latency_ms)
            return DeliveryOutcome.accepted(
                external_id=sid,
                provider_message_id=sid,
                response_code=code,
                latency_ms=latency_ms,
            )
        return _classify_error(response, latency_ms)

    def check_status(self, record: DeliveryRecord) -> DeliveryOutcome:
        """Poll the message resource; on any query failure keep the prior state."""
        sid = record.provider_message_id
        if self._config.mock_mode or not sid:
            return DeliveryOutcome.from_record(record)

        cfg = self._config
        try:
            response = self._client.get(
                f"{self._messages_url()}/{sid}.json",
                auth=(cfg.account_sid or "", cfg.auth_token or ""),
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "SMS status query failed, keeping prior state",
                extra={"delivery_id": str(record.id), "message_sid": sid, "error": str(exc)},
            )
            return DeliveryOutcome.from_record(record)

        body = _json(response)
        state = body.get("status", "")
        common = {
            "external_id": sid,
            "provider_message_id": sid,
            "response_code": str(response.status_code),
        }
        if state == "delivered":
            return DeliveryOutcome.success(**common)
        if state == "undelivered":
            return DeliveryOutcome.bounced(
                body.get("error_message") or f"carrier error {body.get('error_code')}",
                **common,
            )
        if state == "failed":
            failure_class = (
                FailureClass.INVALID_RECIPIENT
                if body.get("error_code") in _INVALID_NUMBER_CODES
                else FailureClass.REJECTED
            )
            return DeliveryOutcome.failure(
                failure_class, body.get("error_message") or "carrier reported failure", **common
            )
        if state not in _PENDING_STATES:
            logger.warning(
                "Unknown SMS status", extra={"message_sid": sid, "status": state}
            )
        return DeliveryOutcome.accepted(**common)

    def close(self) -> None:
        self._client.close()

    def _messages_url(self) -> str:
        return f"{self._config.api_base_url}/Accounts/{self._config.account_sid}/Messages"


def _classify_error(response: httpx.Response, latency_ms: int) -> DeliveryOutcome:
    body = _json(response)
    code = str(response.status_code)
    message = body.get("message") or response.reason_phrase

    if response.status_code == 429:
        failure_class = FailureClass.THROTTLED
    elif response.status_code >= 500:
        failure_class = FailureClass.PROVIDER_ERROR
    elif body.get("code") in _INVALID_NUMBER_CODES:
        failure_class = FailureClass.INVALID_RECIPIENT
    else:
        failure_class = FailureClass.REJECTED
    return DeliveryOutcome.failure(
        failure_class, message, response_code=code, latency_ms=latency_ms
    )


def _normalise(number: str) -> str:
    return re.sub(r"[\s()-]", "", number)


def _json(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _elapsed(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
