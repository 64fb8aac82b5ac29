"""Push notification delivery provider (FCM HTTP v1)."""

import logging
import re
import time
import uuid

import httpx

from shared.db.models import DeliveryRecord, Notification
from shared.enums import Channel, FailureClass

from delivery_worker.config import PushConfig
from delivery_worker.providers.base import DeliveryOutcome, truncate

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"^[A-Za-z0-9:_-]+$")
_MIN_TOKEN_LENGTH = 64


class PushProvider:
    channel = Channel.PUSH
    name = "fcm"

    def __init__(
        self,
        config: PushConfig | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._config = config if config is not None else PushConfig()
        self._client = client if client is not None else httpx.Client(
            timeout=self._config.timeout_seconds
        )

    def is_available(self) -> bool:
        if self._config.mock_mode:
            return True
        return bool(self._config.fcm_server_key and self._config.fcm_project_id)

    def rate_limit(self) -> int:
        return self._config.rate_limit

    def can_handle(self, notification: Notification) -> bool:
        if notification.channel != self.channel:
            return False
        token = notification.recipient_address
        return len(token) >= _MIN_TOKEN_LENGTH and bool(_TOKEN.match(token))

    def deliver(self, notification: Notification) -> DeliveryOutcome:
        if self._config.mock_mode:
            logger.info(
                "Push sent (mock)",
                extra={"notification_id": str(notification.id)},
            )
            return DeliveryOutcome.success(
                external_id=f"mock-{uuid.uuid4()}", response_code="200", latency_ms=0
            )

        cfg = self._config
        limit = cfg.max_content_length
        message = {
            "message": {
                "token": notification.recipient_address,
                "notification": {
                    "title": truncate(notification.subject or "", limit),
                    "body": truncate(notification.body, limit),
                },
                "data": {
                    "notification_id": str(notification.id),
                    "type": notification.type,
                },
            }
        }

        started = time.monotonic()
        try:
            response = self._client.post(
                f"{cfg.api_base_url}/projects/{cfg.fcm_project_id}/messages:send",
                json=message,
                headers={"Authorization": f"Bearer {cfg.fcm_server_key}"},
            )
        except httpx.TimeoutException as exc:
            return DeliveryOutcome.failure(
                FailureClass.TIMEOUT, f"FCM request timed out: {exc}",
                latency_ms=_elapsed(started),
            )
        except httpx.HTTPError as exc:
            return DeliveryOutcome.failure(
                FailureClass.PROVIDER_ERROR, f"FCM transport error: {exc}",
                latency_ms=_elapsed(started),
            )

        latency_ms = _elapsed(started)
        code = str(response.status_code)
        body = _json(response)

        if response.is_success:
            return DeliveryOutcome.success(
                external_id=body.get("name"), response_code=code, latency_ms=latency_ms
            )

        error = body.get("error") or {}
        message_text = error.get("message") or response.reason_phrase
        if response.status_code == 404 or _error_code(error) == "UNREGISTERED":
            failure_class = FailureClass.INVALID_RECIPIENT
        elif response.status_code == 429:
            failure_class = FailureClass.THROTTLED
        elif response.status_code >= 500:
            failure_class = FailureClass.PROVIDER_ERROR
        elif response.status_code in (401, 403):
            logger.error(
                "FCM rejected credentials",
                extra={"status_code": response.status_code, "project_id": cfg.fcm_project_id},
            )
            failure_class = FailureClass.PROVIDER_ERROR
        else:
            failure_class = FailureClass.REJECTED
        return DeliveryOutcome.failure(
            failure_class, message_text, response_code=code, latency_ms=latency_ms
        )

    def check_status(self, record: DeliveryRecord) -> DeliveryOutcome:
        # FCM exposes no per-message status endpoint.
        return DeliveryOutcome.from_record(record)

    def close(self) -> None:
        self._client.close()


def _error_code(error: dict) -> str | None:
    for detail in error.get("details") or ():
        if isinstance(detail, dict) and detail.get("errorCode"):
            return detail["errorCode"]
    return None


def _json(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _elapsed(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
