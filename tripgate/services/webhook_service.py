"""
Webhook Service

Delivers timer notifications over HTTP and classifies failures as retryable
or permanent. Delivery problems are returned as values, never raised.
"""
from dataclasses import dataclass
from typing import Any

import httpx

from tripgate.logging_config import get_logger
from tripgate.models.timer import TimerRecord
from tripgate.utils.timer_helpers import to_iso

logger = get_logger(component="webhook_service")

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "Invoice-Bot-Timer-Webhook/1.0"
DEFAULT_MESSAGE = "Timer selesai"

RETRYABLE_CLIENT_CODES = {408, 429}


@dataclass(frozen=True)
class DeliverySuccess:
    status_code: int
    body: Any = None

    ok = True


@dataclass(frozen=True)
class DeliveryFailure:
    status_code: int | None
    error_kind: str  # connection, timeout, server_error, client_error, unknown
    retryable: bool
    error: str = ""

    ok = False


DeliveryResult = DeliverySuccess | DeliveryFailure


def build_payload(timer: TimerRecord, now: int, message: str = DEFAULT_MESSAGE) -> dict:
    """Build the JSON body sent to the trip's webhook."""
    return {
        "tripId": timer.trip_id,
        "phoneNumber": timer.phone_number or None,
        "message": message,
        "timestamp": to_iso(now),
        "originalDeadline": to_iso(timer.deadline),
        "retryCount": timer.retry_count,
        "isRetry": timer.retry_count > 0,
    }


def classify_status(status_code: int) -> DeliveryResult | None:
    """Map a non-2xx HTTP status to a failure; None means success."""
    if 200 <= status_code < 300:
        return None
    if status_code >= 500:
        return DeliveryFailure(status_code, "server_error", True, f"HTTP {status_code}")
    if status_code in RETRYABLE_CLIENT_CODES:
        return DeliveryFailure(status_code, "client_error", True, f"HTTP {status_code}")
    if 400 <= status_code < 500:
        return DeliveryFailure(status_code, "client_error", False, f"HTTP {status_code}")
    return DeliveryFailure(status_code, "unknown", True, f"HTTP {status_code}")


def classify_exception(exc: Exception) -> DeliveryFailure:
    """Map a transport exception to a failure. Unknown errors are retryable."""
    if isinstance(exc, httpx.TimeoutException):
        return DeliveryFailure(None, "timeout", True, str(exc) or "timed out")
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return DeliveryFailure(None, "connection", True, str(exc) or type(exc).__name__)
    return DeliveryFailure(None, "unknown", True, str(exc) or type(exc).__name__)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class WebhookClient:
    """Timed JSON POST to a webhook URL."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.transport = transport

    @classmethod
    def from_settings(cls, settings) -> "WebhookClient":
        return cls(
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
            user_agent=settings.WEBHOOK_USER_AGENT,
        )

    async def deliver(self, webhook_url: str, payload: dict) -> DeliveryResult:
        """
        Send payload to webhook_url.

        Returns DeliverySuccess for 2xx responses, DeliveryFailure otherwise.
        """
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(webhook_url, json=payload, headers=headers)
        except Exception as e:
            failure = classify_exception(e)
            logger.warning(
                "webhook_delivery_error",
                url=webhook_url,
                error_kind=failure.error_kind,
                error=failure.error,
            )
            return failure

        failure = classify_status(response.status_code)
        if failure is not None:
            logger.warning(
                "webhook_delivery_rejected",
                url=webhook_url,
                status_code=response.status_code,
                retryable=failure.retryable,
            )
            return failure

        return DeliverySuccess(response.status_code, _response_body(response))
