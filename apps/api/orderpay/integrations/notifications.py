import enum
import logging
import time
from typing import Protocol

import httpx
from pydantic import BaseModel

from orderpay.config import settings
from orderpay.integrations.errors import (
    IntegrationBadGatewayError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
)
from orderpay.models.order import PaymentMethod
from orderpay.observability import log_event, metrics_store, observe_timing


class NotificationEvent(str, enum.Enum):
    ORDER_PLACED = "order_placed"
    ORDER_PAID = "order_paid"


class OrderNotification(BaseModel):
    event: NotificationEvent
    order_id: str
    order_token: str
    name: str
    email: str
    payment_method: PaymentMethod

    @property
    def dedupe_key(self) -> str:
        return f"{self.order_token}:{self.event.value}"


class NotificationSinkProtocol(Protocol):
    def send(self, notification: OrderNotification) -> None: ...


class LoggingNotificationSink:
    def send(self, notification: OrderNotification) -> None:
        log_event(
            "order_notification_logged",
            order_id=notification.order_id,
            order_token=notification.order_token,
            reason=notification.event.value,
        )


class WebhookNotificationSink:
    """POST order events to an external mailer.

    Every request carries an ``Idempotency-Key`` derived from the order token
    and event name, so a retried delivery can be dropped by the recipient.
    """

    def __init__(
        self,
        url: str,
        timeout_s: float,
        max_retries: int,
        backoff_s: float,
    ) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def send(self, notification: OrderNotification) -> None:
        payload = notification.model_dump(mode="json")
        headers = {"Idempotency-Key": notification.dedupe_key}

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                with httpx.Client(timeout=self.timeout_s) as client:
                    response = client.post(self.url, json=payload, headers=headers)

                if response.status_code >= 500:
                    raise IntegrationUnavailableError("notifications", "Webhook returned 5xx")
                if response.status_code >= 400:
                    raise IntegrationBadGatewayError(
                        "notifications",
                        f"Webhook returned {response.status_code}",
                    )
                return None
            except httpx.TimeoutException:
                integration_error = IntegrationTimeoutError("notifications")
            except httpx.TransportError as err:
                integration_error = IntegrationUnavailableError("notifications", str(err))
            except IntegrationUnavailableError as err:
                integration_error = err

            if attempt >= self.max_retries:
                raise integration_error
            time.sleep(self.backoff_s * (2**attempt))

        return None


class NotificationDispatcher:
    """Best-effort delivery: a failed send is logged and counted, never raised."""

    def __init__(self, sink: NotificationSinkProtocol) -> None:
        self.sink = sink

    def dispatch(self, notification: OrderNotification) -> None:
        try:
            with observe_timing("notification_dispatch_seconds"):
                self.sink.send(notification)
        except Exception as exc:  # the order transition has already committed
            metrics_store.increment("notification_failed_total")
            log_event(
                "order_notification_failed",
                order_id=notification.order_id,
                order_token=notification.order_token,
                reason=f"{notification.event.value}:{exc}",
                level=logging.WARNING,
            )
            return

        metrics_store.increment("notification_sent_total")
        log_event(
            "order_notification_sent",
            order_id=notification.order_id,
            order_token=notification.order_token,
            reason=notification.event.value,
        )


def get_notification_dispatcher() -> NotificationDispatcher:
    if settings.notification_webhook_url.strip():
        sink: NotificationSinkProtocol = WebhookNotificationSink(
            settings.notification_webhook_url.strip(),
            timeout_s=settings.notification_timeout_s,
            max_retries=settings.notification_max_retries,
            backoff_s=settings.notification_backoff_s,
        )
    else:
        sink = LoggingNotificationSink()
    return NotificationDispatcher(sink)
