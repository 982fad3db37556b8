"""Notification channel for terminal payment and deal states.

The engine only publishes; delivery (push, email) belongs to a separate
consumer. Publishing never affects payment state: a failing channel is
logged and the payment outcome stands.
"""

import queue
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from payrecon.models.notification import PaymentNotification
from payrecon.utils.logging import get_logger

logger = get_logger(__name__)

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"
DEAL_PAID_THEN_CANCELLED = "deal.paid_then_cancelled"


class NotificationChannel(Protocol):
    """Anything that accepts payment notifications."""

    def publish(self, notification: PaymentNotification) -> None: ...


class LoggingNotificationChannel:
    """Writes notifications to the log. Default when no queue is configured."""

    def publish(self, notification: PaymentNotification) -> None:
        logger.info(
            "Notification %s for deal %s (payment_intent=%s)",
            notification.event_type,
            notification.deal_id,
            notification.payment_intent_id,
        )


class InMemoryNotificationChannel:
    """Thread-safe in-process queue for local consumers and tests."""

    def __init__(self) -> None:
        self._queue: queue.Queue[PaymentNotification] = queue.Queue()

    def publish(self, notification: PaymentNotification) -> None:
        self._queue.put(notification)

    def drain(self) -> list[PaymentNotification]:
        """Remove and return every queued notification."""
        drained: list[PaymentNotification] = []
        while True:
            try:
                drained.append(self._queue.get_nowait())
            except queue.Empty:
                return drained


class SQSNotificationChannel:
    """Sends notifications to an SQS queue as JSON messages."""

    def __init__(self, queue_url: str) -> None:
        self.queue_url = queue_url
        self._client = boto3.client("sqs")

    def publish(self, notification: PaymentNotification) -> None:
        self._client.send_message(
            QueueUrl=self.queue_url,
            MessageBody=notification.model_dump_json(),
            MessageAttributes={
                "event_type": {
                    "DataType": "String",
                    "StringValue": notification.event_type,
                }
            },
        )


class Notifier:
    """Publishes notifications without letting channel failures propagate."""

    def __init__(self, channel: NotificationChannel) -> None:
        self.channel = channel

    def notify(self, notification: PaymentNotification) -> bool:
        """Publish a notification.

        Args:
            notification: Message to publish

        Returns:
            True if the channel accepted it
        """
        try:
            self.channel.publish(notification)
        except (BotoCoreError, ClientError):
            logger.exception(
                "Failed to publish %s for deal %s",
                notification.event_type,
                notification.deal_id,
            )
            return False
        return True


def build_channel(queue_url: str | None) -> NotificationChannel:
    """Choose the channel for the configured environment."""
    if queue_url:
        return SQSNotificationChannel(queue_url)
    return LoggingNotificationChannel()
