"""Services of the payment reconciliation engine."""

from .deal_reconciler import DealReconciler, compute_deal_update
from .dispatcher import EventDispatcher, decode_event
from .dynamodb import DynamoDBService, get_dynamodb_service, reset_dynamodb_service
from .event_store import EventStore
from .ledger import LedgerAggregator
from .notifier import (
    InMemoryNotificationChannel,
    LoggingNotificationChannel,
    Notifier,
    SQSNotificationChannel,
)
from .payment_intents import PaymentIntentService, derive_intent_id
from .signature import SignatureVerifier
from .ssm_service import SSMService, SSMServiceError, get_ssm_service
from .state_machine import PaymentStateMachine
from .stripe_service import StripeService, StripeServiceError, get_stripe_service
from .webhook_handler import WebhookHandler

__all__ = [
    "DynamoDBService",
    "get_dynamodb_service",
    "reset_dynamodb_service",
    "DealReconciler",
    "compute_deal_update",
    "EventDispatcher",
    "decode_event",
    "EventStore",
    "LedgerAggregator",
    "Notifier",
    "InMemoryNotificationChannel",
    "LoggingNotificationChannel",
    "SQSNotificationChannel",
    "PaymentIntentService",
    "derive_intent_id",
    "PaymentStateMachine",
    "SignatureVerifier",
    "SSMService",
    "SSMServiceError",
    "get_ssm_service",
    "StripeService",
    "StripeServiceError",
    "get_stripe_service",
    "WebhookHandler",
]
