"""Pydantic models for payment reconciliation entities."""

from .deal import (
    Deal,
    DealWriteResult,
    DealWriteStatus,
    Milestone,
    PaymentEffect,
    PaymentEffectKind,
)
from .enums import (
    DealPaymentStatus,
    DealStatus,
    EventOutcome,
    LedgerEntryKind,
    MilestoneStatus,
    PaymentIntentStatus,
    PaymentProvider,
)
from .errors import (
    ERROR_MESSAGES,
    ERROR_RECOVERY,
    ErrorCode,
    ErrorResponse,
    ReconciliationError,
    decline_message_for,
)
from .events import (
    ChargeRefunded,
    DomainEvent,
    PaymentFailed,
    PaymentProcessing,
    PaymentSucceeded,
    ProcessorEvent,
    RefundLine,
)
from .ledger import LedgerEntry, LedgerSnapshot
from .notification import PaymentNotification
from .payment_intent import IntentCreation, PaymentIntent, RefundRecord
from .webhook_event import (
    AcceptedDelivery,
    ProcessingResult,
    RecordResult,
    StripeEventEnvelope,
    WebhookEvent,
    WebhookResult,
)

__all__ = [
    # Enums
    "DealPaymentStatus",
    "DealStatus",
    "EventOutcome",
    "LedgerEntryKind",
    "MilestoneStatus",
    "PaymentIntentStatus",
    "PaymentProvider",
    # Deal
    "Deal",
    "DealWriteResult",
    "DealWriteStatus",
    "Milestone",
    "PaymentEffect",
    "PaymentEffectKind",
    # Payment intent
    "IntentCreation",
    "PaymentIntent",
    "RefundRecord",
    # Events
    "ChargeRefunded",
    "DomainEvent",
    "PaymentFailed",
    "PaymentProcessing",
    "PaymentSucceeded",
    "ProcessorEvent",
    "RefundLine",
    # Webhooks
    "AcceptedDelivery",
    "ProcessingResult",
    "RecordResult",
    "StripeEventEnvelope",
    "WebhookEvent",
    "WebhookResult",
    # Ledger
    "LedgerEntry",
    "LedgerSnapshot",
    # Notifications
    "PaymentNotification",
    # Errors
    "ErrorCode",
    "ErrorResponse",
    "ERROR_MESSAGES",
    "ERROR_RECOVERY",
    "ReconciliationError",
    "decline_message_for",
]
