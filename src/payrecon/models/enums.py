"""Enumeration types for payment reconciliation data models."""

from enum import Enum


class PaymentIntentStatus(str, Enum):
    """Lifecycle of a local payment intent."""

    CREATED = "created"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    FULLY_REFUNDED = "fully_refunded"


class EventOutcome(str, Enum):
    """Recorded result of processing a webhook delivery."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    SKIPPED = "skipped"  # Unhandled event type, acknowledged
    DEAD_LETTER = "dead_letter"


class DealStatus(str, Enum):
    """Business lifecycle of a deal."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAID_THEN_CANCELLED = "paid_then_cancelled"


class DealPaymentStatus(str, Enum):
    """Payment status of a deal, derived from its payment intents."""

    UNPAID = "unpaid"
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class MilestoneStatus(str, Enum):
    """Status of a deal milestone."""

    PENDING = "pending"
    FUNDED = "funded"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentProvider(str, Enum):
    """Payment processing providers."""

    STRIPE = "stripe"
    MOCK = "mock"


class LedgerEntryKind(str, Enum):
    """Kind of money movement recorded in the ledger journal."""

    CHARGE = "charge"
    REFUND = "refund"
