"""Standard error codes for the reconciliation engine.

Every error surfaced to an API caller, and every rejection recorded against
a webhook event, carries one of these codes.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ErrorCode(str, Enum):
    """Standard error codes."""

    # Webhook delivery errors (ERR_WEBHOOK_001-ERR_WEBHOOK_002)
    SIGNATURE_INVALID = "ERR_WEBHOOK_001"
    MALFORMED_EVENT = "ERR_WEBHOOK_002"

    # Payment errors (ERR_PAY_001-ERR_PAY_008)
    PAYMENT_INTENT_NOT_FOUND = "ERR_PAY_001"
    PARTIAL_REFUND_MISMATCH = "ERR_PAY_002"
    OUT_OF_ORDER_EVENT = "ERR_PAY_003"
    PAYMENT_PROVIDER_ERROR = "ERR_PAY_004"
    REFUND_NOT_ALLOWED = "ERR_PAY_005"
    AMOUNT_MISMATCH = "ERR_PAY_006"
    INVALID_AMOUNT = "ERR_PAY_007"
    MIXED_CURRENCIES = "ERR_PAY_008"

    # Deal errors (ERR_DEAL_001-ERR_DEAL_006)
    DEAL_NOT_FOUND = "ERR_DEAL_001"
    CONCURRENT_MODIFICATION = "ERR_DEAL_002"
    DEAL_ALREADY_PAID = "ERR_DEAL_003"
    INVALID_DEAL_TRANSITION = "ERR_DEAL_004"
    DEAL_NOT_PAYABLE = "ERR_DEAL_005"
    MILESTONE_NOT_FOUND = "ERR_DEAL_006"


# Human-readable error messages
ERROR_MESSAGES: dict[ErrorCode, str] = {
    # Webhook errors
    ErrorCode.SIGNATURE_INVALID: "Invalid webhook signature",
    ErrorCode.MALFORMED_EVENT: "Webhook payload is not a valid event",
    # Payment errors
    ErrorCode.PAYMENT_INTENT_NOT_FOUND: "Payment intent not found",
    ErrorCode.PARTIAL_REFUND_MISMATCH: "Refund would exceed the amount paid",
    ErrorCode.OUT_OF_ORDER_EVENT: "Event conflicts with the current payment state",
    ErrorCode.PAYMENT_PROVIDER_ERROR: "Payment provider error occurred",
    ErrorCode.REFUND_NOT_ALLOWED: "Payment is not in a refundable state",
    ErrorCode.AMOUNT_MISMATCH: "Event amount does not match the payment intent",
    ErrorCode.INVALID_AMOUNT: "Amount must be a positive integer in minor units",
    ErrorCode.MIXED_CURRENCIES: "Earnings span more than one currency",
    # Deal errors
    ErrorCode.DEAL_NOT_FOUND: "Deal not found",
    ErrorCode.CONCURRENT_MODIFICATION: "Deal was modified by another writer",
    ErrorCode.DEAL_ALREADY_PAID: "Deal is already paid",
    ErrorCode.INVALID_DEAL_TRANSITION: "Deal cannot move to the requested status",
    ErrorCode.DEAL_NOT_PAYABLE: "Deal is not in a payable state",
    ErrorCode.MILESTONE_NOT_FOUND: "Milestone not found on deal",
}

# Recovery suggestions for callers and operators
ERROR_RECOVERY: dict[ErrorCode, str] = {
    # Webhook error recovery
    ErrorCode.SIGNATURE_INVALID: "Verify webhook secret configuration and clock skew",
    ErrorCode.MALFORMED_EVENT: "Check the payload against the processor event format",
    # Payment error recovery
    ErrorCode.PAYMENT_INTENT_NOT_FOUND: "Verify the payment intent ID and environment",
    ErrorCode.PARTIAL_REFUND_MISMATCH: "Review refunds manually before retrying",
    ErrorCode.OUT_OF_ORDER_EVENT: "Reconcile the payment manually with the processor",
    ErrorCode.PAYMENT_PROVIDER_ERROR: "Try again or contact support",
    ErrorCode.REFUND_NOT_ALLOWED: "Only succeeded payments can be refunded",
    ErrorCode.AMOUNT_MISMATCH: "Reconcile the payment manually with the processor",
    ErrorCode.INVALID_AMOUNT: "Send the amount in minor units, e.g. 30000 for 300.00",
    ErrorCode.MIXED_CURRENCIES: "Filter by currency to get comparable totals",
    # Deal error recovery
    ErrorCode.DEAL_NOT_FOUND: "Verify the deal ID",
    ErrorCode.CONCURRENT_MODIFICATION: "Re-fetch the deal and retry with its current version",
    ErrorCode.DEAL_ALREADY_PAID: "Request a refund instead of cancelling",
    ErrorCode.INVALID_DEAL_TRANSITION: "Re-fetch the deal and check its status",
    ErrorCode.DEAL_NOT_PAYABLE: "Reactivate or recreate the deal before paying",
    ErrorCode.MILESTONE_NOT_FOUND: "Verify the milestone ID",
}


# Fallback decline messages keyed by processor decline code
DECLINE_MESSAGES: dict[str, str] = {
    "card_declined": "Your card was declined.",
    "generic_decline": "Your card was declined.",
    "expired_card": "Your card has expired.",
    "insufficient_funds": "Your card has insufficient funds.",
    "incorrect_cvc": "Your card's security code is incorrect.",
    "processing_error": "An error occurred while processing your card.",
}


def decline_message_for(
    decline_code: Optional[str],
    default_message: str = "Payment could not be processed.",
) -> str:
    """Get a human-readable decline reason for a processor decline code.

    Args:
        decline_code: The processor decline code (e.g., 'card_declined').
        default_message: Message to use if the code is unknown.

    Returns:
        Decline reason suitable for storing on the payment and deal.
    """
    if decline_code and decline_code in DECLINE_MESSAGES:
        return DECLINE_MESSAGES[decline_code]
    return default_message


class ErrorResponse(BaseModel):
    """Standard error body returned by the API."""

    model_config = ConfigDict(strict=True)

    success: bool = False
    error_code: ErrorCode
    message: str
    recovery: str
    details: Optional[dict[str, str]] = None

    @classmethod
    def from_code(
        cls,
        code: ErrorCode,
        details: Optional[dict[str, str]] = None,
    ) -> "ErrorResponse":
        """Create an ErrorResponse from an error code.

        Args:
            code: The error code
            details: Optional additional context about the error

        Returns:
            An ErrorResponse with the message and recovery hint for the code.
        """
        return cls(
            error_code=code,
            message=ERROR_MESSAGES[code],
            recovery=ERROR_RECOVERY[code],
            details=details,
        )


class ReconciliationError(Exception):
    """Exception raised for request-level failures.

    Event processing reports rejections as outcomes instead; this exception
    is for callers that must be answered with an error.
    """

    def __init__(
        self,
        code: ErrorCode,
        details: Optional[dict[str, str]] = None,
    ):
        self.code = code
        self.message = ERROR_MESSAGES[code]
        self.recovery = ERROR_RECOVERY[code]
        self.details = details
        super().__init__(self.message)

    def to_error_response(self) -> ErrorResponse:
        """Convert this exception to an ErrorResponse."""
        return ErrorResponse.from_code(self.code, self.details)
