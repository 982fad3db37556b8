"""Stripe calls made by the payment intent service.

Only two operations reach the processor: creating a PaymentIntent for a
local intent and issuing a refund. Both are sent with an idempotency key
derived from local IDs, so a retried call never charges or refunds twice.

The API key comes from STRIPE_SECRET_KEY or SSM and is loaded on first use,
so the mock provider runs without credentials.
"""

import os
from collections.abc import Callable
from functools import lru_cache
from typing import Any, TypeVar

import stripe
from stripe import StripeClient

from payrecon.utils.logging import get_logger

from .ssm_service import SSMServiceError, get_ssm_service

logger = get_logger(__name__)

SECRET_KEY_PARAMETER = "/payrecon/{environment}/stripe/secret_key"

T = TypeVar("T")


class StripeServiceError(Exception):
    """A Stripe call failed; ``stripe_error_code`` carries Stripe's code."""

    def __init__(self, message: str, stripe_error_code: str | None = None) -> None:
        super().__init__(message)
        self.stripe_error_code = stripe_error_code


class StripeService:
    """Thin wrapper over ``StripeClient`` returning plain dicts.

    Usage:
        created = get_stripe_service().create_payment_intent(
            amount=30000,
            currency="usd",
            idempotency_key="pi_3f2a9c0e1b7d4a5c6e8f9a0b",
            metadata={"payment_intent_id": "pi_3f2a...", "deal_id": "deal-1"},
        )
        created["processor_intent_id"]
    """

    def __init__(self, environment: str | None = None, client: StripeClient | None = None) -> None:
        self._environment = environment or os.environ.get("ENVIRONMENT", "dev")
        self._client = client

    @property
    def client(self) -> StripeClient:
        if self._client is None:
            self._client = StripeClient(self._secret_key())
            logger.info("Stripe client initialized for environment: %s", self._environment)
        return self._client

    def _secret_key(self) -> str:
        key = os.environ.get("STRIPE_SECRET_KEY")
        if key:
            return key
        try:
            return get_ssm_service().get_parameter(
                SECRET_KEY_PARAMETER.format(environment=self._environment)
            )
        except SSMServiceError as e:
            raise StripeServiceError(f"Failed to initialize Stripe client: {e}") from e

    @staticmethod
    def _call(action: str, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            logger.error("Stripe %s failed: %s (code: %s)", action, e, code)
            raise StripeServiceError(f"Failed to {action}: {e}", stripe_error_code=code) from e

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
        description: str | None = None,
    ) -> dict[str, Any]:
        """Create the processor PaymentIntent for a local intent.

        Args:
            amount: Amount in minor units
            currency: Lowercase ISO currency code
            idempotency_key: The local payment intent ID
            metadata: Echoed back on every webhook for this intent
            description: Optional statement description

        Returns:
            ``processor_intent_id``, ``client_secret`` and ``status``

        Raises:
            StripeServiceError: If Stripe rejects the request
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if description:
            params["description"] = description

        intent = self._call(
            "create payment intent",
            lambda: self.client.payment_intents.create(
                params=params, options={"idempotency_key": idempotency_key}
            ),
        )
        logger.info("Stripe PaymentIntent %s created for %s", intent.id, idempotency_key)
        return {
            "processor_intent_id": intent.id,
            "client_secret": intent.client_secret,
            "status": intent.status,
        }

    def create_refund(
        self,
        *,
        processor_intent_id: str,
        amount: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Refund part or all of a captured PaymentIntent.

        The charge is expanded so the caller learns the processor's
        cumulative refunded amount including this refund.

        Returns:
            ``refund_id``, ``amount``, ``status`` and
            ``charge_amount_refunded`` (None if the charge was not expanded)

        Raises:
            StripeServiceError: If Stripe rejects the request
        """
        params: dict[str, Any] = {
            "payment_intent": processor_intent_id,
            "amount": amount,
            "expand": ["charge"],
        }
        if reason:
            params["metadata"] = {"reason": reason}

        refund = self._call(
            "create refund",
            lambda: self.client.refunds.create(
                params=params, options={"idempotency_key": idempotency_key}
            ),
        )
        logger.info("Refund %s created for PaymentIntent %s", refund.id, processor_intent_id)
        charge = refund.charge
        return {
            "refund_id": refund.id,
            "amount": refund.amount,
            "status": refund.status,
            "charge_amount_refunded": (
                None if charge is None or isinstance(charge, str) else charge.amount_refunded
            ),
        }


@lru_cache(maxsize=1)
def get_stripe_service() -> StripeService:
    return StripeService()
