"""Runtime configuration loaded from the environment.

Secrets fall back to SSM Parameter Store when they are not set in the
environment, using the ``/payrecon/{environment}/...`` parameter paths.
"""

import os
from functools import lru_cache

from pydantic import BaseModel, Field, SecretStr

from payrecon.models.enums import PaymentProvider
from payrecon.utils.logging import get_logger

logger = get_logger(__name__)

WEBHOOK_SECRET_PARAMETER = "/payrecon/{environment}/stripe/webhook_secret"
STRIPE_SECRET_KEY_PARAMETER = "/payrecon/{environment}/stripe/secret_key"


class Settings(BaseModel):
    """Configuration for the reconciliation engine and its API."""

    environment: str = Field(default="dev", description="Deployment environment")
    table_prefix: str = Field(
        default="payrecon-dev", description="Prefix for DynamoDB table names"
    )
    webhook_secret: SecretStr = Field(..., description="Webhook signing secret")
    signature_tolerance_seconds: int = Field(
        default=300, gt=0, description="Accepted clock skew for signed deliveries"
    )
    payment_provider: PaymentProvider = Field(
        default=PaymentProvider.MOCK, description="Processor used for new intents"
    )
    default_currency: str = Field(default="usd")
    processing_budget_seconds: float = Field(
        default=2.0, gt=0, description="Inline processing budget before answering 202"
    )
    max_processing_attempts: int = Field(
        default=5, ge=1, description="Failed attempts before an event is dead-lettered"
    )
    retry_base_seconds: int = Field(
        default=30, ge=0, description="Base delay of the exponential retry backoff"
    )
    processing_lease_seconds: int = Field(
        default=60, gt=0, description="How long a worker owns an event it is processing"
    )
    deferred_window_seconds: int = Field(
        default=86400, gt=0, description="How long a deferred event may wait"
    )
    deferred_retry_seconds: int = Field(
        default=60, ge=0, description="Delay before a deferred event is re-evaluated"
    )
    cas_max_attempts: int = Field(
        default=5, ge=1, description="Compare-and-swap retries for webhook writes"
    )
    notifications_queue_url: str | None = Field(
        default=None, description="SQS queue receiving payment notifications"
    )
    log_level: str = Field(default="INFO")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables.

        Returns:
            Settings with secrets resolved from the environment or SSM.

        Raises:
            SSMServiceError: If the webhook secret is not in the environment
                and cannot be fetched from SSM.
        """
        environment = os.getenv("ENVIRONMENT", "dev")
        env = os.environ
        values: dict[str, object] = {
            "environment": environment,
            "table_prefix": env.get("DYNAMODB_TABLE_PREFIX", f"payrecon-{environment}"),
            "webhook_secret": env.get("STRIPE_WEBHOOK_SECRET")
            or _secret_from_ssm(WEBHOOK_SECRET_PARAMETER.format(environment=environment)),
            "payment_provider": env.get("PAYMENT_PROVIDER", PaymentProvider.MOCK.value),
            "default_currency": env.get("DEFAULT_CURRENCY", "usd").lower(),
            "notifications_queue_url": env.get("NOTIFICATIONS_QUEUE_URL") or None,
            "log_level": env.get("LOG_LEVEL", "INFO"),
        }
        numeric = {
            "signature_tolerance_seconds": "STRIPE_WEBHOOK_TOLERANCE_SECONDS",
            "processing_budget_seconds": "WEBHOOK_PROCESSING_BUDGET_SECONDS",
            "max_processing_attempts": "WEBHOOK_MAX_ATTEMPTS",
            "retry_base_seconds": "WEBHOOK_RETRY_BASE_SECONDS",
            "processing_lease_seconds": "WEBHOOK_LEASE_SECONDS",
            "deferred_window_seconds": "DEFERRED_EVENT_WINDOW_SECONDS",
            "deferred_retry_seconds": "DEFERRED_RETRY_SECONDS",
            "cas_max_attempts": "CAS_MAX_ATTEMPTS",
        }
        for field_name, env_name in numeric.items():
            if env.get(env_name):
                values[field_name] = env[env_name]
        return cls.model_validate(values)


def _secret_from_ssm(parameter: str) -> str:
    from payrecon.services.ssm_service import get_ssm_service

    logger.info("Webhook secret not set in environment, reading %s", parameter)
    return get_ssm_service().get_parameter(parameter)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings (cached)."""
    return Settings.from_env()


def reset_settings() -> None:
    """Clear cached settings (for testing only)."""
    get_settings.cache_clear()
