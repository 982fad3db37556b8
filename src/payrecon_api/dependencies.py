"""FastAPI dependency providers for the engine's services.

Services are created lazily and cached with @lru_cache, so each process
shares one instance of each.

Service Dependency Graph:
    Settings (get_settings)
    DynamoDBService (singleton via get_dynamodb_service)
        ├── EventStore
        ├── DealReconciler
        ├── LedgerAggregator
        └── PaymentIntentService (+ StripeService in stripe mode)
                └── EventDispatcher (+ Notifier)
                        └── WebhookHandler (+ SignatureVerifier)

Testing:
    Use reset_services() to clear cached instances between tests.
"""

from functools import lru_cache

from payrecon.config import Settings, get_settings
from payrecon.models.enums import PaymentProvider
from payrecon.services.deal_reconciler import DealReconciler
from payrecon.services.dispatcher import EventDispatcher
from payrecon.services.dynamodb import DynamoDBService, get_dynamodb_service
from payrecon.services.event_store import EventStore
from payrecon.services.ledger import LedgerAggregator
from payrecon.services.notifier import Notifier, build_channel
from payrecon.services.payment_intents import PaymentIntentService
from payrecon.services.signature import SignatureVerifier
from payrecon.services.stripe_service import get_stripe_service
from payrecon.services.webhook_handler import WebhookHandler


def get_app_settings() -> Settings:
    return get_settings()


def get_db() -> DynamoDBService:
    return get_dynamodb_service(get_settings().table_prefix)


@lru_cache
def get_signature_verifier() -> SignatureVerifier:
    settings = get_settings()
    return SignatureVerifier(
        settings.webhook_secret.get_secret_value(),
        tolerance_seconds=settings.signature_tolerance_seconds,
    )


@lru_cache
def get_event_store() -> EventStore:
    return EventStore.from_settings(get_db(), get_settings())


@lru_cache
def get_deal_reconciler() -> DealReconciler:
    return DealReconciler(get_db(), cas_max_attempts=get_settings().cas_max_attempts)


@lru_cache
def get_ledger() -> LedgerAggregator:
    return LedgerAggregator(get_db())


@lru_cache
def get_notifier() -> Notifier:
    return Notifier(build_channel(get_settings().notifications_queue_url))


@lru_cache
def get_payment_intent_service() -> PaymentIntentService:
    """Get cached PaymentIntentService instance.

    The Stripe client is only wired in when the stripe provider is
    configured.
    """
    settings = get_settings()
    stripe_service = (
        get_stripe_service() if settings.payment_provider == PaymentProvider.STRIPE else None
    )
    return PaymentIntentService(
        get_db(),
        get_ledger(),
        get_deal_reconciler(),
        provider=settings.payment_provider,
        stripe_service=stripe_service,
        default_currency=settings.default_currency,
        cas_max_attempts=settings.cas_max_attempts,
    )


@lru_cache
def get_event_dispatcher() -> EventDispatcher:
    return EventDispatcher(
        get_payment_intent_service(), get_deal_reconciler(), get_notifier()
    )


@lru_cache
def get_webhook_handler() -> WebhookHandler:
    return WebhookHandler(get_signature_verifier(), get_event_store(), get_event_dispatcher())


def reset_services() -> None:
    """Clear all cached service instances, settings and the DynamoDB singleton.

    Example:
        @pytest.fixture(autouse=True)
        def reset_state():
            yield
            reset_services()
    """
    from payrecon.config import reset_settings
    from payrecon.services.dynamodb import reset_dynamodb_service

    get_signature_verifier.cache_clear()
    get_event_store.cache_clear()
    get_deal_reconciler.cache_clear()
    get_ledger.cache_clear()
    get_notifier.cache_clear()
    get_payment_intent_service.cache_clear()
    get_event_dispatcher.cache_clear()
    get_webhook_handler.cache_clear()
    get_stripe_service.cache_clear()

    reset_settings()
    reset_dynamodb_service()
