"""Pytest configuration and fixtures for the payrecon test suite.

This module provides reusable fixtures for testing:
- DynamoDB mocking with moto (all tables from the schema module)
- A controllable clock shared by the services under test
- Fully wired services with an in-memory notification channel
- FastAPI TestClient against the same mocked tables
"""

import os
from datetime import UTC, datetime, timedelta
from typing import Any, Generator
from unittest.mock import patch

import boto3
import pytest
from moto import mock_aws

# === Environment Setup ===

# Set environment variables for testing before imports
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ.setdefault("DYNAMODB_TABLE_PREFIX", "test-payrecon")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret_for_testing")
os.environ.setdefault("PAYMENT_PROVIDER", "mock")
# Generous budget so API tests observe the settled outcome
os.environ.setdefault("WEBHOOK_PROCESSING_BUDGET_SECONDS", "10")

if not os.environ.get("AWS_PROFILE") and not os.environ.get("AWS_ACCESS_KEY_ID"):
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

from payrecon.models.deal import Deal, Milestone  # noqa: E402
from payrecon.services.deal_reconciler import DealReconciler  # noqa: E402
from payrecon.services.dispatcher import EventDispatcher  # noqa: E402
from payrecon.services.dynamodb import DynamoDBService, get_dynamodb_service  # noqa: E402
from payrecon.services.event_store import EventStore  # noqa: E402
from payrecon.services.ledger import LedgerAggregator  # noqa: E402
from payrecon.services.notifier import InMemoryNotificationChannel, Notifier  # noqa: E402
from payrecon.services.payment_intents import PaymentIntentService  # noqa: E402
from payrecon.services.schema import create_tables  # noqa: E402
from payrecon.services.signature import SignatureVerifier  # noqa: E402
from payrecon.services.webhook_handler import WebhookHandler  # noqa: E402

TEST_TABLE_PREFIX = os.environ["DYNAMODB_TABLE_PREFIX"]
TEST_WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# === Singleton Reset ===


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset cached services, settings and the DynamoDB singleton.

    Tests using mock_aws get fresh service instances inside the mock
    context instead of reusing ones from a previous test.
    """
    from payrecon_api.dependencies import reset_services

    reset_services()
    yield
    reset_services()


# === AWS Fixtures ===


@pytest.fixture
def aws_credentials() -> None:
    """Mocked AWS Credentials for moto."""
    if not os.environ.get("AWS_PROFILE"):
        os.environ["AWS_ACCESS_KEY_ID"] = "testing"
        os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
        os.environ["AWS_SECURITY_TOKEN"] = "testing"
        os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "eu-west-1"


@pytest.fixture
def db(aws_credentials: None) -> Generator[DynamoDBService, None, None]:
    """DynamoDB service backed by moto, with every table created."""
    with mock_aws():
        client = boto3.client("dynamodb", region_name="eu-west-1")
        create_tables(client, TEST_TABLE_PREFIX)
        yield get_dynamodb_service(TEST_TABLE_PREFIX)


# === Service Fixtures ===


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 12, 0, tzinfo=UTC))


@pytest.fixture
def verifier(clock: FrozenClock) -> SignatureVerifier:
    return SignatureVerifier(TEST_WEBHOOK_SECRET, clock=clock.epoch)


@pytest.fixture
def store(db: DynamoDBService, clock: FrozenClock) -> EventStore:
    return EventStore(
        db,
        max_attempts=5,
        retry_base_seconds=30,
        lease_seconds=60,
        deferred_window_seconds=3600,
        deferred_retry_seconds=60,
        clock=clock,
    )


@pytest.fixture
def reconciler(db: DynamoDBService, clock: FrozenClock) -> DealReconciler:
    return DealReconciler(db, cas_max_attempts=5, backoff_seconds=0, clock=clock)


@pytest.fixture
def ledger(db: DynamoDBService) -> LedgerAggregator:
    return LedgerAggregator(db)


@pytest.fixture
def intents(
    db: DynamoDBService,
    ledger: LedgerAggregator,
    reconciler: DealReconciler,
    clock: FrozenClock,
) -> PaymentIntentService:
    return PaymentIntentService(db, ledger, reconciler, clock=clock)


@pytest.fixture
def channel() -> InMemoryNotificationChannel:
    return InMemoryNotificationChannel()


@pytest.fixture
def dispatcher(
    intents: PaymentIntentService,
    reconciler: DealReconciler,
    channel: InMemoryNotificationChannel,
    clock: FrozenClock,
) -> EventDispatcher:
    return EventDispatcher(intents, reconciler, Notifier(channel), clock=clock)


@pytest.fixture
def handler(
    verifier: SignatureVerifier, store: EventStore, dispatcher: EventDispatcher
) -> WebhookHandler:
    return WebhookHandler(verifier, store, dispatcher)


@pytest.fixture
def deal(reconciler: DealReconciler) -> Deal:
    """An active, unpaid deal without milestones."""
    return reconciler.create_deal("deal-1")


@pytest.fixture
def milestone_deal(reconciler: DealReconciler) -> Deal:
    """An active deal with two milestones."""
    return reconciler.create_deal(
        "deal-ms",
        [
            Milestone(milestone_id="m1", amount=10000, description="Design"),
            Milestone(milestone_id="m2", amount=20000, description="Build"),
        ],
    )


# === API Fixtures ===


@pytest.fixture
def api_channel() -> Generator[InMemoryNotificationChannel, None, None]:
    """In-memory channel wired into the API's notifier."""
    channel = InMemoryNotificationChannel()
    with patch("payrecon_api.dependencies.build_channel", return_value=channel):
        yield channel


@pytest.fixture
def client(db: DynamoDBService, api_channel: InMemoryNotificationChannel) -> Any:
    """TestClient for the API, backed by the mocked tables."""
    from fastapi.testclient import TestClient

    from payrecon_api.main import app

    return TestClient(app)


@pytest.fixture
def api_reconciler() -> DealReconciler:
    """The reconciler instance the API uses, for seeding deals."""
    from payrecon_api.dependencies import get_deal_reconciler

    return get_deal_reconciler()
