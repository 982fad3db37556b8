"""Contract tests for the earnings analytics and health endpoints."""

import pytest

from payrecon_api.dependencies import get_event_dispatcher, get_payment_intent_service
from tests.factories import signed, succeeded_event

EARNINGS_URL = "/api/earnings/analytics"


@pytest.fixture
def earnings(client, api_reconciler):
    """One 100000 charge on deal-1 with a 30000 refund."""
    api_reconciler.create_deal("deal-1")
    intent = get_payment_intent_service().create_intent("deal-1", 100000).intent
    payload, header = signed(succeeded_event(intent, "evt_paid"))
    client.post("/api/payments/webhook", content=payload, headers={"stripe-signature": header})
    get_event_dispatcher().request_refund(intent.payment_intent_id, 30000)
    return intent


class TestEarnings:
    def test_empty_ledger(self, client, db):
        response = client.get(EARNINGS_URL)

        assert response.status_code == 200
        data = response.json()
        assert data["grossEarnings"] == 0
        assert data["netEarnings"] == 0
        assert data["entryCount"] == 0
        assert data["rebuilt"] is False

    def test_net_of_refunds(self, client, earnings):
        data = client.get(EARNINGS_URL).json()

        assert data["grossEarnings"] == 100000
        assert data["refundedAmount"] == 30000
        assert data["netEarnings"] == 70000

    def test_filters(self, client, earnings):
        assert client.get(EARNINGS_URL, params={"dealId": "deal-2"}).json()["grossEarnings"] == 0
        data = client.get(EARNINGS_URL, params={"dealId": "deal-1", "currency": "USD"}).json()
        assert data["dealId"] == "deal-1"
        assert data["currency"] == "usd"
        assert data["netEarnings"] == 70000

    def test_rebuild_matches_journal(self, client, earnings):
        journal = client.get(EARNINGS_URL).json()

        rebuilt = client.get(EARNINGS_URL, params={"rebuild": "true"}).json()

        assert rebuilt["rebuilt"] is True
        assert rebuilt["netEarnings"] == journal["netEarnings"]
        assert rebuilt["grossEarnings"] == journal["grossEarnings"]

    def test_invalid_currency(self, client, db):
        response = client.get(EARNINGS_URL, params={"currency": "dollars"})

        assert response.status_code == 422

    def test_mixed_currencies_need_a_filter(self, client, api_reconciler):
        for deal_id, currency in (("deal-1", "usd"), ("deal-2", "eur")):
            api_reconciler.create_deal(deal_id)
            intent = get_payment_intent_service().create_intent(deal_id, 5000, currency).intent
            payload, header = signed(succeeded_event(intent, f"evt_paid_{deal_id}"))
            client.post(
                "/api/payments/webhook", content=payload, headers={"stripe-signature": header}
            )

        response = client.get(EARNINGS_URL)

        assert response.status_code == 422
        assert response.json()["error_code"] == "ERR_PAY_008"
        assert client.get(EARNINGS_URL, params={"currency": "eur"}).json()["grossEarnings"] == 5000


class TestPing:
    def test_ping(self, client):
        response = client.get("/api/ping")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/api/ping", headers={"X-Correlation-ID": "req-123"})

        assert response.headers["x-correlation-id"] == "req-123"

    def test_correlation_id_is_generated(self, client):
        assert client.get("/api/ping").headers["x-correlation-id"]
