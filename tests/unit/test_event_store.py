"""Unit tests for the webhook event store.

Uses moto-backed tables from conftest and a frozen clock, so lease and
retry times can be checked exactly.
"""

from payrecon.models.enums import EventOutcome
from payrecon.models.errors import ErrorCode
from payrecon.models.webhook_event import ProcessingResult
from payrecon.services.event_store import compute_payload_hash

RAW = '{"id":"evt_1","type":"payment_intent.succeeded","data":{"object":{}}}'


def result(outcome, **fields) -> ProcessingResult:
    return ProcessingResult(
        event_id="evt_1", event_type="payment_intent.succeeded", outcome=outcome, **fields
    )


class TestRecordIfNew:
    def test_first_delivery_is_new(self, store, clock):
        recorded = store.record_if_new("evt_1", "payment_intent.succeeded", RAW)

        assert recorded.is_new is True
        stored = store.get("evt_1")
        assert stored is not None
        assert stored.outcome is None
        assert stored.payload_hash == compute_payload_hash(RAW)
        assert stored.lease_until == int(clock.epoch()) + 60

    def test_second_delivery_is_duplicate(self, store):
        store.record_if_new("evt_1", "payment_intent.succeeded", RAW)

        recorded = store.record_if_new("evt_1", "payment_intent.succeeded", RAW)

        assert recorded.is_new is False
        assert recorded.event.duplicate_deliveries == 1

    def test_duplicate_keeps_original_payload(self, store):
        """A redelivery with a different body never overwrites the first."""
        store.record_if_new("evt_1", "payment_intent.succeeded", RAW)

        store.record_if_new("evt_1", "payment_intent.succeeded", RAW + " ")

        assert store.get("evt_1").raw_payload == RAW


class TestClaim:
    def test_claim_waits_for_lease_expiry(self, store, clock):
        store.record_if_new("evt_1", "payment_intent.succeeded", RAW)

        assert store.claim("evt_1") is None

        clock.advance(61)
        claimed = store.claim("evt_1")
        assert claimed is not None
        assert claimed.lease_until == int(clock.epoch()) + 60

    def test_settled_event_cannot_be_claimed(self, store, clock):
        store.record_if_new("evt_1", "payment_intent.succeeded", RAW)
        store.settle(result(EventOutcome.APPLIED))
        clock.advance(3600)

        assert store.claim("evt_1") is None


class TestSettle:
    def test_applied_leaves_pending_index(self, store, clock):
        store.record_if_new("evt_1", "payment_intent.succeeded", RAW)

        settled = store.settle(result(EventOutcome.APPLIED, payment_intent_id="pi_1", deal_id="deal-1"))

        assert settled.outcome == EventOutcome.APPLIED
        assert settled.payment_intent_id == "pi_1"
        assert settled.processed_at == clock()
        clock.advance(3600)
        assert store.list_due() == []

    def test_rejected_records_code_and_reason(self, store):
        store.record_if_new("evt_1", "payment_intent.succeeded", RAW)

        settled = store.settle(
            result(
                EventOutcome.REJECTED,
                error_code=ErrorCode.OUT_OF_ORDER_EVENT,
                reason="success after failure",
            )
        )

        assert settled.error_code == ErrorCode.OUT_OF_ORDER_EVENT
        assert settled.reason == "success after failure"

    def test_deferred_stays_pending(self, store, clock):
        store.record_if_new("evt_1", "charge.refunded", RAW)

        settled = store.settle(result(EventOutcome.DEFERRED, reason="waiting", payment_intent_id="pi_1"))

        assert settled.outcome == EventOutcome.DEFERRED
        assert settled.next_attempt_at == int(clock.epoch()) + 60
        assert [e.event_id for e in store.list_deferred_for_intent("pi_1")] == ["evt_1"]
        clock.advance(61)
        assert [e.event_id for e in store.list_due()] == ["evt_1"]

    def test_deferred_past_window_is_dead_lettered(self, store, clock):
        store.record_if_new("evt_1", "charge.refunded", RAW)
        clock.advance(3601)

        settled = store.settle(result(EventOutcome.DEFERRED, reason="waiting"))

        assert settled.outcome == EventOutcome.DEAD_LETTER
        assert settled.reason == "deferral window expired: waiting"
        assert [e.event_id for e in store.list_dead_letters()] == ["evt_1"]

    def test_settling_clears_stale_reason(self, store):
        store.record_if_new("evt_1", "charge.refunded", RAW)
        store.settle(result(EventOutcome.DEFERRED, reason="waiting"))

        settled = store.settle(result(EventOutcome.APPLIED))

        assert settled.reason is None


class TestRegisterFailure:
    def test_backoff_doubles(self, store, clock):
        store.record_if_new("evt_1", "payment_intent.succeeded", RAW)
        start = int(clock.epoch())

        first = store.register_failure("evt_1", "boom")
        second = store.register_failure("evt_1", "boom")

        assert first.attempts == 1
        assert first.next_attempt_at == start + 30
        assert second.attempts == 2
        assert second.next_attempt_at == start + 60
        assert second.last_error == "boom"
        assert second.outcome is None

    def test_dead_letter_after_max_attempts(self, store):
        store.record_if_new("evt_1", "payment_intent.succeeded", RAW)

        for _ in range(5):
            event = store.register_failure("evt_1", "boom")

        assert event.outcome == EventOutcome.DEAD_LETTER
        assert event.attempts == 5
        assert event.next_attempt_at is None

    def test_failed_event_becomes_due(self, store, clock):
        store.record_if_new("evt_1", "payment_intent.succeeded", RAW)
        store.register_failure("evt_1", "boom")

        assert store.list_due() == []
        clock.advance(30)
        assert [e.event_id for e in store.list_due()] == ["evt_1"]
