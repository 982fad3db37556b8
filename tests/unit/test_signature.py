"""Unit tests for webhook signature verification.

Test categories:
- Header parsing
- Valid signatures, including rotated secrets with several v1 digests
- Rejections: tampering, wrong secret, stale timestamps, bad headers
"""

import pytest

from payrecon.services.signature import SignatureVerifier, parse_signature_header

SECRET = "whsec_test_secret123"
NOW = 1_767_225_600
PAYLOAD = b'{"id":"evt_1","type":"payment_intent.succeeded","data":{"object":{}}}'


@pytest.fixture
def verifier() -> SignatureVerifier:
    return SignatureVerifier(SECRET, tolerance_seconds=300, clock=lambda: NOW)


class TestParseSignatureHeader:
    def test_parses_timestamp_and_digests(self):
        """Every v1 digest is collected, other schemes are ignored."""
        parsed = parse_signature_header(f"t={NOW},v1=abc,v0=old,v1=def")

        assert parsed is not None
        assert parsed.timestamp == NOW
        assert parsed.signatures == ["abc", "def"]

    def test_tolerates_whitespace(self):
        parsed = parse_signature_header(f" t={NOW} , v1=abc ")

        assert parsed is not None
        assert parsed.signatures == ["abc"]

    @pytest.mark.parametrize("header", ["v1=abc", "t=notanumber,v1=abc", "garbage"])
    def test_missing_or_invalid_timestamp(self, header):
        assert parse_signature_header(header) is None


class TestVerify:
    def test_valid_signature(self, verifier):
        """A header produced by sign() verifies."""
        check = verifier.verify(PAYLOAD, verifier.sign(PAYLOAD))

        assert check.valid is True
        assert check.timestamp == NOW
        assert check.reason is None

    def test_any_matching_digest_is_enough(self, verifier):
        """During secret rotation the header carries one digest per secret."""
        other = SignatureVerifier("whsec_old_secret", clock=lambda: NOW)
        good = verifier.compute_signature(PAYLOAD, NOW)
        stale = other.compute_signature(PAYLOAD, NOW)

        check = verifier.verify(PAYLOAD, f"t={NOW},v1={stale},v1={good}")

        assert check.valid is True

    def test_tampered_payload(self, verifier):
        header = verifier.sign(PAYLOAD)

        check = verifier.verify(PAYLOAD.replace(b"succeeded", b"failed"), header)

        assert check.valid is False
        assert check.reason == "no signature matches the payload"

    def test_wrong_secret(self, verifier):
        header = SignatureVerifier("whsec_wrong", clock=lambda: NOW).sign(PAYLOAD)

        assert verifier.verify(PAYLOAD, header).valid is False

    def test_timestamp_too_old(self, verifier):
        header = verifier.sign(PAYLOAD, timestamp=NOW - 301)

        check = verifier.verify(PAYLOAD, header)

        assert check.valid is False
        assert check.reason == "timestamp outside the tolerance window"

    def test_timestamp_too_far_in_future(self, verifier):
        header = verifier.sign(PAYLOAD, timestamp=NOW + 301)

        assert verifier.verify(PAYLOAD, header).valid is False

    def test_timestamp_at_tolerance_edge(self, verifier):
        header = verifier.sign(PAYLOAD, timestamp=NOW - 300)

        assert verifier.verify(PAYLOAD, header).valid is True

    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_header(self, verifier, header):
        check = verifier.verify(PAYLOAD, header)

        assert check.valid is False
        assert check.reason == "missing signature header"

    def test_header_without_v1(self, verifier):
        check = verifier.verify(PAYLOAD, f"t={NOW},v0=abc")

        assert check.valid is False
        assert check.reason == "no v1 signature in header"

    def test_signature_is_over_raw_bytes(self, verifier):
        """Re-serialised JSON with different spacing does not verify."""
        header = verifier.sign(PAYLOAD)

        check = verifier.verify(PAYLOAD.replace(b",", b", "), header)

        assert check.valid is False


def test_empty_secret_is_rejected():
    with pytest.raises(ValueError):
        SignatureVerifier("")
