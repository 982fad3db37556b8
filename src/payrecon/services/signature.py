"""Webhook signature verification.

Deliveries carry a ``stripe-signature`` header of the form
``t={unix_ts},v1={hex_hmac}[,v1={hex_hmac}...]``. The signed content is
``"{t}.{raw_body}"`` and the digest is HMAC-SHA256 keyed with the endpoint
secret. Verification is stateless, so a delivery rejected because of
upstream clock skew can simply be retried.
"""

import hashlib
import hmac
import time
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict

DEFAULT_TOLERANCE_SECONDS = 300
SIGNATURE_SCHEME = "v1"


class SignatureCheck(BaseModel):
    """Result of verifying a delivery."""

    model_config = ConfigDict(strict=True, frozen=True)

    valid: bool
    reason: str | None = None
    timestamp: int | None = None


class ParsedHeader(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True)

    timestamp: int
    signatures: list[str]


def parse_signature_header(header: str) -> ParsedHeader | None:
    """Parse a signature header into its timestamp and v1 digests.

    Args:
        header: Raw header value

    Returns:
        ParsedHeader, or None if there is no integer timestamp
    """
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None
        elif key == SIGNATURE_SCHEME:
            signatures.append(value.strip())
    if timestamp is None:
        return None
    return ParsedHeader(timestamp=timestamp, signatures=signatures)


class SignatureVerifier:
    """Verifies authenticity and freshness of webhook deliveries.

    The secret is passed in explicitly so callers (and tests) can use a
    different secret per endpoint or scenario.
    """

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the verifier.

        Args:
            secret: Endpoint signing secret (whsec_xxx)
            tolerance_seconds: Maximum accepted |now - t| in seconds
            clock: Source of the current epoch time
        """
        if not secret:
            raise ValueError("Webhook signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._tolerance = tolerance_seconds
        self._clock = clock

    def compute_signature(self, payload: bytes, timestamp: int) -> str:
        """Compute the hex HMAC-SHA256 digest for a payload and timestamp."""
        signed = f"{timestamp}.".encode("utf-8") + payload
        return hmac.new(self._secret, signed, hashlib.sha256).hexdigest()

    def sign(self, payload: bytes, timestamp: int | None = None) -> str:
        """Build a valid signature header for a payload.

        Args:
            payload: Raw request body
            timestamp: Signing time, defaults to now

        Returns:
            Header value ``t={timestamp},v1={digest}``
        """
        ts = int(self._clock()) if timestamp is None else timestamp
        return f"t={ts},{SIGNATURE_SCHEME}={self.compute_signature(payload, ts)}"

    def verify(self, payload: bytes, header: str | None) -> SignatureCheck:
        """Verify a delivery against its signature header.

        Args:
            payload: Raw request body, exactly as received
            header: Value of the stripe-signature header

        Returns:
            SignatureCheck with ``valid`` and, when invalid, the reason
        """
        if not header:
            return SignatureCheck(valid=False, reason="missing signature header")

        parsed = parse_signature_header(header)
        if parsed is None:
            return SignatureCheck(valid=False, reason="no timestamp in signature header")
        if not parsed.signatures:
            return SignatureCheck(
                valid=False,
                reason=f"no {SIGNATURE_SCHEME} signature in header",
                timestamp=parsed.timestamp,
            )

        expected = self.compute_signature(payload, parsed.timestamp).encode("ascii")
        matched = False
        # Compare against every digest so timing does not depend on position
        for candidate in parsed.signatures:
            if hmac.compare_digest(expected, candidate.encode("utf-8")):
                matched = True
        if not matched:
            return SignatureCheck(
                valid=False,
                reason="no signature matches the payload",
                timestamp=parsed.timestamp,
            )

        if abs(self._clock() - parsed.timestamp) > self._tolerance:
            return SignatureCheck(
                valid=False,
                reason="timestamp outside the tolerance window",
                timestamp=parsed.timestamp,
            )

        return SignatureCheck(valid=True, timestamp=parsed.timestamp)
