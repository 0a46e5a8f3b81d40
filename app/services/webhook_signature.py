"""ElevenLabs webhook signatures.

The ``ElevenLabs-Signature`` header looks like ``t=1700000000,v0=<hex>``
where the digest is HMAC-SHA256 of ``"{t}.{raw body}"`` keyed with the
webhook secret.
"""

import hashlib
import hmac
import time

SIGNATURE_HEADER = "ElevenLabs-Signature"
DEFAULT_TOLERANCE_SECONDS = 30 * 60


class InvalidSignature(Exception):
    pass


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    message = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    header: str | None,
    body: bytes,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    if not header:
        raise InvalidSignature("Missing signature header")

    parts = dict(
        part.strip().split("=", 1) for part in header.split(",") if "=" in part
    )
    timestamp = parts.get("t")
    signature = parts.get("v0")
    if not timestamp or not signature:
        raise InvalidSignature("Malformed signature header")

    try:
        issued_at = int(timestamp)
    except ValueError as e:
        raise InvalidSignature("Malformed signature timestamp") from e
    now = time.time() if now is None else now
    if abs(now - issued_at) > tolerance:
        raise InvalidSignature("Signature timestamp outside tolerance")

    expected = compute_signature(secret, timestamp, body)
    if not hmac.compare_digest(expected, signature):
        raise InvalidSignature("Signature mismatch")
