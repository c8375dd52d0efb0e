"""
HMAC-SHA256 signature checks for gateway callbacks.

Two payload shapes are signed by Razorpay:
  - checkout verification: "<order_id>|<payment_id>" with the API key secret
  - webhooks: the exact raw request body with the webhook secret

Webhook bodies must be verified as received. Re-serialising parsed JSON is
not byte-stable and would reject genuine deliveries.
"""

import hashlib
import hmac


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify(payload: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a hex signature. Malformed input is simply False."""
    if not isinstance(payload, (bytes, bytearray)):
        return False
    if not isinstance(signature, str) or not signature:
        return False
    if not isinstance(secret, str) or not secret:
        return False
    try:
        provided = signature.strip().lower().encode("ascii")
    except UnicodeEncodeError:
        return False
    expected = compute_signature(bytes(payload), secret).encode("ascii")
    return hmac.compare_digest(expected, provided)


def payment_payload(order_id: str, payment_id: str) -> bytes:
    return f"{order_id}|{payment_id}".encode("utf-8")


def payload_fingerprint(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()
