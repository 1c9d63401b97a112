"""HMAC-SHA256 signing for webhook payloads.

Signatures are computed over the exact bytes placed on the wire, after
serialization. Receivers recompute the MAC over the raw request body with
their copy of the subscription secret and compare it with the
``X-Webhook-Signature`` header.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

SECRET_PREFIX = "whsec_"


def sign(payload: bytes, secret: str) -> str:
    """Compute the HMAC-SHA256 signature for a serialized payload.

    Args:
        payload: Serialized request body, exactly as sent.
        secret: Subscription signing secret.

    Returns:
        Lowercase hex digest.
    """
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify(payload: bytes, signature: str, secret: str) -> bool:
    """Verify a signature in constant time.

    Args:
        payload: Serialized request body that was signed.
        signature: Hex signature to check.
        secret: Subscription signing secret.

    Returns:
        True if the signature matches, False otherwise (including for
        malformed signatures).
    """
    if not isinstance(signature, str):
        return False
    expected = sign(payload, secret)
    try:
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii"))
    except UnicodeEncodeError:
        return False


def generate_secret() -> str:
    """Generate a new subscription signing secret (``whsec_`` + 64 hex chars)."""
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"


__all__ = ["SECRET_PREFIX", "generate_secret", "sign", "verify"]
