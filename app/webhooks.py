"""Signature verification for CI webhook payloads.

The CI server signs the raw request body with HMAC-SHA256 using the
shared ``CI_WEBHOOK_SECRET`` and sends ``sha256=<hexdigest>`` in the
``X-Hub-Signature-256`` header.
"""

import hashlib
import hmac

SIGNATURE_HEADER = "X-Hub-Signature-256"


def sign_payload(payload: bytes, secret: str) -> str:
    """Return the header value a sender would attach to *payload*."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """True if *signature* is a valid ``sha256=`` HMAC of *payload*."""
    if not signature.startswith("sha256="):
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature)
