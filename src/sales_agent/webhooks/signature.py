"""HMAC-SHA256 webhook signatures in the `sha256=<hex>` header format."""

from __future__ import annotations

import hashlib
import hmac

from sales_agent.errors import AuthError

SIGNATURE_HEADER = "X-Signature"
SIGNATURE_PREFIX = "sha256="


def sign_body(secret: str, body: bytes) -> str:
    """Return the header value a sender would attach to `body`."""

    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str | None, body: bytes, header: str | None) -> None:
    """Raise AuthError unless `header` is a valid signature of the raw `body`."""

    if not secret:
        raise AuthError("Webhook secret is not configured.")
    if not header:
        raise AuthError(f"Missing {SIGNATURE_HEADER} header.")
    value = header.strip()
    if not value.startswith(SIGNATURE_PREFIX):
        raise AuthError(f"Malformed {SIGNATURE_HEADER} header.")
    provided = value[len(SIGNATURE_PREFIX) :].lower()
    if not provided:
        raise AuthError(f"Malformed {SIGNATURE_HEADER} header.")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8")):
        raise AuthError("Webhook signature mismatch.")
