"""
HMAC-SHA256 signing for webhook bodies.

The signature covers the exact bytes sent on the wire and travels in the
``X-Herald-Signature`` header as ``sha256=<hex digest>``.  Receivers
recompute it with the shared secret before trusting the payload.
"""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(body: bytes | str, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature of *body* under *secret*."""
    digest = hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes | str, secret: str, signature: str) -> bool:
    """Check *signature* against *body* in constant time.

    Accepts the signature with or without the ``sha256=`` prefix.
    """
    if not signature:
        return False
    if not signature.startswith(SIGNATURE_PREFIX):
        signature = f"{SIGNATURE_PREFIX}{signature}"
    return hmac.compare_digest(sign(body, secret), signature)
