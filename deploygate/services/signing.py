"""HMAC-SHA256 payload signing and verification.

Signatures travel as ``sha256=<hex>`` in the ``X-Webhook-Signature`` header.
Dict payloads are signed over their canonical form: compact, key-sorted JSON
with any ``signature`` key removed, so a receiver can verify a parsed body
that carries its own signature field. Bytes and str are signed as-is.
"""

import hashlib
import hmac
import json
import re

from deploygate.errors import InvalidSignature

SIGNATURE_PREFIX = "sha256="
_HEX_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


def canonical_bytes(payload) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode()
    body = {k: v for k, v in payload.items() if k != "signature"}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode()


def sign(payload, secret: str) -> str:
    """Return ``sha256=<hex>`` HMAC of the canonical payload keyed with secret."""
    digest = hmac.new(secret.encode(), canonical_bytes(payload), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(payload, signature: str | None, secret: str) -> bool:
    """Check ``signature`` against ``payload``. Missing or malformed fails."""
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    digest = signature[len(SIGNATURE_PREFIX):].strip().lower()
    if not _HEX_DIGEST_RE.match(digest):
        return False
    return hmac.compare_digest(sign(payload, secret), f"{SIGNATURE_PREFIX}{digest}")


def require_valid_signature(payload, signature: str | None, secret: str, raw: bytes | str | None = None) -> None:
    """Raise InvalidSignature unless ``signature`` matches.

    When the raw request body is given, a signature over those exact bytes is
    accepted as well as one over the canonical form of ``payload``.
    """
    if not signature:
        raise InvalidSignature("Missing signature")
    if raw is not None and verify(raw, signature, secret):
        return
    if not verify(payload, signature, secret):
        raise InvalidSignature()
