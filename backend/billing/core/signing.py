"""HMAC-SHA256 signing for webhook payloads."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Mapping

SIGNATURE_HEADER = "X-Webhook-Signature"


def serialize_payload(payload: Mapping[str, Any]) -> bytes:
    """Serialize a payload to the exact bytes that get signed and sent."""

    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_payload(secret: str, body: bytes) -> str:
    """Return the lowercase hex HMAC-SHA256 digest of ``body``."""

    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check ``signature`` against ``body`` in constant time."""

    if not signature:
        return False
    expected = sign_payload(secret, body)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
