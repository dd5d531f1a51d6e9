"""
Webhook signature verification.

The gateway signs each webhook with HMAC-SHA256 over the JSON body using the
merchant's shared secret and sends the hex digest in a dedicated header.
Verification fails closed and compares in constant time.
"""
import hashlib
import hmac
import json
import string
from typing import Any, Mapping, Optional, Union

Payload = Union[bytes, bytearray, str, Mapping[str, Any]]

_HEX_DIGITS = frozenset(string.hexdigits)
_PREFIX = "sha256="


def serialize_payload(payload: Payload) -> bytes:
    """
    Bytes the signature is computed over.

    Raw bytes and strings are used exactly as received. Parsed mappings are
    serialized compactly in insertion order, matching what the gateway signs.
    """
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_signature(payload: Payload, secret: str) -> str:
    """Hex HMAC-SHA256 of payload under secret."""
    return hmac.new(secret.encode("utf-8"), serialize_payload(payload), hashlib.sha256).hexdigest()


class SignatureVerifier:
    """Validates that a webhook payload was produced by the trusted gateway."""

    @staticmethod
    def verify(
        raw_payload: Optional[Payload],
        provided_signature: Optional[str],
        secret: Optional[str],
    ) -> bool:
        """
        Verify a webhook signature.

        Args:
            raw_payload: Exact body bytes (or the parsed JSON object)
            provided_signature: Hex digest from the signature header,
                optionally prefixed with ``sha256=``
            secret: Shared webhook secret

        Returns:
            bool: True only if the signature matches
        """
        if raw_payload is None or not provided_signature or not secret:
            return False
        if not isinstance(provided_signature, str):
            return False

        signature = provided_signature.strip()
        if signature.lower().startswith(_PREFIX):
            signature = signature[len(_PREFIX):]
        if not signature or not all(ch in _HEX_DIGITS for ch in signature):
            return False

        try:
            expected = compute_signature(raw_payload, secret)
            return hmac.compare_digest(signature.lower(), expected)
        except (TypeError, ValueError):
            return False
