"""Webhook signature verification (HMAC-SHA256)."""

import hashlib
import hmac
import time

from .errors import SignatureError

STRIPE_SCHEME = "v1"


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def parse_signature_header(header: str, timestamp_key: str = "t") -> tuple[int, list[str]]:
    """
    Parse a header of the form 't=1700000000,v1=abc...,v1=def...'.

    Returns:
        (timestamp, list of v1 signatures)

    Raises:
        SignatureError: If the header is empty or malformed.
    """
    if not header:
        raise SignatureError("missing signature header")

    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == timestamp_key:
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureError("timestamp is not an integer")
        elif key == STRIPE_SCHEME:
            signatures.append(value)

    if timestamp is None:
        raise SignatureError("no timestamp in header")
    if not signatures:
        raise SignatureError(f"no {STRIPE_SCHEME} signature in header")
    return timestamp, signatures


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over '<timestamp>.<payload>'."""
    return _hmac_hex(secret, f"{timestamp}.".encode() + payload)


def sign_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header for a payload (used by tests and local tooling)."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{STRIPE_SCHEME}={compute_signature(payload, secret, ts)}"


def verify_signature(
    payload: bytes,
    header: str,
    secret: str,
    tolerance: int = 300,
    now: float | None = None,
) -> int:
    """
    Verify a Stripe-style signature header against the raw request body.

    Args:
        payload: Raw request body, exactly as received.
        header: Value of the signature header.
        secret: Shared webhook signing secret.
        tolerance: Max age in seconds; 0 disables the timestamp check.
        now: Current unix time override (for testing).

    Returns:
        The signed timestamp.

    Raises:
        SignatureError: If the secret is unset or nothing in the header matches.
    """
    if not secret:
        raise SignatureError("webhook secret is not configured")

    timestamp, signatures = parse_signature_header(header)
    expected = compute_signature(payload, secret, timestamp)

    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise SignatureError("no signatures match the expected signature")

    if tolerance > 0:
        current = time.time() if now is None else now
        if timestamp < current - tolerance:
            raise SignatureError("timestamp outside the tolerance zone")
    return timestamp


# --- MercadoPago ---


def mercadopago_manifest(data_id: str, request_id: str, timestamp: int) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{timestamp};"


def sign_mercadopago(data_id: str, request_id: str, secret: str, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = _hmac_hex(secret, mercadopago_manifest(data_id, request_id, ts).encode())
    return f"ts={ts},{STRIPE_SCHEME}={digest}"


def verify_mercadopago_signature(
    header: str,
    request_id: str,
    data_id: str,
    secret: str,
) -> int:
    """
    Verify a MercadoPago x-signature header ('ts=...,v1=...').

    The signed manifest is built from the notification's data.id, the
    x-request-id header and the header timestamp.

    Raises:
        SignatureError: If the header is malformed or does not match.
    """
    if not secret:
        raise SignatureError("webhook secret is not configured")
    timestamp, signatures = parse_signature_header(header, timestamp_key="ts")
    expected = _hmac_hex(secret, mercadopago_manifest(data_id, request_id, timestamp).encode())
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise SignatureError("no signatures match the expected signature")
    return timestamp
