"""
Payment processor webhook verification.

Stripe signs each delivery with a header of the form

    Stripe-Signature: t=1700000000,v1=<hex hmac>[,v1=<hex hmac>]

The signature itself is checked by the stripe SDK (local HMAC, no API
call). The replay window is checked here against the signed timestamp so a
stale delivery is reported separately from a forged one.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import stripe

from responsiai.models.event import VerifiedEvent

DEFAULT_TOLERANCE_SECONDS = 300

# Processor event names -> internal event names
EVENT_ALIASES = {
    "checkout.session.completed": "checkout.completed",
    "customer.subscription.updated": "subscription.updated",
    "customer.subscription.deleted": "subscription.deleted",
}


class VerificationError(Exception):
    """Webhook rejected before any processing."""


class BadSignatureError(VerificationError):
    pass


class BadPayloadError(BadSignatureError):
    """Signature was fine but the body is not a usable event envelope."""


class StaleEventError(VerificationError):
    pass


def sign_payload(raw_payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a valid signature header for raw_payload (tests and local tooling)."""
    if timestamp is None:
        timestamp = int(datetime.now(timezone.utc).timestamp())
    signature = stripe.WebhookSignature._compute_signature(f"{timestamp}.{raw_payload.decode('utf-8')}", secret)
    return f"t={timestamp},{stripe.WebhookSignature.EXPECTED_SCHEME}={signature}"


def _check_signature(raw_payload: bytes, signature_header: Optional[str], secret: str) -> int:
    """Verify the signature with the SDK; returns the signed timestamp."""
    if not secret:
        raise BadSignatureError("webhook secret not configured")
    if not signature_header:
        raise BadSignatureError("missing signature header")
    try:
        payload = raw_payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise BadPayloadError("payload is not valid UTF-8") from e
    try:
        # tolerance=None: the replay window is checked by the caller against `now`
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance=None)
    except stripe.SignatureVerificationError as e:
        raise BadSignatureError(str(e)) from e
    timestamp, _signatures = stripe.WebhookSignature._get_timestamp_and_signatures(
        signature_header, stripe.WebhookSignature.EXPECTED_SCHEME
    )
    return timestamp


def verify(
    raw_payload: bytes,
    signature_header: Optional[str],
    secret: str,
    now: Optional[datetime] = None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> VerifiedEvent:
    """Authenticate a delivery and parse its envelope.

    Checks run in order: signature, replay window, envelope.
    """
    timestamp = _check_signature(raw_payload, signature_header, secret)

    current = int((now or datetime.now(timezone.utc)).timestamp())
    if abs(current - timestamp) > tolerance_seconds:
        raise StaleEventError(f"signature timestamp outside {tolerance_seconds}s tolerance")

    try:
        envelope = json.loads(raw_payload)
    except ValueError as e:
        raise BadPayloadError("payload is not valid JSON") from e
    if not isinstance(envelope, dict):
        raise BadPayloadError("payload is not an object")

    event_id = envelope.get("id")
    event_type = envelope.get("type")
    if not event_id or not event_type:
        raise BadPayloadError("event id and type are required")

    data = envelope.get("data") or {}
    payload = data.get("object") if isinstance(data, dict) else None
    created = envelope.get("created")
    try:
        occurred_at = datetime.fromtimestamp(int(created or timestamp), timezone.utc)
    except (TypeError, ValueError) as e:
        raise BadPayloadError("invalid created timestamp") from e

    return VerifiedEvent(
        event_id=str(event_id),
        event_type=EVENT_ALIASES.get(event_type, event_type),
        occurred_at=occurred_at,
        payload=payload if isinstance(payload, dict) else {},
    )
