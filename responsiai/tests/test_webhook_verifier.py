"""
Test webhook signature verification.

Covers the Stripe `t=...,v1=...` header scheme, replay window, payload
validation and event-type normalization.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone

import pytest
import stripe

from responsiai.features.billing.verifier import (
    BadPayloadError,
    BadSignatureError,
    StaleEventError,
    sign_payload,
    verify,
)

SECRET = "whsec_unit"
NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
TS = int(NOW.timestamp())


def _raw(**overrides):
    envelope = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "created": TS,
        "data": {"object": {"subscription": "sub_1", "client_reference_id": "user_1"}},
    }
    envelope.update(overrides)
    return json.dumps(envelope).encode("utf-8")


def test_valid_signature_returns_verified_event():
    raw = _raw()
    event = verify(raw, sign_payload(raw, SECRET, TS), SECRET, now=NOW)

    assert event.event_id == "evt_1"
    assert event.event_type == "checkout.completed"
    assert event.occurred_at == NOW
    assert event.payload["subscription"] == "sub_1"


@pytest.mark.parametrize(
    "native,normalized",
    [
        ("customer.subscription.updated", "subscription.updated"),
        ("customer.subscription.deleted", "subscription.deleted"),
        ("invoice.payment_failed", "invoice.payment_failed"),
        ("charge.refunded", "charge.refunded"),
    ],
)
def test_event_types_are_normalized(native, normalized):
    raw = _raw(type=native)
    assert verify(raw, sign_payload(raw, SECRET, TS), SECRET, now=NOW).event_type == normalized


def test_tampered_body_is_rejected():
    raw = _raw()
    header = sign_payload(raw, SECRET, TS)
    with pytest.raises(BadSignatureError):
        verify(raw.replace(b"sub_1", b"sub_2"), header, SECRET, now=NOW)


def test_wrong_secret_is_rejected():
    raw = _raw()
    with pytest.raises(BadSignatureError):
        verify(raw, sign_payload(raw, "whsec_other", TS), SECRET, now=NOW)


@pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=00", f"t={TS}", "v1=deadbeef"])
def test_malformed_header_is_rejected(header):
    with pytest.raises(BadSignatureError):
        verify(_raw(), header, SECRET, now=NOW)


def test_any_matching_v1_signature_is_accepted():
    """During secret rotation Stripe sends one v1 per active secret."""
    raw = _raw()
    expected = hmac.new(SECRET.encode(), f"{TS}.".encode() + raw, hashlib.sha256).hexdigest()
    header = f"t={TS},v1={'0' * 64},v1={expected}"
    assert verify(raw, header, SECRET, now=NOW).event_id == "evt_1"


def test_timestamp_outside_tolerance_is_stale():
    raw = _raw()
    old = TS - 301
    with pytest.raises(StaleEventError):
        verify(raw, sign_payload(raw, SECRET, old), SECRET, now=NOW)


def test_timestamp_at_tolerance_edge_is_accepted():
    raw = _raw()
    assert verify(raw, sign_payload(raw, SECRET, TS - 300), SECRET, now=NOW).event_id == "evt_1"


def test_stale_check_happens_after_signature_check():
    raw = _raw()
    with pytest.raises(BadSignatureError):
        verify(raw, sign_payload(raw, "whsec_other", TS - 1000), SECRET, now=NOW)


def test_invalid_json_is_bad_payload():
    raw = b"{not json"
    with pytest.raises(BadPayloadError):
        verify(raw, sign_payload(raw, SECRET, TS), SECRET, now=NOW)


def test_bad_payload_is_a_signature_class_error():
    assert issubclass(BadPayloadError, BadSignatureError)


@pytest.mark.parametrize("missing", ["id", "type"])
def test_envelope_without_id_or_type_is_bad_payload(missing):
    envelope = json.loads(_raw())
    envelope.pop(missing)
    raw = json.dumps(envelope).encode()
    with pytest.raises(BadPayloadError):
        verify(raw, sign_payload(raw, SECRET, TS), SECRET, now=NOW)


def test_missing_secret_rejects_everything():
    raw = _raw()
    with pytest.raises(BadSignatureError):
        verify(raw, sign_payload(raw, SECRET, TS), "", now=NOW)


def test_signed_header_is_accepted_by_stripe_sdk():
    raw = _raw()
    assert stripe.WebhookSignature.verify_header(raw.decode(), sign_payload(raw, SECRET, TS), SECRET)


def test_sdk_verification_error_becomes_bad_signature():
    raw = _raw()
    with pytest.raises(BadSignatureError) as excinfo:
        verify(raw, f"t={TS},v1={'a' * 64}", SECRET, now=NOW)
    assert isinstance(excinfo.value.__cause__, stripe.SignatureVerificationError)


def test_future_timestamp_outside_tolerance_is_stale():
    raw = _raw()
    with pytest.raises(StaleEventError):
        verify(raw, sign_payload(raw, SECRET, TS + 301), SECRET, now=NOW)
