"""
Tests for webhook signature verification

Tests cover:
- Valid signatures over the raw body
- Tampered body with the original header
- Missing / malformed / expired signatures
- Secret rotation (secondary key)
- Unconfigured provider secrets
"""

import json
import time

import pytest

from app.errors import AuthenticityError, ValidationError
from app.services.signature_verifier import (
    MAX_PAYLOAD_SIZE,
    ProviderSigningConfig,
    SignatureVerifier,
    build_signature_header,
    parse_signature_header,
)

NOW = 1_900_000_000
PRIMARY = "whsec_primary"
SECONDARY = "whsec_secondary"


@pytest.fixture
def verifier():
    return SignatureVerifier(
        {
            "stripe": ProviderSigningConfig(
                name="stripe",
                header="stripe-signature",
                secrets=[PRIMARY, SECONDARY],
                tolerance_seconds=300,
            ),
            "calendly": ProviderSigningConfig(
                name="calendly",
                header="calendly-webhook-signature",
                secrets=["", ""],
                tolerance_seconds=300,
            ),
        },
        clock=lambda: NOW,
    )


BODY = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded"}).encode()


class TestSignatureVerification:
    """HMAC over the exact bytes received"""

    def test_valid_signature(self, verifier):
        header = build_signature_header(PRIMARY, BODY, NOW)
        verified = verifier.verify("stripe", BODY, header)

        assert verified.provider == "stripe"
        assert verified.raw_body == BODY
        assert verified.signed_at == NOW
        assert verified.secret_slot == 0

    def test_tampered_body_is_rejected(self, verifier):
        header = build_signature_header(PRIMARY, BODY, NOW)
        tampered = BODY.replace(b"succeeded", b"payment_failed")

        with pytest.raises(AuthenticityError) as exc:
            verifier.verify("stripe", tampered, header)
        assert exc.value.code == "invalid_signature"

    def test_reserialized_body_is_rejected(self, verifier):
        header = build_signature_header(PRIMARY, BODY, NOW)
        reserialized = json.dumps(json.loads(BODY), indent=2).encode()

        with pytest.raises(AuthenticityError):
            verifier.verify("stripe", reserialized, header)

    def test_wrong_secret_is_rejected(self, verifier):
        header = build_signature_header("whsec_attacker", BODY, NOW)
        with pytest.raises(AuthenticityError) as exc:
            verifier.verify("stripe", BODY, header)
        assert exc.value.code == "invalid_signature"

    def test_secondary_secret_accepted_during_rotation(self, verifier):
        header = build_signature_header(SECONDARY, BODY, NOW)
        verified = verifier.verify("stripe", BODY, header)
        assert verified.secret_slot == 1

    def test_any_matching_v1_entry_is_accepted(self, verifier):
        good = build_signature_header(PRIMARY, BODY, NOW).split(",")[1]
        header = f"t={NOW},v1=deadbeef,{good}"
        assert verifier.verify("stripe", BODY, header).secret_slot == 0


class TestSignatureRejections:
    """Reason codes for rejected deliveries"""

    def test_missing_signature(self, verifier):
        with pytest.raises(AuthenticityError) as exc:
            verifier.verify("stripe", BODY, None)
        assert exc.value.code == "missing_signature"
        assert exc.value.http_status == 401

    def test_malformed_signature(self, verifier):
        with pytest.raises(AuthenticityError) as exc:
            verifier.verify("stripe", BODY, "garbage")
        assert exc.value.code == "malformed_signature"

    def test_non_integer_timestamp(self, verifier):
        with pytest.raises(AuthenticityError) as exc:
            verifier.verify("stripe", BODY, "t=yesterday,v1=abc")
        assert exc.value.code == "malformed_signature"

    def test_expired_signature(self, verifier):
        old = NOW - 301
        header = build_signature_header(PRIMARY, BODY, old)
        with pytest.raises(AuthenticityError) as exc:
            verifier.verify("stripe", BODY, header)
        assert exc.value.code == "expired_signature"

    def test_future_timestamp_outside_window(self, verifier):
        header = build_signature_header(PRIMARY, BODY, NOW + 600)
        with pytest.raises(AuthenticityError) as exc:
            verifier.verify("stripe", BODY, header)
        assert exc.value.code == "expired_signature"

    def test_unconfigured_secret_fails_closed(self, verifier):
        header = build_signature_header("anything", BODY, NOW)
        with pytest.raises(AuthenticityError) as exc:
            verifier.verify("calendly", BODY, header)
        assert exc.value.code == "configuration_error"

    def test_oversized_body(self, verifier):
        body = b"x" * (MAX_PAYLOAD_SIZE + 1)
        header = build_signature_header(PRIMARY, body, NOW)
        with pytest.raises(ValidationError):
            verifier.verify("stripe", body, header)


class TestRequestHeaders:
    """Header lookup from an incoming request"""

    def test_provider_header_is_case_insensitive(self, verifier):
        headers = {"Stripe-Signature": build_signature_header(PRIMARY, BODY, NOW)}
        assert verifier.verify_request("stripe", BODY, headers).provider == "stripe"

    def test_generic_header_with_separate_timestamp(self, verifier):
        signature = build_signature_header(PRIMARY, BODY, NOW).split(",")[1]
        headers = {"X-Signature": signature, "X-Signature-Timestamp": str(NOW)}
        assert verifier.verify_request("stripe", BODY, headers).signed_at == NOW

    def test_signature_headers_subset(self, verifier):
        headers = {
            "Stripe-Signature": "t=1,v1=abc",
            "Content-Type": "application/json",
            "Authorization": "Bearer secret",
        }
        assert verifier.signature_headers("stripe", headers) == {"stripe-signature": "t=1,v1=abc"}

    def test_parse_signature_header(self):
        assert parse_signature_header("t=10,v1=aa,v1=bb") == (10, ["aa", "bb"])

    def test_from_settings_uses_wall_clock(self, settings):
        verifier = SignatureVerifier.from_settings(settings)
        header = build_signature_header("whsec_test_primary", BODY, int(time.time()))
        assert verifier.verify("stripe", BODY, header).provider == "stripe"
