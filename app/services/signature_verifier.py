"""
Webhook Signature Verifier

Both providers sign deliveries the same way:

    <header>: t=<unix_ts>,v1=<hex_hmac>[,v1=<hex_hmac>...]
    hmac = HMAC-SHA256(secret, f"{t}.{raw_body}")

The body is verified exactly as received (never re-serialized), every
configured secret is tried (primary, then secondary for rotation) and
the timestamp must fall inside the provider's tolerance window.
Verification is pure: no I/O, no state.
"""

import hmac
import hashlib
import time
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

from ..config import Settings
from ..errors import AuthenticityError, ValidationError

logger = logging.getLogger(__name__)


# Maximum payload size (256KB)
MAX_PAYLOAD_SIZE = 256 * 1024

# Fallback header accepted for every provider
GENERIC_SIGNATURE_HEADER = "x-signature"
GENERIC_TIMESTAMP_HEADER = "x-signature-timestamp"


@dataclass(frozen=True)
class ProviderSigningConfig:
    """Signing configuration for one provider."""
    name: str
    header: str
    secrets: List[str]
    tolerance_seconds: int


@dataclass(frozen=True)
class VerifiedPayload:
    """Raw body that passed authenticity checks."""
    provider: str
    raw_body: bytes
    signed_at: int
    secret_slot: int  # 0 = primary, 1 = secondary


def compute_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
    """HMAC-SHA256 hex digest over "<timestamp>.<body>"."""
    message = f"{timestamp}.".encode() + raw_body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, raw_body: bytes, timestamp: Optional[int] = None) -> str:
    """Produce a header value the verifier accepts. Used by tests and tooling."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, ts, raw_body)}"


def parse_signature_header(header_value: str) -> tuple:
    """
    Split "t=...,v1=...,v1=..." into (timestamp or None, [signatures]).

    Raises AuthenticityError(malformed_signature) when the header has no
    usable parts.
    """
    timestamp = None
    signatures = []

    for part in header_value.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise AuthenticityError("Signature timestamp is not an integer", code="malformed_signature")
        elif key == "v1" and value:
            signatures.append(value)

    if not signatures:
        raise AuthenticityError("No v1 signature found in header", code="malformed_signature")

    return timestamp, signatures


class SignatureVerifier:
    """
    Validates inbound webhook authenticity per provider.

    Usage:
        verifier = SignatureVerifier.from_settings(settings)
        verified = verifier.verify_request("stripe", raw_body, request.headers)
    """

    def __init__(
        self,
        providers: Dict[str, ProviderSigningConfig],
        clock: Callable[[], float] = time.time
    ):
        self.providers = providers
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "SignatureVerifier":
        return cls({
            "calendly": ProviderSigningConfig(
                name="calendly",
                header="calendly-webhook-signature",
                secrets=[
                    settings.calendly_webhook_signing_key,
                    settings.calendly_webhook_signing_key_secondary,
                ],
                tolerance_seconds=settings.calendly_webhook_tolerance,
            ),
            "stripe": ProviderSigningConfig(
                name="stripe",
                header="stripe-signature",
                secrets=[
                    settings.stripe_webhook_secret,
                    settings.stripe_webhook_secret_secondary,
                ],
                tolerance_seconds=settings.stripe_webhook_tolerance,
            ),
        })

    def supports(self, provider: str) -> bool:
        return provider in self.providers

    def verify(
        self,
        provider: str,
        raw_body: bytes,
        header_signature: Optional[str],
        timestamp: Optional[int] = None
    ) -> VerifiedPayload:
        """
        Verify one delivery.

        Args:
            provider: Provider name ("calendly", "stripe")
            raw_body: Unparsed request body
            header_signature: Signature header value
            timestamp: Signing time when sent outside the signature header

        Returns:
            VerifiedPayload

        Raises:
            AuthenticityError: missing/malformed/invalid/expired signature
                or no signing secret configured
            ValidationError: oversized body
        """
        config = self.providers.get(provider)
        if config is None:
            raise AuthenticityError(f"Unknown provider: {provider}", code="configuration_error")

        if isinstance(raw_body, str):
            raw_body = raw_body.encode()

        if len(raw_body) > MAX_PAYLOAD_SIZE:
            raise ValidationError(f"Payload too large: {len(raw_body)} > {MAX_PAYLOAD_SIZE}")

        secrets = [s for s in config.secrets if s]
        if not secrets:
            raise AuthenticityError(
                f"Webhook signing key not configured for {provider}",
                code="configuration_error"
            )

        if not header_signature:
            raise AuthenticityError(f"Missing {provider} webhook signature", code="missing_signature")

        signed_at, signatures = parse_signature_header(header_signature)
        if signed_at is None:
            signed_at = timestamp
        if signed_at is None:
            raise AuthenticityError("Signature timestamp missing", code="malformed_signature")

        now = int(self.clock())
        if abs(now - signed_at) > config.tolerance_seconds:
            raise AuthenticityError(
                f"Signature timestamp outside tolerance ({config.tolerance_seconds}s)",
                code="expired_signature"
            )

        for slot, secret in enumerate(secrets):
            expected = compute_signature(secret, signed_at, raw_body)
            if any(hmac.compare_digest(expected, candidate) for candidate in signatures):
                if slot > 0:
                    logger.info(f"{provider} webhook verified with secondary signing key")
                return VerifiedPayload(
                    provider=provider,
                    raw_body=raw_body,
                    signed_at=signed_at,
                    secret_slot=slot
                )

        raise AuthenticityError("Invalid webhook signature", code="invalid_signature")

    def verify_request(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> VerifiedPayload:
        """Pull the signature out of request headers and verify."""
        config = self.providers.get(provider)
        if config is None:
            raise AuthenticityError(f"Unknown provider: {provider}", code="configuration_error")

        lowered = {k.lower(): v for k, v in headers.items()}
        header_value = lowered.get(config.header) or lowered.get(GENERIC_SIGNATURE_HEADER)

        timestamp = None
        raw_ts = lowered.get(GENERIC_TIMESTAMP_HEADER)
        if raw_ts:
            try:
                timestamp = int(raw_ts)
            except ValueError:
                raise AuthenticityError("Signature timestamp is not an integer", code="malformed_signature")

        return self.verify(provider, raw_body, header_value, timestamp)

    def signature_headers(self, provider: str, headers: Mapping[str, str]) -> Dict[str, str]:
        """Subset of headers needed to re-verify a stored delivery."""
        config = self.providers.get(provider)
        wanted = {GENERIC_SIGNATURE_HEADER, GENERIC_TIMESTAMP_HEADER}
        if config:
            wanted.add(config.header)
        return {k.lower(): v for k, v in headers.items() if k.lower() in wanted}
