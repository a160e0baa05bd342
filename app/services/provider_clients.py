"""
Outbound Provider Clients

httpx wrappers for the calls the reconciliation engine makes back to the
providers:

- StripeClient: issue_refund, cancel_payment_intent, get_payment_intent
- CalendlyClient: cancel_event, create_scheduling_link

Every call takes a credential from the CredentialManager. Authentication
(401/403), rate-limit (429) and transient (5xx, network) failures are
reported against that credential and the call fails over to the next
healthy one not yet tried in this call. Other 4xx responses are permanent
and raised immediately.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..config import Settings
from ..errors import CredentialExhaustionError, ProviderError
from .credential_manager import Credential, CredentialManager, FailureKind

logger = logging.getLogger(__name__)


@dataclass
class ProviderResponse:
    """Successful provider response"""
    status_code: int
    data: Dict[str, Any]
    credential_name: str
    duration_ms: int = 0


# status code -> failure kind reported to the CredentialManager
ERROR_MAP = {
    401: FailureKind.AUTHENTICATION,
    403: FailureKind.AUTHENTICATION,
    429: FailureKind.RATE_LIMITED,
}


def classify_status(status_code: int) -> Optional[FailureKind]:
    """Failure kind for a status code, None for permanent client errors."""
    if status_code in ERROR_MAP:
        return ERROR_MAP[status_code]
    if status_code >= 500:
        return FailureKind.TRANSIENT
    return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or str(error)
    if isinstance(body, dict):
        return body.get("message") or body.get("title") or str(body)[:500]
    return str(body)[:500]


class ProviderClient:
    provider = ""
    user_agent = "booking-reconciler/1.0"

    def __init__(
        self,
        credentials: CredentialManager,
        base_url: str,
        timeout: float = 20,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _get_headers(self, credential: Credential, idempotency_key: Optional[str]) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {credential.secret}",
            "User-Agent": self.user_agent,
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
        idempotency_key: Optional[str] = None
    ) -> ProviderResponse:
        """
        Make an HTTP request, failing over between credentials.

        Raises:
            CredentialExhaustionError: no healthy credential left
            ProviderError: permanent failure, or every attempt failed
        """
        url = f"{self.base_url}{endpoint}"
        attempts = max(1, self.credentials.count(self.provider))
        last_error: Optional[ProviderError] = None
        tried = set()

        for attempt in range(attempts):
            try:
                credential = self.credentials.get_credential(self.provider, exclude=tried)
            except CredentialExhaustionError:
                if last_error is None:
                    raise
                break
            tried.add(credential.name)
            start_time = time.time()

            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.request(
                        method,
                        url,
                        data=data,
                        json=json,
                        params=params,
                        headers=self._get_headers(credential, idempotency_key),
                    )
            except httpx.HTTPError as e:
                logger.warning(f"{self.provider} {method} {endpoint} network error via {credential.name}: {e}")
                self.credentials.report_failure(credential, FailureKind.TRANSIENT)
                last_error = ProviderError(self.provider, "transient", str(e))
                continue

            duration_ms = int((time.time() - start_time) * 1000)

            if response.status_code < 400:
                self.credentials.report_success(credential)
                try:
                    body = response.json() if response.content else {}
                except ValueError:
                    body = {"raw": response.text[:1000]}
                logger.info(f"{self.provider} {method} {endpoint} -> {response.status_code} ({duration_ms}ms)")
                return ProviderResponse(
                    status_code=response.status_code,
                    data=body,
                    credential_name=credential.name,
                    duration_ms=duration_ms
                )

            message = _error_message(response)
            kind = classify_status(response.status_code)

            if kind is None:
                logger.error(f"{self.provider} {method} {endpoint} rejected: {response.status_code} {message}")
                raise ProviderError(self.provider, "permanent", message, response.status_code)

            logger.warning(
                f"{self.provider} {method} {endpoint} failed via {credential.name}: "
                f"{response.status_code} ({kind.value}), attempt {attempt + 1}/{attempts}"
            )
            self.credentials.report_failure(credential, kind)
            last_error = ProviderError(self.provider, kind.value, message, response.status_code)

        raise last_error


class StripeClient(ProviderClient):
    """Payment provider API. Form-encoded requests, Idempotency-Key supported."""

    provider = "stripe"

    def issue_refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        amount: Optional[int] = None,
        reason: str = "requested_by_customer",
        metadata: Optional[Dict[str, str]] = None
    ) -> ProviderResponse:
        """Refund a payment intent. amount=None refunds the full charge."""
        data = {"payment_intent": payment_intent_id, "reason": reason}
        if amount is not None:
            data["amount"] = str(amount)
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)
        return self._make_request("POST", "/refunds", data=data, idempotency_key=idempotency_key)

    def cancel_payment_intent(self, payment_intent_id: str, idempotency_key: str) -> ProviderResponse:
        return self._make_request(
            "POST",
            f"/payment_intents/{payment_intent_id}/cancel",
            data={"cancellation_reason": "abandoned"},
            idempotency_key=idempotency_key
        )

    def get_payment_intent(self, payment_intent_id: str) -> ProviderResponse:
        return self._make_request("GET", f"/payment_intents/{payment_intent_id}")


class CalendlyClient(ProviderClient):
    """Scheduling provider API. JSON requests; no idempotency header support."""

    provider = "calendly"

    def _get_headers(self, credential: Credential, idempotency_key: Optional[str]) -> Dict[str, str]:
        headers = super()._get_headers(credential, None)
        headers["Content-Type"] = "application/json"
        return headers

    def cancel_event(self, event_uuid: str, reason: Optional[str] = None) -> ProviderResponse:
        """Cancel a scheduled event on behalf of the organizer."""
        return self._make_request(
            "POST",
            f"/scheduled_events/{event_uuid}/cancellation",
            json={"reason": reason or "Canceled by booking owner"}
        )

    def create_scheduling_link(self, event_type_uri: str, max_event_count: int = 1) -> ProviderResponse:
        return self._make_request(
            "POST",
            "/scheduling_links",
            json={
                "max_event_count": max_event_count,
                "owner": event_type_uri,
                "owner_type": "EventType",
            }
        )


def build_clients(
    settings: Settings,
    credentials: CredentialManager,
    transport: Optional[httpx.BaseTransport] = None
) -> Dict[str, ProviderClient]:
    return {
        "stripe": StripeClient(
            credentials, settings.stripe_base_url, settings.provider_timeout_seconds, transport
        ),
        "calendly": CalendlyClient(
            credentials, settings.calendly_base_url, settings.provider_timeout_seconds, transport
        ),
    }
