"""
Tests for outbound provider clients

Tests cover:
- Credential failover on 401 / 429 / 5xx / network errors
- Permanent 4xx errors are not retried
- Exhaustion when every credential fails
- Request shape (auth header, Idempotency-Key, form body)
"""

import pytest
from urllib.parse import parse_qs

import httpx

from app.errors import CredentialExhaustionError, ProviderError
from app.services.credential_manager import CredentialManager, CredentialStatus, FailureKind
from app.services.provider_clients import CalendlyClient, StripeClient, classify_status


def make_manager():
    manager = CredentialManager()
    manager.set_credentials("stripe", ["sk_primary", "sk_backup"])
    manager.set_credentials("calendly", ["cal_primary"])
    return manager


def scripted_transport(responses, seen):
    """MockTransport answering from a list of (status, json) in order."""
    queue = list(responses)

    def handler(request):
        seen.append(request)
        status, body = queue.pop(0)
        if isinstance(body, Exception):
            raise body
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


class TestStripeRequests:
    def test_refund_request_shape(self):
        seen = []
        transport = scripted_transport([(200, {"id": "re_1", "status": "succeeded"})], seen)
        client = StripeClient(make_manager(), "https://stripe.test/v1", transport=transport)

        response = client.issue_refund("pi_1", idempotency_key="refund:B1", amount=2500, metadata={"bookingId": "B1"})

        request = seen[0]
        form = parse_qs(request.content.decode())
        assert response.data["id"] == "re_1"
        assert response.credential_name == "stripe#1"
        assert request.url.path == "/v1/refunds"
        assert request.headers["Authorization"] == "Bearer sk_primary"
        assert request.headers["Idempotency-Key"] == "refund:B1"
        assert form["payment_intent"] == ["pi_1"]
        assert form["amount"] == ["2500"]
        assert form["metadata[bookingId]"] == ["B1"]

    def test_full_refund_omits_amount(self):
        seen = []
        client = StripeClient(make_manager(), "https://stripe.test/v1", transport=scripted_transport([(200, {})], seen))
        client.issue_refund("pi_1", idempotency_key="refund:B1")

        assert "amount" not in parse_qs(seen[0].content.decode())

    def test_cancel_scheduling_event_has_no_idempotency_header(self):
        seen = []
        client = CalendlyClient(make_manager(), "https://calendly.test", transport=scripted_transport([(201, {})], seen))
        client.cancel_event("EVT-1", reason="Client cancelled")

        assert seen[0].url.path == "/scheduled_events/EVT-1/cancellation"
        assert "Idempotency-Key" not in seen[0].headers
        assert seen[0].headers["Authorization"] == "Bearer cal_primary"

    def test_query_payment_intent(self):
        seen = []
        transport = scripted_transport([(200, {"id": "pi_1", "status": "succeeded"})], seen)
        client = StripeClient(make_manager(), "https://stripe.test/v1", transport=transport)

        response = client.get_payment_intent("pi_1")

        assert seen[0].method == "GET"
        assert seen[0].url.path == "/v1/payment_intents/pi_1"
        assert "Idempotency-Key" not in seen[0].headers
        assert response.data["status"] == "succeeded"

    def test_create_scheduling_link(self):
        seen = []
        transport = scripted_transport([(201, {"resource": {"booking_url": "https://calendly.test/d/abc"}})], seen)
        client = CalendlyClient(make_manager(), "https://calendly.test", transport=transport)

        response = client.create_scheduling_link("https://calendly.test/event_types/ET-1")

        body = httpx.Response(200, content=seen[0].content).json()
        assert seen[0].url.path == "/scheduling_links"
        assert body == {
            "max_event_count": 1,
            "owner": "https://calendly.test/event_types/ET-1",
            "owner_type": "EventType",
        }
        assert response.status_code == 201
        assert response.data["resource"]["booking_url"] == "https://calendly.test/d/abc"


class TestFailover:
    """Failures move the call to the next healthy credential"""

    @pytest.mark.parametrize("status,expected_status", [
        (401, CredentialStatus.INVALID),
        (429, CredentialStatus.RATE_LIMITED),
    ])
    def test_fails_over_and_marks_credential(self, status, expected_status):
        manager = make_manager()
        seen = []
        transport = scripted_transport([(status, {"error": {"message": "nope"}}), (200, {"id": "re_2"})], seen)
        client = StripeClient(manager, "https://stripe.test/v1", transport=transport)

        response = client.issue_refund("pi_1", idempotency_key="refund:B1")

        assert response.credential_name == "stripe#2"
        assert [r.headers["Authorization"] for r in seen] == ["Bearer sk_primary", "Bearer sk_backup"]
        assert manager.snapshot()["stripe"][0]["status"] == expected_status.value

    def test_server_error_fails_over(self):
        manager = make_manager()
        seen = []
        transport = scripted_transport([(503, {"message": "unavailable"}), (200, {"id": "re_3"})], seen)
        response = StripeClient(manager, "https://stripe.test/v1", transport=transport).issue_refund(
            "pi_1", idempotency_key="refund:B1"
        )

        assert response.data["id"] == "re_3"
        assert [r.headers["Authorization"] for r in seen] == ["Bearer sk_primary", "Bearer sk_backup"]
        # one transient failure stays below the threshold
        assert manager.snapshot()["stripe"][0]["status"] == CredentialStatus.ACTIVE.value

    def test_transient_failures_try_each_credential_once(self):
        seen = []
        transport = scripted_transport([(503, {}), (0, httpx.ConnectError("refused"))], seen)
        client = StripeClient(make_manager(), "https://stripe.test/v1", transport=transport)

        with pytest.raises(ProviderError) as exc:
            client.issue_refund("pi_1", idempotency_key="refund:B1")

        assert exc.value.kind == "transient"
        assert [r.headers["Authorization"] for r in seen] == ["Bearer sk_primary", "Bearer sk_backup"]

    def test_transient_failure_not_repeated_on_same_credential(self):
        manager = make_manager()
        manager.report_failure(manager.get_credential("stripe", exclude={"stripe#1"}), FailureKind.AUTHENTICATION)
        seen = []
        client = StripeClient(manager, "https://stripe.test/v1", transport=scripted_transport([(502, {})], seen))

        with pytest.raises(ProviderError) as exc:
            client.issue_refund("pi_1", idempotency_key="refund:B1")

        assert exc.value.kind == "transient"
        assert len(seen) == 1

    def test_network_error_fails_over(self):
        seen = []
        transport = scripted_transport([(0, httpx.ConnectError("refused")), (200, {"id": "re_4"})], seen)
        response = StripeClient(make_manager(), "https://stripe.test/v1", transport=transport).issue_refund(
            "pi_1", idempotency_key="refund:B1"
        )
        assert response.credential_name == "stripe#2"

    def test_permanent_error_is_not_retried(self):
        seen = []
        transport = scripted_transport([(400, {"error": {"message": "charge already refunded"}})], seen)
        client = StripeClient(make_manager(), "https://stripe.test/v1", transport=transport)

        with pytest.raises(ProviderError) as exc:
            client.issue_refund("pi_1", idempotency_key="refund:B1")

        assert len(seen) == 1
        assert exc.value.kind == "permanent"
        assert exc.value.retryable is False
        assert exc.value.message == "charge already refunded"

    def test_every_credential_failing_raises_last_error(self):
        seen = []
        transport = scripted_transport([(429, {}), (429, {})], seen)
        client = StripeClient(make_manager(), "https://stripe.test/v1", transport=transport)

        with pytest.raises(ProviderError) as exc:
            client.issue_refund("pi_1", idempotency_key="refund:B1")
        assert exc.value.kind == "rate_limited"
        assert exc.value.status_code == 429

        with pytest.raises(CredentialExhaustionError):
            client.issue_refund("pi_1", idempotency_key="refund:B1")

    def test_classify_status(self):
        assert classify_status(403).value == "authentication"
        assert classify_status(502).value == "transient"
        assert classify_status(404) is None
