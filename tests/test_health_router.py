"""
Tests for health endpoints

Tests cover:
- Detailed health requires the admin token
- Credential counts per provider
- Dead letters, failed and abandoned side effects degrade the status
"""

from datetime import datetime, timedelta

from app.models.dead_letter import DeadLetterEvent
from app.models.outbox import SideEffectOutbox
from app.services.credential_manager import FailureKind

from factories import ADMIN_TOKEN

ADMIN = {"X-Admin-Token": ADMIN_TOKEN}


def outbox_row(key, status, updated_at=None):
    return SideEffectOutbox(
        booking_id="B-1",
        action="issue_refund",
        provider="stripe",
        payload={"payment_intent": "pi_1", "amount": None},
        status=status,
        attempts=1,
        idempotency_key=key,
        updated_at=updated_at or datetime.utcnow(),
    )


class TestDetailedHealth:
    def test_requires_admin_token(self, client):
        assert client.get("/health/detailed").status_code == 401

    def test_healthy_service(self, client):
        response = client.get("/health/detailed", headers=ADMIN)

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "up"
        assert data["checks"]["credentials"]["providers"]["stripe"] == {
            "healthy": 2, "unhealthy": 0, "available": True
        }
        assert data["checks"]["dead_letters"]["pending"] == 0
        assert data["checks"]["outbox"]["failed"] == 0

    def test_stuck_work_degrades_status(self, client, session_factory):
        db = session_factory()
        db.add_all([
            DeadLetterEvent(
                provider="stripe",
                event_id="evt_1",
                event_type="payment_intent.succeeded",
                raw_body="{}",
                headers={},
                reason="database is locked",
                attempts=3,
            ),
            outbox_row("refund:B-1", "failed"),
            outbox_row("refund:B-2", "processing", datetime.utcnow() - timedelta(hours=1)),
            outbox_row("refund:B-3", "pending"),
        ])
        db.commit()
        db.close()

        data = client.get("/health/detailed", headers=ADMIN).json()

        assert data["status"] == "degraded"
        assert data["checks"]["dead_letters"] == {"status": "degraded", "pending": 1}
        assert data["checks"]["outbox"] == {
            "status": "degraded", "queued": 1, "failed": 1, "stale_processing": 1
        }

    def test_exhausted_credentials_degrade_status(self, client):
        client.get("/health/detailed", headers=ADMIN)
        credentials = client.app.state.credentials
        for _ in range(2):
            credentials.report_failure(credentials.get_credential("stripe"), FailureKind.AUTHENTICATION)

        data = client.get("/health/detailed", headers=ADMIN).json()

        assert data["status"] == "degraded"
        assert data["checks"]["credentials"]["providers"]["stripe"] == {
            "healthy": 0, "unhealthy": 2, "available": False
        }
        assert data["checks"]["credentials"]["providers"]["calendly"]["available"] is True
