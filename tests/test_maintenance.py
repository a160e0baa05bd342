"""
Tests for periodic maintenance

Tests cover:
- Expiring buffered events
- Ledger retention purge
- Finalizing settled bookings
- Credential restore
- Scheduler start/stop
"""

import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

from app.models.booking import Booking
from app.models.pending_event import PendingEvent
from app.models.processed_event import ProcessedEvent
from app.services.maintenance import MaintenanceService
from app.services.scheduler import JOB_ID, MaintenanceScheduler

from factories import make_settings


def add_pending(db, event_id, expires_at):
    db.add(ProcessedEvent(provider="stripe", event_id=event_id, outcome="deferred"))
    db.add(PendingEvent(
        provider="stripe",
        event_id=event_id,
        event_type="payment-succeeded",
        payment_ref="pi_1",
        event_data={},
        expires_at=expires_at,
    ))
    db.commit()


class TestPendingExpiry:
    def test_expired_events_are_rejected_in_ledger(self, db, settings):
        now = datetime(2030, 1, 1, 12, 0)
        add_pending(db, "evt_old", now - timedelta(minutes=1))
        add_pending(db, "evt_fresh", now + timedelta(minutes=30))

        expired = MaintenanceService(db, settings=settings).expire_pending_events(now=now)

        statuses = {p.event_id: p.status for p in db.query(PendingEvent).all()}
        outcomes = {r.event_id: (r.outcome, r.error_code) for r in db.query(ProcessedEvent).all()}
        assert expired == 1
        assert statuses == {"evt_old": "expired", "evt_fresh": "pending"}
        assert outcomes["evt_old"] == ("rejected", "pending_expired")
        assert outcomes["evt_fresh"] == ("deferred", None)


class TestFinalization:
    def test_paid_bookings_with_schedule_are_confirmed(self, db, event_bus, published):
        db.add_all([
            Booking(id="B-paid", state="PAID", version=3, scheduling_ref="EVT-1", payment_ref="pi_1"),
            Booking(id="B-no-slot", state="PAID", version=3, payment_ref="pi_2"),
            Booking(id="B-pending", state="PAYMENT_PENDING", version=2, scheduling_ref="EVT-3"),
        ])
        db.commit()

        settings = make_settings(transition_retry_base_delay=0)
        finalized = MaintenanceService(db, event_bus=event_bus, settings=settings).finalize_settled_bookings()

        states = {b.id: (b.state, b.version) for b in db.query(Booking).all()}
        assert finalized == 1
        assert states["B-paid"] == ("CONFIRMED", 4)
        assert states["B-no-slot"] == ("PAID", 3)
        assert [(n.booking_id, n.to_state) for n in published] == [("B-paid", "CONFIRMED")]


class TestRun:
    def test_run_reports_every_task(self, db, settings):
        credentials = MagicMock()
        credentials.health_check.return_value = 2

        stats = MaintenanceService(db, credentials=credentials, settings=settings).run()

        assert stats == {
            "pending_expired": 0,
            "processed_purged": 0,
            "bookings_finalized": 0,
            "credentials_restored": 2,
        }

    def test_run_without_credential_manager(self, db, settings):
        assert MaintenanceService(db, settings=settings).restore_credentials() == 0


class TestScheduler:
    def test_start_registers_interval_job(self, settings):
        async def scenario():
            scheduler = MaintenanceScheduler(settings=settings)
            assert scheduler.start() is True
            assert scheduler.running
            job = scheduler._scheduler.get_job(JOB_ID)
            assert job is not None
            assert job.trigger.interval == timedelta(minutes=settings.maintenance_interval_minutes)
            assert scheduler.stop() is True
            assert not scheduler.running

        asyncio.run(scenario())

    def test_job_failure_is_logged_not_raised(self, settings):
        scheduler = MaintenanceScheduler(settings=settings)
        with patch("app.services.scheduler.run_maintenance", side_effect=RuntimeError("db down")):
            asyncio.run(scheduler.run_job())
        assert scheduler.last_run_at is None

    def test_job_records_result(self, settings):
        scheduler = MaintenanceScheduler(settings=settings)
        with patch("app.services.scheduler.run_maintenance", return_value={"pending_expired": 1}):
            asyncio.run(scheduler.run_job())
        assert scheduler.last_result == {"pending_expired": 1}
        assert scheduler.last_run_at is not None
