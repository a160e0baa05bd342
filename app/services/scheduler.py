"""
Maintenance Scheduler

Runs MaintenanceService on an interval inside the FastAPI process
(APScheduler AsyncIOScheduler). The job itself is synchronous database
work, so it is pushed to a worker thread to keep the event loop free.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings as default_settings, Settings
from ..database import SessionLocal
from .booking_events import BookingEventBus
from .credential_manager import CredentialManager
from .maintenance import MaintenanceService

logger = logging.getLogger(__name__)

JOB_ID = "reconciliation_maintenance"


def run_maintenance(
    credentials: Optional[CredentialManager] = None,
    event_bus: Optional[BookingEventBus] = None,
    settings: Settings = default_settings
) -> Dict[str, int]:
    """One maintenance pass with its own session."""
    db = SessionLocal()
    try:
        return MaintenanceService(db, credentials, event_bus, settings).run()
    finally:
        db.close()


class MaintenanceScheduler:
    """
    Usage:
        scheduler = MaintenanceScheduler(credentials, event_bus)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        credentials: Optional[CredentialManager] = None,
        event_bus: Optional[BookingEventBus] = None,
        settings: Settings = default_settings
    ):
        self.credentials = credentials
        self.event_bus = event_bus
        self.settings = settings
        self._scheduler: Optional[AsyncIOScheduler] = None
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[Dict[str, int]] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def run_job(self):
        try:
            self.last_result = await asyncio.to_thread(
                run_maintenance, self.credentials, self.event_bus, self.settings
            )
            self.last_run_at = datetime.utcnow()
        except Exception as e:
            logger.exception(f"Maintenance job failed: {e}")

    def start(self) -> bool:
        if self.running:
            logger.warning("Maintenance scheduler is already running")
            return True

        try:
            self._scheduler = AsyncIOScheduler(timezone="UTC")
            self._scheduler.add_job(
                self.run_job,
                IntervalTrigger(minutes=self.settings.maintenance_interval_minutes),
                id=JOB_ID,
                name="Reconciliation maintenance",
                replace_existing=True,
                max_instances=1,
                coalesce=True
            )
            self._scheduler.start()
            logger.info(f"Maintenance scheduler started (every {self.settings.maintenance_interval_minutes} min)")
            return True
        except Exception as e:
            logger.error(f"Failed to start maintenance scheduler: {e}")
            self._scheduler = None
            return False

    def stop(self) -> bool:
        if self._scheduler is None:
            return True

        try:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Maintenance scheduler stopped")
            return True
        except Exception as e:
            logger.error(f"Failed to stop maintenance scheduler: {e}")
            return False
