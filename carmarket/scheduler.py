# carmarket/scheduler.py
from datetime import datetime
from typing import Callable, Optional
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import sessionmaker
from . import config, crud
from .utils import logger, utcnow


class ExpirationSweeper:
    """Moves available listings past their expiry to `expired`.

    `sweep` can be called on demand and raises on store failures; `tick` is
    what the interval job runs and only logs them, so one failed sweep never
    stops later ones.
    """

    JOB_ID = "expire-listings"

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow,
                 interval_minutes: Optional[int] = None):
        self.session_factory = session_factory
        self.clock = clock
        self.interval_minutes = interval_minutes or config.SWEEP_INTERVAL_MINUTES
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def sweep(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        with self.session_factory() as db:
            count = crud.expire_listings(db, now)
        if count:
            logger.info("Expired listings cleanup complete. Marked %d listings as expired.", count)
        else:
            logger.info("No expired listings found.")
        return count

    def tick(self) -> Optional[int]:
        try:
            return self.sweep()
        except Exception as e:
            logger.exception("Expired listings cleanup failed: %s", e)
            return None

    def start(self) -> None:
        if self.running:
            return
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self.tick, "interval", minutes=self.interval_minutes,
            id=self.JOB_ID, max_instances=1, coalesce=True,
        )
        self._scheduler.start()
        logger.info("Scheduler started, sweeping every %s minutes", self.interval_minutes)

    def stop(self) -> None:
        if not self.running:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduler stopped")
