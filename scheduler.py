import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from cache import LedgerCache
from config import get_settings
from database import session_scope
from schedules import IncomeScheduleEngine


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Rolls income sources' expected dates forward once they have passed."""

    def __init__(
        self,
        cache: Optional[LedgerCache] = None,
        session_factory: Callable[[], object] = session_scope,
    ) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.cache = cache
        self.session_factory = session_factory

    def roll_forward(self, session: Session) -> int:
        return IncomeScheduleEngine(session).roll_forward_due()

    def _run_job(self, source: str = "manual") -> None:
        logger.info("scheduler_run: source=%s", source)
        with self.session_factory() as session:
            count = self.roll_forward(session)
        if count and self.cache is not None:
            self.cache.invalidate_group("INCOME_SOURCE_CHANGE")
        logger.info("scheduler_run: source=%s income_sources_advanced=%s", source, count)

    def start(self) -> None:
        self._run_job("startup")

        # (job id, trigger, label, misfire grace seconds)
        jobs = (
            (
                "income_roll_forward_daily",
                CronTrigger(hour=3, minute=15),
                "daily_03:15",
                3600,
            ),
            (
                "income_roll_forward_hourly",
                IntervalTrigger(hours=1),
                "hourly_safety_net",
                300,
            ),
        )
        for job_id, trigger, label, grace in jobs:
            self.scheduler.add_job(
                self._run_job,
                trigger,
                args=[label],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
                coalesce=True,
            )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
