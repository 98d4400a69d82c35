import logging
import threading
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import SessionLocal, session_scope
from recurrence import RecurringEngine
from schemas import BatchResult


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        settings = get_settings()
        self.settings = settings
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.cancel_event = threading.Event()

    def run_now(
        self, source: str = "manual", today: Optional[date] = None
    ) -> BatchResult:
        logger.info(f"scheduler_run: source={source}")
        with session_scope(self.session_factory) as session:
            result = RecurringEngine(session).run_batch(today, self.cancel_event)
        logger.info(
            f"scheduler_run: source={source} total={result.total} "
            f"processed={result.processed} skipped={result.skipped} "
            f"cancelled={result.cancelled}"
        )
        return result

    def _run_job(self, source: str) -> None:
        try:
            self.run_now(source)
        except Exception:
            # Only a failed due-set query gets here; the next firing retries.
            logger.exception(f"scheduler_run_failed: source={source}")

    def start(self) -> None:
        self.cancel_event.clear()
        if self.settings.run_on_startup:
            self._run_job("startup")

        trigger = CronTrigger.from_crontab(
            self.settings.recurring_job_schedule, timezone=self.settings.timezone
        )
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["cron"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            coalesce=True,
            max_instances=1,
        )

        if self.settings.safety_net_minutes > 0:
            trigger = IntervalTrigger(minutes=self.settings.safety_net_minutes)
            self.scheduler.add_job(
                self._run_job,
                trigger,
                args=["safety_net"],
                id="recurring_safety_net",
                replace_existing=True,
                misfire_grace_time=300,
                coalesce=True,
                max_instances=1,
            )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with schedule '{self.settings.recurring_job_schedule}' "
            f"and safety net every {self.settings.safety_net_minutes} minutes"
        )

    def stop(self) -> None:
        self.cancel_event.set()
        if self.scheduler.running:
            # Waits for the in-flight rule to finish its write pair.
            self.scheduler.shutdown(wait=True)
            logger.info("Scheduler stopped")
