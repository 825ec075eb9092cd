import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from fx_rates import ExchangeRateService
from invoices import mark_overdue
from services import process_all_due


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_recurring(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=recurring source={source}")
        with session_scope() as session:
            result = process_all_due(session)
        logger.info(
            f"scheduler_run: job=recurring source={source} processed={result.processed} "
            f"created={result.created} skipped={result.skipped} errors={len(result.errors)}"
        )

    def _run_rates(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=exchange_rates source={source}")
        with session_scope() as session:
            count = ExchangeRateService(session).update_rates()
        logger.info(f"scheduler_run: job=exchange_rates source={source} rates_saved={count}")

    def _run_overdue(self, source: str = "manual") -> None:
        with session_scope() as session:
            count = mark_overdue(session)
        logger.info(f"scheduler_run: job=invoices_overdue source={source} marked={count}")

    def start(self) -> None:
        self._run_recurring("startup")

        self.scheduler.add_job(
            self._run_recurring,
            CronTrigger(hour=3, minute=15),
            args=["daily_03:15"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_recurring,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            self._run_rates,
            CronTrigger(hour=6, minute=0),
            args=["daily_06:00"],
            id="exchange_rates_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_overdue,
            CronTrigger(hour=0, minute=30),
            args=["daily_00:30"],
            id="invoices_overdue_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started: recurring 03:15 + hourly, exchange rates 06:00, overdue invoices 00:30")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
