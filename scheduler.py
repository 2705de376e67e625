import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import ReconciliationService, SourcePeriodService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _refresh_current(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=current_sweep source={source}")
        with session_scope() as session:
            result = SourcePeriodService(session).refresh_current_flags()
            statuses = ReconciliationService(session, user_id=None).refresh_statuses()
            logger.info(
                f"scheduler_run: job=current_sweep source={source} "
                f"current={result.current_periods} statuses_changed={statuses.periods_changed}"
            )

    def _extend_obligations(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=extension source={source}")
        with session_scope() as session:
            result = ReconciliationService(session, user_id=None).extend_all()
            logger.info(
                f"scheduler_run: job=extension source={source} "
                f"obligations={result.obligations_processed} "
                f"created={result.periods_created} errors={len(result.errors)}"
            )

    def start(self) -> None:
        self._refresh_current("startup")

        self.scheduler.add_job(
            self._refresh_current,
            CronTrigger(hour=0, minute=0, timezone="UTC"),
            args=["daily_00:00"],
            id="current_sweep_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._refresh_current,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="current_sweep_hourly",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            self._extend_obligations,
            CronTrigger(day=1, hour=2, minute=0, timezone="UTC"),
            args=["monthly_02:00"],
            id="extension_monthly",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with daily 00:00 UTC sweep, hourly safety net "
            "and monthly extension"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
