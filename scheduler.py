import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from cache import get_cache
from config import get_settings
from database import session_scope
from locks import get_rollup_locks
from services import TransactionService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            service = TransactionService(
                session, cache=get_cache(), locks=get_rollup_locks()
            )
            outcomes = service.recalculate_all()
            failed = sum(1 for o in outcomes if not o.ok)
            logger.info(
                f"scheduler_run: source={source} recalculated={len(outcomes)} "
                f"failed={failed}"
            )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=2, minute=30)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_02:30"],
            id="rollup_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="rollup_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 02:30 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
