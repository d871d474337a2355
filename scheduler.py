import logging
import time

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import init_db, session_scope
from periods import local_today
from services import run_auto_create_budgets, run_daily_rollover


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        today = local_today()
        logger.info(f"scheduler_run: source={source} date={today.isoformat()}")
        with session_scope() as session:
            created = run_auto_create_budgets(session, today=today)
            rolled = run_daily_rollover(session, today=today)
            logger.info(
                f"scheduler_run: source={source} budgets_created={created} "
                f"allocations_rolled={rolled}"
            )

    def start(self) -> None:
        self._run_job("startup")

        hour = self.settings.rollover_hour
        minute = self.settings.rollover_minute
        trigger = CronTrigger(hour=hour, minute=minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="budget_daily_rollover",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        # rollover is idempotent per day, so catching a missed run is safe
        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="budget_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {hour:02d}:{minute:02d} and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")


def main() -> None:
    init_db()
    manager = SchedulerManager()
    manager.start()
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        manager.stop()


if __name__ == "__main__":
    main()
