import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cache import CacheHealthMonitor
from config import get_settings


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, monitor: CacheHealthMonitor) -> None:
        settings = get_settings()
        self.monitor = monitor
        self.interval_secs = settings.cache_health_interval_secs
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_health_check(self, source: str = "manual") -> None:
        available = self.monitor.check()
        logger.debug(f"cache_health_check: source={source} available={available}")

    def start(self) -> None:
        self._run_health_check("startup")

        trigger = IntervalTrigger(seconds=self.interval_secs)
        self.scheduler.add_job(
            self._run_health_check,
            trigger,
            args=["interval"],
            id="cache_health",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.interval_secs,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with cache health check every {self.interval_secs}s"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
