import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .registry import FileRegistry

logger = logging.getLogger("filerelay.scheduler")

SWEEP_JOB_ID = "sweep_expired_records"
DEFAULT_SWEEP_INTERVAL_SECONDS = 60


class ExpirySweeper:
    """Periodically drop registry records whose provider expiry has passed.

    Records without an expiry are never touched. Running a sweep twice in a
    row with nothing newly expired is a no-op.
    """

    def __init__(
        self,
        registry: FileRegistry,
        interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.registry = registry
        self.interval_seconds = max(1, int(interval_seconds))
        self._scheduler: Optional[BackgroundScheduler] = None

    def run_once(self) -> int:
        removed = self.registry.remove_expired()
        if removed:
            logger.info(
                "sweep_completed removed=%d remaining=%d",
                len(removed),
                len(self.registry),
            )
        for record in removed:
            logger.debug("sweep_removed file_id=%s service=%s", record.id, record.service)
        return len(removed)

    def start(self) -> None:
        if self.running:
            return

        scheduler = BackgroundScheduler(daemon=True)
        scheduler.add_job(
            func=self.run_once,
            trigger="interval",
            seconds=self.interval_seconds,
            id=SWEEP_JOB_ID,
            name="Sweep expired upload records",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("sweeper_started interval_seconds=%d", self.interval_seconds)

        # Enforce expiry once before serving traffic.
        self.run_once()

    def shutdown(self, wait: bool = False) -> None:
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=wait)
            logger.info("sweeper_stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None and bool(self._scheduler.running)

    @property
    def next_run_time(self) -> Optional[datetime]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(SWEEP_JOB_ID)
        return job.next_run_time if job else None
