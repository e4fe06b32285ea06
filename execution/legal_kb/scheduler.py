"""
Daily crawl scheduler.

Runs the legal document crawler every day at 17:00 East Africa Time on a
background thread and accepts manual triggers. Only one crawl runs at a time:
a scheduled tick that finds a crawl in progress is skipped, while manual
triggers queue behind it.
"""

import os
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, time as dt_time, timedelta
from typing import Callable, Optional

import pytz

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    timezone: str = "Africa/Nairobi"
    run_hour: int = 17
    run_minute: int = 0

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        return cls(
            timezone=os.getenv("CRAWLER_TIMEZONE", "Africa/Nairobi"),
            run_hour=int(os.getenv("CRAWLER_RUN_HOUR", "17")),
            run_minute=int(os.getenv("CRAWLER_RUN_MINUTE", "0")),
        )


class CrawlerScheduler:
    """
    Manages scheduled and on-demand crawl runs.

    Usage:
        scheduler = CrawlerScheduler(lambda: LegalDocumentCrawler(pipeline, store))
        scheduler.start()
        future = scheduler.trigger_manual_crawl()   # returns immediately
        future.result()                             # {"discovered": ..., "ingested": ...}
    """

    def __init__(
        self,
        crawler_factory: Callable,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or SchedulerConfig()
        self._crawler_factory = crawler_factory
        self._tz = pytz.timezone(self.config.timezone)
        self._clock = clock or (lambda: datetime.now(pytz.utc))
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._crawl_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="manual-crawl")
        self._last_run: Optional[datetime] = None
        self._last_result: Optional[dict] = None

    def start(self) -> None:
        """Start the daily schedule on a daemon thread."""
        if self._running:
            logger.warning("Crawler scheduler already running")
            return
        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(
            target=self._run_loop, name="crawler-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(
            f"Crawler scheduler started: daily at {self.config.run_hour:02d}:"
            f"{self.config.run_minute:02d} {self.config.timezone}, "
            f"next run {self.get_next_run_time().isoformat()}"
        )

    def stop(self) -> None:
        """Stop the schedule. A crawl already in progress finishes on its own."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("Crawler scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    @property
    def is_crawling(self) -> bool:
        return self._crawl_lock.locked()

    def get_next_run_time(self) -> datetime:
        """Next daily run as an aware datetime in the scheduler's timezone."""
        now = self._clock().astimezone(self._tz)
        run_at = dt_time(self.config.run_hour, self.config.run_minute)
        candidate = self._tz.localize(datetime.combine(now.date(), run_at))
        if candidate <= now:
            candidate = self._tz.localize(datetime.combine(now.date() + timedelta(days=1), run_at))
        return candidate

    def trigger_manual_crawl(self) -> Future:
        """
        Start a crawl in the background and return immediately.

        Returns:
            Future resolving to the run's {"discovered", "ingested", ...} counts
        """
        logger.info("Manual crawl triggered")
        return self._executor.submit(self._run_crawl, "manual", True)

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "crawling": self.is_crawling,
            "next_run": self.get_next_run_time().isoformat(),
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "last_result": self._last_result,
        }

    def shutdown(self) -> None:
        """Stop the schedule and wait for queued manual crawls."""
        self.stop()
        self._executor.shutdown(wait=True)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            next_run = self.get_next_run_time()
            wait_seconds = max((next_run - self._clock()).total_seconds(), 0)
            if self._stop_event.wait(wait_seconds):
                break
            try:
                self._run_crawl("scheduled", False)
            except Exception as e:
                logger.error(f"Scheduled crawl failed: {type(e).__name__}: {e}")

    def _run_crawl(self, trigger: str, wait: bool) -> Optional[dict]:
        """Run one crawl while holding the crawl lock; None when a scheduled run is skipped."""
        if not self._crawl_lock.acquire(blocking=wait):
            logger.warning(f"Skipping {trigger} crawl: a crawl is already in progress")
            return None
        try:
            logger.info(f"Starting {trigger} crawl")
            result = self._crawler_factory().crawl().to_dict()
            self._last_run = self._clock()
            self._last_result = result
            logger.info(
                f"{trigger.capitalize()} crawl complete: discovered {result['discovered']}, "
                f"ingested {result['ingested']}"
            )
            return result
        finally:
            self._crawl_lock.release()
