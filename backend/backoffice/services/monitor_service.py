# Overview: Process resource monitor with an explicit start/stop lifecycle.

from __future__ import annotations

import logging
import resource
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from ..time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSample:
    taken_at: object
    max_rss_kb: int
    pool_status: Optional[str]


class ResourceMonitor:
    """
    Samples process memory and connection-pool status on a daemon thread.

    Created by create_app() and stored on app.extensions["resource_monitor"];
    there is no module-level instance. start() and stop() are idempotent.
    """

    def __init__(self, *, interval: float = 60.0, pool_status: Callable[[], str] | None = None):
        self.interval = interval
        self._pool_status = pool_status
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.last_sample: ResourceSample | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sample(self) -> ResourceSample:
        usage = resource.getrusage(resource.RUSAGE_SELF)
        status = None
        if self._pool_status is not None:
            try:
                status = self._pool_status()
            except Exception:
                logger.exception("Failed to read connection pool status")
        sample = ResourceSample(taken_at=utcnow(), max_rss_kb=int(usage.ru_maxrss), pool_status=status)
        self.last_sample = sample
        return sample

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name="resource-monitor", daemon=True)
            self._thread.start()
            logger.info("Resource monitor started (interval %.1fs)", self.interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            thread.join(timeout)
            self._thread = None
            logger.info("Resource monitor stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            sample = self.sample()
            logger.debug("resource sample max_rss_kb=%s pool=%s", sample.max_rss_kb, sample.pool_status)
            self._stop_event.wait(self.interval)
