from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from .cache import EventCacheManager
from .config import AppConfig
from .errors import CalendarSyncError

logger = logging.getLogger(__name__)


def sync_disabled() -> bool:
    return os.environ.get("DISABLE_CALENDAR_SYNC", "").strip().lower() in {"1", "true", "yes"}


class CalendarSyncJob:
    """Runs ``manager.sync()`` every ``refresh.calendar_sync_minutes`` on a daemon thread.

    A failed run is logged and the next tick tries again; the stored cache is
    left as it was.
    """

    def __init__(self, manager: EventCacheManager, config_provider: Callable[[], AppConfig]) -> None:
        self.manager = manager
        self.config_provider = config_provider
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> bool:
        try:
            summary = self.manager.sync()
        except CalendarSyncError as exc:
            logger.warning("Calendar auto-sync failed: %s (%s)", exc.message, exc.code)
            return False
        except Exception:  # noqa: BLE001
            logger.exception("Calendar auto-sync failed")
            return False
        for error in summary.errors:
            logger.warning("Calendar source %s failed: %s", error.feed_url or error.source, error.message)
        return True

    def _interval_seconds(self) -> float:
        return max(1, self.config_provider().refresh.calendar_sync_minutes) * 60.0

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self._interval_seconds())

    def start(self) -> bool:
        if sync_disabled():
            logger.info("Calendar auto-sync disabled")
            return False
        if self._thread is not None and self._thread.is_alive():
            return True
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="calendar-sync", daemon=True)
        self._thread.start()
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
