from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any

from core.errors import ChatflowError

logger = logging.getLogger(__name__)


def idle_cutoff(idle_minutes: int, now: datetime | None = None) -> datetime:
    minutes = max(1, int(idle_minutes))
    return (now or datetime.now(timezone.utc)) - timedelta(minutes=minutes)


class IdleSessionSweeper:
    """Periodically ends sessions nobody has talked to for a while.

    `run_once` is usable from cron or the CLI; `start` runs it on a daemon
    thread every `interval_sec` until `stop` is called.
    """

    def __init__(self, engine: Any, idle_minutes: int, interval_sec: float = 300.0) -> None:
        self.engine = engine
        self.idle_minutes = max(1, int(idle_minutes))
        self.interval_sec = max(1.0, float(interval_sec))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self, now: datetime | None = None) -> int:
        ended = self.engine.end_idle_sessions(idle_minutes=self.idle_minutes, now=now)
        if ended:
            logger.info("idle-sweep ended=%s idle_minutes=%s", ended, self.idle_minutes)
        return ended

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="idle-session-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_sec):
            try:
                self.run_once()
            except ChatflowError as exc:
                logger.warning("idle-sweep-failed error=%s retryable=%s", exc, exc.retryable)
