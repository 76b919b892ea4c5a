from __future__ import annotations

import threading
import unittest
from datetime import datetime, timezone

from core.errors import StoreUnavailableError
from sessions.retention import IdleSessionSweeper, idle_cutoff


class _FakeEngine:
    def __init__(self, ended: int = 2, fail: bool = False) -> None:
        self.ended = ended
        self.fail = fail
        self.calls: list[tuple[int, datetime | None]] = []
        self.called = threading.Event()

    def end_idle_sessions(self, idle_minutes: int | None = None, now: datetime | None = None) -> int:
        self.calls.append((idle_minutes, now))
        self.called.set()
        if self.fail:
            raise StoreUnavailableError("down")
        return self.ended


class IdleSessionSweeperTest(unittest.TestCase):
    def test_idle_cutoff(self) -> None:
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        self.assertEqual(idle_cutoff(30, now), datetime(2026, 3, 1, 11, 30, tzinfo=timezone.utc))
        self.assertEqual(idle_cutoff(0, now), datetime(2026, 3, 1, 11, 59, tzinfo=timezone.utc))

    def test_run_once_delegates_to_engine(self) -> None:
        engine = _FakeEngine(ended=3)
        sweeper = IdleSessionSweeper(engine, idle_minutes=15)
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        self.assertEqual(sweeper.run_once(now=now), 3)
        self.assertEqual(engine.calls, [(15, now)])

    def test_background_loop_survives_store_errors(self) -> None:
        engine = _FakeEngine(fail=True)
        sweeper = IdleSessionSweeper(engine, idle_minutes=15, interval_sec=1)
        sweeper.start()
        try:
            self.assertTrue(engine.called.wait(5))
            self.assertTrue(sweeper.running)
        finally:
            sweeper.stop(timeout=5)
        self.assertFalse(sweeper.running)


if __name__ == "__main__":
    unittest.main()
