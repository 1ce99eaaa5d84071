"""Clock and cancellable one-shot timers.

The engine owns exactly one kind of deadline (auto-confirm, plus its reminder).
Jobs are keyed so a report can be re-armed or cancelled by key, and every
callback re-validates match state under the per-match lock before acting, so a
job that fires after it was logically cancelled is harmless.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def auto_confirm_key(match_id: int) -> str:
    return f"auto_confirm:{match_id}"


def confirm_warning_key(match_id: int) -> str:
    return f"confirm_warning:{match_id}"


class TimerService:
    """
    In-process scheduler backed by threading.Timer.

    Jobs do not survive a restart; the deadline worker re-arms pending reports on
    startup and sweeps overdue ones periodically.
    """

    def __init__(self):
        self._jobs: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return datetime.utcnow()

    def schedule(self, key: str, run_at: datetime, callback: Callable[[], None]) -> None:
        """Schedule callback at run_at (naive UTC). Replaces any job already under key."""
        delay = max(0.0, (run_at - self.now()).total_seconds())
        timer = threading.Timer(delay, self._run, args=(key, callback))
        timer.daemon = True
        with self._lock:
            previous = self._jobs.pop(key, None)
            if previous is not None:
                previous.cancel()
            self._jobs[key] = timer
        timer.start()
        logger.debug("Scheduled %s in %.1fs", key, delay)

    def cancel(self, key: str) -> bool:
        with self._lock:
            job = self._jobs.pop(key, None)
        if job is None:
            return False
        job.cancel()
        logger.debug("Cancelled %s", key)
        return True

    def pending(self) -> List[str]:
        with self._lock:
            return sorted(self._jobs)

    def shutdown(self) -> None:
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
        for job in jobs:
            job.cancel()

    def _run(self, key: str, callback: Callable[[], None]) -> None:
        with self._lock:
            current = self._jobs.get(key)
            if current is threading.current_thread():
                del self._jobs[key]
        try:
            callback()
        except Exception:
            logger.exception("Timer job %s failed", key)


# Singleton instance
_timer_service: Optional[TimerService] = None


def get_timer_service() -> TimerService:
    """Get or create the singleton TimerService instance."""
    global _timer_service
    if _timer_service is None:
        _timer_service = TimerService()
    return _timer_service
