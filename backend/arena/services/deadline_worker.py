"""
Deadline Worker: periodic sweep over match deadlines.

In-memory timers are lost on restart and can be missed under load, so the
worker re-derives every due deadline from the database:

1. overdue pending reports are auto-confirmed,
2. reminders that are due but unsent are sent,
3. pre-live matches with both players known, past their start time plus
   NO_SHOW_HOURS, are settled by forfeit or as no contest,
4. live matches with no score LIVE_REPORT_WINDOW_MINUTES after going live are
   settled the same way.

Every action goes through the same locked operations the timers use, so a
sweep racing a timer (or a participant) is a no-op for whichever comes second.
"""
import logging
import threading
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from arena.config import get_settings
from arena.errors import MatchEngineError
from arena.models.match import PRE_LIVE_STATUSES, STATUS_AWAITING_CONFIRMATION, STATUS_LIVE, Match
from arena.models.tournament import Tournament
from arena.services.match_state_machine import (
    OUTCOME_FORFEIT,
    OUTCOME_NO_CONTEST,
    arm_timers,
    auto_confirm_timeout,
    resolve_live_no_score,
    resolve_no_show,
    send_confirmation_warning,
)
from arena.services.timer_service import get_timer_service

logger = logging.getLogger(__name__)

_scan_lock = threading.Lock()


def _ids(session: Session, statement) -> List[int]:
    return list(session.exec(statement).all())


def scan_expired_matches(session: Session) -> Dict:
    """
    Run one sweep.

    Returns:
        Dict with counts: auto_confirmed, reminders_sent, forfeits,
        no_contests, errors
    """
    settings = get_settings()
    now = get_timer_service().now()
    counts = {"auto_confirmed": 0, "reminders_sent": 0, "forfeits": 0, "no_contests": 0, "errors": 0}

    overdue = _ids(session, select(Match.id).where(
        Match.status == STATUS_AWAITING_CONFIRMATION,
        Match.auto_confirm_at.is_not(None),
        Match.auto_confirm_at <= now,
    ).order_by(Match.auto_confirm_at))
    for match_id in overdue:
        try:
            if auto_confirm_timeout(session, match_id) is not None:
                counts["auto_confirmed"] += 1
        except MatchEngineError as e:
            counts["errors"] += 1
            logger.warning("Auto-confirm sweep failed for match %s: %s", match_id, e)

    warning_cutoff = now + timedelta(minutes=settings.auto_confirm_warning_minutes)
    reminders = _ids(session, select(Match.id).where(
        Match.status == STATUS_AWAITING_CONFIRMATION,
        Match.confirm_warning_sent_at.is_(None),
        Match.auto_confirm_at > now,
        Match.auto_confirm_at <= warning_cutoff,
    ))
    for match_id in reminders:
        try:
            if send_confirmation_warning(session, match_id):
                counts["reminders_sent"] += 1
        except MatchEngineError as e:
            counts["errors"] += 1
            logger.warning("Reminder sweep failed for match %s: %s", match_id, e)

    no_show_cutoff = now - timedelta(hours=settings.no_show_hours)
    starts_at = func.coalesce(Match.scheduled_at, Tournament.starts_at)
    stale = _ids(session, select(Match.id).join(Tournament, Tournament.id == Match.tournament_id).where(
        Match.status.in_(PRE_LIVE_STATUSES),
        Match.participant1_id.is_not(None),
        Match.participant2_id.is_not(None),
        starts_at.is_not(None),
        starts_at <= no_show_cutoff,
    ).order_by(Match.id))
    _settle_each(stale, resolve_no_show, session, counts, "No-show")

    live_cutoff = now - timedelta(minutes=settings.live_report_window_minutes)
    silent = _ids(session, select(Match.id).where(
        Match.status == STATUS_LIVE,
        Match.live_at.is_not(None),
        Match.live_at <= live_cutoff,
    ).order_by(Match.live_at))
    _settle_each(silent, resolve_live_no_score, session, counts, "Live no-score")

    if any(counts.values()):
        logger.info("Deadline sweep: %s", counts)
    return counts


def _settle_each(match_ids: List[int], resolve, session: Session, counts: Dict, label: str) -> None:
    for match_id in match_ids:
        try:
            outcome = resolve(session, match_id)
        except MatchEngineError as e:
            counts["errors"] += 1
            logger.warning("%s sweep failed for match %s: %s", label, match_id, e)
            continue
        if outcome == OUTCOME_FORFEIT:
            counts["forfeits"] += 1
        elif outcome == OUTCOME_NO_CONTEST:
            counts["no_contests"] += 1


def run_deadline_scan(session: Session) -> Optional[Dict]:
    """Run a sweep unless one is already in progress (returns None when skipped)."""
    if not _scan_lock.acquire(blocking=False):
        logger.info("Deadline sweep already in progress; skipping")
        return None
    try:
        return scan_expired_matches(session)
    finally:
        _scan_lock.release()


def rearm_pending_timers(session: Session) -> int:
    """Re-schedule timers for every pending report (after a restart). Returns how many."""
    pending = session.exec(
        select(Match).where(
            Match.status == STATUS_AWAITING_CONFIRMATION,
            Match.auto_confirm_at.is_not(None),
        )
    ).all()
    for match in pending:
        arm_timers(session, match)
    if pending:
        logger.info("Re-armed auto-confirm timers for %d pending matches", len(pending))
    return len(pending)


class DeadlineWorker:
    """Background thread that calls run_deadline_scan every interval_seconds."""

    def __init__(self, engine: Engine, interval_seconds: Optional[float] = None):
        self.engine = engine
        self.interval_seconds = interval_seconds or get_settings().deadline_scan_interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="deadline-worker", daemon=True)
        self._thread.start()
        logger.info("Deadline worker started (every %ss)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Deadline worker stopped")

    def run_once(self) -> Optional[Dict]:
        with Session(self.engine) as session:
            return run_deadline_scan(session)

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Deadline sweep failed")
