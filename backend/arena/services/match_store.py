"""
Match Store access with per-match exclusivity.

Every state-mutating engine operation goes through ``run_match_action``:

1. take the in-process lock for that match id (unrelated matches never contend),
2. re-read the row (``SELECT ... FOR UPDATE`` where the database supports it),
3. let the action validate preconditions and mutate the loaded Match,
4. commit through a guarded ``UPDATE ... WHERE lock_version = expected``.

A version mismatch means another process wrote the row in between; the whole
read-validate-act sequence is retried a bounded number of times before
ConcurrencyConflict reaches the caller.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, TypeVar

from sqlalchemy import update
from sqlmodel import Session, select

from arena.config import get_settings
from arena.errors import ConcurrencyConflict, NotFound
from arena.models.match import Match

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockRegistry:
    """Reference-counted locks keyed by match id (or any hashable slot key)."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, List[Any]] = {}  # key -> [RLock, holders]

    @contextmanager
    def hold(self, key: Hashable, timeout: float) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            if not entry[0].acquire(timeout=timeout):
                raise ConcurrencyConflict(f"Timed out waiting for lock on {key!r}")
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def held_keys(self) -> List[Hashable]:
        with self._guard:
            return list(self._locks)


_registry = LockRegistry()


def get_lock_registry() -> LockRegistry:
    return _registry


def load_match_for_update(session: Session, match_id: int) -> Match:
    """Re-read the match row inside the current transaction. Raises NotFound."""
    match = session.exec(
        select(Match).where(Match.id == match_id).with_for_update().execution_options(populate_existing=True)
    ).first()
    if match is None:
        raise NotFound(f"Match {match_id} not found")
    return match


def commit_versioned(session: Session, match: Match, expected_version: int, now: Optional[datetime] = None) -> None:
    """
    Flush pending changes and bump lock_version only if nobody else did first.

    Raises ConcurrencyConflict (after rolling back) when the guarded update matches no row.
    """
    match.updated_at = now or datetime.utcnow()
    session.add(match)
    result = session.execute(
        update(Match)
        .where(Match.id == match.id, Match.lock_version == expected_version)
        .values(lock_version=expected_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        raise ConcurrencyConflict(f"Match {match.id} changed concurrently (expected version {expected_version})")
    match.lock_version = expected_version + 1
    session.commit()


def run_match_action(
    session: Session,
    match_id: int,
    action: Callable[[Match], T],
    lock_key: Optional[Hashable] = None,
) -> T:
    """
    Run ``action(match)`` under exclusive access to ``match_id`` and commit it.

    The action may raise any MatchEngineError to reject the operation; pending
    changes are rolled back. If the action leaves the session clean (a no-op),
    nothing is written and the version is not bumped.
    """
    settings = get_settings()
    key = lock_key if lock_key is not None else ("match", match_id)
    last_conflict: Optional[ConcurrencyConflict] = None

    for attempt in range(1, settings.max_conflict_retries + 1):
        try:
            with _registry.hold(key, settings.lock_timeout_seconds):
                try:
                    match = load_match_for_update(session, match_id)
                    expected = match.lock_version
                    result = action(match)
                    if session.dirty or session.new:
                        commit_versioned(session, match, expected)
                    else:
                        session.rollback()
                    return result
                except ConcurrencyConflict:
                    raise
                except Exception:
                    session.rollback()
                    raise
        except ConcurrencyConflict as e:
            last_conflict = e
            logger.info("Concurrency conflict on match %s (attempt %d): %s", match_id, attempt, e)

    raise last_conflict or ConcurrencyConflict()
