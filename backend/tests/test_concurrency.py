"""Races: exactly one transition wins per match; versioned commits retry on conflict.

Uses a file-backed SQLite database so every thread gets its own connection.
"""
import threading
from datetime import timedelta
from typing import Callable, List, Tuple

import pytest
from sqlalchemy import update
from sqlmodel import Session, SQLModel, create_engine, select

from arena.errors import ConcurrencyConflict, InvalidState, MatchEngineError
from arena.models.match import STATUS_COMPLETED, STATUS_DISPUTED, STATUS_LIVE, Match
from arena.models.notification_log import NotificationLog
from arena.models.participant import Participant
from arena.models.tournament import Tournament
from arena.services.advancement_service import on_match_completed
from arena.services.handshake import confirm_active, mark_ready
from arena.services.match_state_machine import auto_confirm_timeout, confirm_score, dispute_match, report_score
from arena.services.match_store import LockRegistry, run_match_action


@pytest.fixture
def file_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


def _seed(engine, status: str = STATUS_LIVE) -> Tuple[int, int, int]:
    """Tournament with two first-round matches; returns (match_id, p1_id, p2_id) of the first."""
    with Session(engine) as s:
        p1, p2 = Participant(display_name="p1"), Participant(display_name="p2")
        tournament = Tournament(name="Race Cup")
        s.add_all([p1, p2, tournament])
        s.commit()
        match = Match(
            tournament_id=tournament.id,
            round_number=1,
            match_order=1,
            participant1_id=p1.id,
            participant2_id=p2.id,
            status=status,
        )
        s.add(match)
        s.add(Match(tournament_id=tournament.id, round_number=1, match_order=2))
        s.commit()
        return match.id, p1.id, p2.id


def _race(engine, calls: List[Callable[[Session], object]]) -> List[Tuple[str, object]]:
    """Run each call on its own thread and session, released together."""
    barrier = threading.Barrier(len(calls))
    outcomes: List[Tuple[str, object]] = [("missing", None)] * len(calls)

    def run(index: int, call: Callable[[Session], object]) -> None:
        with Session(engine) as s:
            barrier.wait()
            try:
                outcomes[index] = ("ok", call(s) is not None)
            except MatchEngineError as e:
                outcomes[index] = ("error", e)

    threads = [threading.Thread(target=run, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


@pytest.mark.parametrize("attempt", range(5))
def test_confirm_dispute_timeout_exactly_one_wins(file_engine, timers, attempt):
    match_id, p1, p2 = _seed(file_engine)
    with Session(file_engine) as s:
        report_score(s, match_id, p1, 3, 1)
    timers.current += timedelta(minutes=11)

    outcomes = _race(file_engine, [
        lambda s: confirm_score(s, match_id, p2),
        lambda s: dispute_match(s, match_id, p2, "wrong score"),
        lambda s: auto_confirm_timeout(s, match_id),
    ])

    winners = [o for o in outcomes if o == ("ok", True)]
    assert len(winners) == 1, outcomes
    for kind, value in outcomes:
        if kind == "error":
            assert isinstance(value, InvalidState)
        else:
            assert kind == "ok"

    with Session(file_engine) as s:
        match = s.get(Match, match_id)
        dispute_won = outcomes[1] == ("ok", True)
        assert match.status == (STATUS_DISPUTED if dispute_won else STATUS_COMPLETED)
        assert (match.winner_id is None) == dispute_won


def test_simultaneous_confirm_active_goes_live_once(file_engine):
    match_id, p1, p2 = _seed(file_engine, status="scheduled")
    with Session(file_engine) as s:
        mark_ready(s, match_id, p1)
        mark_ready(s, match_id, p2)

    outcomes = _race(file_engine, [
        lambda s: confirm_active(s, match_id, p1).match_live,
        lambda s: confirm_active(s, match_id, p2).match_live,
    ])

    assert all(kind == "ok" for kind, _ in outcomes)
    with Session(file_engine) as s:
        assert s.get(Match, match_id).status == STATUS_LIVE
        live_notices = s.exec(select(NotificationLog).where(NotificationLog.message_type == "match_live")).all()
        assert sorted(n.user_id for n in live_notices) == sorted([p1, p2])


def test_sibling_advancements_fill_both_slots(file_engine):
    with Session(file_engine) as s:
        people = [Participant(display_name=f"p{i}") for i in range(4)]
        tournament = Tournament(name="Race Cup")
        s.add_all(people + [tournament])
        s.commit()
        semis = [
            Match(tournament_id=tournament.id, round_number=1, match_order=order,
                  participant1_id=a.id, participant2_id=b.id, status=STATUS_COMPLETED, winner_id=a.id)
            for order, (a, b) in ((1, people[0:2]), (2, people[2:4]))
        ]
        s.add_all(semis)
        s.commit()
        calls = [(m.id, m.winner_id) for m in semis]
        tournament_id = tournament.id

    outcomes = _race(file_engine, [
        lambda s, c=c: on_match_completed(s, *c) for c in calls
    ])

    assert all(kind == "ok" for kind, _ in outcomes), outcomes
    with Session(file_engine) as s:
        final = s.exec(select(Match).where(Match.tournament_id == tournament_id, Match.round_number == 2)).one()
        assert sorted([final.participant1_id, final.participant2_id]) == sorted(w for _, w in calls)


class TestVersionedCommit:
    def _bump(self, engine, match_id: int) -> None:
        with Session(engine) as other:
            other.execute(update(Match).where(Match.id == match_id).values(lock_version=Match.lock_version + 1))
            other.commit()

    def test_conflict_is_retried(self, file_engine):
        match_id, _p1, _p2 = _seed(file_engine)
        attempts = []

        def action(match: Match) -> int:
            attempts.append(match.lock_version)
            if len(attempts) == 1:
                self._bump(file_engine, match_id)
            match.evidence_ref = "retried"
            return len(attempts)

        with Session(file_engine) as s:
            assert run_match_action(s, match_id, action) == 2
            assert attempts == [0, 1]
            assert s.get(Match, match_id).lock_version == 2

    def test_conflict_surfaces_after_bounded_retries(self, file_engine):
        match_id, _p1, _p2 = _seed(file_engine)
        attempts = []

        def action(match: Match) -> None:
            attempts.append(1)
            self._bump(file_engine, match_id)
            match.evidence_ref = "never"

        with Session(file_engine) as s:
            with pytest.raises(ConcurrencyConflict, match="changed concurrently"):
                run_match_action(s, match_id, action)
        assert len(attempts) == 3

        with Session(file_engine) as s:
            assert s.get(Match, match_id).evidence_ref is None


def test_lock_wait_times_out():
    registry = LockRegistry()
    held = threading.Event()
    release = threading.Event()

    def holder():
        with registry.hold(("match", 1), timeout=1):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    held.wait(5)
    try:
        with pytest.raises(ConcurrencyConflict):
            with registry.hold(("match", 1), timeout=0.05):
                pass
        # Unrelated matches never contend
        with registry.hold(("match", 2), timeout=0.05):
            pass
    finally:
        release.set()
        thread.join(5)
    assert registry.held_keys() == []
