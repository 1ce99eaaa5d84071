import os

# Must be set before arena modules read the environment
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["DEADLINE_WORKER_ENABLED"] = "false"

from datetime import datetime, timedelta  # noqa: E402
from typing import Callable, Dict, List, Optional, Tuple  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402

from arena.config import get_settings  # noqa: E402
from arena.database import get_session  # noqa: E402
from arena.main import app  # noqa: E402
from arena.models.match import STATUS_LIVE, STATUS_SCHEDULED, Match  # noqa: E402
from arena.models.participant import Participant  # noqa: E402
from arena.models.tournament import Tournament  # noqa: E402
from arena.services import timer_service  # noqa: E402

TEST_DATABASE_URL = "sqlite:///:memory:"
START = datetime(2026, 3, 14, 18, 0, 0)

# ============================================================================
# Test Database Setup with StaticPool
# ============================================================================
# 1. sqlite:///:memory: with StaticPool so ALL sessions share the same DB
# 2. check_same_thread=False required for TestClient/threaded access
# 3. Tables created and dropped per test so ids restart at 1
# 4. App dependency overridden to use test_engine (see client_fixture)
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def override_get_session():
    """Override session to use test engine"""
    with Session(test_engine) as session:
        yield session


class ManualTimerService(timer_service.TimerService):
    """Timer service with a hand-driven clock. Jobs only fire from advance()."""

    def __init__(self, start: datetime):
        super().__init__()
        self.current = start
        self.jobs: Dict[str, Tuple[datetime, Callable[[], None]]] = {}

    def now(self) -> datetime:
        return self.current

    def schedule(self, key: str, run_at: datetime, callback: Callable[[], None]) -> None:
        self.jobs[key] = (run_at, callback)

    def cancel(self, key: str) -> bool:
        return self.jobs.pop(key, None) is not None

    def pending(self) -> List[str]:
        return sorted(self.jobs)

    def shutdown(self) -> None:
        self.jobs.clear()

    def run_at(self, key: str) -> Optional[datetime]:
        job = self.jobs.get(key)
        return job[0] if job else None

    def advance(self, **delta) -> List[str]:
        """Move the clock forward and run every job that is now due, earliest first."""
        self.current += timedelta(**delta)
        fired = []
        for key, (run_at, _callback) in sorted(self.jobs.items(), key=lambda item: item[1][0]):
            job = self.jobs.get(key)
            if job is None or run_at > self.current:
                continue
            del self.jobs[key]
            job[1]()
            fired.append(key)
        return fired


@pytest.fixture(name="timers", autouse=True)
def timers_fixture(monkeypatch):
    """Replace the threaded timer service so deadlines fire deterministically."""
    manual = ManualTimerService(START)
    monkeypatch.setattr(timer_service, "_timer_service", manual)
    get_settings.cache_clear()
    yield manual
    get_settings.cache_clear()


@pytest.fixture(name="session", scope="function")
def session_fixture():
    """Provide a test database session on freshly created tables."""
    from arena.models.dispute import Dispute  # noqa: F401
    from arena.models.notification_log import NotificationLog  # noqa: F401

    SQLModel.metadata.create_all(test_engine)

    with Session(test_engine) as session:
        yield session

    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(name="client")
def client_fixture(session: Session):
    """Provide a test client with overridden database session

    Override MUST be set BEFORE TestClient() and stay in place
    for the entire duration. This ensures the app never uses its own engine.
    """
    app.dependency_overrides[get_session] = override_get_session

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def players(session: Session) -> List[Participant]:
    """Four participants: ids 1..4 (alice, bob, carol, dave)."""
    people = [Participant(display_name=name) for name in ("alice", "bob", "carol", "dave")]
    for p in people:
        session.add(p)
    session.commit()
    for p in people:
        session.refresh(p)
    return people


@pytest.fixture
def tournament(session: Session) -> Tournament:
    t = Tournament(name="Spring Cup", starts_at=START)
    session.add(t)
    session.commit()
    session.refresh(t)
    return t


@pytest.fixture
def make_match(session: Session, tournament: Tournament):
    """Factory for bracket matches in the default tournament."""

    def _make(
        round_number: int = 1,
        match_order: int = 1,
        participant1: Optional[Participant] = None,
        participant2: Optional[Participant] = None,
        status: str = STATUS_SCHEDULED,
        **fields,
    ) -> Match:
        match = Match(
            tournament_id=fields.pop("tournament_id", tournament.id),
            round_number=round_number,
            match_order=match_order,
            participant1_id=participant1.id if participant1 else None,
            participant2_id=participant2.id if participant2 else None,
            status=status,
            **fields,
        )
        if status == STATUS_LIVE:
            match.participant1_ready = match.participant2_ready = True
            match.participant1_active_confirmed = match.participant2_active_confirmed = True
            match.live_at = START
        session.add(match)
        session.commit()
        session.refresh(match)
        return match

    return _make


@pytest.fixture
def bracket(make_match, players) -> Dict[str, Match]:
    """Four-player bracket: semifinal 1 (alice vs bob) live, semifinal 2 (carol vs dave) scheduled."""
    alice, bob, carol, dave = players
    return {
        "semi1": make_match(1, 1, alice, bob, status=STATUS_LIVE),
        "semi2": make_match(1, 2, carol, dave),
    }
