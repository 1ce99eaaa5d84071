import os
from pathlib import Path
from typing import Callable, Generator

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./arena.db")

_is_sqlite = DATABASE_URL.startswith("sqlite")
_connect_args = {"check_same_thread": False} if _is_sqlite else {}
_echo = os.getenv("SQL_ECHO", "false").lower() in ("true", "1", "yes")

if _is_sqlite:
    db_path = DATABASE_URL.replace("sqlite:///", "", 1)
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

engine: Engine = create_engine(
    DATABASE_URL,
    echo=_echo,
    connect_args=_connect_args,
)


def get_session() -> Generator[Session, None, None]:
    """Get database session"""
    with Session(engine) as session:
        yield session


def session_factory(session: Session) -> Callable[[], Session]:
    """Factory for fresh sessions on the same engine as ``session``.

    Timer callbacks run on another thread after the request is gone, so they
    open their own session instead of sharing the request's unit of work.
    """
    bind = session.get_bind()
    return lambda: Session(bind)


def init_db() -> None:
    """Initialize database - create all tables"""
    # Import all models to ensure they're registered with SQLModel metadata
    from arena.models.dispute import Dispute  # noqa: F401
    from arena.models.match import Match  # noqa: F401
    from arena.models.notification_log import NotificationLog  # noqa: F401
    from arena.models.participant import Participant  # noqa: F401
    from arena.models.tournament import Tournament  # noqa: F401

    SQLModel.metadata.create_all(engine)
