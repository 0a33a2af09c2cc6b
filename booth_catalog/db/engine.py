"""Engine and session plumbing for the booth catalog database."""

import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

DEFAULT_DB_PATH = Path.home() / ".booth_catalog" / "booth_catalog.db"
IN_MEMORY = ":memory:"

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def get_database_url(db_path: Path | str | None = None) -> str:
    """
    Resolve where the catalog lives.

    An explicit ``db_path`` wins, then ``DATABASE_URL``, then the file
    under the home directory. ``DATABASE_URL`` may hold a full
    SQLAlchemy URL (used untouched) or a bare SQLite file path.
    ``":memory:"`` selects a throwaway in-memory database.
    """
    target = db_path if db_path is not None else os.environ.get("DATABASE_URL")

    if target is None or target == "":
        location = DEFAULT_DB_PATH
    elif str(target) == IN_MEMORY:
        return "sqlite://"
    elif db_path is None and "://" in str(target):
        return str(target)
    else:
        location = Path(target)

    location.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{location}"


def create_db_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """Build a new engine; SQLite connections may be shared across threads."""
    url = get_database_url(db_path)
    options = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, connect_args=options)


def get_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """Process-wide engine, created on first call."""
    global _engine
    if _engine is None:
        _engine = create_db_engine(db_path, echo)
    return _engine


def get_session_factory(db_path: Path | str | None = None) -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(db_path), autoflush=False)
    return _session_factory


def reset_engine() -> None:
    """Dispose of the shared engine so the next call re-reads the environment."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine, _session_factory = None, None


@contextmanager
def get_session(db_path: Path | str | None = None) -> Iterator[Session]:
    """
    Open a session on the shared engine.

    Callers commit explicitly; anything left uncommitted is rolled back
    when the block exits.
    """
    with get_session_factory(db_path)() as session:
        yield session


def init_db(db_path: Path | str | None = None) -> None:
    """Create any missing tables."""
    from booth_catalog.db.models import Base

    Base.metadata.create_all(bind=get_engine(db_path))
