"""Session factories.

API requests get a session per request through get_db(). Celery tasks
and the sweeper open one per run with session_scope(). Both draw from
the same default factory, which tests repoint at their own database.
"""

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from unfurl.db.engine import get_engine

_default_factory: sessionmaker[Session] | None = None


def create_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Factory bound to `engine` (the application engine by default).

    Objects stay loaded after commit: cache rows are returned to callers
    once their write has been committed.
    """
    return sessionmaker(
        bind=engine if engine is not None else get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


def get_session_factory() -> sessionmaker[Session]:
    global _default_factory
    if _default_factory is None:
        _default_factory = create_session_factory()
    return _default_factory


def set_session_factory(factory: sessionmaker[Session] | None) -> None:
    """Replace the default factory. None restores lazy creation."""
    global _default_factory
    _default_factory = factory


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for one unit of background work.

    Uncommitted work is rolled back if the block raises; the session is
    always closed.
    """
    db = get_session_factory()()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
