"""
billing/db.py

Engine and session plumbing shared by every SmartSeek package.

Request handlers call ``get_db()`` and get a thread-scoped session that the
app factory removes on teardown. Background work (report generation) opens
its own session with ``db_session()``. The URL comes from DATABASE_URL;
tests point the module at in-memory SQLite through ``configure()``.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, scoped_session, Session
from sqlalchemy.pool import QueuePool, StaticPool


DEV_DATABASE_URL = 'postgresql://localhost:5432/smartseek_dev'

POSTGRES_ENGINE_OPTIONS = {
    'poolclass': QueuePool,
    'pool_size': 5,
    'max_overflow': 10,
    'pool_timeout': 30,
    'pool_recycle': 1800,
    'pool_pre_ping': True,
}

# one shared connection, otherwise each thread sees an empty in-memory db
SQLITE_MEMORY_ENGINE_OPTIONS = {
    'poolclass': StaticPool,
    'connect_args': {'check_same_thread': False},
}

# file databases get a real pool; writers wait on the lock instead of failing
SQLITE_FILE_ENGINE_OPTIONS = {
    'connect_args': {'check_same_thread': False, 'timeout': 30},
}


def utcnow() -> datetime:
    """Naive UTC, so values compare equal after a round trip through SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_database_url() -> str:
    url = os.environ.get('DATABASE_URL') or os.environ.get('DEV_DATABASE_URL')
    if not url:
        print(f"[DB] DATABASE_URL missing, falling back to {DEV_DATABASE_URL}")
        url = DEV_DATABASE_URL

    # SQLAlchemy 2 rejects the legacy scheme some hosts still hand out
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]
    return url


class _State:
    url: Optional[str] = None
    engine = None
    factory = None
    registry = None


def configure(database_url: str) -> None:
    """Drop the current engine and sessions and use ``database_url`` from now on."""
    if _State.registry is not None:
        _State.registry.remove()
    if _State.engine is not None:
        _State.engine.dispose()

    _State.url = database_url
    _State.engine = _State.factory = _State.registry = None


def _engine_options(url: str) -> dict:
    if not url.startswith('sqlite'):
        return POSTGRES_ENGINE_OPTIONS
    if url in ('sqlite://', 'sqlite:///:memory:'):
        return SQLITE_MEMORY_ENGINE_OPTIONS
    return SQLITE_FILE_ENGINE_OPTIONS


def _engine():
    if _State.engine is None:
        url = _State.url or resolve_database_url()
        _State.engine = create_engine(url, **_engine_options(url))

        if os.environ.get('DEBUG_DB'):
            @event.listens_for(_State.engine, 'connect')
            def _on_connect(dbapi_conn, record):
                print("[DB] connection opened")

    return _State.engine


def _factory():
    if _State.factory is None:
        _State.factory = sessionmaker(bind=_engine(), expire_on_commit=False)
    return _State.factory


def get_db() -> Session:
    """Session bound to the current thread (one per request)."""
    if _State.registry is None:
        _State.registry = scoped_session(_factory())
    return _State.registry


@contextmanager
def db_session() -> Iterator[Session]:
    """Standalone session for worker threads; commits on success."""
    session = _factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _metadata():
    import billing.models  # noqa: F401
    import integrations.models  # noqa: F401
    import sourcing.models  # noqa: F401
    from billing.models import Base
    return Base.metadata


def init_db(app=None) -> None:
    """Create missing tables and, given an app, release sessions on teardown."""
    _metadata().create_all(_engine())

    if app is None:
        return

    @app.teardown_appcontext
    def _release_session(exception=None):
        get_db().remove()

    print("[DB] Tables ready")


def check_connection() -> bool:
    try:
        with _engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        print(f"[DB] Health check failed: {e}")
        return False
    return True
