"""
provisioning/db.py

Database wiring for signup provisioning.

The engine is built lazily from DATABASE_URL. Every service call opens its
own unit of work through transaction(); tests pass their own session
factory instead of touching the module-level one.

Usage:
    from provisioning.db import transaction

    with transaction(factory) as db:
        row = get_active_session(db, user_id, now)

Version History:
    2026-10-18: Initial implementation
"""

import os
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool


SessionFactory = Callable[[], Session]

LOCAL_DATABASE_URL = 'postgresql://localhost:5432/membership_dev'

# Postgres only; sized for a few gunicorn workers per container
POSTGRES_ENGINE_OPTIONS = {
    'poolclass': QueuePool,
    'pool_size': 5,
    'max_overflow': 10,
    'pool_timeout': 30,
    'pool_recycle': 1800,
    'pool_pre_ping': True,
}

_engine: Optional[Engine] = None
_factory: Optional[sessionmaker] = None


def database_url() -> str:
    """DATABASE_URL, else DEV_DATABASE_URL, else the local dev database."""
    url = os.environ.get('DATABASE_URL') or ''
    if not url:
        url = os.environ.get('DEV_DATABASE_URL', LOCAL_DATABASE_URL)
        print(f"[DB] WARNING: DATABASE_URL not set, falling back to {url.split('@')[-1]}")

    # SQLAlchemy 2 only accepts the postgresql:// scheme
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]
    return url


def get_engine() -> Engine:
    global _engine
    if _engine is not None:
        return _engine

    url = database_url()
    options = POSTGRES_ENGINE_OPTIONS if url.startswith('postgresql') else {}
    _engine = create_engine(url, **options)

    if os.environ.get('DEBUG_DB'):
        @event.listens_for(_engine, 'connect')
        def _log_connect(dbapi_connection, connection_record):
            print("[DB] Opened database connection")

    return _engine


def get_session_factory() -> sessionmaker:
    """Module-level factory bound to get_engine()."""
    global _factory
    if _factory is None:
        _factory = sessionmaker(bind=get_engine(), expire_on_commit=False)
    return _factory


def configure(engine: Engine) -> sessionmaker:
    """Bind the module to an existing engine (scripts, one-off jobs)."""
    global _engine, _factory
    _engine = engine
    _factory = sessionmaker(bind=engine, expire_on_commit=False)
    return _factory


@contextmanager
def transaction(factory: Optional[SessionFactory] = None) -> Iterator[Session]:
    """One unit of work: committed if the block finishes, rolled back if it raises."""
    db = (factory or get_session_factory())()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def create_all_tables() -> None:
    from provisioning.models import Base
    Base.metadata.create_all(get_engine())
    print("[DB] Provisioning tables ensured")


def init_db(app=None, engine: Optional[Engine] = None) -> None:
    """Bind the engine (if given) and create missing tables."""
    if engine is not None:
        configure(engine)
    create_all_tables()
    if app is not None:
        print(f"[DB] Database ready for app '{app.name}'")


def check_connection(factory: Optional[SessionFactory] = None) -> bool:
    """SELECT 1 round trip; backs /signup/health."""
    try:
        with transaction(factory) as db:
            db.execute(text("SELECT 1"))
    except Exception as e:
        print(f"[DB] Health check failed: {type(e).__name__}: {e}")
        return False
    return True
