from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings


def build_engine(settings: Settings) -> Engine:
    """Create the engine for the storage database.

    The server connects with the elevated credential, so row-level-security
    policies do not apply to its writes.
    """

    # pool_pre_ping: verify connections before using them
    options: dict = {"echo": settings.debug, "future": True, "pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        options.update(pool_size=10, max_overflow=20)
    return create_engine(settings.database_url, **options)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True, expire_on_commit=False)


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Context manager for short-lived sessions used outside request handling.

    Presence handlers and roster broadcasts run from broker callbacks, so they
    open a session per event instead of holding one for the subscription.
    """
    db = factory()
    try:
        yield db
    finally:
        db.close()
