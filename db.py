from __future__ import annotations

import logging
import os
import time
from typing import Callable, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from errors import PersistenceError

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(BASE_DIR, 'incidents.db')}")

READ_AFTER_WRITE_ATTEMPTS = 3
READ_AFTER_WRITE_DELAY = 0.2

Base = declarative_base()
logger = logging.getLogger(__name__)

T = TypeVar("T")


def _connect_args(url: str) -> dict:
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


def build_session_factory(url: str = DATABASE_URL) -> sessionmaker:
    """Create the engine for ``url``, make sure the tables exist and return a session factory."""
    engine = create_engine(url, future=True, connect_args=_connect_args(url))
    # models must be imported so their tables are registered on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


engine = create_engine(DATABASE_URL, future=True, connect_args=_connect_args(DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


def get_session():
    return SessionLocal()


def init_db() -> None:
    import models  # noqa: F401

    Base.metadata.create_all(engine)


def read_after_write(
    fetch: Callable[[], T | None],
    description: str,
    attempts: int = READ_AFTER_WRITE_ATTEMPTS,
    delay: float = READ_AFTER_WRITE_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Re-read a just written row a bounded number of times before giving up."""
    for attempt in range(1, attempts + 1):
        result = fetch()
        if result is not None:
            return result
        if attempt < attempts:
            logger.warning("%s not visible yet (attempt %s/%s)", description, attempt, attempts)
            sleep(delay)
    raise PersistenceError(f"{description} was saved but could not be read back")
