"""Database connection, session management and the atomic unit of work."""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from building_ledger.services.config import settings
from building_ledger.services.errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url

# In-memory SQLite must share one connection across sessions
if DATABASE_URL.startswith("sqlite") and ":memory:" in DATABASE_URL:
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=settings.database_echo,
    )
elif DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        echo=settings.database_echo,
    )
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True, echo=settings.database_echo)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=True, bind=engine)


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run a ledger mutation as one all-or-nothing transaction.

    Commits when the block exits normally. Any exception rolls back every
    pending charge, payment, movement and balance write. An optimistic
    version mismatch is surfaced as a retryable ConcurrencyConflictError.
    """
    try:
        yield session
        session.commit()
    except StaleDataError as e:
        session.rollback()
        logger.warning("Concurrent ledger modification rolled back: %s", e)
        raise ConcurrencyConflictError() from e
    except Exception:
        session.rollback()
        raise


__all__ = [
    "engine",
    "SessionLocal",
    "atomic",
]
