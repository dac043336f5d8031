"""
Shared Database Configuration

Centralized database connection management with environment variable support,
plus the unit-of-work boundary every ledger mutation runs inside.
"""

import os
import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool, QueuePool
from typing import Generator, Iterator, Optional

from ledger_config import LedgerConfig
from ledger_errors import ConcurrentModification, OperationTimedOut

logger = logging.getLogger(__name__)

# Get database URL from environment variable, fallback to SQLite for development
SQLALCHEMY_DATABASE_URL = os.getenv(
    "FUEL_LEDGER_DATABASE_URL",
    "sqlite:///./fuel_ledger.db"
)

_TIMEOUT_MARKERS = (
    "database is locked",
    "lock timeout",
    "statement timeout",
    "canceling statement",
    "could not obtain lock",
)


def build_engine(url: str = SQLALCHEMY_DATABASE_URL, config: Optional[LedgerConfig] = None) -> Engine:
    """
    Create an engine with bounded lock waits.

    SQLite uses its busy timeout; PostgreSQL gets lock_timeout and statement_timeout
    on every connection so no ledger operation can block indefinitely.
    """
    config = config or LedgerConfig.from_env()

    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    if url.startswith("sqlite"):
        # SQLite configuration (development and tests)
        connect_args = {"check_same_thread": False, "timeout": config.lock_timeout_seconds}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            return create_engine(url, connect_args=connect_args, poolclass=StaticPool, echo=False)
        return create_engine(url, connect_args=connect_args, pool_pre_ping=True, echo=False)

    # PostgreSQL/Production configuration with connection pooling
    lock_timeout_ms = int(config.lock_timeout_seconds * 1000)
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "3600")),
        pool_timeout=config.lock_timeout_seconds,
        connect_args={
            "options": f"-c lock_timeout={lock_timeout_ms} -c statement_timeout={config.statement_timeout_ms}"
        },
        echo=False,
    )


engine = build_engine()

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency function for FastAPI to get database session.
    Ensures session is properly closed after request.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None):
    """Initialize database tables and immutability triggers. Call this on application startup."""
    import ledger_models
    from db_constraints import create_journal_immutability_constraints

    bind = bind or engine
    ledger_models.Base.metadata.create_all(bind=bind)
    create_journal_immutability_constraints(bind)


def is_timeout_error(error: Exception) -> bool:
    message = str(getattr(error, "orig", error)).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)


@contextmanager
def unit_of_work(db: Session, description: str = "ledger operation") -> Iterator[Session]:
    """
    Run a block as one atomic unit: commit on success, roll back everything on any error.

    Driver failures are translated: lock/statement timeouts become OperationTimedOut,
    optimistic version conflicts become ConcurrentModification.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"Concurrent modification during {description}: {e}")
        raise ConcurrentModification(
            f"Concurrent modification detected during {description}; retry the operation",
            operation=description
        ) from e
    except OperationalError as e:
        db.rollback()
        if is_timeout_error(e):
            logger.warning(f"Timed out during {description}: {e}")
            raise OperationTimedOut(
                f"Timed out during {description}; retry the operation",
                operation=description
            ) from e
        raise
    except BaseException:
        db.rollback()
        raise


def ping(db: Session) -> bool:
    """Cheap connectivity check used by the health endpoint."""
    return db.execute(text("SELECT 1")).scalar() == 1
