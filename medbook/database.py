import logging
from threading import Lock
from typing import Callable, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from medbook.core import config


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Postgres serialization failure and deadlock codes.
RETRYABLE_PGCODES = {"40001", "40P01"}


def build_engine(database_url: str, isolation_level: str | None = None):
    engine_options = {}
    if isolation_level:
        engine_options["isolation_level"] = isolation_level
    if database_url.startswith("sqlite"):
        engine_options["connect_args"] = {"check_same_thread": False}
    return create_engine(database_url, **engine_options)


engine = build_engine(config.DATABASE_URL, config.DATABASE_ISOLATION_LEVEL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_schema_checked = False


def ensure_scheduling_schema() -> None:
    global _schema_checked

    if _schema_checked:
        return

    with _schema_lock:
        if _schema_checked:
            return

        # Registers every table on Base.metadata before create_all.
        from medbook.models import appointment, availability, location, practitioner, user  # noqa: F401

        Base.metadata.create_all(bind=engine)
        _schema_checked = True


def is_retryable_error(exc: OperationalError) -> bool:
    original = getattr(exc, "orig", None)
    if getattr(original, "pgcode", None) in RETRYABLE_PGCODES:
        return True
    return "database is locked" in str(original)


def run_in_transaction(
    db: Session,
    operation: Callable[[Session], T],
    attempts: int | None = None,
) -> T:
    """Run ``operation`` as one unit of work and commit it.

    Any exception rolls the session back before propagating. Serialization
    failures reported by the database are retried up to ``attempts`` times,
    re-running the whole operation against fresh state.
    """
    max_attempts = max(1, attempts or config.TRANSACTION_RETRY_ATTEMPTS)
    attempt = 1

    while True:
        try:
            result = operation(db)
            db.commit()
            return result
        except OperationalError as exc:
            db.rollback()
            if attempt >= max_attempts or not is_retryable_error(exc):
                raise
            logger.warning('Retrying transaction after serialization failure (attempt %s of %s)', attempt, max_attempts)
            attempt += 1
        except Exception:
            db.rollback()
            raise
