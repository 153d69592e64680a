# backend/callscribe/database.py
import logging
from contextlib import contextmanager
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError

from callscribe.config import settings  # config must not import callscribe.database

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Sessions cross from the request thread into dispatched pipeline jobs
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Session for code running outside a request: dispatched pipeline jobs
    and the reconcile sweep.

        with get_db_context() as db:
            orchestrator = build_orchestrator(db)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def safe_commit(db: Session, operation: str = "database operation") -> Tuple[bool, Optional[str]]:
    """
    Commit, rolling back on any SQLAlchemy error.

    Returns (ok, error_message). Callers decide how to surface the error:
    the settings service turns it into a 400, for example.
    """
    try:
        db.commit()
        return True, None
    except (IntegrityError, OperationalError) as e:
        db.rollback()
        kind = "Integrity" if isinstance(e, IntegrityError) else "Operational"
        error_msg = f"{kind} error during {operation}: {str(e.orig)[:200]}"
        logger.error(error_msg)
        return False, error_msg
    except SQLAlchemyError as e:
        db.rollback()
        error_msg = f"Database error during {operation}: {str(e)[:200]}"
        logger.error(error_msg)
        return False, error_msg


def init_db() -> None:
    """Create tables for every registered model."""
    import callscribe.models  # noqa: F401  (registers mappers)

    Base.metadata.create_all(bind=engine)
