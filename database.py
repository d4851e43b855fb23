# src/database.py
import logging
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from billing.exceptions import PersistenceFailure
from config import settings

logger = logging.getLogger(__name__)

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time, naive, the way it is stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """Yield a database session for one request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_raise(db: Session, action: str) -> None:
    """Commit the session, turning driver errors into PersistenceFailure."""
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error while trying to {action}: {e}", exc_info=True)
        raise PersistenceFailure() from e
