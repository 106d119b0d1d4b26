from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from circulation.config import get_settings


DATABASE_URL = get_settings().database_url


def make_engine(url: str):
    """Create an engine; SQLite connections are shared across request threads."""
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if "sqlite" in url else {},
    )


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    The session is closed after the request whatever the outcome; each
    lending operation commits or rolls back on its own through ``atomic``.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """
    Run a block as one transaction on ``db``.

    Commits when the block completes and rolls back on any exception, so a
    failed checkout or return never leaves a unit flag without its loan.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
