"""Pytest configuration and fixtures."""

import os

# the application module creates its tables at import; keep that off disk
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from circulation import models
from circulation.config import Settings
from circulation.database import Base
from circulation.desk import LendingDesk


DAY_ZERO = date(2026, 1, 5)


class Clock:
    """A settable stand-in for date.today."""

    def __init__(self, day: date):
        self.day = day

    def __call__(self) -> date:
        return self.day

    def advance(self, days: int) -> date:
        self.day = self.day + timedelta(days=days)
        return self.day


def day(n: int) -> date:
    """The date n days after DAY_ZERO."""
    return DAY_ZERO + timedelta(days=n)


@pytest.fixture
def engine():
    """
    In-memory SQLite engine shared by every connection of one test.

    Tables are created before the test and dropped after it, so each test
    starts from an empty database.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> Clock:
    return Clock(DAY_ZERO)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def desk(db, settings, clock) -> LendingDesk:
    return LendingDesk(db, settings=settings, today=clock)


@pytest.fixture
def make_patron(db):
    """Factory adding a patron row; returns its id."""

    def _make(name="Patron", status=models.PatronStatus.ACTIVE, max_loans=None) -> int:
        patron = models.Patron(name=name, status=status, max_loans=max_loans)
        db.add(patron)
        db.commit()
        return patron.id

    return _make


@pytest.fixture
def make_title(db):
    """Factory adding a title with the given number of available units; returns its id."""

    def _make(units=1, name="Dune") -> int:
        title = models.Title(name=name, author="Frank Herbert")
        db.add(title)
        db.flush()
        for number in range(1, units + 1):
            db.add(
                models.Unit(
                    title_id=title.id,
                    copy_number=number,
                    status=models.UnitStatus.AVAILABLE,
                )
            )
        db.commit()
        return title.id

    return _make


@pytest.fixture
def unit_status(db):
    """Read a unit's status straight from the database."""

    def _status(unit_id: int) -> models.UnitStatus:
        db.expire_all()
        return db.get(models.Unit, unit_id).status

    return _status
