"""Wiring of the lending desk components for one database session."""

from datetime import date
from typing import Callable, Optional

from sqlalchemy.orm import Session

from circulation.availability import AvailabilityView
from circulation.collaborators import (
    Catalog,
    PatronDirectory,
    SqlCatalog,
    SqlPatronDirectory,
)
from circulation.config import Settings, get_settings
from circulation.eligibility import EligibilityEvaluator
from circulation.loans import LoanEngine
from circulation.penalties import PenaltyEngine
from circulation.reports import CirculationReports
from circulation.reservations import ReservationQueue
from circulation.sweeper import MaintenanceSweeper


class LendingDesk:
    """
    All lending components bound to one session, one settings object and
    one clock. The collaborators default to the SQL implementations and
    can be replaced with test doubles.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        today: Callable[[], date] = date.today,
        catalog: Optional[Catalog] = None,
        patrons: Optional[PatronDirectory] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.today = today
        self.catalog = catalog or SqlCatalog(db)
        self.patrons = patrons or SqlPatronDirectory(db)

        self.eligibility = EligibilityEvaluator(db, self.patrons, self.settings, today)
        self.availability = AvailabilityView(db, self.catalog)
        self.penalties = PenaltyEngine(db, self.settings, today)
        self.reservations = ReservationQueue(
            db, self.catalog, self.eligibility, self.settings, today
        )
        self.loans = LoanEngine(
            db,
            self.catalog,
            self.eligibility,
            self.penalties,
            self.reservations,
            self.settings,
            today,
        )
        self.sweeper = MaintenanceSweeper(db, self.penalties, self.reservations, today)
        self.reports = CirculationReports(db, today)
