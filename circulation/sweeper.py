"""Periodic maintenance: overdue reclassification, penalties and expiry."""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from circulation import models
from circulation.database import atomic
from circulation.models import LoanStatus, ReservationStatus
from circulation.penalties import PenaltyEngine
from circulation.reservations import ReservationQueue

logger = logging.getLogger(__name__)


@dataclass
class OverdueReport:
    advanced: int = 0
    penalty_ids: List[int] = field(default_factory=list)


@dataclass
class SweepReport:
    """Facts emitted by one sweep, for whatever delivers notifications."""

    overdue_advanced: int = 0
    penalty_ids: List[int] = field(default_factory=list)
    expired_reservation_ids: List[int] = field(default_factory=list)
    released_unit_ids: List[int] = field(default_factory=list)
    fulfilled_reservation_ids: List[int] = field(default_factory=list)


class MaintenanceSweeper:
    """
    Batch operations run on a schedule or by an operator.

    The scheduler lives outside; each operation is idempotent for a given
    day and runs in its own transaction, so it can overlap request traffic.
    """

    def __init__(
        self,
        db: Session,
        penalties: PenaltyEngine,
        reservations: ReservationQueue,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.penalties = penalties
        self.reservations = reservations
        self.today = today

    def advance_overdue_statuses(self) -> int:
        """Move open, past-due loans from active to overdue. Returns the count."""
        with atomic(self.db):
            result = self.db.execute(
                update(models.Loan)
                .where(
                    models.Loan.status == LoanStatus.ACTIVE,
                    models.Loan.return_date.is_(None),
                    models.Loan.due_date < self.today(),
                )
                .values(status=LoanStatus.OVERDUE)
                .execution_options(synchronize_session="fetch")
            )
            count = result.rowcount
        if count:
            logger.info("Advanced %d loan(s) to overdue", count)
        return count

    def process_overdue_items(self) -> OverdueReport:
        """
        Advance overdue statuses, then bring each overdue loan's late-return
        penalty up to the days overdue so far. ``penalty_ids`` lists the
        penalties created or raised by this run.
        """
        report = OverdueReport(advanced=self.advance_overdue_statuses())
        today = self.today()
        with atomic(self.db):
            overdue = self.db.scalars(
                select(models.Loan)
                .where(
                    models.Loan.status == LoanStatus.OVERDUE,
                    models.Loan.return_date.is_(None),
                )
                .order_by(models.Loan.id)
            ).all()
            for loan in overdue:
                penalty = self.penalties._assess_late_return(loan, today)
                if penalty is not None:
                    report.penalty_ids.append(penalty.id)
        if report.penalty_ids:
            logger.info("Assessed %d overdue penalty(ies)", len(report.penalty_ids))
        return report

    def expire_reservations(self) -> int:
        return len(self._expire_reservations())

    def release_expired_holds(self) -> int:
        released, _ = self._release_expired_holds()
        return len(released)

    def run(self) -> SweepReport:
        """Run every maintenance step in order and collect what happened."""
        overdue = self.process_overdue_items()
        expired = self._expire_reservations()
        released, fulfilled = self._release_expired_holds()
        report = SweepReport(
            overdue_advanced=overdue.advanced,
            penalty_ids=overdue.penalty_ids,
            expired_reservation_ids=expired,
            released_unit_ids=released,
            fulfilled_reservation_ids=fulfilled,
        )
        logger.info(
            "Sweep complete: overdue=%d penalties=%d expired=%d released=%d",
            report.overdue_advanced,
            len(report.penalty_ids),
            len(report.expired_reservation_ids),
            len(report.released_unit_ids),
        )
        return report

    def _expire_reservations(self) -> List[int]:
        with atomic(self.db):
            stale = self.db.scalars(
                select(models.Reservation).where(
                    models.Reservation.status == ReservationStatus.ACTIVE,
                    models.Reservation.expiry_date < self.today(),
                )
            ).all()
            for reservation in stale:
                reservation.status = ReservationStatus.EXPIRED
            expired = [r.id for r in stale]
        if expired:
            logger.info("Expired reservation(s) %s", expired)
        return expired

    def _release_expired_holds(self):
        """
        Return units whose pickup hold lapsed to the shelf and offer each
        one to the next patron in the title's queue.
        """
        released, fulfilled = [], []
        with atomic(self.db):
            lapsed = self.db.scalars(
                select(models.Reservation).where(
                    models.Reservation.status == ReservationStatus.FULFILLED,
                    models.Reservation.held_unit_id.is_not(None),
                    models.Reservation.hold_expiry_date < self.today(),
                )
            ).all()
            for reservation in lapsed:
                unit_id = self.reservations._release_hold(reservation)
                if unit_id is None:
                    continue
                released.append(unit_id)
                logger.info(
                    "Pickup hold of reservation %s lapsed, unit %s released",
                    reservation.id,
                    unit_id,
                )
                successor = self.reservations._attempt_fulfillment(
                    reservation.title_id, unit_id
                )
                if successor is not None:
                    fulfilled.append(successor.id)
        return released, fulfilled
