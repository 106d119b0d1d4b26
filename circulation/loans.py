"""Loan lifecycle: checkout, renewal, return and loss."""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from circulation import models
from circulation.collaborators import Catalog
from circulation.config import Settings
from circulation.database import atomic
from circulation.eligibility import EligibilityEvaluator
from circulation.exceptions import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
)
from circulation.models import LoanStatus, PenaltyKind, ReservationStatus, UnitStatus
from circulation.penalties import PenaltyEngine
from circulation.reservations import ReservationQueue

logger = logging.getLogger(__name__)


@dataclass
class ReturnResult:
    loan: models.Loan
    penalty: Optional[models.Penalty] = None


@dataclass
class LoanDetail:
    """A loan with the values derived from today's date."""

    loan: models.Loan
    title_id: int
    is_overdue: bool
    overdue_days: int
    days_borrowed: int
    can_renew: bool


class LoanEngine:
    """
    Own the state machine of a single borrowing transaction.

    States: active -> returned | lost, with bounded renewals as a self-loop
    on active. The sweeper alone moves active -> overdue; the engine never
    writes overdue itself, and its rules read ``Loan.is_currently_overdue``
    instead of the stored status.

    Checkout, return and loss each run as one transaction covering both the
    loan row and the unit status flip.
    """

    def __init__(
        self,
        db: Session,
        catalog: Catalog,
        eligibility: EligibilityEvaluator,
        penalties: PenaltyEngine,
        reservations: ReservationQueue,
        settings: Settings,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.catalog = catalog
        self.eligibility = eligibility
        self.penalties = penalties
        self.reservations = reservations
        self.settings = settings
        self.today = today

    def get_loan(self, loan_id: int) -> models.Loan:
        loan = self.db.get(models.Loan, loan_id)
        if loan is None:
            raise NotFoundError(f"Loan with id {loan_id} not found")
        return loan

    def patron_loans(self, patron_id: int, open_only: bool = False) -> List[models.Loan]:
        if self.eligibility.patrons.get_patron_status(patron_id) is None:
            raise NotFoundError(f"Patron with id {patron_id} not found")
        stmt = select(models.Loan).where(models.Loan.patron_id == patron_id)
        if open_only:
            stmt = stmt.where(
                models.Loan.status.in_(models.OPEN_LOAN_STATUSES),
                models.Loan.return_date.is_(None),
            )
        return list(self.db.scalars(stmt.order_by(models.Loan.checkout_date.desc(), models.Loan.id)))

    def loan_detail(self, loan: models.Loan) -> LoanDetail:
        today = self.today()
        title_id = self.catalog.get_unit(loan.unit_id).title_id
        end = loan.return_date or today
        can_renew = (
            loan.is_open
            and loan.renewal_count < self.settings.max_renewals
            and not loan.is_currently_overdue(today)
            and not self._has_active_reservations(title_id)
        )
        return LoanDetail(
            loan=loan,
            title_id=title_id,
            is_overdue=loan.is_currently_overdue(today),
            overdue_days=loan.overdue_days(end) if loan.status != LoanStatus.LOST else 0,
            days_borrowed=(end - loan.checkout_date).days,
            can_renew=can_renew,
        )

    def checkout(
        self,
        patron_id: int,
        title_id: int,
        loan_period_days: Optional[int] = None,
        note: Optional[str] = None,
    ) -> models.Loan:
        """
        Lend a unit of a title to a patron.

        A patron whose reservation was fulfilled takes the unit held for
        them; anyone else takes the first unit still on the shelf. A
        reservation the patron had queued for the title is marked fulfilled.

        Raises:
            NotFoundError: unknown patron or title
            InvalidInputError: loan period outside 1..max_loan_period_days
            NotEligibleError: one or more eligibility rules fail
            ConflictError: ``no_units_available``, with a suggestion to reserve
        """
        period = self._period(
            loan_period_days, self.settings.loan_period_days, "loan_period_days"
        )

        with atomic(self.db):
            if self.eligibility.patrons.get_patron_status(patron_id) is None:
                raise NotFoundError(f"Patron with id {patron_id} not found")
            if self.catalog.get_title(title_id) is None:
                raise NotFoundError(f"Title with id {title_id} not found")

            self.eligibility.require(patron_id)

            unit_id = self._claim_pickup_hold(patron_id, title_id)
            if unit_id is None:
                unit_id = self._claim_shelf_unit(title_id)
            if unit_id is None:
                raise ConflictError(
                    "No units of this title are available",
                    code="no_units_available",
                    suggestion="reserve",
                )
            self.reservations._fulfill_on_checkout(patron_id, title_id)

            today = self.today()
            loan = models.Loan(
                patron_id=patron_id,
                unit_id=unit_id,
                checkout_date=today,
                due_date=today + timedelta(days=period),
                renewal_count=0,
                status=LoanStatus.ACTIVE,
                note=note,
            )
            self.db.add(loan)
            self.db.flush()
            logger.info(
                "Loan %s: patron %s checked out unit %s of title %s, due %s",
                loan.id,
                patron_id,
                unit_id,
                title_id,
                loan.due_date.isoformat(),
            )
        self.db.refresh(loan)
        return loan

    def return_loan(self, loan_id: int, return_date: Optional[date] = None) -> ReturnResult:
        """
        Close a loan, charge any lateness and offer the unit to the queue.

        Raises:
            NotFoundError: unknown loan
            ConflictError: ``already_returned`` for a returned or lost loan,
                ``unit_state_mismatch`` when the unit is not flagged as on loan
            InvalidInputError: return date before checkout or in the future
        """
        with atomic(self.db):
            loan = self.get_loan(loan_id)
            self._ensure_open(loan, code="already_returned")
            returned_on = self._closing_date(loan, return_date)

            loan.status = LoanStatus.RETURNED
            loan.return_date = returned_on
            if not self.catalog.mark_available(loan.unit_id):
                self._unit_mismatch(loan)
            self.db.flush()

            penalty = None
            if returned_on > loan.due_date:
                penalty = self.penalties._assess_late_return(
                    loan, returned_on
                ) or self.penalties._unsettled(loan.id, PenaltyKind.LATE_RETURN)

            title_id = self.catalog.get_unit(loan.unit_id).title_id
            self.reservations._attempt_fulfillment(title_id, loan.unit_id)
            logger.info("Loan %s returned on %s", loan.id, returned_on.isoformat())

        self.db.refresh(loan)
        if penalty is not None:
            self.db.refresh(penalty)
        return ReturnResult(loan=loan, penalty=penalty)

    def renew(
        self,
        loan_id: int,
        renewal_period_days: Optional[int] = None,
        note: Optional[str] = None,
    ) -> models.Loan:
        """
        Extend the due date of an open loan.

        A title with anyone waiting in its queue cannot be renewed by its
        current holders.

        Raises:
            NotFoundError: unknown loan
            ConflictError: ``loan_closed``, ``max_renewals_reached`` or
                ``reservations_pending``
            NotEligibleError: the patron fails a rule other than the loan limit
        """
        period = self._period(
            renewal_period_days, self.settings.renewal_period_days, "renewal_period_days"
        )

        with atomic(self.db):
            loan = self.get_loan(loan_id)
            self._ensure_open(loan, code="loan_closed")
            if loan.renewal_count >= self.settings.max_renewals:
                raise ConflictError(
                    f"Loan has already been renewed {loan.renewal_count} time(s)",
                    code="max_renewals_reached",
                    max_renewals=self.settings.max_renewals,
                )

            self.eligibility.require(loan.patron_id, for_renewal=True)

            title_id = self.catalog.get_unit(loan.unit_id).title_id
            if self._has_active_reservations(title_id):
                raise ConflictError(
                    "Other patrons are waiting for this title",
                    code="reservations_pending",
                )

            loan.due_date = loan.due_date + timedelta(days=period)
            loan.renewal_count += 1
            if note:
                loan.note = f"{loan.note}\n{note}" if loan.note else note
            logger.info(
                "Loan %s renewed (%s/%s), now due %s",
                loan.id,
                loan.renewal_count,
                self.settings.max_renewals,
                loan.due_date.isoformat(),
            )
        self.db.refresh(loan)
        return loan

    def mark_lost(
        self,
        loan_id: int,
        lost_date: Optional[date] = None,
        note: Optional[str] = None,
    ) -> ReturnResult:
        """
        Record a unit as lost by its borrower (staff action).

        Allowed from active or overdue. The unit leaves circulation and a
        loss penalty of the configured fee is assessed.
        """
        with atomic(self.db):
            loan = self.get_loan(loan_id)
            self._ensure_open(loan, code="loan_closed")
            lost_on = self._closing_date(loan, lost_date)

            loan.status = LoanStatus.LOST
            loan.return_date = lost_on
            if note:
                loan.note = f"{loan.note}\n{note}" if loan.note else note
            if not self.catalog.mark_unavailable(loan.unit_id):
                self._unit_mismatch(loan)
            self.db.flush()

            penalty = None
            if self.settings.loss_fee > 0:
                penalty = self.penalties._assess(
                    loan.id,
                    PenaltyKind.LOSS,
                    self.settings.loss_fee,
                    description=f"Unit {loan.unit_id} declared lost",
                )
            logger.info("Loan %s marked lost on %s", loan.id, lost_on.isoformat())

        self.db.refresh(loan)
        if penalty is not None:
            self.db.refresh(penalty)
        return ReturnResult(loan=loan, penalty=penalty)

    def _claim_pickup_hold(self, patron_id: int, title_id: int) -> Optional[int]:
        reservation = self.reservations._pickup_hold(patron_id, title_id)
        if reservation is None:
            return None
        unit_id = reservation.held_unit_id
        claimed = self.catalog.claim_unit(unit_id, UnitStatus.UNAVAILABLE, UnitStatus.HELD)
        self.reservations._clear_hold(reservation)
        if not claimed:
            logger.warning(
                "Unit %s held for reservation %s could not be claimed", unit_id, reservation.id
            )
            return None
        return unit_id

    def _claim_shelf_unit(self, title_id: int) -> Optional[int]:
        for unit in self.catalog.list_available_units(title_id):
            if self.catalog.mark_held(unit.id):
                return unit.id
            logger.info("Unit %s was claimed concurrently, trying the next one", unit.id)
        return None

    def _has_active_reservations(self, title_id: int) -> bool:
        count = self.db.scalar(
            select(func.count(models.Reservation.id)).where(
                models.Reservation.title_id == title_id,
                models.Reservation.status == ReservationStatus.ACTIVE,
            )
        )
        return count > 0

    def _unit_mismatch(self, loan: models.Loan) -> None:
        unit = self.catalog.get_unit(loan.unit_id)
        found = UnitStatus(unit.status).value if unit is not None else None
        logger.warning(
            "Unit %s of loan %s is %s, not held; operation rolled back",
            loan.unit_id,
            loan.id,
            found,
        )
        raise ConflictError(
            f"Unit {loan.unit_id} is not marked as on loan",
            code="unit_state_mismatch",
            unit_id=loan.unit_id,
            unit_status=found,
        )

    def _ensure_open(self, loan: models.Loan, code: str) -> None:
        if not loan.is_open:
            raise ConflictError(
                f"Loan {loan.id} is already {LoanStatus(loan.status).value}",
                code=code,
                status=LoanStatus(loan.status).value,
            )

    def _closing_date(self, loan: models.Loan, when: Optional[date]) -> date:
        today = self.today()
        when = when or today
        if when < loan.checkout_date:
            raise InvalidInputError(
                "Date cannot precede the checkout date", code="invalid_date"
            )
        if when > today:
            raise InvalidInputError("Date cannot be in the future", code="invalid_date")
        return when

    def _period(self, requested: Optional[int], default: int, name: str) -> int:
        period = default if requested is None else requested
        if not 1 <= period <= self.settings.max_loan_period_days:
            raise InvalidInputError(
                f"{name} must be between 1 and {self.settings.max_loan_period_days}",
                code="invalid_period",
            )
        return period
