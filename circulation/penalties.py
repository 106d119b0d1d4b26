"""Penalty assessment and settlement."""

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from circulation import models
from circulation.config import Settings
from circulation.database import atomic
from circulation.exceptions import (
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
)
from circulation.models import PenaltyKind, PenaltyStatus

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# settled and waived are terminal; disputed may be reopened
ALLOWED_TRANSITIONS = {
    PenaltyStatus.UNSETTLED: {
        PenaltyStatus.SETTLED,
        PenaltyStatus.WAIVED,
        PenaltyStatus.DISPUTED,
    },
    PenaltyStatus.DISPUTED: {
        PenaltyStatus.SETTLED,
        PenaltyStatus.WAIVED,
        PenaltyStatus.UNSETTLED,
    },
    PenaltyStatus.SETTLED: set(),
    PenaltyStatus.WAIVED: set(),
}


def to_cents(amount) -> Decimal:
    """Round a money amount half-up to two decimal places."""
    try:
        return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"Invalid amount {amount!r}", code="invalid_amount")


def unsettled_total(db: Session, patron_id: int) -> Decimal:
    """Sum of the patron's unsettled penalty amounts."""
    amounts = db.scalars(
        select(models.Penalty.amount).where(
            models.Penalty.patron_id == patron_id,
            models.Penalty.status == PenaltyStatus.UNSETTLED,
        )
    )
    return sum((to_cents(a) for a in amounts), Decimal("0.00"))


class PenaltyEngine:
    """
    Compute, record and settle penalties tied to loans.

    Public operations run in their own transaction. The underscored
    variants join the caller's transaction and are what the loan engine and
    the sweeper use.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.settings = settings
        self.today = today

    def overdue_amount(self, overdue_days: int) -> Decimal:
        """overdue_days x per-day rate, rounded to cents."""
        return to_cents(max(0, overdue_days) * self.settings.per_day_rate)

    def get_penalty(self, penalty_id: int) -> models.Penalty:
        penalty = self.db.get(models.Penalty, penalty_id)
        if penalty is None:
            raise NotFoundError(f"Penalty with id {penalty_id} not found")
        return penalty

    def patron_penalties(
        self, patron_id: int, status: Optional[PenaltyStatus] = None
    ) -> List[models.Penalty]:
        stmt = select(models.Penalty).where(models.Penalty.patron_id == patron_id)
        if status is not None:
            stmt = stmt.where(models.Penalty.status == PenaltyStatus(status))
        return list(self.db.scalars(stmt.order_by(models.Penalty.id)))

    def outstanding_total(self, patron_id: int) -> Decimal:
        return unsettled_total(self.db, patron_id)

    def assess(
        self,
        loan_id: int,
        kind: PenaltyKind,
        amount,
        description: Optional[str] = None,
    ) -> models.Penalty:
        with atomic(self.db):
            penalty = self._assess(loan_id, kind, amount, description)
        self.db.refresh(penalty)
        return penalty

    def settle(
        self,
        penalty_id: int,
        new_status: PenaltyStatus,
        settlement_date: Optional[date] = None,
    ) -> models.Penalty:
        """
        Move a penalty to a new settlement status.

        Raises:
            NotFoundError: unknown penalty
            InvalidTransitionError: settled/waived are terminal, and only a
                disputed penalty may go back to unsettled
            InvalidInputError: settlement date given for a status other than
                settled, or before the assessment date
        """
        try:
            new_status = PenaltyStatus(new_status)
        except ValueError:
            raise InvalidInputError(f"Unknown penalty status {new_status!r}")

        with atomic(self.db):
            penalty = self.get_penalty(penalty_id)
            current = PenaltyStatus(penalty.status)
            if new_status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Cannot move penalty from {current.value} to {new_status.value}",
                    current_status=current.value,
                    requested_status=new_status.value,
                )
            if new_status == PenaltyStatus.UNSETTLED and self._unsettled(
                penalty.loan_id, penalty.kind
            ) is not None:
                raise InvalidTransitionError(
                    "Loan already has an unsettled penalty of this kind",
                    current_status=current.value,
                    requested_status=new_status.value,
                )

            if new_status == PenaltyStatus.SETTLED:
                settled_on = settlement_date or self.today()
                if settled_on < penalty.assessment_date:
                    raise InvalidInputError(
                        "Settlement date cannot precede the assessment date",
                        code="invalid_date",
                    )
                penalty.settlement_date = settled_on
            else:
                if settlement_date is not None:
                    raise InvalidInputError(
                        "A settlement date only applies to settled penalties",
                        code="invalid_date",
                    )
                penalty.settlement_date = None

            penalty.status = new_status
            logger.info(
                "Penalty %s moved from %s to %s", penalty.id, current.value, new_status.value
            )
        self.db.refresh(penalty)
        return penalty

    def _assess(
        self,
        loan_id: int,
        kind: PenaltyKind,
        amount,
        description: Optional[str] = None,
    ) -> models.Penalty:
        try:
            kind = PenaltyKind(kind)
        except ValueError:
            raise InvalidInputError(f"Unknown penalty kind {kind!r}")

        amount = to_cents(amount)
        if amount <= 0:
            raise InvalidInputError(
                "Penalty amount must be greater than zero", code="invalid_amount"
            )

        loan = self.db.get(models.Loan, loan_id)
        if loan is None:
            raise NotFoundError(f"Loan with id {loan_id} not found")

        existing = self._unsettled(loan.id, kind)
        if existing is not None:
            logger.info(
                "Loan %s already has unsettled %s penalty %s", loan.id, kind.value, existing.id
            )
            return existing

        penalty = models.Penalty(
            loan_id=loan.id,
            patron_id=loan.patron_id,
            kind=kind,
            amount=amount,
            assessment_date=self.today(),
            status=PenaltyStatus.UNSETTLED,
            description=description,
        )
        self.db.add(penalty)
        self.db.flush()
        logger.info(
            "Assessed %s penalty %s of %s on loan %s", kind.value, penalty.id, amount, loan.id
        )
        return penalty

    def _assess_late_return(
        self, loan: models.Loan, as_of: date
    ) -> Optional[models.Penalty]:
        """
        Bring the loan's late-return charge up to date as of a day.

        The total due is overdue days x rate. Late-return amounts already
        settled or disputed count against it; the rest is carried by the
        loan's single unsettled late-return penalty, which is created or
        raised to that amount. Returns the penalty when it was created or
        raised, None when nothing changed.
        """
        overdue_days = loan.overdue_days(as_of)
        owed = self.overdue_amount(overdue_days) - self._late_fees_closed(loan.id)
        description = (
            f"Returned {overdue_days} day(s) late"
            if loan.return_date is not None
            else f"{overdue_days} day(s) overdue as of {as_of.isoformat()}"
        )

        current = self._unsettled(loan.id, PenaltyKind.LATE_RETURN)
        if current is None:
            if owed <= 0:
                return None
            return self._assess(loan.id, PenaltyKind.LATE_RETURN, owed, description=description)

        if owed <= to_cents(current.amount):
            return None
        logger.info(
            "Late-return penalty %s on loan %s raised from %s to %s",
            current.id,
            loan.id,
            to_cents(current.amount),
            owed,
        )
        current.amount = owed
        current.description = description
        self.db.flush()
        return current

    def _unsettled(self, loan_id: int, kind: PenaltyKind) -> Optional[models.Penalty]:
        return self.db.scalars(
            select(models.Penalty).where(
                models.Penalty.loan_id == loan_id,
                models.Penalty.kind == kind,
                models.Penalty.status == PenaltyStatus.UNSETTLED,
            )
        ).first()

    def _late_fees_closed(self, loan_id: int) -> Decimal:
        """Late-return amounts on the loan that are settled or under dispute."""
        amounts = self.db.scalars(
            select(models.Penalty.amount).where(
                models.Penalty.loan_id == loan_id,
                models.Penalty.kind == PenaltyKind.LATE_RETURN,
                models.Penalty.status.in_(
                    (PenaltyStatus.SETTLED, PenaltyStatus.DISPUTED)
                ),
            )
        )
        return sum((to_cents(a) for a in amounts), Decimal("0.00"))
