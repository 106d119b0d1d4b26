"""Eligibility evaluation for borrowing, renewal and reservation."""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, List

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from circulation import models
from circulation.collaborators import PatronDirectory
from circulation.config import Settings
from circulation.exceptions import NotEligibleError
from circulation.penalties import unsettled_total

logger = logging.getLogger(__name__)

ACCOUNT_INACTIVE = "account_inactive"
LOAN_LIMIT_REACHED = "loan_limit_reached"
OVERDUE_LOANS = "overdue_loans"
OUTSTANDING_BALANCE = "outstanding_balance"
PATRON_NOT_FOUND = "patron_not_found"


@dataclass(frozen=True)
class Restriction:
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


@dataclass
class EligibilityResult:
    patron_id: int
    can_borrow: bool
    active_loan_count: int = 0
    max_loans: int = 0
    outstanding_penalty_total: Decimal = Decimal("0.00")
    overdue_count: int = 0
    restrictions: List[Restriction] = field(default_factory=list)

    def blocking(self, ignore=()) -> List[Restriction]:
        return [r for r in self.restrictions if r.code not in ignore]


class EligibilityEvaluator:
    """
    Decide whether a patron may currently borrow, renew or reserve.

    All four rules are evaluated every time so the caller gets the complete
    list of reasons; the evaluator never raises for a business reason.
    Overdue loans are counted from due dates, not from the stored loan
    status, so a sweep that has not run yet does not open a loophole.
    """

    def __init__(
        self,
        db: Session,
        patrons: PatronDirectory,
        settings: Settings,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.patrons = patrons
        self.settings = settings
        self.today = today

    def evaluate(self, patron_id: int) -> EligibilityResult:
        standing = self.patrons.get_patron_status(patron_id)
        if standing is None:
            return EligibilityResult(
                patron_id=patron_id,
                can_borrow=False,
                restrictions=[
                    Restriction(PATRON_NOT_FOUND, f"Patron with id {patron_id} not found")
                ],
            )

        today = self.today()
        max_loans = (
            standing.max_loans
            if standing.max_loans is not None
            else self.settings.default_max_loans
        )
        open_loans = self._open_loan_filter(patron_id)
        active_count = self.db.scalar(select(func.count(models.Loan.id)).where(*open_loans))
        overdue_count = self.db.scalar(
            select(func.count(models.Loan.id)).where(
                *open_loans, models.Loan.due_date < today
            )
        )
        outstanding = unsettled_total(self.db, patron_id)

        restrictions = []
        if standing.status != models.PatronStatus.ACTIVE:
            restrictions.append(
                Restriction(
                    ACCOUNT_INACTIVE,
                    f"Patron account is {models.PatronStatus(standing.status).value}",
                )
            )
        if active_count >= max_loans:
            restrictions.append(
                Restriction(
                    LOAN_LIMIT_REACHED,
                    f"Patron has {active_count} of {max_loans} allowed loans",
                )
            )
        if overdue_count:
            restrictions.append(
                Restriction(OVERDUE_LOANS, f"Patron has {overdue_count} overdue loan(s)")
            )
        if outstanding > self.settings.penalty_ceiling:
            restrictions.append(
                Restriction(
                    OUTSTANDING_BALANCE,
                    f"Outstanding penalty balance {outstanding} exceeds "
                    f"the allowed {self.settings.penalty_ceiling}",
                )
            )

        return EligibilityResult(
            patron_id=patron_id,
            can_borrow=not restrictions,
            active_loan_count=active_count,
            max_loans=max_loans,
            outstanding_penalty_total=outstanding,
            overdue_count=overdue_count,
            restrictions=restrictions,
        )

    def evaluate_for_renewal(self, patron_id: int) -> EligibilityResult:
        """Like ``evaluate``, without the loan-limit rule: a renewal adds no loan."""
        result = self.evaluate(patron_id)
        result.restrictions = result.blocking(ignore=(LOAN_LIMIT_REACHED,))
        result.can_borrow = not result.restrictions
        return result

    def require(self, patron_id: int, for_renewal: bool = False) -> EligibilityResult:
        """Evaluate and raise ``NotEligibleError`` if any rule fails."""
        if for_renewal:
            result = self.evaluate_for_renewal(patron_id)
        else:
            result = self.evaluate(patron_id)
        blocking = result.restrictions
        if blocking:
            logger.info(
                "Patron %s not eligible: %s",
                patron_id,
                ", ".join(r.code for r in blocking),
            )
            raise NotEligibleError(
                "Patron is not eligible",
                reasons=[r.to_dict() for r in blocking],
            )
        return result

    @staticmethod
    def _open_loan_filter(patron_id: int):
        return (
            models.Loan.patron_id == patron_id,
            models.Loan.status.in_(models.OPEN_LOAN_STATUSES),
            models.Loan.return_date.is_(None),
        )
