from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from circulation.models import (
    LoanStatus,
    PenaltyKind,
    PenaltyStatus,
    ReservationStatus,
)
from circulation.reports import ReportPeriod


class Restriction(BaseModel):
    """One failed eligibility rule: a stable code plus a readable message."""

    code: str
    message: str

    model_config = ConfigDict(from_attributes=True)


class Eligibility(BaseModel):
    """
    Schema for eligibility responses.

    can_borrow is false whenever restrictions is non-empty; every rule is
    reported, not only the first that failed.
    """

    patron_id: int
    can_borrow: bool
    active_loan_count: int
    max_loans: int
    outstanding_penalty_total: Decimal
    overdue_count: int
    restrictions: List[Restriction] = []

    model_config = ConfigDict(from_attributes=True)


class Availability(BaseModel):
    title_id: int
    total_units: int
    available_units: int
    held_units: int
    lost_units: int
    on_hold_units: int
    other_unavailable_units: int = 0
    available_unit_ids: List[int] = []
    next_return_date: Optional[date] = None
    queue_length: int

    model_config = ConfigDict(from_attributes=True)


class CheckoutRequest(BaseModel):
    """
    Schema for checking out a unit of a title.

    loan_period_days falls back to the configured default; the upper bound
    is enforced by the loan engine from settings.
    """

    patron_id: int = Field(..., gt=0)
    title_id: int = Field(..., gt=0)
    loan_period_days: Optional[int] = Field(None, ge=1)
    note: Optional[str] = Field(None, max_length=2000)


class ReturnRequest(BaseModel):
    """Schema for returning a loan; return_date defaults to today."""

    return_date: Optional[date] = None


class RenewRequest(BaseModel):
    renewal_period_days: Optional[int] = Field(None, ge=1)
    note: Optional[str] = Field(None, max_length=2000)


class LostRequest(BaseModel):
    lost_date: Optional[date] = None
    note: Optional[str] = Field(None, max_length=2000)


class Loan(BaseModel):
    """
    Schema for loan responses.

    status is the stored status; see LoanDetail.is_overdue for the value
    derived from today's date.
    """

    id: int
    patron_id: int
    unit_id: int
    checkout_date: date
    due_date: date
    return_date: Optional[date] = None
    renewal_count: int
    status: LoanStatus
    note: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class LoanDetail(Loan):
    """Loan with values derived as of today."""

    title_id: int
    is_overdue: bool
    overdue_days: int
    days_borrowed: int
    can_renew: bool


class PenaltyCreate(BaseModel):
    """Schema for an explicit staff assessment (damage, loss, lateness)."""

    loan_id: int = Field(..., gt=0)
    kind: PenaltyKind
    amount: Decimal = Field(..., gt=0, max_digits=8, decimal_places=2)
    description: Optional[str] = Field(None, max_length=2000)


class PenaltySettle(BaseModel):
    status: PenaltyStatus
    settlement_date: Optional[date] = None


class Penalty(BaseModel):
    id: int
    loan_id: int
    patron_id: int
    kind: PenaltyKind
    amount: Decimal
    assessment_date: date
    settlement_date: Optional[date] = None
    status: PenaltyStatus
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ReturnResult(BaseModel):
    loan: Loan
    penalty: Optional[Penalty] = None

    model_config = ConfigDict(from_attributes=True)


class ReservationCreate(BaseModel):
    patron_id: int = Field(..., gt=0)
    title_id: int = Field(..., gt=0)
    note: Optional[str] = Field(None, max_length=2000)


class Reservation(BaseModel):
    """
    Schema for reservation responses.

    held_unit_id and hold_expiry_date are set while a fulfilled
    reservation's unit waits on the pickup shelf.
    """

    id: int
    patron_id: int
    title_id: int
    reservation_date: date
    expiry_date: date
    status: ReservationStatus
    priority_rank: int
    fulfillment_date: Optional[date] = None
    held_unit_id: Optional[int] = None
    hold_expiry_date: Optional[date] = None
    note: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class QueuePosition(BaseModel):
    reservation_id: int
    title_id: int
    position: int


class CountResult(BaseModel):
    count: int


class OverdueReport(BaseModel):
    advanced: int
    penalty_ids: List[int] = []

    model_config = ConfigDict(from_attributes=True)


class SweepReport(BaseModel):
    overdue_advanced: int
    penalty_ids: List[int] = []
    expired_reservation_ids: List[int] = []
    released_unit_ids: List[int] = []
    fulfilled_reservation_ids: List[int] = []

    model_config = ConfigDict(from_attributes=True)


class PopularTitle(BaseModel):
    title_id: int
    name: str
    author: Optional[str] = None
    total_loans: int
    current_loans: int
    total_units: int
    popularity_score: float

    model_config = ConfigDict(from_attributes=True)


class CirculationStatistics(BaseModel):
    total_titles: int
    total_loans: int
    unique_borrowers: int
    average_loans_per_title: float
    max_loans_single_title: int

    model_config = ConfigDict(from_attributes=True)


class CirculationReport(BaseModel):
    period: ReportPeriod
    since: Optional[date] = None
    generated_on: date
    total: int
    titles: List[PopularTitle] = []
    statistics: CirculationStatistics

    model_config = ConfigDict(from_attributes=True)
