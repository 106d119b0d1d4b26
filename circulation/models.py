import enum
from datetime import date

from circulation.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)


class UnitStatus(str, enum.Enum):
    AVAILABLE = "available"
    HELD = "held"
    UNAVAILABLE = "unavailable"


class PatronStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"


class LoanStatus(str, enum.Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    RETURNED = "returned"
    LOST = "lost"


OPEN_LOAN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.OVERDUE)


class PenaltyKind(str, enum.Enum):
    LATE_RETURN = "late_return"
    LOSS = "loss"
    DAMAGE = "damage"


class PenaltyStatus(str, enum.Enum):
    UNSETTLED = "unsettled"
    SETTLED = "settled"
    WAIVED = "waived"
    DISPUTED = "disputed"


class ReservationStatus(str, enum.Enum):
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


def _enum_column(enum_cls, **kwargs):
    """String-backed enum column storing the member values."""
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            values_callable=lambda members: [m.value for m in members],
            length=20,
        ),
        nullable=False,
        **kwargs,
    )


class Title(Base):
    """
    Title model: a catalogued work with zero or more physical units.

    Owned by the catalog; the lending desk only reads it for existence
    checks and for the reservation queue it anchors.
    """

    __tablename__ = "titles"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    author = Column(String, nullable=True)

    units = relationship("Unit", back_populates="title")
    reservations = relationship("Reservation", back_populates="title")


class Unit(Base):
    """
    Unit model: one physical, lendable copy of a title.

    Status meaning:
    - available: on the shelf, claimable by checkout
    - held: claimed by exactly one open loan
    - unavailable: lost, or soft-held for a fulfilled reservation's pickup

    Status flips are done with a compare-and-set UPDATE (see
    ``SqlCatalog.claim_unit``), never by loading and assigning.
    """

    __tablename__ = "units"

    id = Column(Integer, primary_key=True, index=True)
    title_id = Column(Integer, ForeignKey("titles.id"), nullable=False, index=True)
    copy_number = Column(Integer, nullable=False, default=1)
    status = _enum_column(UnitStatus, default=UnitStatus.AVAILABLE, index=True)

    title = relationship("Title", back_populates="units")
    loans = relationship("Loan", back_populates="unit")


class Patron(Base):
    """
    Patron model, owned by the patron collaborator.

    max_loans is nullable; the configured default applies when unset.
    """

    __tablename__ = "patrons"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    status = _enum_column(PatronStatus, default=PatronStatus.ACTIVE)
    max_loans = Column(Integer, nullable=True)

    loans = relationship("Loan", back_populates="patron")


class Loan(Base):
    """
    Loan model: one borrowing transaction for one physical unit.

    Relationships:
    - Many loans belong to one unit over time, at most one open at a time
    - Many loans belong to one patron
    - One loan can accumulate many penalties

    Business Logic:
    - status is the stored state written by the engine and the sweeper
    - is_currently_overdue() is derived from the due date and is what
      eligibility and renewal rules consult, so a loan whose status the
      sweeper has not advanced yet is still treated as overdue
    - loans are never deleted; closed loans are history
    """

    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    patron_id = Column(Integer, ForeignKey("patrons.id"), nullable=False, index=True)
    unit_id = Column(Integer, ForeignKey("units.id"), nullable=False, index=True)
    checkout_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    return_date = Column(Date, nullable=True)
    renewal_count = Column(Integer, nullable=False, default=0)
    status = _enum_column(LoanStatus, default=LoanStatus.ACTIVE, index=True)
    note = Column(String, nullable=True)

    patron = relationship("Patron", back_populates="loans")
    unit = relationship("Unit", back_populates="loans")
    penalties = relationship("Penalty", back_populates="loan")

    __table_args__ = (
        CheckConstraint("due_date >= checkout_date", name="ck_loans_due_after_checkout"),
        CheckConstraint(
            "return_date IS NULL OR return_date >= checkout_date",
            name="ck_loans_return_after_checkout",
        ),
        CheckConstraint("renewal_count >= 0", name="ck_loans_renewal_count"),
    )

    @property
    def stored_status(self) -> LoanStatus:
        return self.status

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATUSES and self.return_date is None

    def is_currently_overdue(self, today: date) -> bool:
        """True when the loan is open and its due date has passed."""
        return self.is_open and self.due_date < today

    def overdue_days(self, as_of: date) -> int:
        """Whole days past the due date as of the given day (0 if not late)."""
        return max(0, (as_of - self.due_date).days)


class Penalty(Base):
    """
    Penalty model: a monetary assessment tied to exactly one loan.

    Business Logic:
    - amount is always positive, two decimal places
    - settlement_date is set exactly when status is settled
    - at most one unsettled penalty per (loan, kind); the partial unique
      index backs up the engine's own check
    """

    __tablename__ = "penalties"

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=False, index=True)
    patron_id = Column(Integer, ForeignKey("patrons.id"), nullable=False, index=True)
    kind = _enum_column(PenaltyKind)
    amount = Column(Numeric(8, 2), nullable=False)
    assessment_date = Column(Date, nullable=False)
    settlement_date = Column(Date, nullable=True)
    status = _enum_column(PenaltyStatus, default=PenaltyStatus.UNSETTLED, index=True)
    description = Column(String, nullable=True)

    loan = relationship("Loan", back_populates="penalties")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_penalties_amount_positive"),
        CheckConstraint(
            "settlement_date IS NULL OR settlement_date >= assessment_date",
            name="ck_penalties_settlement_after_assessment",
        ),
        Index(
            "uq_penalties_unsettled_kind",
            "loan_id",
            "kind",
            unique=True,
            sqlite_where=text("status = 'unsettled'"),
            postgresql_where=text("status = 'unsettled'"),
        ),
    )


class Reservation(Base):
    """
    Reservation model: a patron's queued claim on the next free unit of a title.

    Relationships:
    - Many reservations belong to one title and to one patron
    - A fulfilled reservation may soft-hold one unit for pickup

    Business Logic:
    - priority_rank is assigned max(active ranks) + 1, so active ranks are
      distinct and increase with arrival; gaps left by cancellations are kept
    - held_unit_id/hold_expiry_date describe the pickup hold after
      fulfillment; both are cleared when the holder checks the unit out or
      the sweeper releases a lapsed hold
    """

    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    patron_id = Column(Integer, ForeignKey("patrons.id"), nullable=False, index=True)
    title_id = Column(Integer, ForeignKey("titles.id"), nullable=False, index=True)
    reservation_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=False)
    status = _enum_column(ReservationStatus, default=ReservationStatus.ACTIVE, index=True)
    priority_rank = Column(Integer, nullable=False)
    fulfillment_date = Column(Date, nullable=True)
    held_unit_id = Column(Integer, ForeignKey("units.id"), nullable=True)
    hold_expiry_date = Column(Date, nullable=True)
    note = Column(String, nullable=True)

    title = relationship("Title", back_populates="reservations")

    __table_args__ = (
        CheckConstraint("expiry_date > reservation_date", name="ck_reservations_expiry"),
        CheckConstraint("priority_rank >= 1", name="ck_reservations_rank"),
        Index(
            "uq_reservations_active_rank",
            "title_id",
            "priority_rank",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    @property
    def has_pickup_hold(self) -> bool:
        return self.status == ReservationStatus.FULFILLED and self.held_unit_id is not None
