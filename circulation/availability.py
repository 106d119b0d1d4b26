"""Read-only availability of a title's units."""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from circulation import models
from circulation.collaborators import Catalog
from circulation.exceptions import NotFoundError
from circulation.models import LoanStatus, ReservationStatus, UnitStatus


@dataclass
class Availability:
    title_id: int
    total_units: int = 0
    available_units: int = 0
    held_units: int = 0
    lost_units: int = 0
    on_hold_units: int = 0
    other_unavailable_units: int = 0
    available_unit_ids: List[int] = field(default_factory=list)
    next_return_date: Optional[date] = None
    queue_length: int = 0


class AvailabilityView:
    """
    Answer "how many units of this title are free, and when is the next one due".

    Computed on demand from unit and loan state; nothing is cached.
    """

    def __init__(self, db: Session, catalog: Catalog):
        self.db = db
        self.catalog = catalog

    def availability(self, title_id: int) -> Availability:
        if self.catalog.get_title(title_id) is None:
            raise NotFoundError(f"Title with id {title_id} not found")

        units = self.catalog.list_units(title_id)
        unit_ids = [u.id for u in units]
        result = Availability(title_id=title_id, total_units=len(units))

        lost = self._lost_unit_ids(unit_ids)
        pickup_holds = self._pickup_hold_unit_ids(title_id)
        for unit in units:
            if unit.status == UnitStatus.AVAILABLE:
                result.available_units += 1
                result.available_unit_ids.append(unit.id)
            elif unit.status == UnitStatus.HELD:
                result.held_units += 1
            elif unit.id in pickup_holds:
                result.on_hold_units += 1
            elif unit.id in lost:
                result.lost_units += 1
            else:
                result.other_unavailable_units += 1

        if unit_ids:
            result.next_return_date = self.db.scalar(
                select(func.min(models.Loan.due_date)).where(
                    models.Loan.unit_id.in_(unit_ids),
                    models.Loan.status.in_(models.OPEN_LOAN_STATUSES),
                    models.Loan.return_date.is_(None),
                )
            )

        result.queue_length = self.db.scalar(
            select(func.count(models.Reservation.id)).where(
                models.Reservation.title_id == title_id,
                models.Reservation.status == ReservationStatus.ACTIVE,
            )
        )
        return result

    def inventory(self) -> List[Availability]:
        title_ids = self.db.scalars(select(models.Title.id).order_by(models.Title.id))
        return [self.availability(title_id) for title_id in title_ids.all()]

    def _lost_unit_ids(self, unit_ids: List[int]) -> set:
        if not unit_ids:
            return set()
        return set(
            self.db.scalars(
                select(models.Loan.unit_id).where(
                    models.Loan.unit_id.in_(unit_ids),
                    models.Loan.status == LoanStatus.LOST,
                )
            )
        )

    def _pickup_hold_unit_ids(self, title_id: int) -> set:
        return set(
            self.db.scalars(
                select(models.Reservation.held_unit_id).where(
                    models.Reservation.title_id == title_id,
                    models.Reservation.status == ReservationStatus.FULFILLED,
                    models.Reservation.held_unit_id.is_not(None),
                )
            )
        )
