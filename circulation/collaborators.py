"""Catalog and patron collaborators.

The engines depend only on the ``Catalog`` and ``PatronDirectory``
protocols. The SQL implementations below read and flip the catalog and
patron tables through the same session as the lending operation, so unit
claims commit or roll back with the loan that caused them.
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from circulation import models
from circulation.models import UnitStatus


@dataclass(frozen=True)
class PatronStanding:
    """What the eligibility rules need to know about a patron."""

    patron_id: int
    status: models.PatronStatus
    max_loans: Optional[int] = None


class PatronDirectory(Protocol):
    def get_patron_status(self, patron_id: int) -> Optional[PatronStanding]:
        ...


class Catalog(Protocol):
    def get_title(self, title_id: int) -> Optional[models.Title]:
        ...

    def get_unit(self, unit_id: int) -> Optional[models.Unit]:
        ...

    def list_units(self, title_id: int) -> List[models.Unit]:
        ...

    def list_available_units(self, title_id: int) -> List[models.Unit]:
        ...

    def claim_unit(self, unit_id: int, expected: UnitStatus, new: UnitStatus) -> bool:
        ...

    def mark_held(self, unit_id: int) -> bool:
        ...

    def mark_available(self, unit_id: int) -> bool:
        ...

    def mark_unavailable(self, unit_id: int) -> bool:
        ...


class SqlPatronDirectory:
    """Patron collaborator backed by the ``patrons`` table."""

    def __init__(self, db: Session):
        self.db = db

    def get_patron_status(self, patron_id: int) -> Optional[PatronStanding]:
        patron = self.db.get(models.Patron, patron_id)
        if patron is None:
            return None
        return PatronStanding(
            patron_id=patron.id,
            status=patron.status,
            max_loans=patron.max_loans,
        )


class SqlCatalog:
    """Catalog collaborator backed by the ``titles`` and ``units`` tables."""

    def __init__(self, db: Session):
        self.db = db

    def get_title(self, title_id: int) -> Optional[models.Title]:
        return self.db.get(models.Title, title_id)

    def get_unit(self, unit_id: int) -> Optional[models.Unit]:
        return self.db.get(models.Unit, unit_id)

    def list_units(self, title_id: int) -> List[models.Unit]:
        stmt = (
            select(models.Unit)
            .where(models.Unit.title_id == title_id)
            .order_by(models.Unit.id)
        )
        return list(self.db.scalars(stmt))

    def list_available_units(self, title_id: int) -> List[models.Unit]:
        stmt = (
            select(models.Unit)
            .where(
                models.Unit.title_id == title_id,
                models.Unit.status == UnitStatus.AVAILABLE,
            )
            .order_by(models.Unit.id)
        )
        return list(self.db.scalars(stmt))

    def claim_unit(self, unit_id: int, expected: UnitStatus, new: UnitStatus) -> bool:
        """
        Compare-and-set the unit status.

        Issues ``UPDATE units SET status = :new WHERE id = :id AND status =
        :expected`` and reports whether exactly one row changed. Two
        transactions racing for the same unit cannot both see a row count
        of one, and a losing claim changes nothing, so callers may retry.
        """
        result = self.db.execute(
            update(models.Unit)
            .where(models.Unit.id == unit_id, models.Unit.status == expected)
            .values(status=new)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def mark_held(self, unit_id: int) -> bool:
        return self.claim_unit(unit_id, UnitStatus.AVAILABLE, UnitStatus.HELD)

    def mark_available(self, unit_id: int) -> bool:
        return self.claim_unit(unit_id, UnitStatus.HELD, UnitStatus.AVAILABLE)

    def mark_unavailable(self, unit_id: int) -> bool:
        return self.claim_unit(unit_id, UnitStatus.HELD, UnitStatus.UNAVAILABLE)
