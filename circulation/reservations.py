"""Per-title reservation queue."""

import logging
from datetime import date, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from circulation import models
from circulation.collaborators import Catalog
from circulation.config import Settings
from circulation.database import atomic
from circulation.eligibility import EligibilityEvaluator
from circulation.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
)
from circulation.models import ReservationStatus, UnitStatus

logger = logging.getLogger(__name__)


class ReservationQueue:
    """
    Maintain the FIFO waiting list of each title and fulfill it when a unit frees.

    Fulfillment marks the head of the queue ``fulfilled`` and soft-holds the
    freed unit for it (unit status ``unavailable``) until the pickup grace
    period ends. The patron still checks the unit out themselves; the
    checkout claims the held unit even though the title shows no free units.
    """

    def __init__(
        self,
        db: Session,
        catalog: Catalog,
        eligibility: EligibilityEvaluator,
        settings: Settings,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.catalog = catalog
        self.eligibility = eligibility
        self.settings = settings
        self.today = today

    def get_reservation(self, reservation_id: int) -> models.Reservation:
        reservation = self.db.get(models.Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError(f"Reservation with id {reservation_id} not found")
        return reservation

    def reserve(
        self, patron_id: int, title_id: int, note: Optional[str] = None
    ) -> models.Reservation:
        """
        Queue a patron for the next free unit of a title.

        Raises:
            NotFoundError: unknown patron or title
            NotEligibleError: the patron may not borrow right now
            ConflictError: a unit is available (``units_available``) or the
                patron already holds a reservation for the title
                (``duplicate_reservation``), or another reservation took the
                same rank concurrently (``rank_contention``, safe to retry)
        """
        with atomic(self.db):
            if self.eligibility.patrons.get_patron_status(patron_id) is None:
                raise NotFoundError(f"Patron with id {patron_id} not found")
            # serializes rank assignment per title where the backend has row locks
            title = self.db.scalars(
                select(models.Title).where(models.Title.id == title_id).with_for_update()
            ).first()
            if title is None:
                raise NotFoundError(f"Title with id {title_id} not found")

            self.eligibility.require(patron_id)

            available = self.catalog.list_available_units(title_id)
            if available:
                raise ConflictError(
                    f"{len(available)} unit(s) of this title are available",
                    code="units_available",
                    suggestion="checkout",
                )

            existing = self._patron_claim(patron_id, title_id)
            if existing is not None:
                raise ConflictError(
                    "Patron already has a reservation for this title",
                    code="duplicate_reservation",
                    reservation_id=existing.id,
                )

            today = self.today()
            reservation = models.Reservation(
                patron_id=patron_id,
                title_id=title_id,
                reservation_date=today,
                expiry_date=today + timedelta(days=self.settings.reservation_window_days),
                status=ReservationStatus.ACTIVE,
                priority_rank=self._next_rank(title_id),
                note=note,
            )
            self.db.add(reservation)
            try:
                self.db.flush()
            except IntegrityError:
                logger.warning(
                    "Rank %s of title %s was taken concurrently",
                    reservation.priority_rank,
                    title_id,
                )
                raise ConflictError(
                    "Another reservation for this title was placed at the same time",
                    code="rank_contention",
                    retry=True,
                )
            logger.info(
                "Patron %s reserved title %s at rank %s",
                patron_id,
                title_id,
                reservation.priority_rank,
            )
        self.db.refresh(reservation)
        return reservation

    def cancel(self, reservation_id: int) -> models.Reservation:
        """Cancel an active reservation. Remaining ranks keep their gaps."""
        with atomic(self.db):
            reservation = self.get_reservation(reservation_id)
            if reservation.status != ReservationStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Cannot cancel a {ReservationStatus(reservation.status).value} reservation",
                    current_status=ReservationStatus(reservation.status).value,
                    requested_status=ReservationStatus.CANCELLED.value,
                )
            reservation.status = ReservationStatus.CANCELLED
            logger.info("Reservation %s cancelled", reservation.id)
        self.db.refresh(reservation)
        return reservation

    def attempt_fulfillment(
        self, title_id: int, unit_id: Optional[int] = None
    ) -> Optional[models.Reservation]:
        with atomic(self.db):
            reservation = self._attempt_fulfillment(title_id, unit_id)
        if reservation is not None:
            self.db.refresh(reservation)
        return reservation

    def release_hold(self, reservation_id: int) -> Optional[models.Reservation]:
        """
        Give up a fulfilled reservation's pickup hold and offer the unit to
        the next patron in line. Returns the reservation that received the
        unit, or None when it went back on the shelf.
        """
        with atomic(self.db):
            reservation = self.get_reservation(reservation_id)
            if not reservation.has_pickup_hold:
                raise ConflictError(
                    "Reservation has no unit on hold",
                    code="no_pickup_hold",
                    status=ReservationStatus(reservation.status).value,
                )
            unit_id = self._release_hold(reservation)
            successor = None
            if unit_id is not None:
                successor = self._attempt_fulfillment(reservation.title_id, unit_id)
        if successor is not None:
            self.db.refresh(successor)
        return successor

    def queue_position(self, reservation_id: int) -> int:
        reservation = self.get_reservation(reservation_id)
        if reservation.status != ReservationStatus.ACTIVE:
            raise ConflictError(
                "Only active reservations have a queue position",
                code="reservation_not_active",
                status=ReservationStatus(reservation.status).value,
            )
        ahead = self.db.scalar(
            select(func.count(models.Reservation.id)).where(
                models.Reservation.title_id == reservation.title_id,
                models.Reservation.status == ReservationStatus.ACTIVE,
                models.Reservation.priority_rank < reservation.priority_rank,
            )
        )
        return ahead + 1

    def title_queue(self, title_id: int) -> List[models.Reservation]:
        if self.catalog.get_title(title_id) is None:
            raise NotFoundError(f"Title with id {title_id} not found")
        stmt = (
            select(models.Reservation)
            .where(
                models.Reservation.title_id == title_id,
                models.Reservation.status == ReservationStatus.ACTIVE,
            )
            .order_by(models.Reservation.priority_rank)
        )
        return list(self.db.scalars(stmt))

    def _attempt_fulfillment(
        self, title_id: int, unit_id: Optional[int] = None
    ) -> Optional[models.Reservation]:
        """
        Hand a free unit of the title to the head of its queue.

        Only ``active`` reservations are considered; expired or cancelled
        ones are skipped whatever their dates say. Returns None when the
        queue is empty or no unit could be claimed.
        """
        head = self.db.scalars(
            select(models.Reservation)
            .where(
                models.Reservation.title_id == title_id,
                models.Reservation.status == ReservationStatus.ACTIVE,
            )
            .order_by(models.Reservation.priority_rank)
            .limit(1)
        ).first()
        if head is None:
            return None

        if unit_id is not None:
            candidates = [unit_id]
        else:
            candidates = [u.id for u in self.catalog.list_available_units(title_id)]
        held_unit_id = None
        for candidate in candidates:
            if self.catalog.claim_unit(candidate, UnitStatus.AVAILABLE, UnitStatus.UNAVAILABLE):
                held_unit_id = candidate
                break
        if held_unit_id is None:
            logger.warning(
                "No unit of title %s could be held for reservation %s", title_id, head.id
            )
            return None

        today = self.today()
        head.status = ReservationStatus.FULFILLED
        head.fulfillment_date = today
        head.held_unit_id = held_unit_id
        head.hold_expiry_date = today + timedelta(days=self.settings.pickup_grace_days)
        self.db.flush()
        logger.info(
            "Reservation %s fulfilled; unit %s held for patron %s until %s",
            head.id,
            held_unit_id,
            head.patron_id,
            head.hold_expiry_date.isoformat(),
        )
        return head

    def _next_rank(self, title_id: int) -> int:
        top_rank = self.db.scalar(
            select(func.max(models.Reservation.priority_rank)).where(
                models.Reservation.title_id == title_id,
                models.Reservation.status == ReservationStatus.ACTIVE,
            )
        )
        return (top_rank or 0) + 1

    def _pickup_hold(self, patron_id: int, title_id: int) -> Optional[models.Reservation]:
        return self.db.scalars(
            select(models.Reservation)
            .where(
                models.Reservation.patron_id == patron_id,
                models.Reservation.title_id == title_id,
                models.Reservation.status == ReservationStatus.FULFILLED,
                models.Reservation.held_unit_id.is_not(None),
            )
            .order_by(models.Reservation.fulfillment_date)
        ).first()

    def _patron_claim(self, patron_id: int, title_id: int) -> Optional[models.Reservation]:
        """The patron's active reservation or pending pickup for the title."""
        active = self.db.scalars(
            select(models.Reservation).where(
                models.Reservation.patron_id == patron_id,
                models.Reservation.title_id == title_id,
                models.Reservation.status == ReservationStatus.ACTIVE,
            )
        ).first()
        return active or self._pickup_hold(patron_id, title_id)

    def _fulfill_on_checkout(self, patron_id: int, title_id: int) -> Optional[models.Reservation]:
        """Mark the patron's active reservation fulfilled by a direct checkout."""
        reservation = self.db.scalars(
            select(models.Reservation).where(
                models.Reservation.patron_id == patron_id,
                models.Reservation.title_id == title_id,
                models.Reservation.status == ReservationStatus.ACTIVE,
            )
        ).first()
        if reservation is None:
            return None
        reservation.status = ReservationStatus.FULFILLED
        reservation.fulfillment_date = self.today()
        logger.info("Reservation %s fulfilled by checkout", reservation.id)
        return reservation

    def _clear_hold(self, reservation: models.Reservation) -> None:
        reservation.held_unit_id = None
        reservation.hold_expiry_date = None

    def _release_hold(self, reservation: models.Reservation) -> Optional[int]:
        """Put a lapsed pickup hold's unit back on the shelf."""
        unit_id = reservation.held_unit_id
        if unit_id is None:
            return None
        released = self.catalog.claim_unit(unit_id, UnitStatus.UNAVAILABLE, UnitStatus.AVAILABLE)
        if not released:
            logger.warning(
                "Unit %s held for reservation %s was no longer on hold", unit_id, reservation.id
            )
        self._clear_hold(reservation)
        self.db.flush()
        return unit_id if released else None
