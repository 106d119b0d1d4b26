"""Tests for the reservation queue."""

import pytest

from circulation import models
from circulation.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotEligibleError,
    NotFoundError,
)
from circulation.models import ReservationStatus, UnitStatus

from conftest import day


@pytest.fixture
def lent_title(desk, make_patron, make_title):
    """A one-unit title whose only unit is out on loan; returns (title_id, loan)."""
    title = make_title(units=1)
    loan = desk.loans.checkout(make_patron(name="Borrower"), title)
    return title, loan


class TestReserve:
    def test_ranks_are_assigned_in_arrival_order(self, desk, make_patron, lent_title):
        title, _ = lent_title

        first = desk.reservations.reserve(make_patron(name="A"), title)
        second = desk.reservations.reserve(make_patron(name="B"), title)

        assert first.priority_rank == 1
        assert second.priority_rank == 2
        assert first.status == ReservationStatus.ACTIVE
        assert first.expiry_date == day(7)

    def test_return_fulfills_head_and_moves_queue(self, desk, make_patron, lent_title, unit_status):
        """
        Title with no free units; A reserves, then B, then the loan comes back.

        Verifies:
        - A's reservation is fulfilled and holds the returned unit
        - B is now first in line
        - the unit is not on the shelf
        """
        title, loan = lent_title
        a = desk.reservations.reserve(make_patron(name="A"), title)
        b = desk.reservations.reserve(make_patron(name="B"), title)

        desk.loans.return_loan(loan.id)

        a = desk.reservations.get_reservation(a.id)
        assert a.status == ReservationStatus.FULFILLED
        assert a.held_unit_id == loan.unit_id
        assert a.hold_expiry_date == day(3)
        assert desk.reservations.queue_position(b.id) == 1
        assert unit_status(loan.unit_id) == UnitStatus.UNAVAILABLE
        assert desk.availability.availability(title).available_units == 0

    def test_units_available_suggests_checkout(self, desk, make_patron, make_title):
        with pytest.raises(ConflictError) as excinfo:
            desk.reservations.reserve(make_patron(), make_title(units=2))

        assert excinfo.value.code == "units_available"
        assert excinfo.value.details["suggestion"] == "checkout"

    def test_duplicate_reservation(self, desk, make_patron, lent_title):
        title, _ = lent_title
        patron = make_patron(name="A")
        existing = desk.reservations.reserve(patron, title)

        with pytest.raises(ConflictError) as excinfo:
            desk.reservations.reserve(patron, title)

        assert excinfo.value.code == "duplicate_reservation"
        assert excinfo.value.details["reservation_id"] == existing.id

    def test_pending_pickup_counts_as_duplicate(self, desk, make_patron, lent_title):
        title, loan = lent_title
        patron = make_patron(name="A")
        desk.reservations.reserve(patron, title)
        desk.loans.return_loan(loan.id)

        with pytest.raises(ConflictError) as excinfo:
            desk.reservations.reserve(patron, title)

        assert excinfo.value.code == "duplicate_reservation"

    def test_ineligible_patron_cannot_reserve(self, desk, make_patron, lent_title):
        title, _ = lent_title
        patron = make_patron(status=models.PatronStatus.EXPIRED)

        with pytest.raises(NotEligibleError):
            desk.reservations.reserve(patron, title)

    def test_unknown_patron_and_title(self, desk, make_patron, lent_title):
        title, _ = lent_title

        with pytest.raises(NotFoundError):
            desk.reservations.reserve(999, title)
        with pytest.raises(NotFoundError):
            desk.reservations.reserve(make_patron(), 999)

    def test_rank_collision_is_retryable_conflict(self, desk, monkeypatch, make_patron, lent_title):
        """
        A second reservation computes a rank another one already took.

        Verifies:
        - the collision surfaces as rank_contention, marked safe to retry
        - nothing is written and the queue is unchanged
        """
        title, _ = lent_title
        first = desk.reservations.reserve(make_patron(name="A"), title)
        monkeypatch.setattr(desk.reservations, "_next_rank", lambda title_id: 1)

        with pytest.raises(ConflictError) as excinfo:
            desk.reservations.reserve(make_patron(name="B"), title)

        assert excinfo.value.code == "rank_contention"
        assert excinfo.value.details["retry"] is True
        assert [r.id for r in desk.reservations.title_queue(title)] == [first.id]

    def test_rank_reused_after_cancelled_tail(self, desk, make_patron, lent_title):
        title, _ = lent_title
        a = desk.reservations.reserve(make_patron(name="A"), title)
        b = desk.reservations.reserve(make_patron(name="B"), title)
        desk.reservations.cancel(b.id)

        c = desk.reservations.reserve(make_patron(name="C"), title)

        assert a.priority_rank == 1
        assert c.priority_rank == 2


class TestCancel:
    def test_cancel_leaves_rank_gap(self, desk, make_patron, lent_title):
        """
        Three reservations; the middle one is cancelled.

        Verifies:
        - ranks of the others are untouched
        - the last reservation's position closes the gap
        """
        title, _ = lent_title
        a = desk.reservations.reserve(make_patron(name="A"), title)
        b = desk.reservations.reserve(make_patron(name="B"), title)
        c = desk.reservations.reserve(make_patron(name="C"), title)

        cancelled = desk.reservations.cancel(b.id)

        assert cancelled.status == ReservationStatus.CANCELLED
        assert [r.priority_rank for r in desk.reservations.title_queue(title)] == [1, 3]
        assert desk.reservations.queue_position(a.id) == 1
        assert desk.reservations.queue_position(c.id) == 2

    def test_cancel_twice_is_invalid(self, desk, make_patron, lent_title):
        title, _ = lent_title
        reservation = desk.reservations.reserve(make_patron(), title)
        desk.reservations.cancel(reservation.id)

        with pytest.raises(InvalidTransitionError) as excinfo:
            desk.reservations.cancel(reservation.id)

        assert excinfo.value.details["current_status"] == "cancelled"

    def test_cancel_unknown(self, desk):
        with pytest.raises(NotFoundError):
            desk.reservations.cancel(42)


class TestQueue:
    def test_position_of_inactive_reservation(self, desk, make_patron, lent_title):
        title, _ = lent_title
        reservation = desk.reservations.reserve(make_patron(), title)
        desk.reservations.cancel(reservation.id)

        with pytest.raises(ConflictError) as excinfo:
            desk.reservations.queue_position(reservation.id)

        assert excinfo.value.code == "reservation_not_active"

    def test_title_queue_unknown_title(self, desk):
        with pytest.raises(NotFoundError):
            desk.reservations.title_queue(404)

    def test_attempt_fulfillment_with_empty_queue(self, desk, make_title):
        title = make_title(units=1)

        assert desk.reservations.attempt_fulfillment(title) is None
        assert desk.availability.availability(title).available_units == 1

    def test_attempt_fulfillment_skips_non_active(self, desk, make_patron, lent_title):
        title, loan = lent_title
        reservation = desk.reservations.reserve(make_patron(), title)
        desk.reservations.cancel(reservation.id)

        desk.loans.return_loan(loan.id)

        assert desk.reservations.get_reservation(reservation.id).status == (
            ReservationStatus.CANCELLED
        )
        assert desk.availability.availability(title).available_units == 1

    def test_attempt_fulfillment_uses_shelf_unit(self, desk, db, make_patron, lent_title):
        """A unit added to the shelf by hand is offered to the queue on request."""
        title, _ = lent_title
        reservation = desk.reservations.reserve(make_patron(), title)
        db.add(models.Unit(title_id=title, copy_number=2, status=UnitStatus.AVAILABLE))
        db.commit()

        fulfilled = desk.reservations.attempt_fulfillment(title)

        assert fulfilled.id == reservation.id
        assert fulfilled.status == ReservationStatus.FULFILLED
        assert fulfilled.held_unit_id is not None


class TestReleaseHold:
    def test_release_passes_unit_down_the_queue(self, desk, make_patron, lent_title):
        title, loan = lent_title
        a = desk.reservations.reserve(make_patron(name="A"), title)
        b = desk.reservations.reserve(make_patron(name="B"), title)
        desk.loans.return_loan(loan.id)

        successor = desk.reservations.release_hold(a.id)

        assert successor.id == b.id
        assert successor.held_unit_id == loan.unit_id
        assert desk.reservations.get_reservation(a.id).held_unit_id is None

    def test_release_with_empty_queue_shelves_unit(self, desk, make_patron, lent_title, unit_status):
        title, loan = lent_title
        a = desk.reservations.reserve(make_patron(name="A"), title)
        desk.loans.return_loan(loan.id)

        assert desk.reservations.release_hold(a.id) is None
        assert unit_status(loan.unit_id) == UnitStatus.AVAILABLE

    def test_release_without_hold(self, desk, make_patron, lent_title):
        title, _ = lent_title
        reservation = desk.reservations.reserve(make_patron(), title)

        with pytest.raises(ConflictError) as excinfo:
            desk.reservations.release_hold(reservation.id)

        assert excinfo.value.code == "no_pickup_hold"
