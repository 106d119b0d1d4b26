"""Tests for the availability view."""

import pytest

from circulation import models
from circulation.exceptions import NotFoundError
from circulation.models import UnitStatus

from conftest import day


class TestAvailability:
    def test_fresh_title_is_all_available(self, desk, make_title):
        title = make_title(units=3)

        result = desk.availability.availability(title)

        assert result.total_units == 3
        assert result.available_units == 3
        assert len(result.available_unit_ids) == 3
        assert result.held_units == 0
        assert result.next_return_date is None
        assert result.queue_length == 0

    def test_counts_units_on_loan(self, desk, clock, make_patron, make_title):
        """
        Two units lent on different days.

        Verifies:
        - both are counted as held
        - next_return_date is the earliest due date
        """
        title = make_title(units=3)
        first = desk.loans.checkout(make_patron(name="A"), title)
        clock.advance(3)
        desk.loans.checkout(make_patron(name="B"), title)

        result = desk.availability.availability(title)

        assert result.available_units == 1
        assert result.held_units == 2
        assert first.unit_id not in result.available_unit_ids
        assert result.next_return_date == day(14)

    def test_lost_units_are_counted_apart(self, desk, make_patron, make_title):
        title = make_title(units=2)
        loan = desk.loans.checkout(make_patron(), title)

        desk.loans.mark_lost(loan.id)
        result = desk.availability.availability(title)

        assert result.lost_units == 1
        assert result.available_units == 1
        assert result.held_units == 0
        assert result.next_return_date is None

    def test_pickup_holds_and_queue(self, desk, make_patron, make_title):
        title = make_title(units=1)
        loan = desk.loans.checkout(make_patron(name="Borrower"), title)
        desk.reservations.reserve(make_patron(name="A"), title)
        desk.reservations.reserve(make_patron(name="B"), title)

        assert desk.availability.availability(title).queue_length == 2

        desk.loans.return_loan(loan.id)
        result = desk.availability.availability(title)

        assert result.on_hold_units == 1
        assert result.available_units == 0
        assert result.queue_length == 1

    def test_withdrawn_unit_keeps_buckets_summing_to_total(self, desk, db, make_patron, make_title):
        """A unit pulled from the shelf by hand with no loan or hold behind it."""
        title = make_title(units=3)
        desk.loans.checkout(make_patron(), title)
        withdrawn = desk.availability.availability(title).available_unit_ids[0]
        db.get(models.Unit, withdrawn).status = UnitStatus.UNAVAILABLE
        db.commit()

        result = desk.availability.availability(title)

        assert result.other_unavailable_units == 1
        assert withdrawn not in result.available_unit_ids
        assert result.total_units == (
            result.available_units
            + result.held_units
            + result.on_hold_units
            + result.lost_units
            + result.other_unavailable_units
        )

    def test_title_without_units(self, desk, make_title):
        result = desk.availability.availability(make_title(units=0))

        assert result.total_units == 0
        assert result.available_unit_ids == []

    def test_unknown_title(self, desk):
        with pytest.raises(NotFoundError):
            desk.availability.availability(321)


class TestInventory:
    def test_inventory_lists_every_title(self, desk, make_patron, make_title):
        one = make_title(units=1, name="One")
        two = make_title(units=2, name="Two")
        desk.loans.checkout(make_patron(), one)

        rows = desk.availability.inventory()

        assert [r.title_id for r in rows] == [one, two]
        assert [r.available_units for r in rows] == [0, 2]
