"""Tests for penalty assessment and settlement."""

from decimal import Decimal

import pytest

from circulation.exceptions import (
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
)
from circulation.models import PenaltyKind, PenaltyStatus
from circulation.penalties import to_cents

from conftest import DAY_ZERO, day


@pytest.fixture
def loan(desk, make_patron, make_title):
    return desk.loans.checkout(make_patron(), make_title())


@pytest.fixture
def penalty(desk, loan):
    return desk.penalties.assess(loan.id, PenaltyKind.DAMAGE, Decimal("4.00"), "torn cover")


class TestAmounts:
    @pytest.mark.parametrize(
        "raw,expected",
        [("1.005", Decimal("1.01")), (3, Decimal("3.00")), ("0.504", Decimal("0.50"))],
    )
    def test_to_cents_rounds_half_up(self, raw, expected):
        assert to_cents(raw) == expected

    def test_to_cents_rejects_garbage(self):
        with pytest.raises(InvalidInputError) as excinfo:
            to_cents("three dollars")

        assert excinfo.value.code == "invalid_amount"

    def test_overdue_amount(self, desk):
        assert desk.penalties.overdue_amount(6) == Decimal("3.00")
        assert desk.penalties.overdue_amount(0) == Decimal("0.00")
        assert desk.penalties.overdue_amount(-2) == Decimal("0.00")


class TestAssess:
    def test_assess_records_unsettled_penalty(self, desk, loan, penalty):
        assert penalty.loan_id == loan.id
        assert penalty.patron_id == loan.patron_id
        assert penalty.kind == PenaltyKind.DAMAGE
        assert penalty.amount == Decimal("4.00")
        assert penalty.assessment_date == DAY_ZERO
        assert penalty.status == PenaltyStatus.UNSETTLED
        assert penalty.settlement_date is None
        assert penalty.description == "torn cover"

    @pytest.mark.parametrize("amount", [0, "-1.00", "0.001"])
    def test_assess_rejects_non_positive(self, desk, loan, amount):
        with pytest.raises(InvalidInputError):
            desk.penalties.assess(loan.id, PenaltyKind.DAMAGE, amount)

    def test_assess_rejects_unknown_kind(self, desk, loan):
        with pytest.raises(InvalidInputError):
            desk.penalties.assess(loan.id, "vandalism", Decimal("1.00"))

    def test_assess_unknown_loan(self, desk):
        with pytest.raises(NotFoundError):
            desk.penalties.assess(999, PenaltyKind.DAMAGE, Decimal("1.00"))

    def test_second_unsettled_of_same_kind_returns_existing(self, desk, loan, penalty):
        """
        Re-assessing damage on a loan that already owes for damage.

        Verifies:
        - the existing penalty comes back unchanged
        - the patron is not charged twice
        """
        again = desk.penalties.assess(loan.id, PenaltyKind.DAMAGE, Decimal("9.00"))

        assert again.id == penalty.id
        assert again.amount == Decimal("4.00")
        assert desk.penalties.outstanding_total(loan.patron_id) == Decimal("4.00")

    def test_different_kinds_accumulate(self, desk, loan, penalty):
        desk.penalties.assess(loan.id, PenaltyKind.LATE_RETURN, Decimal("1.50"))

        assert desk.penalties.outstanding_total(loan.patron_id) == Decimal("5.50")
        assert len(desk.penalties.patron_penalties(loan.patron_id)) == 2

    def test_patron_penalties_filter_by_status(self, desk, loan, penalty):
        desk.penalties.settle(penalty.id, PenaltyStatus.WAIVED)
        desk.penalties.assess(loan.id, PenaltyKind.DAMAGE, Decimal("2.00"))

        unsettled = desk.penalties.patron_penalties(loan.patron_id, PenaltyStatus.UNSETTLED)

        assert [p.amount for p in unsettled] == [Decimal("2.00")]


class TestSettle:
    def test_settle_defaults_date_to_today(self, desk, clock, penalty):
        clock.advance(2)

        settled = desk.penalties.settle(penalty.id, PenaltyStatus.SETTLED)

        assert settled.status == PenaltyStatus.SETTLED
        assert settled.settlement_date == day(2)

    def test_settle_with_explicit_date(self, desk, clock, penalty):
        clock.advance(5)

        settled = desk.penalties.settle(penalty.id, "settled", settlement_date=day(3))

        assert settled.settlement_date == day(3)

    def test_settlement_date_before_assessment(self, desk, penalty):
        with pytest.raises(InvalidInputError) as excinfo:
            desk.penalties.settle(
                penalty.id, PenaltyStatus.SETTLED, settlement_date=day(-1)
            )

        assert excinfo.value.code == "invalid_date"

    def test_settlement_date_only_for_settled(self, desk, penalty):
        with pytest.raises(InvalidInputError):
            desk.penalties.settle(penalty.id, PenaltyStatus.WAIVED, settlement_date=DAY_ZERO)

    @pytest.mark.parametrize("terminal", [PenaltyStatus.SETTLED, PenaltyStatus.WAIVED])
    @pytest.mark.parametrize(
        "target",
        [PenaltyStatus.UNSETTLED, PenaltyStatus.DISPUTED, PenaltyStatus.SETTLED],
    )
    def test_terminal_statuses_do_not_move(self, desk, penalty, terminal, target):
        desk.penalties.settle(penalty.id, terminal)

        with pytest.raises(InvalidTransitionError):
            desk.penalties.settle(penalty.id, target)

    def test_unsettled_to_unsettled_is_invalid(self, desk, penalty):
        with pytest.raises(InvalidTransitionError):
            desk.penalties.settle(penalty.id, PenaltyStatus.UNSETTLED)

    def test_dispute_then_reopen(self, desk, loan, penalty):
        """
        A disputed penalty leaves the balance and comes back when reopened.
        """
        desk.penalties.settle(penalty.id, PenaltyStatus.DISPUTED)
        assert desk.penalties.outstanding_total(loan.patron_id) == Decimal("0.00")

        reopened = desk.penalties.settle(penalty.id, PenaltyStatus.UNSETTLED)

        assert reopened.status == PenaltyStatus.UNSETTLED
        assert desk.penalties.outstanding_total(loan.patron_id) == Decimal("4.00")

    def test_reopen_blocked_by_newer_unsettled_of_same_kind(self, desk, loan, penalty):
        desk.penalties.settle(penalty.id, PenaltyStatus.DISPUTED)
        desk.penalties.assess(loan.id, PenaltyKind.DAMAGE, Decimal("1.00"))

        with pytest.raises(InvalidTransitionError):
            desk.penalties.settle(penalty.id, PenaltyStatus.UNSETTLED)

    def test_disputed_may_be_waived(self, desk, penalty):
        desk.penalties.settle(penalty.id, PenaltyStatus.DISPUTED)

        waived = desk.penalties.settle(penalty.id, PenaltyStatus.WAIVED)

        assert waived.status == PenaltyStatus.WAIVED
        assert waived.settlement_date is None

    def test_unknown_status(self, desk, penalty):
        with pytest.raises(InvalidInputError):
            desk.penalties.settle(penalty.id, "forgiven")

    def test_unknown_penalty(self, desk):
        with pytest.raises(NotFoundError):
            desk.penalties.settle(12345, PenaltyStatus.SETTLED)
