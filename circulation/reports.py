"""Circulation reports: which titles are borrowed most."""

import calendar
import enum
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, List, Optional

from sqlalchemy import Float, and_, case, cast, func, select
from sqlalchemy.orm import Session

from circulation import models
from circulation.exceptions import InvalidInputError

logger = logging.getLogger(__name__)


class ReportPeriod(str, enum.Enum):
    ALL_TIME = "all-time"
    LAST_WEEK = "last-week"
    LAST_MONTH = "last-month"
    LAST_YEAR = "last-year"


@dataclass
class PopularTitle:
    title_id: int
    name: str
    author: Optional[str]
    total_loans: int
    current_loans: int
    total_units: int
    popularity_score: float


@dataclass
class CirculationStatistics:
    total_titles: int = 0
    total_loans: int = 0
    unique_borrowers: int = 0
    average_loans_per_title: float = 0.0
    max_loans_single_title: int = 0


@dataclass
class CirculationReport:
    period: ReportPeriod
    since: Optional[date]
    generated_on: date
    titles: List[PopularTitle] = field(default_factory=list)
    statistics: CirculationStatistics = field(default_factory=CirculationStatistics)

    @property
    def total(self) -> int:
        return len(self.titles)


def _shift_back(day: date, years: int = 0, months: int = 0) -> date:
    """Same calendar day some months back, clamped to the end of shorter months."""
    index = day.year * 12 + day.month - 1 - years * 12 - months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def period_start(period: ReportPeriod, today: date) -> Optional[date]:
    """First checkout day counted by a report period; None for all time."""
    if period == ReportPeriod.LAST_WEEK:
        return today - timedelta(days=7)
    if period == ReportPeriod.LAST_MONTH:
        return _shift_back(today, months=1)
    if period == ReportPeriod.LAST_YEAR:
        return _shift_back(today, years=1)
    return None


class CirculationReports:
    """
    Read-only rankings of titles by how often their units are lent.

    Only loans checked out on or after the start of the period count.
    Titles never lent in the period are left out of the ranking.
    """

    def __init__(self, db: Session, today: Callable[[], date] = date.today):
        self.db = db
        self.today = today

    def circulation_report(
        self, period=None, min_loans: int = 1, limit: int = 20
    ) -> CirculationReport:
        """
        Rank titles by loan count, then by loans per unit.

        Args:
            period: ``all-time`` (or None), ``last-week``, ``last-month``, ``last-year``
            min_loans: leave out titles lent fewer times than this
            limit: keep at most this many titles

        Raises:
            InvalidInputError: unknown period, or a bound below one
        """
        try:
            period = ReportPeriod(period or ReportPeriod.ALL_TIME)
        except ValueError:
            raise InvalidInputError(
                f"Unknown report period {period!r}",
                code="invalid_period",
                allowed=[p.value for p in ReportPeriod],
            )
        if min_loans < 1:
            raise InvalidInputError("min_loans must be at least 1", code="invalid_min_loans")
        if limit < 1:
            raise InvalidInputError("limit must be at least 1", code="invalid_limit")

        today = self.today()
        since = period_start(period, today)
        report = CirculationReport(period=period, since=since, generated_on=today)

        loan_counts = self._loan_counts(since).subquery()
        unit_counts = (
            select(
                models.Unit.title_id.label("title_id"),
                func.count(models.Unit.id).label("total_units"),
            )
            .group_by(models.Unit.title_id)
            .subquery()
        )
        score = cast(loan_counts.c.total_loans, Float) / unit_counts.c.total_units
        stmt = (
            select(
                models.Title.id,
                models.Title.name,
                models.Title.author,
                loan_counts.c.total_loans,
                loan_counts.c.current_loans,
                unit_counts.c.total_units,
                score.label("popularity_score"),
            )
            .select_from(models.Title)
            .join(loan_counts, loan_counts.c.title_id == models.Title.id)
            .join(unit_counts, unit_counts.c.title_id == models.Title.id)
            .where(loan_counts.c.total_loans >= min_loans)
            .order_by(
                loan_counts.c.total_loans.desc(),
                score.desc(),
                models.Title.id,
            )
            .limit(limit)
        )
        for row in self.db.execute(stmt):
            report.titles.append(
                PopularTitle(
                    title_id=row.id,
                    name=row.name,
                    author=row.author,
                    total_loans=row.total_loans,
                    current_loans=row.current_loans,
                    total_units=row.total_units,
                    popularity_score=round(row.popularity_score, 2),
                )
            )

        report.statistics = self._statistics(since)
        logger.debug(
            "Popular titles report for %s: %s title(s)", period.value, report.total
        )
        return report

    def _loan_counts(self, since: Optional[date]):
        """Per-title loan totals, and how many of those loans are still open."""
        is_open = and_(
            models.Loan.status.in_(models.OPEN_LOAN_STATUSES),
            models.Loan.return_date.is_(None),
        )
        stmt = (
            select(
                models.Unit.title_id.label("title_id"),
                func.count(models.Loan.id).label("total_loans"),
                func.count(case((is_open, models.Loan.id))).label("current_loans"),
            )
            .select_from(models.Loan)
            .join(models.Unit, models.Unit.id == models.Loan.unit_id)
            .group_by(models.Unit.title_id)
        )
        if since is not None:
            stmt = stmt.where(models.Loan.checkout_date >= since)
        return stmt

    def _statistics(self, since: Optional[date]) -> CirculationStatistics:
        stats = CirculationStatistics()
        stats.total_titles = self.db.scalar(select(func.count(models.Title.id)))

        borrowers = select(
            func.count(models.Loan.id), func.count(func.distinct(models.Loan.patron_id))
        )
        if since is not None:
            borrowers = borrowers.where(models.Loan.checkout_date >= since)
        stats.total_loans, stats.unique_borrowers = self.db.execute(borrowers).one()

        per_title = self._loan_counts(since).subquery()
        stats.max_loans_single_title = (
            self.db.scalar(select(func.max(per_title.c.total_loans))) or 0
        )
        if stats.total_titles:
            stats.average_loans_per_title = round(stats.total_loans / stats.total_titles, 2)
        return stats
