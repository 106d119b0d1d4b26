from circulation import models
from circulation import schemas
from circulation.auth import verify_api_key
from circulation.config import Settings, get_settings
from circulation.database import engine, get_db
from circulation.desk import LendingDesk
from circulation.exceptions import (
    CirculationError,
    ConflictError,
    InvalidInputError,
    InvalidTransitionError,
    NotEligibleError,
    NotFoundError,
)
from circulation.logging import setup_logging
from circulation.reports import ReportPeriod

import logging
from datetime import date
from typing import Callable, List, Optional
from sqlalchemy.orm import Session
from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.responses import JSONResponse


setup_logging(get_settings().log_level, get_settings().log_format)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Lending Desk API",
    description="Loans, penalties and reservation queues for a catalogued inventory",
    version="1.0.0",
)

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    NotEligibleError: status.HTTP_403_FORBIDDEN,
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    InvalidInputError: status.HTTP_400_BAD_REQUEST,
}


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    """
    Translate a rejected lending operation into a JSON error response.

    The body always has ``detail`` and ``code``; eligibility failures add
    ``reasons`` and some conflicts add a ``suggestion`` for the next step.
    """
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    logger.info(
        "%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.message
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def get_clock() -> Callable[[], date]:
    """Dependency returning the desk's notion of today; tests pin it."""
    return date.today


def get_desk(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    today: Callable[[], date] = Depends(get_clock),
) -> LendingDesk:
    return LendingDesk(db, settings=settings, today=today)


def _loan_detail(desk: LendingDesk, loan: models.Loan) -> schemas.LoanDetail:
    detail = desk.loans.loan_detail(loan)
    return schemas.LoanDetail(
        **schemas.Loan.model_validate(loan).model_dump(),
        title_id=detail.title_id,
        is_overdue=detail.is_overdue,
        overdue_days=detail.overdue_days,
        days_borrowed=detail.days_borrowed,
        can_renew=detail.can_renew,
    )


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Simple status message indicating the service is running
    """
    return {"status": "healthy", "service": "lending-desk"}


@app.get("/patrons/{patron_id}/eligibility", response_model=schemas.Eligibility)
async def get_eligibility(patron_id: int, desk: LendingDesk = Depends(get_desk)):
    """
    Report whether a patron may borrow right now, with every failing rule.

    Never an error for business reasons: an unknown patron comes back with
    can_borrow false and a patron_not_found restriction.
    """
    return desk.eligibility.evaluate(patron_id)


@app.get("/patrons/{patron_id}/loans", response_model=List[schemas.LoanDetail])
async def list_patron_loans(
    patron_id: int,
    open_only: bool = Query(False),
    desk: LendingDesk = Depends(get_desk),
):
    """List a patron's loans, newest first, with derived overdue state."""
    loans = desk.loans.patron_loans(patron_id, open_only=open_only)
    return [_loan_detail(desk, loan) for loan in loans]


@app.get("/patrons/{patron_id}/penalties", response_model=List[schemas.Penalty])
async def list_patron_penalties(
    patron_id: int,
    penalty_status: Optional[models.PenaltyStatus] = Query(None, alias="status"),
    desk: LendingDesk = Depends(get_desk),
):
    return desk.penalties.patron_penalties(patron_id, status=penalty_status)


@app.get("/titles/{title_id}/availability", response_model=schemas.Availability)
async def get_availability(title_id: int, desk: LendingDesk = Depends(get_desk)):
    """
    How many units of a title are free, and when the next one is due back.

    Raises:
        NotFoundError: 404 if the title does not exist
    """
    return desk.availability.availability(title_id)


@app.get("/inventory", response_model=List[schemas.Availability])
async def get_inventory(desk: LendingDesk = Depends(get_desk)):
    return desk.availability.inventory()


@app.get("/reports/popular", response_model=schemas.CirculationReport)
async def popular_titles(
    period: ReportPeriod = Query(ReportPeriod.ALL_TIME),
    min_loans: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    desk: LendingDesk = Depends(get_desk),
):
    """
    Titles ranked by how often they were lent in the period, with the
    period's circulation totals.
    """
    report = desk.reports.circulation_report(period=period, min_loans=min_loans, limit=limit)
    return schemas.CirculationReport.model_validate(report)


@app.get("/titles/{title_id}/queue", response_model=List[schemas.Reservation])
async def get_title_queue(title_id: int, desk: LendingDesk = Depends(get_desk)):
    """Active reservations for a title in the order they will be served."""
    return desk.reservations.title_queue(title_id)


@app.post(
    "/loans",
    response_model=schemas.Loan,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def checkout(request: schemas.CheckoutRequest, desk: LendingDesk = Depends(get_desk)):
    """
    Check out a unit of a title to a patron (requires API key).

    Business Logic:
    1. Patron and title must exist
    2. Patron must pass every eligibility rule
    3. A unit held for the patron's fulfilled reservation is used first,
       otherwise any unit on the shelf
    4. Due date = today + loan period

    Raises:
        HTTPException: 404 unknown patron/title, 403 not eligible,
        409 no units available (suggestion: reserve)
    """
    return desk.loans.checkout(
        request.patron_id,
        request.title_id,
        loan_period_days=request.loan_period_days,
        note=request.note,
    )


@app.get("/loans/{loan_id}", response_model=schemas.LoanDetail)
async def get_loan(loan_id: int, desk: LendingDesk = Depends(get_desk)):
    return _loan_detail(desk, desk.loans.get_loan(loan_id))


@app.post(
    "/loans/{loan_id}/return",
    response_model=schemas.ReturnResult,
    dependencies=[Depends(verify_api_key)],
)
async def return_loan(
    loan_id: int,
    request: Optional[schemas.ReturnRequest] = None,
    desk: LendingDesk = Depends(get_desk),
):
    """
    Return a loan (requires API key).

    Business Logic:
    1. Loan must be open
    2. A late return is charged overdue days x per-day rate
    3. The freed unit goes to the head of the title's reservation queue

    Raises:
        HTTPException: 404 unknown loan, 409 already returned,
        400 return date before checkout or in the future
    """
    return_date = request.return_date if request else None
    result = desk.loans.return_loan(loan_id, return_date=return_date)
    return schemas.ReturnResult.model_validate(result)


@app.post(
    "/loans/{loan_id}/renew",
    response_model=schemas.Loan,
    dependencies=[Depends(verify_api_key)],
)
async def renew_loan(
    loan_id: int,
    request: Optional[schemas.RenewRequest] = None,
    desk: LendingDesk = Depends(get_desk),
):
    """
    Renew a loan (requires API key).

    Raises:
        HTTPException: 404 unknown loan, 403 not eligible, 409 closed loan,
        renewal limit reached or reservations pending
    """
    request = request or schemas.RenewRequest()
    return desk.loans.renew(
        loan_id,
        renewal_period_days=request.renewal_period_days,
        note=request.note,
    )


@app.post(
    "/loans/{loan_id}/lost",
    response_model=schemas.ReturnResult,
    dependencies=[Depends(verify_api_key)],
)
async def mark_loan_lost(
    loan_id: int,
    request: Optional[schemas.LostRequest] = None,
    desk: LendingDesk = Depends(get_desk),
):
    """Declare the unit of an open loan lost and charge the loss fee (requires API key)."""
    request = request or schemas.LostRequest()
    result = desk.loans.mark_lost(loan_id, lost_date=request.lost_date, note=request.note)
    return schemas.ReturnResult.model_validate(result)


@app.post(
    "/penalties",
    response_model=schemas.Penalty,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def assess_penalty(request: schemas.PenaltyCreate, desk: LendingDesk = Depends(get_desk)):
    """
    Assess a penalty against a loan (requires API key).

    Re-assessing a kind that already has an unsettled penalty on the loan
    returns that penalty instead of creating a second one.
    """
    return desk.penalties.assess(
        request.loan_id, request.kind, request.amount, description=request.description
    )


@app.get("/penalties/{penalty_id}", response_model=schemas.Penalty)
async def get_penalty(penalty_id: int, desk: LendingDesk = Depends(get_desk)):
    return desk.penalties.get_penalty(penalty_id)


@app.post(
    "/penalties/{penalty_id}/settle",
    response_model=schemas.Penalty,
    dependencies=[Depends(verify_api_key)],
)
async def settle_penalty(
    penalty_id: int,
    request: schemas.PenaltySettle,
    desk: LendingDesk = Depends(get_desk),
):
    """
    Change a penalty's settlement status (requires API key).

    Raises:
        HTTPException: 404 unknown penalty, 409 transition not allowed,
        400 invalid settlement date
    """
    return desk.penalties.settle(
        penalty_id, request.status, settlement_date=request.settlement_date
    )


@app.post(
    "/reservations",
    response_model=schemas.Reservation,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def reserve(request: schemas.ReservationCreate, desk: LendingDesk = Depends(get_desk)):
    """
    Queue a patron for a title with no free units (requires API key).

    Raises:
        HTTPException: 404 unknown patron/title, 403 not eligible,
        409 units available or duplicate reservation
    """
    return desk.reservations.reserve(request.patron_id, request.title_id, note=request.note)


@app.get("/reservations/{reservation_id}", response_model=schemas.Reservation)
async def get_reservation(reservation_id: int, desk: LendingDesk = Depends(get_desk)):
    return desk.reservations.get_reservation(reservation_id)


@app.post(
    "/reservations/{reservation_id}/cancel",
    response_model=schemas.Reservation,
    dependencies=[Depends(verify_api_key)],
)
async def cancel_reservation(reservation_id: int, desk: LendingDesk = Depends(get_desk)):
    return desk.reservations.cancel(reservation_id)


@app.get("/reservations/{reservation_id}/position", response_model=schemas.QueuePosition)
async def get_queue_position(reservation_id: int, desk: LendingDesk = Depends(get_desk)):
    reservation = desk.reservations.get_reservation(reservation_id)
    return schemas.QueuePosition(
        reservation_id=reservation.id,
        title_id=reservation.title_id,
        position=desk.reservations.queue_position(reservation_id),
    )


@app.post(
    "/maintenance/overdue",
    response_model=schemas.OverdueReport,
    dependencies=[Depends(verify_api_key)],
)
async def process_overdue(desk: LendingDesk = Depends(get_desk)):
    """Operator trigger: advance overdue loans and assess accruing penalties."""
    return desk.sweeper.process_overdue_items()


@app.post(
    "/maintenance/reservations",
    response_model=schemas.CountResult,
    dependencies=[Depends(verify_api_key)],
)
async def expire_reservations(desk: LendingDesk = Depends(get_desk)):
    """Operator trigger: expire active reservations past their expiry date."""
    return schemas.CountResult(count=desk.sweeper.expire_reservations())


@app.post(
    "/maintenance/holds",
    response_model=schemas.CountResult,
    dependencies=[Depends(verify_api_key)],
)
async def release_holds(desk: LendingDesk = Depends(get_desk)):
    """Operator trigger: release units whose pickup hold has lapsed."""
    return schemas.CountResult(count=desk.sweeper.release_expired_holds())


@app.post(
    "/maintenance/run",
    response_model=schemas.SweepReport,
    dependencies=[Depends(verify_api_key)],
)
async def run_maintenance(desk: LendingDesk = Depends(get_desk)):
    """Operator trigger: run the full maintenance sweep."""
    return desk.sweeper.run()
