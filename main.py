import logging
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

import auth_utils
import dispatcher as inbox
import models  # ensure models are imported so tables are registered
from circulation import CirculationEngine
from config import settings
from database import Base, SessionLocal, engine, get_db
from dispatcher import SideEffectDispatcher
from errors import CirculationError
from escalation import JOBS, EscalationScheduler
from fines import FineEngine
from holds import HoldEngine
from members import get_member
from models import LoanStatus
from schemas import (
    DownloadOut,
    DownloadRequest,
    FineCreate,
    FineOut,
    FinePayment,
    FineWaive,
    HoldCreate,
    HoldOut,
    HoldRemove,
    JobRunOut,
    LoanCreate,
    LoanOut,
    MemberFinesOut,
    MemberStandingOut,
    NotificationList,
    NotificationOut,
    ReservationCreate,
    ReservationOut,
    ReturnOut,
)

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Library Circulation Service")

origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000"
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.debug("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    # Staff notifications need at least one admin to land on
    db = SessionLocal()
    try:
        admin_user = db.query(models.User).filter(models.User.email == settings.default_admin_email).first()
        if not admin_user:
            admin_user = models.User(
                email=settings.default_admin_email,
                full_name="Admin User",
                role=models.UserRole.ADMIN.value,
                is_active=True,
            )
            db.add(admin_user)
            db.commit()
            logger.info("Created default admin user with email: %s", settings.default_admin_email)
    finally:
        db.close()
    if settings.scheduler_enabled:
        from scheduler import scheduler
        scheduler.start()
        logger.info("Escalation scheduler started")


@app.on_event("shutdown")
def on_shutdown():
    if settings.scheduler_enabled:
        from scheduler import scheduler
        if scheduler.running:
            scheduler.shutdown()


# --- dependencies ---
def get_dispatcher() -> SideEffectDispatcher:
    return SideEffectDispatcher(SessionLocal)


def get_holds(db: Session = Depends(get_db), dispatcher: SideEffectDispatcher = Depends(get_dispatcher)) -> HoldEngine:
    return HoldEngine(db, dispatcher)


def get_fines(db: Session = Depends(get_db), dispatcher: SideEffectDispatcher = Depends(get_dispatcher)) -> FineEngine:
    return FineEngine(db, dispatcher)


def get_circulation(
    db: Session = Depends(get_db), dispatcher: SideEffectDispatcher = Depends(get_dispatcher)
) -> CirculationEngine:
    return CirculationEngine(db, dispatcher)


def ensure_member_access(member_id: int, user: models.User, db: Session) -> None:
    """Staff see every member; a member only sees their own records."""
    if auth_utils.is_staff(user):
        return
    member = db.query(models.Member).filter(models.Member.user_id == user.id).first()
    if member is None or member.id != member_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions")


@app.get("/health")
def health(db: Session = Depends(get_db)):
    """Basic health check endpoint. Returns DB connectivity and open loan count."""
    try:
        db.execute(text("SELECT 1"))
        open_loans = db.query(models.Loan).filter(models.Loan.status.in_(models.OPEN_LOAN_STATUSES)).count()
        return {"status": "ok", "database": "connected", "open_loans": open_loans}
    except Exception as e:
        logger.exception("Health check failed")
        return {"status": "error", "database": "disconnected", "detail": str(e)}


# Loans
@app.post("/loans/", response_model=LoanOut, status_code=status.HTTP_201_CREATED)
def create_loan(
    payload: LoanCreate,
    circulation: CirculationEngine = Depends(get_circulation),
    staff: models.User = Depends(auth_utils.get_librarian_user),
):
    return circulation.create_loan(
        payload.member_id,
        book_id=payload.book_id,
        book_copy_id=payload.book_copy_id,
        duration_days=payload.duration_days,
        actor_id=staff.id,
    )


@app.get("/loans/{loan_id}", response_model=LoanOut)
def retrieve_loan(
    loan_id: int,
    db: Session = Depends(get_db),
    circulation: CirculationEngine = Depends(get_circulation),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    loan = circulation.get_loan(loan_id)
    ensure_member_access(loan.member_id, user, db)
    return loan


@app.post("/loans/{loan_id}/return", response_model=ReturnOut)
def return_loan(
    loan_id: int,
    circulation: CirculationEngine = Depends(get_circulation),
    staff: models.User = Depends(auth_utils.get_librarian_user),
):
    result = circulation.return_loan(loan_id, staff.id)
    return ReturnOut(
        loan=LoanOut.model_validate(result.loan),
        fine=FineOut.model_validate(result.fine) if result.fine else None,
        is_overdue=result.is_overdue,
        days_overdue=result.days_overdue,
    )


@app.post("/loans/{loan_id}/renew", response_model=LoanOut)
def renew_loan(
    loan_id: int,
    circulation: CirculationEngine = Depends(get_circulation),
    staff: models.User = Depends(auth_utils.get_librarian_user),
):
    return circulation.renew_loan(loan_id, staff.id)


@app.get("/members/{member_id}/loans", response_model=List[LoanOut])
def member_loans(
    member_id: int,
    loan_status: Optional[LoanStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    circulation: CirculationEngine = Depends(get_circulation),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    ensure_member_access(member_id, user, db)
    return circulation.member_loans(member_id, status=loan_status)


@app.get("/members/{member_id}/standing", response_model=MemberStandingOut)
def member_standing(
    member_id: int,
    db: Session = Depends(get_db),
    fines: FineEngine = Depends(get_fines),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    ensure_member_access(member_id, user, db)
    standing = get_member(member_id, db)
    return MemberStandingOut(
        member_id=standing.member_id,
        user_id=standing.user_id,
        max_borrowed_books=standing.max_borrowed_books,
        open_loan_count=standing.open_loan_count,
        active_hold_count=standing.active_hold_count,
        unpaid_fine_count=standing.unpaid_fine_count,
        has_active_holds=standing.has_active_holds,
        at_borrowing_limit=standing.at_borrowing_limit,
        total_unpaid=fines.member_total_unpaid(member_id),
    )


# Fines
@app.post("/fines/", response_model=FineOut, status_code=status.HTTP_201_CREATED)
def charge_fine(
    payload: FineCreate,
    fines: FineEngine = Depends(get_fines),
    staff: models.User = Depends(auth_utils.get_librarian_user),
):
    return fines.charge_fine(
        payload.member_id, payload.amount, payload.reason, staff.id, loan_id=payload.loan_id, notes=payload.notes
    )


@app.get("/fines/{fine_id}", response_model=FineOut)
def retrieve_fine(
    fine_id: int,
    db: Session = Depends(get_db),
    fines: FineEngine = Depends(get_fines),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    fine = fines.get_fine(fine_id)
    ensure_member_access(fine.member_id, user, db)
    return fine


@app.post("/fines/{fine_id}/pay", response_model=FineOut)
def pay_fine(
    fine_id: int,
    payload: FinePayment,
    fines: FineEngine = Depends(get_fines),
    staff: models.User = Depends(auth_utils.get_librarian_user),
):
    return fines.pay_fine(fine_id, payload.amount, staff.id)


@app.post("/fines/{fine_id}/waive", response_model=FineOut)
def waive_fine(
    fine_id: int,
    payload: FineWaive,
    fines: FineEngine = Depends(get_fines),
    admin: models.User = Depends(auth_utils.get_admin_user),
):
    return fines.waive_fine(fine_id, admin.id, notes=payload.notes)


@app.get("/members/{member_id}/fines", response_model=MemberFinesOut)
def member_fines(
    member_id: int,
    unpaid_only: bool = False,
    db: Session = Depends(get_db),
    fines: FineEngine = Depends(get_fines),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    ensure_member_access(member_id, user, db)
    return MemberFinesOut(
        fines=[FineOut.model_validate(f) for f in fines.member_fines(member_id, unpaid_only=unpaid_only)],
        total_unpaid=fines.member_total_unpaid(member_id),
    )


# Holds
@app.post("/holds/", response_model=HoldOut, status_code=status.HTTP_201_CREATED)
def place_hold(
    payload: HoldCreate,
    holds: HoldEngine = Depends(get_holds),
    staff: models.User = Depends(auth_utils.get_librarian_user),
):
    return holds.place_hold(payload.member_id, payload.reason, staff.id, loan_id=payload.loan_id, notes=payload.notes)


@app.post("/holds/{hold_id}/remove", response_model=HoldOut)
def remove_hold(
    hold_id: int,
    payload: HoldRemove,
    holds: HoldEngine = Depends(get_holds),
    staff: models.User = Depends(auth_utils.get_librarian_user),
):
    return holds.remove_hold(hold_id, staff.id, notes=payload.notes)


@app.get("/members/{member_id}/holds", response_model=List[HoldOut])
def member_holds(
    member_id: int,
    active_only: bool = True,
    db: Session = Depends(get_db),
    holds: HoldEngine = Depends(get_holds),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    ensure_member_access(member_id, user, db)
    return holds.member_holds(member_id, active_only=active_only)


# Reservations and downloads
@app.post("/reservations/", response_model=ReservationOut, status_code=status.HTTP_201_CREATED)
def reserve_title(
    payload: ReservationCreate,
    db: Session = Depends(get_db),
    circulation: CirculationEngine = Depends(get_circulation),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    ensure_member_access(payload.member_id, user, db)
    return circulation.reserve_title(payload.member_id, payload.book_id, actor_id=user.id)


@app.post("/reservations/{reservation_id}/cancel", response_model=ReservationOut)
def cancel_reservation(
    reservation_id: int,
    db: Session = Depends(get_db),
    circulation: CirculationEngine = Depends(get_circulation),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    reservation = circulation.get_reservation(reservation_id)
    ensure_member_access(reservation.member_id, user, db)
    return circulation.cancel_reservation(reservation_id, actor_id=user.id)


@app.post("/books/{book_id}/download", response_model=DownloadOut)
def download_book(
    book_id: int,
    payload: DownloadRequest,
    db: Session = Depends(get_db),
    circulation: CirculationEngine = Depends(get_circulation),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    ensure_member_access(payload.member_id, user, db)
    book = circulation.authorize_download(payload.member_id, book_id, actor_id=user.id)
    return DownloadOut(book_id=book.id, title=book.title, download_count=book.download_count)


# Notifications inbox
@app.get("/notifications/", response_model=NotificationList)
def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    db: Session = Depends(get_db),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    return NotificationList(
        notifications=[
            NotificationOut.model_validate(n)
            for n in inbox.list_notifications(user.id, db, unread_only=unread_only, limit=limit)
        ],
        unread_count=inbox.unread_count(user.id, db),
    )


@app.post("/notifications/read-all")
def read_all_notifications(
    db: Session = Depends(get_db),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    return {"updated": inbox.mark_all_read(user.id, db)}


@app.post("/notifications/{notification_id}/read", response_model=NotificationOut)
def read_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(auth_utils.get_current_active_user),
):
    return inbox.mark_read(notification_id, user.id, db)


# Escalation jobs, on demand
@app.post("/jobs/{job}/run", response_model=JobRunOut)
def run_job(
    job: str,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    if job not in JOBS:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job}")
    results = EscalationScheduler(db, dispatcher).run_job(job)
    return JobRunOut(job=job, count=len(results))


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=9000,
        reload=True
    )
