"""Loan lifecycle: borrow, return, renew, plus title reservations and download access.

Every mutation runs inside one ``atomic`` block: eligibility checks, unit selection,
the unit status flip and the availability recount either all commit or none do.
Notifications and audit records go out through the dispatcher afterwards.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings, settings as default_settings
from database import atomic
from dispatcher import AuditAction, NotificationKind, SideEffectDispatcher
from errors import (
    AlreadyReturned,
    CirculationError,
    IneligibleMember,
    LimitExceeded,
    NoAvailableUnit,
    NotActive,
    NotDownloadable,
    NotFound,
    NotRenewable,
    StateConflictError,
)
from fines import FineEngine
from inventory import first_available_unit, get_book, get_unit, recount_availability, set_unit_status
from members import get_member, get_member_by_id
from models import (
    Book,
    BookType,
    CopyStatus,
    Fine,
    Loan,
    LoanStatus,
    Reservation,
    ReservationStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class ReturnResult:
    loan: Loan
    fine: Optional[Fine]
    is_overdue: bool
    days_overdue: int


def days_late(due: datetime, returned: datetime) -> int:
    """Whole days late, rounded up; 0 when returned on time."""
    seconds = (returned - due).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / SECONDS_PER_DAY)


class CirculationEngine:
    def __init__(
        self,
        db: Session,
        dispatcher: SideEffectDispatcher,
        fines: Optional[FineEngine] = None,
        settings: Settings = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.settings = settings or default_settings
        self.fines = fines or FineEngine(db, dispatcher, settings=self.settings)

    # --- reads ---
    def get_loan(self, loan_id: int, for_update: bool = False) -> Loan:
        query = self.db.query(Loan).filter(Loan.id == loan_id)
        if for_update:
            query = query.with_for_update()
        loan = query.first()
        if not loan:
            raise NotFound("Loan", loan_id)
        return loan

    def member_loans(self, member_id: int, status: Optional[LoanStatus] = None) -> List[Loan]:
        get_member_by_id(member_id, self.db)
        query = self.db.query(Loan).filter(Loan.member_id == member_id)
        if status:
            query = query.filter(Loan.status == LoanStatus(status).value)
        return query.order_by(Loan.borrow_datetime.desc(), Loan.id.desc()).all()

    def get_reservation(self, reservation_id: int) -> Reservation:
        reservation = self.db.query(Reservation).filter(Reservation.id == reservation_id).first()
        if not reservation:
            raise NotFound("Reservation", reservation_id)
        return reservation

    def active_reservation_count(self, book_id: int, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return (
            self.db.query(Reservation)
            .filter(
                Reservation.book_id == book_id,
                Reservation.status == ReservationStatus.ACTIVE.value,
                Reservation.expires_at > now,
            )
            .count()
        )

    # --- loans ---
    def create_loan(
        self,
        member_id: int,
        book_id: Optional[int] = None,
        book_copy_id: Optional[int] = None,
        duration_days: Optional[int] = None,
        actor_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Loan:
        """Lend one unit to a member.

        Either ``book_copy_id`` names the exact unit, or ``book_id`` lets the engine
        pick the first available unit of that title.
        """
        if book_id is None and book_copy_id is None:
            raise CirculationError("Either book_id or book_copy_id is required")
        duration = self.settings.default_loan_period_days if duration_days is None else duration_days
        if duration <= 0:
            raise CirculationError("Loan duration must be at least one day")
        now = now or utcnow()

        with atomic(self.db):
            standing = get_member(member_id, self.db, for_update=True)
            if standing.has_active_holds:
                logger.warning("Loan refused for member %s: %d active holds", member_id, standing.active_hold_count)
                raise IneligibleMember("Cannot create loan. Member account has active holds")
            if standing.at_borrowing_limit:
                logger.warning("Loan refused for member %s: limit of %d reached", member_id, standing.max_borrowed_books)
                raise LimitExceeded(
                    f"Member has reached the maximum limit of {standing.max_borrowed_books} borrowed books"
                )

            unit = self._select_unit(book_id, book_copy_id)
            loan = Loan(
                member_id=member_id,
                book_copy_id=unit.id,
                borrow_datetime=now,
                due_datetime=now + timedelta(days=duration),
                status=LoanStatus.ONGOING.value,
                renewal_count=0,
            )
            self.db.add(loan)
            set_unit_status(unit.id, CopyStatus.ON_LOAN, self.db)
            try:
                self.db.flush()
            except IntegrityError as e:
                # another open loan claimed this unit first
                raise NoAvailableUnit(f"Book copy {unit.id} is already on loan") from e
            recount_availability(unit.book_id, self.db)
            fulfilled = self._fulfil_reservation(member_id, unit.book_id)

        book = unit.book
        logger.info("Loan %s created: member %s, copy %s, due %s", loan.id, member_id, unit.id, loan.due_datetime)
        self.dispatcher.notify_member(
            member_id,
            NotificationKind.LOAN_CREATED,
            "Book Borrowed Successfully",
            f'You have successfully borrowed "{book.title}" by {book.author}. '
            f"Please return it by {loan.due_datetime:%Y-%m-%d}.",
            payload={"loan_id": loan.id, "book_id": book.id, "book_title": book.title, "due_date": loan.due_datetime},
            loan_id=loan.id,
        )
        self.dispatcher.notify_staff(
            NotificationKind.ADMIN_BOOK_BORROWED,
            "Book Borrowed",
            f'Member {member_id} borrowed "{book.title}" by {book.author}. Due {loan.due_datetime:%Y-%m-%d}.',
            payload={"loan_id": loan.id, "member_id": member_id, "book_title": book.title},
        )
        self.dispatcher.audit(
            actor_id,
            AuditAction.CREATE_LOAN,
            {"loan_id": loan.id, "member_id": member_id, "book_copy_id": unit.id, "book_title": book.title,
             "borrow_datetime": loan.borrow_datetime, "due_datetime": loan.due_datetime,
             "reservation_id": fulfilled.id if fulfilled else None},
        )
        return loan

    def return_loan(self, loan_id: int, actor_id: Optional[int], now: Optional[datetime] = None) -> ReturnResult:
        """Close an ongoing or overdue loan and free its unit.

        A late return charges ``days_overdue * fine_per_day`` against the loan unless a
        fine for this loan already exists.
        """
        now = now or utcnow()
        fine = None
        with atomic(self.db):
            loan = self.get_loan(loan_id, for_update=True)
            if loan.status == LoanStatus.RETURNED.value:
                raise AlreadyReturned(f"Loan {loan.id} has already been returned")
            was_flagged_overdue = loan.status == LoanStatus.OVERDUE.value
            is_overdue = now > loan.due_datetime
            days_overdue = days_late(loan.due_datetime, now)

            loan.return_datetime = now
            loan.status = LoanStatus.RETURNED.value
            self.db.add(loan)
            unit = set_unit_status(loan.book_copy_id, CopyStatus.AVAILABLE, self.db)
            recount_availability(unit.book_id, self.db)

            if is_overdue and not self.fines.has_fine_for_loan(loan.id):
                amount = self.fines.calculate_overdue_fine(days_overdue)
                if amount > 0:
                    fine = self.fines._create_fine(
                        loan.member_id,
                        amount,
                        f"Overdue fine: {days_overdue} day(s) late",
                        actor_id,
                        loan_id=loan.id,
                        now=now,
                    )

        book = unit.book
        logger.info("Loan %s returned (overdue=%s, fine=%s)", loan.id, is_overdue, fine.id if fine else None)
        if is_overdue:
            fine_text = f" A fine of {fine.currency} {fine.amount} has been applied." if fine else ""
            self.dispatcher.notify_member(
                loan.member_id,
                NotificationKind.LOAN_RETURNED_OVERDUE,
                "Book Returned Late",
                f'You have returned "{book.title}" {days_overdue} day(s) after the due date.{fine_text}',
                priority="high",
                payload={"loan_id": loan.id, "book_title": book.title, "days_overdue": days_overdue,
                         "fine_id": fine.id if fine else None},
                loan_id=loan.id,
            )
            self.dispatcher.notify_staff(
                NotificationKind.ADMIN_LATE_RETURN,
                "Late Return",
                f'Member {loan.member_id} returned "{book.title}" {days_overdue} day(s) late.',
                priority="normal",
                payload={"loan_id": loan.id, "member_id": loan.member_id, "days_overdue": days_overdue,
                         "fine_amount": fine.amount if fine else None},
            )
        else:
            self.dispatcher.notify_member(
                loan.member_id,
                NotificationKind.LOAN_RETURNED,
                "Book Returned Successfully",
                f'Thank you for returning "{book.title}" on time.',
                payload={"loan_id": loan.id, "book_title": book.title},
                loan_id=loan.id,
            )
            self.dispatcher.notify_staff(
                NotificationKind.ADMIN_BOOK_RETURNED,
                "Book Returned",
                f'Member {loan.member_id} returned "{book.title}".',
                payload={"loan_id": loan.id, "member_id": loan.member_id},
            )
        if fine:
            self.fines.announce_fine_charged(fine, actor_id, action=AuditAction.CREATE_FINE)
        self.dispatcher.audit(
            actor_id,
            AuditAction.RETURN_LOAN,
            {"loan_id": loan.id, "return_datetime": now, "is_overdue": is_overdue,
             "was_flagged_overdue": was_flagged_overdue, "days_overdue": days_overdue,
             "fine_id": fine.id if fine else None},
        )
        return ReturnResult(loan=loan, fine=fine, is_overdue=is_overdue, days_overdue=days_overdue)

    def renew_loan(self, loan_id: int, actor_id: Optional[int], now: Optional[datetime] = None) -> Loan:
        """Push the due date out by one loan period. There is no cap on renewals."""
        now = now or utcnow()
        with atomic(self.db):
            loan = self.get_loan(loan_id, for_update=True)
            if loan.status != LoanStatus.ONGOING.value:
                raise NotRenewable("Only ongoing loans can be renewed")
            book_id = get_unit(loan.book_copy_id, self.db).book_id
            if self.active_reservation_count(book_id, now) > 0:
                raise NotRenewable("Cannot renew: this book has active reservations")
            old_due = loan.due_datetime
            loan.due_datetime = old_due + timedelta(days=self.settings.default_loan_period_days)
            loan.renewal_count = (loan.renewal_count or 0) + 1
            self.db.add(loan)

        logger.info("Loan %s renewed until %s (renewal %d)", loan.id, loan.due_datetime, loan.renewal_count)
        self.dispatcher.notify_member(
            loan.member_id,
            NotificationKind.LOAN_RENEWED,
            "Loan Renewed",
            f"Your loan has been renewed. New due date: {loan.due_datetime:%Y-%m-%d}.",
            payload={"loan_id": loan.id, "due_date": loan.due_datetime, "renewal_count": loan.renewal_count},
            loan_id=loan.id,
        )
        self.dispatcher.audit(
            actor_id,
            AuditAction.RENEW_LOAN,
            {"loan_id": loan.id, "old_due_date": old_due, "new_due_date": loan.due_datetime,
             "renewal_count": loan.renewal_count},
        )
        return loan

    # --- reservations ---
    def reserve_title(
        self, member_id: int, book_id: int, actor_id: Optional[int] = None, now: Optional[datetime] = None
    ) -> Reservation:
        now = now or utcnow()
        with atomic(self.db):
            get_member_by_id(member_id, self.db)
            get_book(book_id, self.db)
            existing = (
                self.db.query(Reservation)
                .filter(
                    Reservation.member_id == member_id,
                    Reservation.book_id == book_id,
                    Reservation.status == ReservationStatus.ACTIVE.value,
                    Reservation.expires_at > now,
                )
                .first()
            )
            if existing:
                raise StateConflictError("Member already has an active reservation for this title")
            reservation = Reservation(
                member_id=member_id,
                book_id=book_id,
                status=ReservationStatus.ACTIVE.value,
                created_at=now,
                expires_at=now + timedelta(days=self.settings.reservation_expiry_days),
            )
            self.db.add(reservation)
            self.db.flush()

        logger.info("Reservation %s: member %s reserved book %s", reservation.id, member_id, book_id)
        self.dispatcher.audit(
            actor_id,
            AuditAction.CREATE_RESERVATION,
            {"reservation_id": reservation.id, "member_id": member_id, "book_id": book_id,
             "expires_at": reservation.expires_at},
        )
        return reservation

    def cancel_reservation(self, reservation_id: int, actor_id: Optional[int] = None) -> Reservation:
        with atomic(self.db):
            reservation = self.get_reservation(reservation_id)
            if reservation.status != ReservationStatus.ACTIVE.value:
                raise NotActive(f"Reservation {reservation.id} is not active")
            reservation.status = ReservationStatus.CANCELLED.value
            self.db.add(reservation)

        self.dispatcher.audit(
            actor_id,
            AuditAction.CANCEL_RESERVATION,
            {"reservation_id": reservation.id, "member_id": reservation.member_id, "book_id": reservation.book_id},
        )
        return reservation

    # --- digital items ---
    def authorize_download(self, member_id: int, book_id: int, actor_id: Optional[int] = None) -> Book:
        with atomic(self.db):
            standing = get_member(member_id, self.db)
            if standing.has_active_holds:
                logger.warning("Download refused for member %s: active holds", member_id)
                raise IneligibleMember("Cannot download. Member account has active holds")
            book = get_book(book_id, self.db)
            if book.book_type != BookType.ONLINE.value:
                raise NotDownloadable(f"Book {book.id} is not an online book")
            book.download_count = (book.download_count or 0) + 1
            self.db.add(book)

        self.dispatcher.audit(
            actor_id,
            AuditAction.DOWNLOAD_BOOK,
            {"book_id": book.id, "member_id": member_id, "title": book.title},
        )
        return book

    # --- helpers (inside the caller's transaction) ---
    def _select_unit(self, book_id: Optional[int], book_copy_id: Optional[int]):
        if book_copy_id is not None:
            unit = get_unit(book_copy_id, self.db, for_update=True)
            if book_id is not None and unit.book_id != book_id:
                raise CirculationError(f"Book copy {unit.id} does not belong to book {book_id}")
            if unit.status != CopyStatus.AVAILABLE.value:
                raise NoAvailableUnit(f"Book copy is not available (current status: {unit.status})")
            return unit
        book = get_book(book_id, self.db)
        if book.book_type == BookType.ONLINE.value:
            raise NoAvailableUnit("Online books are not lent; request download access instead")
        unit = first_available_unit(book.id, self.db)
        if unit is None:
            raise NoAvailableUnit(f'No available copy of "{book.title}"')
        return unit

    def _fulfil_reservation(self, member_id: int, book_id: int) -> Optional[Reservation]:
        reservation = (
            self.db.query(Reservation)
            .filter(
                Reservation.member_id == member_id,
                Reservation.book_id == book_id,
                Reservation.status == ReservationStatus.ACTIVE.value,
            )
            .order_by(Reservation.created_at)
            .first()
        )
        if reservation:
            reservation.status = ReservationStatus.FULFILLED.value
            self.db.add(reservation)
        return reservation
