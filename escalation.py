"""Time-driven escalation procedures.

Each procedure can run at any cadence, in any order, any number of times. Before
creating anything it checks for an existing record (recent notification, active
hold, unresolved fine) for the same loan, and each candidate loan is handled in
its own transaction so one failure never stops the rest of the run.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, exists, or_
from sqlalchemy.orm import Session

from config import Settings, settings as default_settings
from database import atomic
from dispatcher import AuditAction, NotificationKind, SideEffectDispatcher
from fines import FineEngine
from holds import HoldEngine
from models import Fine, Hold, HoldStatus, Loan, LoanStatus, Member, Notification, utcnow

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

# job name -> EscalationScheduler method; shared by the cron wiring and the HTTP trigger
JOBS = {
    "due-reminders": "send_due_reminders",
    "overdue-warnings": "send_overdue_warnings",
    "overdue-holds": "auto_place_overdue_holds",
    "overdue-fines": "auto_charge_overdue_fines",
}


def whole_days_overdue(due: datetime, now: datetime) -> int:
    """Completed days past due, rounded down."""
    return int((now - due).total_seconds() // SECONDS_PER_DAY)


class EscalationScheduler:
    def __init__(
        self,
        db: Session,
        dispatcher: SideEffectDispatcher,
        settings: Settings = None,
        holds: Optional[HoldEngine] = None,
        fines: Optional[FineEngine] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.settings = settings or default_settings
        self.holds = holds or HoldEngine(db, dispatcher, self.settings)
        self.fines = fines or FineEngine(db, dispatcher, holds=self.holds, settings=self.settings)

    @property
    def actor_id(self) -> Optional[int]:
        return self.settings.system_actor_id

    def send_due_reminders(self, now: Optional[datetime] = None) -> List[int]:
        """Remind members about ongoing loans due within the reminder window.

        Returns the ids of the notifications sent.
        """
        now = now or utcnow()
        horizon = now + timedelta(days=self.settings.due_reminder_window_days)
        loans = (
            self.db.query(Loan)
            .filter(
                Loan.status == LoanStatus.ONGOING.value,
                Loan.due_datetime >= now,
                Loan.due_datetime <= horizon,
            )
            .order_by(Loan.due_datetime, Loan.id)
            .all()
        )
        sent = []
        for loan in loans:
            try:
                user_id = self._member_user_id(loan.member_id)
                if self._recently_notified(user_id, NotificationKind.DUE_REMINDER, loan.id, now):
                    continue
                book = loan.book_copy.book
                notification_id = self.dispatcher.notify(
                    user_id,
                    NotificationKind.DUE_REMINDER,
                    "Book Due Soon",
                    f'Your borrowed book "{book.title}" is due on {loan.due_datetime:%Y-%m-%d}. '
                    "Please return it on time to avoid fines.",
                    payload={"loan_id": loan.id, "book_id": book.id, "due_date": loan.due_datetime},
                    loan_id=loan.id,
                    sent_at=now,
                )
                if notification_id is not None:
                    sent.append(notification_id)
            except Exception as e:
                self._candidate_failed("send_due_reminders", loan.id, e)

        logger.info("Due reminders: %d sent for %d loans due soon", len(sent), len(loans))
        self.dispatcher.audit(
            self.actor_id,
            AuditAction.SEND_DUE_REMINDERS,
            {"count": len(sent), "loan_ids": [loan.id for loan in loans]},
        )
        return sent

    def send_overdue_warnings(self, now: Optional[datetime] = None) -> List[Loan]:
        """Flip past-due ongoing loans to overdue, warn each member, then send staff one digest.

        Overdue loans whose member was never warned are picked up again, so a warning
        that failed on an earlier run goes out on the next one.

        Returns the loans that were marked overdue in this run.
        """
        now = now or utcnow()
        never_warned = ~exists().where(
            Notification.loan_id == Loan.id,
            Notification.type == NotificationKind.OVERDUE_WARNING.value,
        )
        candidate_ids = [
            row.id
            for row in self.db.query(Loan.id)
            .filter(
                or_(
                    and_(Loan.status == LoanStatus.ONGOING.value, Loan.due_datetime < now),
                    and_(Loan.status == LoanStatus.OVERDUE.value, Loan.return_datetime.is_(None), never_warned),
                )
            )
            .order_by(Loan.id)
            .all()
        ]
        marked = []
        digest = []
        for loan_id in candidate_ids:
            try:
                with atomic(self.db):
                    loan = self.db.query(Loan).filter(Loan.id == loan_id).with_for_update().first()
                    if loan is None or loan.return_datetime is not None:
                        continue
                    flipped = loan.status == LoanStatus.ONGOING.value and loan.due_datetime < now
                    if not flipped and loan.status != LoanStatus.OVERDUE.value:
                        continue
                    # a failed lookup rolls back the flip and the loan stays ongoing
                    user_id = self._member_user_id(loan.member_id)
                    book = loan.book_copy.book
                    already_warned = self._recently_notified(user_id, NotificationKind.OVERDUE_WARNING, loan.id, now)
                    if flipped:
                        loan.status = LoanStatus.OVERDUE.value
                        self.db.add(loan)
                days = whole_days_overdue(loan.due_datetime, now)
                if flipped:
                    marked.append(loan)
                    self.dispatcher.audit(
                        self.actor_id,
                        AuditAction.MARK_OVERDUE,
                        {"loan_id": loan.id, "member_id": loan.member_id, "days_overdue": days},
                    )
                if already_warned:
                    continue
                notification_id = self.dispatcher.notify(
                    user_id,
                    NotificationKind.OVERDUE_WARNING,
                    "Overdue Book",
                    f'Your book "{book.title}" is {days} day(s) overdue. '
                    "Please return it immediately to avoid holds and fines.",
                    priority="high",
                    payload={"loan_id": loan.id, "book_id": book.id, "days_overdue": days},
                    loan_id=loan.id,
                    sent_at=now,
                )
                if notification_id is None:
                    continue
                digest.append({"loan_id": loan.id, "member_id": loan.member_id,
                               "book_title": book.title, "days_overdue": days})
            except Exception as e:
                self._candidate_failed("send_overdue_warnings", loan_id, e)

        if digest:
            lines = "\n".join(
                f'- Member {d["member_id"]}: "{d["book_title"]}" ({d["days_overdue"]} day(s) overdue)' for d in digest
            )
            self.dispatcher.notify_staff(
                NotificationKind.ADMIN_OVERDUE_DIGEST,
                f"{len(digest)} Overdue Book(s)",
                f"The following loans are now overdue:\n{lines}",
                priority="high",
                payload={"loans": digest},
            )
        logger.info("Overdue warnings: %d loans marked overdue, %d members warned", len(marked), len(digest))
        self.dispatcher.audit(
            self.actor_id,
            AuditAction.SEND_OVERDUE_WARNINGS,
            {"count": len(digest), "marked_overdue": [loan.id for loan in marked]},
        )
        return marked

    def auto_place_overdue_holds(self, now: Optional[datetime] = None) -> List[Hold]:
        """Place one hold per overdue loan past the grace period that has no active hold yet."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.settings.hold_grace_period_days)
        candidate_ids = [
            row.id
            for row in self.db.query(Loan.id)
            .filter(Loan.status == LoanStatus.OVERDUE.value, Loan.due_datetime < cutoff)
            .order_by(Loan.id)
            .all()
        ]
        placed = []
        for loan_id in candidate_ids:
            try:
                with atomic(self.db):
                    loan = self.db.query(Loan).filter(Loan.id == loan_id).with_for_update().first()
                    if loan is None or loan.status != LoanStatus.OVERDUE.value:
                        continue
                    if self.holds.has_active_hold_for_loan(loan.id):
                        continue
                    days = whole_days_overdue(loan.due_datetime, now)
                    hold = self.holds._create_hold(
                        loan.member_id,
                        f'Book "{loan.book_copy.book.title}" overdue by {days} days',
                        self.actor_id,
                        loan_id=loan.id,
                        notes="Automatically placed by system",
                        now=now,
                    )
                placed.append(hold)
                self.holds.announce_hold_placed(hold, self.actor_id)
            except Exception as e:
                self._candidate_failed("auto_place_overdue_holds", loan_id, e)

        logger.info("Auto holds: %d placed from %d candidate loans", len(placed), len(candidate_ids))
        self.dispatcher.audit(
            self.actor_id,
            AuditAction.PLACE_HOLD,
            {"type": "auto_overdue_hold", "count": len(placed), "loan_ids": [hold.loan_id for hold in placed]},
        )
        return placed

    def auto_charge_overdue_fines(self, now: Optional[datetime] = None) -> List[Fine]:
        """Charge one fine per open overdue loan that has no unpaid or partially paid fine."""
        now = now or utcnow()
        candidate_ids = [
            row.id
            for row in self.db.query(Loan.id)
            .filter(Loan.status == LoanStatus.OVERDUE.value, Loan.return_datetime.is_(None))
            .order_by(Loan.id)
            .all()
        ]
        charged = []
        for loan_id in candidate_ids:
            try:
                with atomic(self.db):
                    loan = self.db.query(Loan).filter(Loan.id == loan_id).with_for_update().first()
                    if loan is None or loan.status != LoanStatus.OVERDUE.value or loan.return_datetime is not None:
                        continue
                    days = whole_days_overdue(loan.due_datetime, now)
                    if days <= 0 or self.fines.has_unresolved_fine_for_loan(loan.id):
                        continue
                    fine = self.fines._create_fine(
                        loan.member_id,
                        self.fines.calculate_overdue_fine(days),
                        f'Overdue fine for "{loan.book_copy.book.title}" ({days} days)',
                        self.actor_id,
                        loan_id=loan.id,
                        notes="Automatically charged by system",
                        now=now,
                    )
                charged.append(fine)
                self.fines.announce_fine_charged(fine, self.actor_id)
            except Exception as e:
                self._candidate_failed("auto_charge_overdue_fines", loan_id, e)

        logger.info("Auto fines: %d charged from %d candidate loans", len(charged), len(candidate_ids))
        self.dispatcher.audit(
            self.actor_id,
            AuditAction.CHARGE_FINE,
            {"type": "auto_overdue_fine", "count": len(charged), "loan_ids": [fine.loan_id for fine in charged]},
        )
        return charged

    def run_job(self, name: str, now: Optional[datetime] = None) -> list:
        if name not in JOBS:
            raise KeyError(name)
        return getattr(self, JOBS[name])(now=now)

    def run_all(self, now: Optional[datetime] = None) -> Dict[str, Optional[int]]:
        """Run every procedure in cadence order. A failing job is logged and reported as None."""
        results = {}
        for name in JOBS:
            try:
                results[name] = len(self.run_job(name, now=now))
            except Exception as e:
                self.db.rollback()
                logger.exception("Escalation job %s failed", name)
                self.dispatcher.audit(
                    self.actor_id, AuditAction.SYSTEM_ERROR, {"job": name, "error": str(e)}, level="ERROR"
                )
                results[name] = None
        return results

    # --- helpers ---
    def _member_user_id(self, member_id: int) -> int:
        return self.db.query(Member.user_id).filter(Member.id == member_id).scalar()

    def _recently_notified(self, user_id: int, kind: NotificationKind, loan_id: int, now: datetime) -> bool:
        since = now - timedelta(hours=self.settings.notification_dedup_hours)
        return (
            self.db.query(Notification.id)
            .filter(
                Notification.user_id == user_id,
                Notification.type == kind.value,
                Notification.loan_id == loan_id,
                Notification.sent_at >= since,
            )
            .first()
            is not None
        )

    def _candidate_failed(self, job: str, loan_id: int, error: Exception) -> None:
        self.db.rollback()
        logger.exception("%s failed for loan %s", job, loan_id)
        self.dispatcher.audit(
            self.actor_id,
            AuditAction.SYSTEM_ERROR,
            {"job": job, "loan_id": loan_id, "error": str(error)},
            level="ERROR",
        )
