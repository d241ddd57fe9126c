import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from config import Settings, settings as default_settings
from database import atomic
from dispatcher import AuditAction, NotificationKind, SideEffectDispatcher
from errors import AlreadyPaid, AlreadyWaived, InvalidAmount, NotFound
from holds import HoldEngine, _append_note
from members import get_member_by_id
from models import UNRESOLVED_FINE_STATUSES, Fine, FineStatus, Hold, Loan, utcnow

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce int/float/str/Decimal to a two-place Decimal."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class FineEngine:
    def __init__(
        self,
        db: Session,
        dispatcher: SideEffectDispatcher,
        holds: Optional[HoldEngine] = None,
        settings: Settings = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.settings = settings or default_settings
        self.holds = holds or HoldEngine(db, dispatcher, self.settings)

    def calculate_overdue_fine(self, days_overdue) -> Decimal:
        """Overdue charge for ``days_overdue`` days at the configured daily rate. Negative day counts charge nothing."""
        days = max(0, int(days_overdue))
        return to_money(Decimal(days) * self.settings.fine_per_day)

    # --- reads ---
    def get_fine(self, fine_id: int) -> Fine:
        fine = self.db.query(Fine).filter(Fine.id == fine_id).first()
        if not fine:
            raise NotFound("Fine", fine_id)
        return fine

    def member_fines(self, member_id: int, unpaid_only: bool = False) -> List[Fine]:
        query = self.db.query(Fine).filter(Fine.member_id == member_id)
        if unpaid_only:
            query = query.filter(Fine.status.in_(UNRESOLVED_FINE_STATUSES))
        return query.order_by(Fine.charged_at.desc(), Fine.id.desc()).all()

    def member_total_unpaid(self, member_id: int) -> Decimal:
        total = Decimal("0.00")
        for fine in self.member_fines(member_id, unpaid_only=True):
            total += to_money(fine.amount) - to_money(fine.paid_amount or 0)
        return to_money(total)

    def has_fine_for_loan(self, loan_id: int) -> bool:
        return self.db.query(Fine).filter(Fine.loan_id == loan_id).first() is not None

    def has_unresolved_fine_for_loan(self, loan_id: int) -> bool:
        return (
            self.db.query(Fine)
            .filter(Fine.loan_id == loan_id, Fine.status.in_(UNRESOLVED_FINE_STATUSES))
            .first()
            is not None
        )

    # --- transitions ---
    def charge_fine(
        self,
        member_id: int,
        amount,
        reason: str,
        actor_id: Optional[int],
        loan_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Fine:
        with atomic(self.db):
            fine = self._create_fine(member_id, amount, reason, actor_id, loan_id=loan_id, notes=notes)
        logger.info("Fine %s of %s charged to member %s", fine.id, fine.amount, member_id)
        self.announce_fine_charged(fine, actor_id)
        return fine

    def pay_fine(self, fine_id: int, amount, actor_id: Optional[int]) -> Fine:
        """Apply a payment. Reaching ``paid`` runs the hold cleanup check in the same transaction."""
        cleared: List[Hold] = []
        with atomic(self.db):
            fine = self.get_fine(fine_id)
            if fine.status == FineStatus.PAID.value:
                raise AlreadyPaid(f"Fine {fine.id} is already paid")
            if fine.status == FineStatus.WAIVED.value:
                raise AlreadyWaived(f"Fine {fine.id} has been waived")
            payment = to_money(amount)
            if payment <= 0:
                raise InvalidAmount("Payment amount must be greater than 0")
            outstanding = to_money(fine.amount) - to_money(fine.paid_amount or 0)
            if payment > outstanding:
                raise InvalidAmount(f"Payment exceeds the outstanding balance of {outstanding}")

            paid_amount = to_money(fine.paid_amount or 0) + payment
            fine.paid_amount = paid_amount
            if paid_amount >= to_money(fine.amount):
                fine.status = FineStatus.PAID.value
                fine.paid_at = utcnow()
            else:
                fine.status = FineStatus.PARTIALLY_PAID.value
            self.db.add(fine)
            if fine.status == FineStatus.PAID.value:
                cleared = self.holds._cleanup(fine.member_id, actor_id)

        logger.info("Payment of %s applied to fine %s (%s)", payment, fine.id, fine.status)
        self.dispatcher.notify_member(
            fine.member_id,
            NotificationKind.FINE_PAID,
            "Payment Received",
            f"Payment of {fine.currency} {payment} received. "
            + ("Your fine is fully paid." if fine.status == FineStatus.PAID.value
               else f"Remaining balance: {fine.currency} {to_money(fine.amount) - paid_amount}."),
            payload={"fine_id": fine.id, "payment": payment, "status": fine.status},
        )
        self.dispatcher.notify_staff(
            NotificationKind.ADMIN_FINE_PAID,
            "Fine Payment",
            f"Member {fine.member_id} paid {fine.currency} {payment} towards fine {fine.id}",
            payload={"fine_id": fine.id, "member_id": fine.member_id, "payment": payment},
        )
        self.dispatcher.audit(
            actor_id,
            AuditAction.PAY_FINE,
            {"fine_id": fine.id, "member_id": fine.member_id, "payment": payment,
             "paid_amount": fine.paid_amount, "status": fine.status},
        )
        for hold in cleared:
            self.holds.announce_hold_removed(hold, actor_id)
        return fine

    def waive_fine(self, fine_id: int, actor_id: Optional[int], notes: Optional[str] = None) -> Fine:
        with atomic(self.db):
            fine = self.get_fine(fine_id)
            if fine.status == FineStatus.WAIVED.value:
                raise AlreadyWaived(f"Fine {fine.id} is already waived")
            fine.status = FineStatus.WAIVED.value
            fine.waived_by = actor_id
            fine.waived_at = utcnow()
            fine.notes = _append_note(fine.notes, notes)
            self.db.add(fine)
            cleared = self.holds._cleanup(fine.member_id, actor_id)

        logger.info("Fine %s waived by %s", fine.id, actor_id)
        self.dispatcher.notify_member(
            fine.member_id,
            NotificationKind.FINE_WAIVED,
            "Fine Waived",
            f"Your fine of {fine.currency} {fine.amount} has been waived.",
            payload={"fine_id": fine.id},
        )
        self.dispatcher.audit(
            actor_id,
            AuditAction.WAIVE_FINE,
            {"fine_id": fine.id, "member_id": fine.member_id, "amount": fine.amount, "notes": notes},
        )
        for hold in cleared:
            self.holds.announce_hold_removed(hold, actor_id)
        return fine

    # --- building blocks (no commit) ---
    def _create_fine(
        self,
        member_id: int,
        amount,
        reason: str,
        actor_id: Optional[int],
        loan_id: Optional[int] = None,
        notes: Optional[str] = None,
        now=None,
    ) -> Fine:
        value = to_money(amount)
        if value <= 0:
            raise InvalidAmount("Fine amount must be greater than 0")
        get_member_by_id(member_id, self.db)
        if loan_id is not None and not self.db.query(Loan).filter(Loan.id == loan_id).first():
            raise NotFound("Loan", loan_id)
        fine = Fine(
            member_id=member_id,
            loan_id=loan_id,
            amount=value,
            currency=self.settings.fine_currency,
            status=FineStatus.UNPAID.value,
            reason=reason,
            charged_by=actor_id,
            charged_at=now or utcnow(),
            notes=notes,
        )
        self.db.add(fine)
        self.db.flush()
        return fine

    # --- side effects (after commit) ---
    def announce_fine_charged(self, fine: Fine, actor_id: Optional[int], action: AuditAction = AuditAction.CHARGE_FINE) -> None:
        self.dispatcher.notify_member(
            fine.member_id,
            NotificationKind.FINE_CHARGED,
            "Fine Charged",
            f"A fine of {fine.currency} {fine.amount} has been charged to your account. Reason: {fine.reason}",
            priority="high",
            payload={"fine_id": fine.id, "amount": fine.amount, "loan_id": fine.loan_id},
            loan_id=fine.loan_id,
        )
        self.dispatcher.notify_staff(
            NotificationKind.ADMIN_FINE_CHARGED,
            "Fine Charged",
            f"Fine of {fine.currency} {fine.amount} charged to member {fine.member_id}. Reason: {fine.reason}",
            payload={"fine_id": fine.id, "member_id": fine.member_id, "amount": fine.amount},
        )
        self.dispatcher.audit(
            actor_id,
            action,
            {"fine_id": fine.id, "member_id": fine.member_id, "amount": fine.amount,
             "loan_id": fine.loan_id, "reason": fine.reason},
        )
