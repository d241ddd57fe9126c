import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from config import Settings, settings as default_settings
from database import atomic
from dispatcher import AuditAction, NotificationKind, SideEffectDispatcher
from errors import NotActive, NotFound
from members import count_active_holds, count_unresolved_fines, get_member_by_id
from models import Hold, HoldStatus, Loan, utcnow

logger = logging.getLogger(__name__)

CLEANUP_REASON = "all fines resolved"


def _append_note(existing: Optional[str], note: Optional[str]) -> Optional[str]:
    if not note:
        return existing
    return f"{existing}\n{note}" if existing else note


class HoldEngine:
    """Account holds: manual placement/removal and the fine-driven automatic cleanup."""

    def __init__(self, db: Session, dispatcher: SideEffectDispatcher, settings: Settings = None):
        self.db = db
        self.dispatcher = dispatcher
        self.settings = settings or default_settings

    # --- reads ---
    def get_hold(self, hold_id: int) -> Hold:
        hold = self.db.query(Hold).filter(Hold.id == hold_id).first()
        if not hold:
            raise NotFound("Hold", hold_id)
        return hold

    def member_holds(self, member_id: int, active_only: bool = True) -> List[Hold]:
        query = self.db.query(Hold).filter(Hold.member_id == member_id)
        if active_only:
            query = query.filter(Hold.status == HoldStatus.ACTIVE.value)
        return query.order_by(Hold.placed_at.desc(), Hold.id.desc()).all()

    def active_hold_count(self, member_id: int) -> int:
        return count_active_holds(member_id, self.db)

    def has_active_hold_for_loan(self, loan_id: int) -> bool:
        return (
            self.db.query(Hold)
            .filter(Hold.loan_id == loan_id, Hold.status == HoldStatus.ACTIVE.value)
            .first()
            is not None
        )

    # --- transitions ---
    def place_hold(
        self,
        member_id: int,
        reason: str,
        actor_id: Optional[int],
        loan_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Hold:
        with atomic(self.db):
            hold = self._create_hold(member_id, reason, actor_id, loan_id=loan_id, notes=notes)
        logger.info("Hold %s placed on member %s: %s", hold.id, member_id, reason)
        self.announce_hold_placed(hold, actor_id)
        return hold

    def remove_hold(self, hold_id: int, actor_id: Optional[int], notes: Optional[str] = None) -> Hold:
        with atomic(self.db):
            hold = self._remove(self.get_hold(hold_id), actor_id, notes)
        logger.info("Hold %s removed from member %s", hold.id, hold.member_id)
        self.announce_hold_removed(hold, actor_id)
        return hold

    def auto_cleanup_if_resolved(self, member_id: int, actor_id: Optional[int]) -> List[Hold]:
        """Remove every active hold once the member has no unresolved fines.

        Only runs when the member carries at least ``hold_cleanup_threshold`` active
        holds; below that, holds stay until staff remove them.
        """
        with atomic(self.db):
            removed = self._cleanup(member_id, actor_id)
        for hold in removed:
            self.announce_hold_removed(hold, actor_id)
        return removed

    # --- building blocks shared with the fine engine and escalation jobs (no commit) ---
    def _create_hold(
        self,
        member_id: int,
        reason: str,
        actor_id: Optional[int],
        loan_id: Optional[int] = None,
        notes: Optional[str] = None,
        now=None,
    ) -> Hold:
        get_member_by_id(member_id, self.db)
        if loan_id is not None and not self.db.query(Loan).filter(Loan.id == loan_id).first():
            raise NotFound("Loan", loan_id)
        hold = Hold(
            member_id=member_id,
            loan_id=loan_id,
            reason=reason,
            status=HoldStatus.ACTIVE.value,
            placed_by=actor_id,
            placed_at=now or utcnow(),
            notes=notes,
        )
        self.db.add(hold)
        self.db.flush()
        return hold

    def _remove(self, hold: Hold, actor_id: Optional[int], notes: Optional[str]) -> Hold:
        if hold.status != HoldStatus.ACTIVE.value:
            raise NotActive(f"Hold {hold.id} is not active")
        hold.status = HoldStatus.REMOVED.value
        hold.removed_at = utcnow()
        hold.removed_by = actor_id
        hold.notes = _append_note(hold.notes, notes)
        self.db.add(hold)
        return hold

    def _cleanup(self, member_id: int, actor_id: Optional[int]) -> List[Hold]:
        self.db.flush()
        if count_active_holds(member_id, self.db) < self.settings.hold_cleanup_threshold:
            return []
        if count_unresolved_fines(member_id, self.db) > 0:
            return []
        removed = [self._remove(hold, actor_id, CLEANUP_REASON) for hold in self.member_holds(member_id)]
        self.db.flush()
        logger.info("Cleared %d holds for member %s: %s", len(removed), member_id, CLEANUP_REASON)
        return removed

    # --- side effects (after commit) ---
    def announce_hold_placed(self, hold: Hold, actor_id: Optional[int]) -> None:
        self.dispatcher.notify_member(
            hold.member_id,
            NotificationKind.HOLD_PLACED,
            "Account Hold Placed",
            f"A hold has been placed on your account. Reason: {hold.reason}. "
            "Please contact the library to resolve this issue.",
            priority="urgent",
            payload={"hold_id": hold.id, "reason": hold.reason, "loan_id": hold.loan_id},
        )
        self.dispatcher.notify_staff(
            NotificationKind.ADMIN_HOLD_PLACED,
            "Account Hold Placed",
            f"Hold placed on member {hold.member_id}. Reason: {hold.reason}",
            priority="normal",
            payload={"hold_id": hold.id, "member_id": hold.member_id, "reason": hold.reason},
        )
        self.dispatcher.audit(
            actor_id,
            AuditAction.PLACE_HOLD,
            {"hold_id": hold.id, "member_id": hold.member_id, "reason": hold.reason, "loan_id": hold.loan_id},
        )

    def announce_hold_removed(self, hold: Hold, actor_id: Optional[int]) -> None:
        self.dispatcher.notify_member(
            hold.member_id,
            NotificationKind.HOLD_REMOVED,
            "Account Hold Removed",
            "A hold on your account has been removed. You can now borrow books again.",
            payload={"hold_id": hold.id},
        )
        self.dispatcher.audit(actor_id, AuditAction.REMOVE_HOLD, {"hold_id": hold.id, "member_id": hold.member_id})
