"""Best-effort notification and audit writes.

Engines call the dispatcher only after their own transaction has committed. Each
write runs in a fresh session from ``session_factory`` so it can neither see nor
roll back the engine's work, and every failure is caught here: logged, recorded as
a SYSTEM_ERROR audit entry where possible, and never re-raised to the caller.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from database import SessionLocal
from errors import NotFound
from models import AuditLog, Member, Notification, User, UserRole, utcnow

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    CREATE_LOAN = "CREATE_LOAN"
    RETURN_LOAN = "RETURN_LOAN"
    RENEW_LOAN = "RENEW_LOAN"
    MARK_OVERDUE = "MARK_OVERDUE"
    CREATE_FINE = "CREATE_FINE"
    CHARGE_FINE = "CHARGE_FINE"
    PAY_FINE = "PAY_FINE"
    WAIVE_FINE = "WAIVE_FINE"
    PLACE_HOLD = "PLACE_HOLD"
    REMOVE_HOLD = "REMOVE_HOLD"
    CREATE_RESERVATION = "CREATE_RESERVATION"
    CANCEL_RESERVATION = "CANCEL_RESERVATION"
    DOWNLOAD_BOOK = "DOWNLOAD_BOOK"
    SEND_DUE_REMINDERS = "SEND_DUE_REMINDERS"
    SEND_OVERDUE_WARNINGS = "SEND_OVERDUE_WARNINGS"
    CREATE_NOTIFICATION = "CREATE_NOTIFICATION"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class NotificationKind(str, Enum):
    LOAN_CREATED = "LOAN_CREATED"
    LOAN_RETURNED = "LOAN_RETURNED"
    LOAN_RETURNED_OVERDUE = "LOAN_RETURNED_OVERDUE"
    LOAN_RENEWED = "LOAN_RENEWED"
    DUE_REMINDER = "DUE_REMINDER"
    OVERDUE_WARNING = "OVERDUE_WARNING"
    FINE_CHARGED = "FINE_CHARGED"
    FINE_PAID = "FINE_PAID"
    FINE_WAIVED = "FINE_WAIVED"
    HOLD_PLACED = "HOLD_PLACED"
    HOLD_REMOVED = "HOLD_REMOVED"
    # staff-facing
    ADMIN_BOOK_BORROWED = "ADMIN_BOOK_BORROWED"
    ADMIN_BOOK_RETURNED = "ADMIN_BOOK_RETURNED"
    ADMIN_LATE_RETURN = "ADMIN_LATE_RETURN"
    ADMIN_OVERDUE_DIGEST = "ADMIN_OVERDUE_DIGEST"
    ADMIN_FINE_CHARGED = "ADMIN_FINE_CHARGED"
    ADMIN_FINE_PAID = "ADMIN_FINE_PAID"
    ADMIN_HOLD_PLACED = "ADMIN_HOLD_PLACED"


STAFF_ROLES = (UserRole.ADMIN.value, UserRole.LIBRARIAN.value)


class SideEffectDispatcher:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def notify(
        self,
        user_id: int,
        kind: NotificationKind,
        title: str,
        message: str,
        priority: str = "normal",
        payload: Optional[Dict[str, Any]] = None,
        loan_id: Optional[int] = None,
        sent_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """Store an in-app notification for one user. Returns its id, or None on failure."""
        db = self.session_factory()
        try:
            notification = Notification(
                user_id=user_id,
                loan_id=loan_id,
                type=NotificationKind(kind).value,
                title=title,
                message=message,
                priority=priority,
                payload=jsonable_encoder(payload) if payload is not None else None,
                sent_at=sent_at or utcnow(),
            )
            db.add(notification)
            db.commit()
            logger.debug("Notification %s (%s) sent to user %s", notification.id, notification.type, user_id)
            return notification.id
        except Exception as e:
            db.rollback()
            logger.exception("Failed to send %s notification to user %s", kind, user_id)
            self._record_failure("notify", e, {"user_id": user_id, "kind": str(kind), "loan_id": loan_id})
            return None
        finally:
            db.close()

    def notify_member(self, member_id: int, kind: NotificationKind, title: str, message: str, **kwargs) -> Optional[int]:
        user_id = self._member_user_id(member_id)
        if user_id is None:
            return None
        return self.notify(user_id, kind, title, message, **kwargs)

    def notify_staff(
        self,
        kind: NotificationKind,
        title: str,
        message: str,
        priority: str = "low",
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Fan a notification out to every active admin and librarian. Returns how many were stored."""
        sent = 0
        for user_id in self._staff_user_ids():
            if self.notify(user_id, kind, title, message, priority=priority, payload=payload) is not None:
                sent += 1
        return sent

    def audit(
        self,
        actor_id: Optional[int],
        action: AuditAction,
        details: Optional[Dict[str, Any]] = None,
        level: str = "INFO",
    ) -> bool:
        db = self.session_factory()
        try:
            db.add(
                AuditLog(
                    user_id=actor_id,
                    level=level,
                    action=AuditAction(action).value,
                    details=jsonable_encoder(details or {}),
                )
            )
            db.commit()
            return True
        except Exception as e:
            db.rollback()
            logger.exception("Failed to write %s audit record", action)
            if action != AuditAction.SYSTEM_ERROR:
                self._record_failure("audit", e, {"action": str(action), "actor_id": actor_id})
            return False
        finally:
            db.close()

    def _record_failure(self, operation: str, error: Exception, context: Dict[str, Any]) -> None:
        details = {"operation": operation, "error": str(error)}
        details.update(context)
        self.audit(None, AuditAction.SYSTEM_ERROR, details, level="ERROR")

    def _member_user_id(self, member_id: int) -> Optional[int]:
        db = self.session_factory()
        try:
            member = db.query(Member).filter(Member.id == member_id).first()
            if member is None:
                logger.warning("Cannot notify member %s: member not found", member_id)
                return None
            return member.user_id
        except Exception as e:
            logger.exception("Failed to resolve user for member %s", member_id)
            self._record_failure("resolve_member", e, {"member_id": member_id})
            return None
        finally:
            db.close()

    def _staff_user_ids(self) -> List[int]:
        db = self.session_factory()
        try:
            rows = (
                db.query(User.id)
                .filter(User.role.in_(STAFF_ROLES), User.is_active.is_(True))
                .order_by(User.id)
                .all()
            )
            return [r.id for r in rows]
        except Exception as e:
            logger.exception("Failed to load staff recipients")
            self._record_failure("resolve_staff", e, {})
            return []
        finally:
            db.close()


# --- In-app inbox (request-scoped session, used by the API) ---
def list_notifications(user_id: int, db: Session, unread_only: bool = False, limit: int = 50) -> List[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read_at.is_(None))
    return query.order_by(Notification.sent_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count(user_id: int, db: Session) -> int:
    return db.query(Notification).filter(Notification.user_id == user_id, Notification.read_at.is_(None)).count()


def mark_read(notification_id: int, user_id: int, db: Session) -> Notification:
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )
    if not notification:
        raise NotFound("Notification", notification_id)
    if notification.read_at is None:
        notification.read_at = utcnow()
        notification.status = "read"
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_read(user_id: int, db: Session) -> int:
    now = utcnow()
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.read_at.is_(None))
        .update({Notification.read_at: now, Notification.status: "read"}, synchronize_session=False)
    )
    db.commit()
    return updated
