"""Member directory: borrowing limit and live counts used for eligibility checks."""
from dataclasses import dataclass

from sqlalchemy.orm import Session

from errors import NotFound
from models import (
    OPEN_LOAN_STATUSES,
    UNRESOLVED_FINE_STATUSES,
    Fine,
    Hold,
    HoldStatus,
    Loan,
    Member,
)


@dataclass
class MemberStanding:
    member_id: int
    user_id: int
    max_borrowed_books: int
    open_loan_count: int
    active_hold_count: int
    unpaid_fine_count: int

    @property
    def has_active_holds(self) -> bool:
        return self.active_hold_count > 0

    @property
    def at_borrowing_limit(self) -> bool:
        return self.open_loan_count >= self.max_borrowed_books


def get_member_by_id(member_id: int, db: Session, for_update: bool = False) -> Member:
    query = db.query(Member).filter(Member.id == member_id)
    if for_update:
        query = query.with_for_update()
    member = query.first()
    if not member:
        raise NotFound("Member", member_id)
    return member


def count_open_loans(member_id: int, db: Session) -> int:
    return db.query(Loan).filter(Loan.member_id == member_id, Loan.status.in_(OPEN_LOAN_STATUSES)).count()


def count_active_holds(member_id: int, db: Session) -> int:
    return db.query(Hold).filter(Hold.member_id == member_id, Hold.status == HoldStatus.ACTIVE.value).count()


def count_unresolved_fines(member_id: int, db: Session) -> int:
    return db.query(Fine).filter(Fine.member_id == member_id, Fine.status.in_(UNRESOLVED_FINE_STATUSES)).count()


def get_member(member_id: int, db: Session, for_update: bool = False) -> MemberStanding:
    """Live standing of a member.

    With ``for_update`` the member row stays locked until the caller's transaction ends,
    so concurrent borrows for one member are counted one after the other.
    """
    member = get_member_by_id(member_id, db, for_update=for_update)
    return MemberStanding(
        member_id=member.id,
        user_id=member.user_id,
        max_borrowed_books=member.max_borrowed_books,
        open_loan_count=count_open_loans(member.id, db),
        active_hold_count=count_active_holds(member.id, db),
        unpaid_fine_count=count_unresolved_fines(member.id, db),
    )
