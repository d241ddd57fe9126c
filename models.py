from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from config import settings
from database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRole(str, Enum):
    ADMIN = "admin"
    LIBRARIAN = "librarian"
    MEMBER = "member"


class BookType(str, Enum):
    PHYSICAL = "physical"
    ONLINE = "online"


class CopyStatus(str, Enum):
    AVAILABLE = "available"
    ON_LOAN = "on_loan"
    UNAVAILABLE = "unavailable"


class LoanStatus(str, Enum):
    ONGOING = "ongoing"
    OVERDUE = "overdue"
    RETURNED = "returned"


OPEN_LOAN_STATUSES = (LoanStatus.ONGOING.value, LoanStatus.OVERDUE.value)


class FineStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    WAIVED = "waived"


UNRESOLVED_FINE_STATUSES = (FineStatus.UNPAID.value, FineStatus.PARTIALLY_PAID.value)


class HoldStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String)
    role = Column(String(20), default=UserRole.MEMBER.value, nullable=False)  # admin / librarian / member
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    full_name = Column(String, nullable=False, index=True)
    student_or_staff_id = Column(String(50), unique=True, nullable=True)
    max_borrowed_books = Column(Integer, nullable=False, default=lambda: settings.default_max_borrowed_books)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User")


class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(500), nullable=False, index=True)
    author = Column(String(255), nullable=False, index=True)
    isbn = Column(String(20), unique=True, index=True, nullable=True)
    book_type = Column(String(20), nullable=False, default=BookType.PHYSICAL.value)
    # Denormalized; rewritten by inventory.recount_availability after every unit status change
    total_copies = Column(Integer, nullable=False, default=0)
    available_copies = Column(Integer, nullable=False, default=0)
    download_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    copies = relationship("BookCopy", back_populates="book", order_by="BookCopy.id")


class BookCopy(Base):
    __tablename__ = "book_copies"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    barcode = Column(String(100), unique=True, nullable=False)
    status = Column(String(50), nullable=False, default=CopyStatus.AVAILABLE.value, index=True)
    created_at = Column(DateTime, default=utcnow)

    book = relationship("Book", back_populates="copies")


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    status = Column(String(50), nullable=False, default=ReservationStatus.ACTIVE.value)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)


class Loan(Base):
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    book_copy_id = Column(Integer, ForeignKey("book_copies.id"), nullable=False, index=True)
    borrow_datetime = Column(DateTime, nullable=False, default=utcnow)
    due_datetime = Column(DateTime, nullable=False, index=True)
    return_datetime = Column(DateTime, nullable=True)
    status = Column(String(50), nullable=False, default=LoanStatus.ONGOING.value, index=True)
    renewal_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    member = relationship("Member")
    book_copy = relationship("BookCopy")

    __table_args__ = (
        # At most one open loan per unit
        Index(
            "uq_loans_open_copy",
            "book_copy_id",
            unique=True,
            postgresql_where=text("status IN ('ongoing', 'overdue')"),
            sqlite_where=text("status IN ('ongoing', 'overdue')"),
        ),
    )


class Fine(Base):
    __tablename__ = "fines"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    paid_amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(10), nullable=False, default="USD")
    status = Column(String(50), nullable=False, default=FineStatus.UNPAID.value, index=True)
    reason = Column(String(500), nullable=False)
    charged_by = Column(Integer, nullable=True)
    charged_at = Column(DateTime, nullable=False, default=utcnow)
    paid_at = Column(DateTime, nullable=True)
    waived_by = Column(Integer, nullable=True)
    waived_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    member = relationship("Member")
    loan = relationship("Loan")


class Hold(Base):
    __tablename__ = "holds"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=True, index=True)
    reason = Column(String(500), nullable=False)
    status = Column(String(50), nullable=False, default=HoldStatus.ACTIVE.value, index=True)
    placed_by = Column(Integer, nullable=True)
    placed_at = Column(DateTime, nullable=False, default=utcnow)
    removed_by = Column(Integer, nullable=True)
    removed_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    member = relationship("Member")
    loan = relationship("Loan")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # Set for loan-scoped kinds so reminder/warning de-duplication can filter on it
    loan_id = Column(Integer, nullable=True, index=True)
    type = Column(String(100), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(String(20), nullable=False, default="normal")
    payload = Column(JSON, nullable=True)
    channel = Column(String(50), nullable=False, default="in_app")
    status = Column(String(50), nullable=False, default="sent")
    sent_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    read_at = Column(DateTime, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)  # actor; null for unattended jobs
    level = Column(String(20), nullable=False, default="INFO")
    action = Column(String(100), nullable=False, index=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
