from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LoanCreate(BaseModel):
    member_id: int
    book_id: Optional[int] = None
    book_copy_id: Optional[int] = None
    duration_days: Optional[int] = Field(None, gt=0, le=365)

    @model_validator(mode="after")
    def check_target(self):
        if self.book_id is None and self.book_copy_id is None:
            raise ValueError("Either book_id or book_copy_id is required")
        return self


class LoanOut(BaseModel):
    id: int
    member_id: int
    book_copy_id: int
    borrow_datetime: datetime
    due_datetime: datetime
    return_datetime: Optional[datetime] = None
    status: str
    renewal_count: int
    model_config = ConfigDict(from_attributes=True)


class FineCreate(BaseModel):
    member_id: int
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2, description="Amount must be greater than 0")
    reason: str = Field(..., min_length=1, max_length=500)
    loan_id: Optional[int] = None
    notes: Optional[str] = None


class FinePayment(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)


class FineWaive(BaseModel):
    notes: Optional[str] = None


class FineOut(BaseModel):
    id: int
    member_id: int
    loan_id: Optional[int] = None
    amount: Decimal
    paid_amount: Optional[Decimal] = None
    currency: str
    status: str
    reason: str
    charged_by: Optional[int] = None
    charged_at: datetime
    paid_at: Optional[datetime] = None
    waived_by: Optional[int] = None
    waived_at: Optional[datetime] = None
    notes: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class ReturnOut(BaseModel):
    loan: LoanOut
    fine: Optional[FineOut] = None
    is_overdue: bool
    days_overdue: int
    model_config = ConfigDict(from_attributes=True)


class HoldCreate(BaseModel):
    member_id: int
    reason: str = Field(..., min_length=1, max_length=500)
    loan_id: Optional[int] = None
    notes: Optional[str] = None


class HoldRemove(BaseModel):
    notes: Optional[str] = None


class HoldOut(BaseModel):
    id: int
    member_id: int
    loan_id: Optional[int] = None
    reason: str
    status: str
    placed_by: Optional[int] = None
    placed_at: datetime
    removed_by: Optional[int] = None
    removed_at: Optional[datetime] = None
    notes: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class MemberStandingOut(BaseModel):
    member_id: int
    user_id: int
    max_borrowed_books: int
    open_loan_count: int
    active_hold_count: int
    unpaid_fine_count: int
    has_active_holds: bool
    at_borrowing_limit: bool
    total_unpaid: Decimal
    model_config = ConfigDict(from_attributes=True)


class MemberFinesOut(BaseModel):
    fines: List[FineOut]
    total_unpaid: Decimal


class ReservationCreate(BaseModel):
    member_id: int
    book_id: int


class ReservationOut(BaseModel):
    id: int
    member_id: int
    book_id: int
    status: str
    created_at: datetime
    expires_at: datetime
    model_config = ConfigDict(from_attributes=True)


class DownloadRequest(BaseModel):
    member_id: int


class DownloadOut(BaseModel):
    book_id: int
    title: str
    download_count: int


class NotificationOut(BaseModel):
    id: int
    user_id: int
    loan_id: Optional[int] = None
    type: str
    title: str
    message: str
    priority: str
    payload: Optional[Dict[str, Any]] = None
    channel: str
    status: str
    sent_at: datetime
    read_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class NotificationList(BaseModel):
    notifications: List[NotificationOut]
    unread_count: int


class JobRunOut(BaseModel):
    job: str
    count: int
