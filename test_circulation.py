from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

import models
from conftest import NOW
from dispatcher import AuditAction, NotificationKind
import circulation as circulation_module
from errors import (
    AlreadyReturned,
    CirculationError,
    IneligibleMember,
    LimitExceeded,
    NoAvailableUnit,
    NotDownloadable,
    NotFound,
    NotRenewable,
    StateConflictError,
)
from inventory import list_units


def open_loans_for_unit(db, unit_id):
    return (
        db.query(models.Loan)
        .filter(models.Loan.book_copy_id == unit_id, models.Loan.status.in_(models.OPEN_LOAN_STATUSES))
        .count()
    )


def assert_counts_consistent(db, book_id):
    book = db.query(models.Book).filter(models.Book.id == book_id).one()
    db.refresh(book)
    units = list_units(book_id, db)
    assert book.total_copies == len(units)
    assert book.available_copies == sum(1 for u in units if u.status == models.CopyStatus.AVAILABLE.value)


def test_create_loan_picks_available_unit_and_updates_counts(db, circulation, make_member, make_book, librarian):
    member = make_member()
    book = make_book(copies=2)

    loan = circulation.create_loan(member.id, book_id=book.id, actor_id=librarian.id, now=NOW)

    assert loan.status == models.LoanStatus.ONGOING.value
    assert loan.borrow_datetime == NOW
    assert loan.due_datetime == NOW + timedelta(days=14)
    assert loan.renewal_count == 0
    unit = db.query(models.BookCopy).filter(models.BookCopy.id == loan.book_copy_id).one()
    assert unit.status == models.CopyStatus.ON_LOAN.value
    db.refresh(book)
    assert book.available_copies == 1
    assert_counts_consistent(db, book.id)


def test_create_loan_sends_member_and_staff_notifications(db, circulation, make_member, make_book, librarian, admin):
    member = make_member()
    book = make_book()

    loan = circulation.create_loan(member.id, book_id=book.id, actor_id=librarian.id, now=NOW)

    kinds = {
        (n.user_id, n.type) for n in db.query(models.Notification).all()
    }
    assert (member.user_id, NotificationKind.LOAN_CREATED.value) in kinds
    assert (librarian.id, NotificationKind.ADMIN_BOOK_BORROWED.value) in kinds
    assert (admin.id, NotificationKind.ADMIN_BOOK_BORROWED.value) in kinds
    audit = db.query(models.AuditLog).filter(models.AuditLog.action == AuditAction.CREATE_LOAN.value).one()
    assert audit.user_id == librarian.id
    assert audit.details["loan_id"] == loan.id


def test_explicit_unit_and_custom_duration(db, circulation, make_member, make_book):
    member = make_member()
    book = make_book(copies=3)
    unit = list_units(book.id, db)[2]

    loan = circulation.create_loan(member.id, book_copy_id=unit.id, duration_days=7, now=NOW)

    assert loan.book_copy_id == unit.id
    assert loan.due_datetime == NOW + timedelta(days=7)


def test_zero_duration_is_rejected(db, circulation, make_member, make_book):
    member = make_member()
    book = make_book()

    with pytest.raises(CirculationError):
        circulation.create_loan(member.id, book_id=book.id, duration_days=0, now=NOW)
    assert db.query(models.Loan).count() == 0


def test_member_row_is_locked_while_borrowing(db, circulation, make_member, make_book, monkeypatch):
    member = make_member()
    book = make_book()
    calls = []
    get_member = circulation_module.get_member

    def recording(member_id, db, for_update=False):
        calls.append(for_update)
        return get_member(member_id, db, for_update=for_update)

    monkeypatch.setattr(circulation_module, "get_member", recording)

    circulation.create_loan(member.id, book_id=book.id, now=NOW)

    assert calls == [True]


def test_limit_exceeded_at_max_borrowed_books(db, circulation, make_member, make_book):
    member = make_member(max_borrowed_books=5)
    book = make_book(copies=6)
    for _ in range(5):
        circulation.create_loan(member.id, book_id=book.id, now=NOW)

    with pytest.raises(LimitExceeded):
        circulation.create_loan(member.id, book_id=book.id, now=NOW)

    assert db.query(models.Loan).filter(models.Loan.member_id == member.id).count() == 5
    db.refresh(book)
    assert book.available_copies == 1


def test_overdue_loans_count_towards_limit(db, circulation, make_member, make_book):
    member = make_member(max_borrowed_books=1)
    book = make_book(copies=2)
    loan = circulation.create_loan(member.id, book_id=book.id, now=NOW)
    loan.status = models.LoanStatus.OVERDUE.value
    db.commit()

    with pytest.raises(LimitExceeded):
        circulation.create_loan(member.id, book_id=book.id, now=NOW)


def test_member_with_active_hold_cannot_borrow(db, circulation, holds, make_member, make_book, librarian):
    member = make_member()
    book = make_book()
    holds.place_hold(member.id, "Lost library card", librarian.id)

    with pytest.raises(IneligibleMember):
        circulation.create_loan(member.id, book_id=book.id, now=NOW)

    assert db.query(models.Loan).count() == 0
    db.refresh(book)
    assert book.available_copies == 1


def test_no_available_unit(db, circulation, make_member, make_book):
    first, second = make_member(), make_member()
    book = make_book(copies=1)
    loan = circulation.create_loan(first.id, book_id=book.id, now=NOW)

    with pytest.raises(NoAvailableUnit):
        circulation.create_loan(second.id, book_id=book.id, now=NOW)
    with pytest.raises(NoAvailableUnit):
        circulation.create_loan(second.id, book_copy_id=loan.book_copy_id, now=NOW)

    assert open_loans_for_unit(db, loan.book_copy_id) == 1


def test_online_books_are_not_lent(circulation, make_member, make_book):
    member = make_member()
    ebook = make_book(book_type=models.BookType.ONLINE)

    with pytest.raises(NoAvailableUnit):
        circulation.create_loan(member.id, book_id=ebook.id, now=NOW)


def test_unknown_member_and_book(circulation, make_member, make_book):
    book = make_book()
    with pytest.raises(NotFound):
        circulation.create_loan(9999, book_id=book.id, now=NOW)
    with pytest.raises(NotFound):
        circulation.create_loan(make_member().id, book_id=9999, now=NOW)


def test_database_rejects_second_open_loan_on_same_unit(db, circulation, make_member, make_book):
    member = make_member()
    book = make_book()
    loan = circulation.create_loan(member.id, book_id=book.id, now=NOW)

    db.add(models.Loan(
        member_id=member.id,
        book_copy_id=loan.book_copy_id,
        borrow_datetime=NOW,
        due_datetime=NOW + timedelta(days=14),
        status=models.LoanStatus.ONGOING.value,
    ))
    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


def test_return_on_time(db, circulation, make_member, make_book, librarian):
    member = make_member()
    book = make_book()
    loan = circulation.create_loan(member.id, book_id=book.id, now=NOW)

    result = circulation.return_loan(loan.id, librarian.id, now=NOW + timedelta(days=3))

    assert result.is_overdue is False
    assert result.fine is None
    assert result.loan.status == models.LoanStatus.RETURNED.value
    assert result.loan.return_datetime == NOW + timedelta(days=3)
    unit = db.query(models.BookCopy).filter(models.BookCopy.id == loan.book_copy_id).one()
    assert unit.status == models.CopyStatus.AVAILABLE.value
    assert_counts_consistent(db, book.id)
    returned = db.query(models.Notification).filter(models.Notification.type == NotificationKind.LOAN_RETURNED.value)
    assert returned.count() == 1


def test_late_return_charges_one_day(db, circulation, make_member, make_book, librarian, test_settings):
    member = make_member()
    book = make_book()
    # due yesterday
    loan = circulation.create_loan(member.id, book_id=book.id, now=NOW - timedelta(days=15))
    assert loan.due_datetime == NOW - timedelta(days=1)

    result = circulation.return_loan(loan.id, librarian.id, now=NOW)

    assert result.loan.status == models.LoanStatus.RETURNED.value
    assert result.is_overdue is True
    assert result.days_overdue == 1
    assert result.fine is not None
    assert result.fine.amount == Decimal("1") * test_settings.fine_per_day
    assert result.fine.loan_id == loan.id
    assert result.fine.status == models.FineStatus.UNPAID.value
    assert result.fine.charged_by == librarian.id
    kinds = [n.type for n in db.query(models.Notification).filter(models.Notification.user_id == member.user_id)]
    assert NotificationKind.LOAN_RETURNED_OVERDUE.value in kinds
    assert NotificationKind.FINE_CHARGED.value in kinds


def test_partial_day_late_rounds_up(circulation, make_member, make_book, librarian):
    member = make_member()
    book = make_book()
    loan = circulation.create_loan(member.id, book_id=book.id, now=NOW)

    result = circulation.return_loan(loan.id, librarian.id, now=loan.due_datetime + timedelta(days=2, hours=1))

    assert result.days_overdue == 3
    assert result.fine.amount == Decimal("1.50")


def test_late_return_of_flagged_loan_does_not_double_charge(db, circulation, escalation, make_member, make_book, librarian):
    member = make_member()
    book = make_book()
    loan = circulation.create_loan(member.id, book_id=book.id, now=NOW - timedelta(days=20))
    escalation.send_overdue_warnings(now=NOW)
    charged = escalation.auto_charge_overdue_fines(now=NOW)
    assert len(charged) == 1

    result = circulation.return_loan(loan.id, librarian.id, now=NOW)

    assert result.loan.status == models.LoanStatus.RETURNED.value
    assert result.fine is None
    assert db.query(models.Fine).filter(models.Fine.loan_id == loan.id).count() == 1


def test_second_return_is_rejected(db, circulation, make_member, make_book, librarian):
    member = make_member()
    book = make_book()
    loan = circulation.create_loan(member.id, book_id=book.id, now=NOW - timedelta(days=15))
    circulation.return_loan(loan.id, librarian.id, now=NOW)
    unit_status = db.query(models.BookCopy).filter(models.BookCopy.id == loan.book_copy_id).one().status

    with pytest.raises(AlreadyReturned):
        circulation.return_loan(loan.id, librarian.id, now=NOW + timedelta(days=1))

    assert db.query(models.Fine).filter(models.Fine.loan_id == loan.id).count() == 1
    unit = db.query(models.BookCopy).filter(models.BookCopy.id == loan.book_copy_id).one()
    assert unit.status == unit_status == models.CopyStatus.AVAILABLE.value
    assert_counts_consistent(db, book.id)


def test_renew_extends_due_date_without_cap(circulation, make_member, make_book, librarian):
    member = make_member()
    book = make_book()
    loan = circulation.create_loan(member.id, book_id=book.id, now=NOW)
    original_due = loan.due_datetime

    for n in range(1, 4):
        loan = circulation.renew_loan(loan.id, librarian.id, now=NOW)
        assert loan.renewal_count == n

    assert loan.due_datetime == original_due + timedelta(days=42)


def test_overdue_loan_cannot_be_renewed(db, circulation, make_member, make_book, librarian):
    member = make_member()
    book = make_book()
    loan = circulation.create_loan(member.id, book_id=book.id, now=NOW)
    loan.status = models.LoanStatus.OVERDUE.value
    db.commit()

    with pytest.raises(NotRenewable):
        circulation.renew_loan(loan.id, librarian.id, now=NOW)


def test_returned_loan_cannot_be_renewed(circulation, make_member, make_book, librarian):
    member = make_member()
    loan = circulation.create_loan(member.id, book_id=make_book().id, now=NOW)
    circulation.return_loan(loan.id, librarian.id, now=NOW)

    with pytest.raises(NotRenewable):
        circulation.renew_loan(loan.id, librarian.id, now=NOW)


def test_active_reservation_blocks_renewal(circulation, make_member, make_book, librarian):
    borrower, waiting = make_member(), make_member()
    book = make_book()
    loan = circulation.create_loan(borrower.id, book_id=book.id, now=NOW)
    circulation.reserve_title(waiting.id, book.id, now=NOW)

    with pytest.raises(NotRenewable):
        circulation.renew_loan(loan.id, librarian.id, now=NOW + timedelta(days=1))

    # reservations lapse after three days
    renewed = circulation.renew_loan(loan.id, librarian.id, now=NOW + timedelta(days=4))
    assert renewed.renewal_count == 1


def test_borrowing_fulfils_own_reservation(db, circulation, make_member, make_book):
    member = make_member()
    book = make_book()
    reservation = circulation.reserve_title(member.id, book.id, now=NOW)
    assert reservation.expires_at == NOW + timedelta(days=3)

    circulation.create_loan(member.id, book_id=book.id, now=NOW)

    db.refresh(reservation)
    assert reservation.status == models.ReservationStatus.FULFILLED.value


def test_duplicate_reservation_and_cancel(circulation, make_member, make_book):
    member = make_member()
    book = make_book()
    reservation = circulation.reserve_title(member.id, book.id, now=NOW)

    with pytest.raises(StateConflictError):
        circulation.reserve_title(member.id, book.id, now=NOW)

    cancelled = circulation.cancel_reservation(reservation.id)
    assert cancelled.status == models.ReservationStatus.CANCELLED.value
    with pytest.raises(StateConflictError):
        circulation.cancel_reservation(reservation.id)


def test_download_access(db, circulation, holds, make_member, make_book, librarian):
    member = make_member()
    ebook = make_book(book_type=models.BookType.ONLINE)
    paper = make_book()

    assert circulation.authorize_download(member.id, ebook.id).download_count == 1
    assert circulation.authorize_download(member.id, ebook.id).download_count == 2
    with pytest.raises(NotDownloadable):
        circulation.authorize_download(member.id, paper.id)

    holds.place_hold(member.id, "Unpaid fines", librarian.id)
    with pytest.raises(IneligibleMember):
        circulation.authorize_download(member.id, ebook.id)
    assert db.query(models.AuditLog).filter(models.AuditLog.action == AuditAction.DOWNLOAD_BOOK.value).count() == 2


def test_member_loans_filter(circulation, make_member, make_book, librarian):
    member = make_member()
    book = make_book(copies=2)
    first = circulation.create_loan(member.id, book_id=book.id, now=NOW)
    circulation.create_loan(member.id, book_id=book.id, now=NOW + timedelta(hours=1))
    circulation.return_loan(first.id, librarian.id, now=NOW + timedelta(days=1))

    assert len(circulation.member_loans(member.id)) == 2
    returned = circulation.member_loans(member.id, status=models.LoanStatus.RETURNED)
    assert [loan.id for loan in returned] == [first.id]


def test_unit_exclusivity_and_availability_through_a_busy_day(db, circulation, make_member, make_book, librarian):
    members = [make_member() for _ in range(4)]
    book = make_book(copies=3)

    loans = []
    for member in members[:3]:
        loans.append(circulation.create_loan(member.id, book_id=book.id, now=NOW))
        assert_counts_consistent(db, book.id)
    with pytest.raises(NoAvailableUnit):
        circulation.create_loan(members[3].id, book_id=book.id, now=NOW)

    circulation.return_loan(loans[1].id, librarian.id, now=NOW + timedelta(days=2))
    assert_counts_consistent(db, book.id)
    circulation.create_loan(members[3].id, book_id=book.id, now=NOW + timedelta(days=2))
    assert_counts_consistent(db, book.id)

    for unit in list_units(book.id, db):
        assert open_loans_for_unit(db, unit.id) <= 1
        expected = models.CopyStatus.ON_LOAN.value if open_loans_for_unit(db, unit.id) else models.CopyStatus.AVAILABLE.value
        assert unit.status == expected
