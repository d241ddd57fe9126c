from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import auth_utils
import main
import models
from database import get_db
from models import utcnow


@pytest.fixture
def client(session_factory, dispatcher):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_get_db
    main.app.dependency_overrides[main.get_dispatcher] = lambda: dispatcher
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth(user):
    token = auth_utils.create_access_token({"sub": user.email, "role": user.role})
    return {"Authorization": f"Bearer {token}"}


def test_requests_without_token_are_rejected(client):
    resp = client.post("/loans/", json={"member_id": 1, "book_id": 1})
    assert resp.status_code == 401


def test_members_cannot_lend_books(client, make_member, make_book, db):
    member = make_member()
    book = make_book()
    user = db.query(models.User).filter(models.User.id == member.user_id).one()

    resp = client.post("/loans/", json={"member_id": member.id, "book_id": book.id}, headers=auth(user))

    assert resp.status_code == 403


def test_loan_lifecycle_over_http(client, make_member, make_book, librarian):
    member = make_member()
    book = make_book(copies=1)
    headers = auth(librarian)

    created = client.post("/loans/", json={"member_id": member.id, "book_id": book.id}, headers=headers)
    assert created.status_code == 201
    loan = created.json()
    assert loan["status"] == "ongoing"

    fetched = client.get(f"/loans/{loan['id']}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["book_copy_id"] == loan["book_copy_id"]

    renewed = client.post(f"/loans/{loan['id']}/renew", headers=headers)
    assert renewed.status_code == 200
    assert renewed.json()["renewal_count"] == 1

    returned = client.post(f"/loans/{loan['id']}/return", headers=headers)
    assert returned.status_code == 200
    body = returned.json()
    assert body["is_overdue"] is False
    assert body["fine"] is None
    assert body["loan"]["status"] == "returned"

    again = client.post(f"/loans/{loan['id']}/return", headers=headers)
    assert again.status_code == 409
    assert again.json()["code"] == "already_returned"

    listed = client.get(f"/members/{member.id}/loans", params={"status": "returned"}, headers=headers)
    assert [item["id"] for item in listed.json()] == [loan["id"]]


def test_typed_errors_map_to_status_codes(client, make_member, make_book, librarian):
    member = make_member(max_borrowed_books=1)
    book = make_book(copies=2)
    headers = auth(librarian)
    client.post("/loans/", json={"member_id": member.id, "book_id": book.id}, headers=headers)

    limited = client.post("/loans/", json={"member_id": member.id, "book_id": book.id}, headers=headers)
    assert limited.status_code == 403
    assert limited.json()["code"] == "limit_exceeded"

    missing = client.get("/loans/9999", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    invalid = client.post("/loans/", json={"member_id": member.id}, headers=headers)
    assert invalid.status_code == 422


def test_late_return_over_http_creates_fine(client, db, circulation, make_member, make_book, librarian):
    member = make_member()
    book = make_book()
    # due a little under two days ago
    loan = circulation.create_loan(member.id, book_id=book.id, now=utcnow() - timedelta(days=16) + timedelta(hours=1))

    resp = client.post(f"/loans/{loan.id}/return", headers=auth(librarian))

    body = resp.json()
    assert resp.status_code == 200
    assert body["is_overdue"] is True
    assert body["days_overdue"] == 2
    assert Decimal(str(body["fine"]["amount"])) == Decimal("1.00")


def test_fine_payment_and_waiver_permissions(client, make_member, librarian, admin):
    member = make_member()
    staff = auth(librarian)

    charged = client.post(
        "/fines/", json={"member_id": member.id, "amount": "6.00", "reason": "Lost book"}, headers=staff
    )
    assert charged.status_code == 201
    fine_id = charged.json()["id"]

    partial = client.post(f"/fines/{fine_id}/pay", json={"amount": "2.50"}, headers=staff)
    assert partial.json()["status"] == "partially_paid"

    assert client.post(f"/fines/{fine_id}/waive", json={}, headers=staff).status_code == 403
    waived = client.post(f"/fines/{fine_id}/waive", json={"notes": "goodwill"}, headers=auth(admin))
    assert waived.status_code == 200
    assert waived.json()["status"] == "waived"

    pay_waived = client.post(f"/fines/{fine_id}/pay", json={"amount": "1.00"}, headers=staff)
    assert pay_waived.status_code == 409
    assert pay_waived.json()["code"] == "already_waived"

    bad = client.post("/fines/", json={"member_id": member.id, "amount": "0", "reason": "x"}, headers=staff)
    assert bad.status_code == 422


def test_member_sees_only_own_records(client, db, make_member, librarian):
    member = make_member()
    other = make_member()
    user = db.query(models.User).filter(models.User.id == member.user_id).one()
    client.post("/fines/", json={"member_id": member.id, "amount": "3.00", "reason": "Late"}, headers=auth(librarian))

    own = client.get(f"/members/{member.id}/fines", headers=auth(user))
    assert own.status_code == 200
    assert Decimal(str(own.json()["total_unpaid"])) == Decimal("3.00")
    assert len(own.json()["fines"]) == 1

    assert client.get(f"/members/{other.id}/fines", headers=auth(user)).status_code == 403

    standing = client.get(f"/members/{member.id}/standing", headers=auth(user)).json()
    assert standing["unpaid_fine_count"] == 1
    assert standing["has_active_holds"] is False


def test_holds_over_http_block_borrowing(client, make_member, make_book, librarian):
    member = make_member()
    book = make_book()
    staff = auth(librarian)

    placed = client.post("/holds/", json={"member_id": member.id, "reason": "Unreturned laptop"}, headers=staff)
    assert placed.status_code == 201
    hold_id = placed.json()["id"]

    blocked = client.post("/loans/", json={"member_id": member.id, "book_id": book.id}, headers=staff)
    assert blocked.status_code == 403
    assert blocked.json()["code"] == "ineligible_member"

    removed = client.post(f"/holds/{hold_id}/remove", json={"notes": "returned"}, headers=staff)
    assert removed.json()["status"] == "removed"
    assert client.post(f"/holds/{hold_id}/remove", json={}, headers=staff).status_code == 409
    assert client.get(f"/members/{member.id}/holds", headers=staff).json() == []


def test_reservations_and_downloads(client, db, make_member, make_book):
    member = make_member()
    user = db.query(models.User).filter(models.User.id == member.user_id).one()
    book = make_book()
    ebook = make_book(book_type=models.BookType.ONLINE)
    headers = auth(user)

    reserved = client.post("/reservations/", json={"member_id": member.id, "book_id": book.id}, headers=headers)
    assert reserved.status_code == 201
    cancelled = client.post(f"/reservations/{reserved.json()['id']}/cancel", headers=headers)
    assert cancelled.json()["status"] == "cancelled"

    download = client.post(f"/books/{ebook.id}/download", json={"member_id": member.id}, headers=headers)
    assert download.status_code == 200
    assert download.json()["download_count"] == 1
    paper = client.post(f"/books/{book.id}/download", json={"member_id": member.id}, headers=headers)
    assert paper.status_code == 400
    assert paper.json()["code"] == "not_downloadable"


def test_notification_inbox(client, db, make_member, make_book, librarian):
    member = make_member()
    user = db.query(models.User).filter(models.User.id == member.user_id).one()
    client.post("/loans/", json={"member_id": member.id, "book_id": make_book().id}, headers=auth(librarian))

    inbox = client.get("/notifications/", headers=auth(user)).json()
    assert inbox["unread_count"] == 1
    assert inbox["notifications"][0]["type"] == "LOAN_CREATED"

    note_id = inbox["notifications"][0]["id"]
    assert client.post(f"/notifications/{note_id}/read", headers=auth(user)).json()["read_at"] is not None
    assert client.get("/notifications/", params={"unread_only": True}, headers=auth(user)).json()["notifications"] == []

    staff_inbox = client.get("/notifications/", headers=auth(librarian)).json()
    assert staff_inbox["notifications"][0]["type"] == "ADMIN_BOOK_BORROWED"
    assert client.post("/notifications/read-all", headers=auth(librarian)).json() == {"updated": 1}


def test_jobs_are_admin_only(client, db, circulation, make_member, make_book, librarian, admin):
    member = make_member()
    circulation.create_loan(member.id, book_id=make_book().id, now=utcnow() - timedelta(days=20))

    assert client.post("/jobs/overdue-warnings/run", headers=auth(librarian)).status_code == 403
    assert client.post("/jobs/nightly-cleanup/run", headers=auth(admin)).status_code == 404

    warned = client.post("/jobs/overdue-warnings/run", headers=auth(admin))
    assert warned.json() == {"job": "overdue-warnings", "count": 1}
    fined = client.post("/jobs/overdue-fines/run", headers=auth(admin))
    assert fined.json() == {"job": "overdue-fines", "count": 1}
    assert client.post("/jobs/overdue-fines/run", headers=auth(admin)).json()["count"] == 0
