"""Catalog inventory: per-unit availability and the derived per-title counts.

``Book.available_copies`` is never trusted on its own. Every function that flips a
unit's status is followed, inside the same transaction, by ``recount_availability``
which re-scans the title's units and rewrites the counts.
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from errors import NotFound
from models import Book, BookCopy, BookType, CopyStatus

logger = logging.getLogger(__name__)


def get_book(book_id: int, db: Session) -> Book:
    book = db.query(Book).filter(Book.id == book_id).first()
    if not book:
        raise NotFound("Book", book_id)
    return book


def get_unit(copy_id: int, db: Session, for_update: bool = False) -> BookCopy:
    query = db.query(BookCopy).filter(BookCopy.id == copy_id)
    if for_update:
        query = query.with_for_update()
    unit = query.first()
    if not unit:
        raise NotFound("Book copy", copy_id)
    return unit


def get_unit_status(copy_id: int, db: Session) -> CopyStatus:
    return CopyStatus(get_unit(copy_id, db).status)


def set_unit_status(copy_id: int, status: CopyStatus, db: Session) -> BookCopy:
    """Flip a unit's status. Does not commit; callers recount in the same transaction."""
    unit = get_unit(copy_id, db)
    unit.status = CopyStatus(status).value
    db.add(unit)
    return unit


def first_available_unit(book_id: int, db: Session) -> Optional[BookCopy]:
    return (
        db.query(BookCopy)
        .filter(BookCopy.book_id == book_id, BookCopy.status == CopyStatus.AVAILABLE.value)
        .order_by(BookCopy.id)
        .with_for_update()
        .first()
    )


def recount_availability(book_id: int, db: Session) -> Book:
    """Rewrite a title's total/available counts from its units."""
    # autoflush is off, so pending status flips must reach the DB before counting
    db.flush()
    book = get_book(book_id, db)
    units = db.query(BookCopy).filter(BookCopy.book_id == book_id).all()
    book.total_copies = len(units)
    book.available_copies = sum(1 for u in units if u.status == CopyStatus.AVAILABLE.value)
    db.add(book)
    db.flush()
    return book


# --- Catalog seeding helpers ---
def add_book(
    title: str,
    author: str,
    db: Session,
    isbn: Optional[str] = None,
    book_type: BookType = BookType.PHYSICAL,
    copies: int = 1,
) -> Book:
    """Add a catalog entry with ``copies`` units (online entries get none) and commit."""
    if isbn:
        exists = db.query(Book).filter(Book.isbn == isbn).first()
        if exists:
            raise ValueError("A book with this ISBN already exists.")
    book = Book(title=title, author=author, isbn=isbn, book_type=BookType(book_type).value)
    db.add(book)
    db.flush()
    if book.book_type == BookType.PHYSICAL.value:
        for n in range(copies):
            db.add(BookCopy(book_id=book.id, barcode=f"BK{book.id:05d}-{n + 1:03d}"))
    recount_availability(book.id, db)
    db.commit()
    db.refresh(book)
    logger.info("Added book %s (%s) with %d copies", book.id, title, book.total_copies)
    return book


def add_copy(book_id: int, barcode: str, db: Session) -> BookCopy:
    book = get_book(book_id, db)
    unit = BookCopy(book_id=book.id, barcode=barcode)
    db.add(unit)
    recount_availability(book.id, db)
    db.commit()
    db.refresh(unit)
    return unit


def list_units(book_id: int, db: Session) -> List[BookCopy]:
    return db.query(BookCopy).filter(BookCopy.book_id == book_id).order_by(BookCopy.id).all()
