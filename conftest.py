import os

# Must be set before config/database are imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["SCHEDULER_ENABLED"] = "false"

from dataclasses import replace
from datetime import datetime
from itertools import count

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import models
from circulation import CirculationEngine
from config import Settings
from database import Base
from dispatcher import SideEffectDispatcher
from escalation import EscalationScheduler
from fines import FineEngine
from holds import HoldEngine
from inventory import add_book

NOW = datetime(2026, 3, 2, 12, 0, 0)

_seq = count(1)


@pytest.fixture
def engine(tmp_path):
    # File-backed so the dispatcher's own sessions see the same data as the engine session
    eng = create_engine(
        f"sqlite:///{tmp_path / 'circulation.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_settings():
    return replace(Settings(), system_actor_id=None, scheduler_enabled=False)


@pytest.fixture
def dispatcher(session_factory):
    return SideEffectDispatcher(session_factory)


@pytest.fixture
def holds(db, dispatcher, test_settings):
    return HoldEngine(db, dispatcher, test_settings)


@pytest.fixture
def fines(db, dispatcher, holds, test_settings):
    return FineEngine(db, dispatcher, holds=holds, settings=test_settings)


@pytest.fixture
def circulation(db, dispatcher, fines, test_settings):
    return CirculationEngine(db, dispatcher, fines=fines, settings=test_settings)


@pytest.fixture
def escalation(db, dispatcher, holds, fines, test_settings):
    return EscalationScheduler(db, dispatcher, test_settings, holds=holds, fines=fines)


@pytest.fixture
def make_user(db):
    def _make(role=models.UserRole.MEMBER, email=None, is_active=True):
        n = next(_seq)
        user = models.User(
            email=email or f"user{n}@uni.example",
            full_name=f"User {n}",
            role=models.UserRole(role).value,
            is_active=is_active,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def make_member(db, make_user):
    def _make(max_borrowed_books=5):
        user = make_user(models.UserRole.MEMBER)
        member = models.Member(
            user_id=user.id,
            full_name=user.full_name,
            student_or_staff_id=f"S{user.id:06d}",
            max_borrowed_books=max_borrowed_books,
        )
        db.add(member)
        db.commit()
        db.refresh(member)
        return member
    return _make


@pytest.fixture
def make_book(db):
    def _make(copies=1, book_type=models.BookType.PHYSICAL, title=None):
        n = next(_seq)
        return add_book(title or f"Book {n}", f"Author {n}", db, book_type=book_type, copies=copies)
    return _make


@pytest.fixture
def librarian(make_user):
    return make_user(models.UserRole.LIBRARIAN)


@pytest.fixture
def admin(make_user):
    return make_user(models.UserRole.ADMIN)
