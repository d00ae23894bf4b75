from datetime import date, timedelta
from itertools import count

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ledger import LoanLedger
from models import Book, Gender, Member, init_db


class FakeClock:
    def __init__(self, today):
        self.today = today

    def __call__(self):
        return self.today

    def advance(self, days):
        self.today += timedelta(days=days)


@pytest.fixture
def engine(tmp_path):
    # Each test gets its own database file
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock(date(2023, 12, 20))


@pytest.fixture
def ledger(session_factory, clock):
    return LoanLedger(session_factory, clock=clock)


@pytest.fixture
def add_member(session_factory):
    serial = count(1)

    def _add(first_name="Ada"):
        n = next(serial)
        session = session_factory()
        try:
            member = Member(
                first_name=first_name,
                last_name="Reader",
                gender=Gender.OTHER,
                email=f"member{n}@example.com",
                join_date=date(2023, 1, 1),
            )
            session.add(member)
            session.commit()
            return member.id
        finally:
            session.close()

    return _add


@pytest.fixture
def add_book(session_factory):
    serial = count(1)

    def _add(total_copies=1, copies_available=None, title="Dubliners"):
        n = next(serial)
        session = session_factory()
        try:
            book = Book(
                title=title,
                author="James Joyce",
                isbn=f"978000000{n:04d}",
                copies_available=total_copies if copies_available is None else copies_available,
                total_copies=total_copies,
            )
            session.add(book)
            session.commit()
            return book.id
        finally:
            session.close()

    return _add


@pytest.fixture
def fetch(session_factory):
    """Reload a row by primary key in a fresh session."""

    def _fetch(model, record_id):
        session = session_factory()
        try:
            return session.get(model, record_id)
        finally:
            session.close()

    return _fetch
