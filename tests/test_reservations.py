from datetime import date

import pytest

from errors import InvalidStateError, StateError, UnavailableError
from ledger import reservation_expiry
from models import Book, LoanStatus, Reservation, ReservationStatus
from repository import LedgerRepository


@pytest.fixture
def lent_out(ledger, add_member, add_book):
    """A single-copy book currently on loan to its holder."""
    holder = add_member("Holder")
    book_id = add_book(total_copies=1)
    loan = ledger.create_loan(holder, book_id)
    return book_id, loan


def test_cannot_reserve_a_book_on_the_shelf(ledger, add_member, add_book):
    with pytest.raises(StateError, match="borrow it instead"):
        ledger.reserve(add_member(), add_book(total_copies=2))


def test_reservation_starts_pending(ledger, clock, add_member, lent_out):
    book_id, _ = lent_out

    reservation = ledger.reserve(add_member(), book_id)

    assert reservation.status == ReservationStatus.PENDING
    assert reservation.reservation_date == clock.today
    assert reservation_expiry(reservation, 3) is None


def test_member_cannot_queue_twice_for_the_same_book(ledger, add_member, lent_out):
    book_id, _ = lent_out
    member_id = add_member()
    ledger.reserve(member_id, book_id)

    with pytest.raises(StateError, match="already has a reservation"):
        ledger.reserve(member_id, book_id)


def test_return_activates_waiting_reservation(ledger, clock, add_member, lent_out, fetch):
    book_id, loan = lent_out
    reservation = ledger.reserve(add_member(), book_id)
    clock.today = date(2024, 1, 5)

    ledger.return_loan(loan.id)

    active = fetch(Reservation, reservation.id)
    assert active.status == ReservationStatus.ACTIVE
    assert reservation_expiry(active, 3) == date(2024, 1, 8)
    assert fetch(Book, book_id).copies_available == 1


def test_held_copy_goes_only_to_its_reserver(ledger, clock, add_member, lent_out, fetch):
    book_id, loan = lent_out
    reserver = add_member()
    reservation = ledger.reserve(reserver, book_id)
    ledger.return_loan(loan.id)

    with pytest.raises(UnavailableError):
        ledger.create_loan(add_member(), book_id)

    new_loan = ledger.create_loan(reserver, book_id)
    assert new_loan.member_id == reserver
    assert fetch(Reservation, reservation.id).status == ReservationStatus.COMPLETED
    assert fetch(Book, book_id).copies_available == 0
    assert ledger.audit_availability() == []


def test_others_may_queue_behind_a_held_copy(ledger, add_member, lent_out):
    book_id, loan = lent_out
    ledger.reserve(add_member(), book_id)
    ledger.return_loan(loan.id)

    second = ledger.reserve(add_member(), book_id)

    assert second.status == ReservationStatus.PENDING


def test_uncollected_reservation_expires_and_next_activates(ledger, clock, add_member, lent_out, fetch):
    book_id, loan = lent_out
    first = ledger.reserve(add_member(), book_id)
    second = ledger.reserve(add_member(), book_id)
    clock.today = date(2024, 1, 5)
    ledger.return_loan(loan.id)

    clock.today = date(2024, 1, 8)
    assert ledger.expire_reservations() == []

    clock.today = date(2024, 1, 9)
    expired = ledger.expire_reservations()

    assert [r.id for r in expired] == [first.id]
    assert fetch(Reservation, first.id).status == ReservationStatus.CANCELLED
    promoted = fetch(Reservation, second.id)
    assert promoted.status == ReservationStatus.ACTIVE
    assert reservation_expiry(promoted, 3) == date(2024, 1, 12)

    assert ledger.expire_reservations() == []
    assert fetch(Reservation, second.id).status == ReservationStatus.ACTIVE


def test_expiry_without_queue_releases_the_copy(ledger, clock, add_member, lent_out, fetch):
    book_id, loan = lent_out
    ledger.reserve(add_member(), book_id)
    ledger.return_loan(loan.id)
    clock.advance(10)

    ledger.expire_reservations()

    new_loan = ledger.create_loan(add_member(), book_id)
    assert new_loan.status == LoanStatus.LOANED


def test_same_day_reservations_are_served_in_id_order(ledger, add_member, lent_out, fetch):
    book_id, loan = lent_out
    first = ledger.reserve(add_member(), book_id)
    second = ledger.reserve(add_member(), book_id)

    ledger.return_loan(loan.id)

    assert fetch(Reservation, first.id).status == ReservationStatus.ACTIVE
    assert fetch(Reservation, second.id).status == ReservationStatus.PENDING


def test_older_reservation_date_wins_over_lower_id(ledger, clock, add_member, lent_out, fetch):
    book_id, loan = lent_out
    clock.today = date(2023, 12, 28)
    later = ledger.reserve(add_member(), book_id)
    clock.today = date(2023, 12, 27)
    earlier = ledger.reserve(add_member(), book_id)
    clock.today = date(2024, 1, 2)

    ledger.return_loan(loan.id)

    assert fetch(Reservation, earlier.id).status == ReservationStatus.ACTIVE
    assert fetch(Reservation, later.id).status == ReservationStatus.PENDING


def test_activate_next_needs_a_free_copy(ledger, add_member, lent_out):
    book_id, _ = lent_out
    ledger.reserve(add_member(), book_id)

    assert ledger.activate_next_reservation(book_id) is None


def test_cancelling_active_reservation_passes_copy_on(ledger, add_member, lent_out, fetch):
    book_id, loan = lent_out
    first = ledger.reserve(add_member(), book_id)
    second = ledger.reserve(add_member(), book_id)
    ledger.return_loan(loan.id)

    cancelled = ledger.cancel_reservation(first.id)

    assert cancelled.status == ReservationStatus.CANCELLED
    assert fetch(Reservation, second.id).status == ReservationStatus.ACTIVE


def test_cancelled_reservation_cannot_be_cancelled_again(ledger, add_member, lent_out):
    book_id, _ = lent_out
    reservation = ledger.reserve(add_member(), book_id)
    ledger.cancel_reservation(reservation.id)

    with pytest.raises(InvalidStateError):
        ledger.cancel_reservation(reservation.id)


def test_activate_next_promotes_when_a_copy_is_added(ledger, clock, add_member, lent_out, session_factory, fetch):
    book_id, _ = lent_out
    waiting = ledger.reserve(add_member(), book_id)
    session = session_factory()
    book = session.get(Book, book_id)
    book.total_copies += 1
    book.copies_available += 1
    session.commit()
    session.close()
    clock.today = date(2024, 1, 3)

    promoted = ledger.activate_next_reservation(book_id)

    assert promoted.id == waiting.id
    assert fetch(Reservation, waiting.id).status == ReservationStatus.ACTIVE
    assert reservation_expiry(promoted, 3) == date(2024, 1, 6)


@pytest.fixture
def lock_log(monkeypatch):
    """Record the order in which rows are read FOR UPDATE."""
    log = []
    get_book = LedgerRepository.get_book
    get_reservation = LedgerRepository.get_reservation
    active_reservation = LedgerRepository.active_reservation

    def locked_book(self, book_id, lock=False):
        if lock:
            log.append("Book")
        return get_book(self, book_id, lock)

    def locked_reservation(self, reservation_id, lock=False):
        if lock:
            log.append("Reservation")
        return get_reservation(self, reservation_id, lock)

    def locked_active(self, member_id, book_id):
        log.append("Reservation")
        return active_reservation(self, member_id, book_id)

    monkeypatch.setattr(LedgerRepository, "get_book", locked_book)
    monkeypatch.setattr(LedgerRepository, "get_reservation", locked_reservation)
    monkeypatch.setattr(LedgerRepository, "active_reservation", locked_active)
    return log


def test_cancel_locks_book_before_reservation(ledger, add_member, lent_out, lock_log):
    book_id, loan = lent_out
    reservation = ledger.reserve(add_member(), book_id)
    ledger.return_loan(loan.id)
    lock_log.clear()

    ledger.cancel_reservation(reservation.id)

    assert lock_log == ["Book", "Reservation"]


def test_expiry_locks_book_before_reservation(ledger, clock, add_member, lent_out, lock_log):
    book_id, loan = lent_out
    ledger.reserve(add_member(), book_id)
    ledger.return_loan(loan.id)
    clock.advance(10)
    lock_log.clear()

    assert len(ledger.expire_reservations()) == 1

    assert lock_log == ["Book", "Reservation"]


def test_borrowing_a_held_copy_locks_book_before_reservation(ledger, add_member, lent_out, lock_log):
    book_id, loan = lent_out
    reserver = add_member()
    ledger.reserve(reserver, book_id)
    ledger.return_loan(loan.id)
    lock_log.clear()

    ledger.create_loan(reserver, book_id)

    assert lock_log == ["Book", "Reservation"]
