"""Loan, fine and reservation rules for the library.

``LoanLedger`` runs every operation as one database transaction. Rows that
an operation changes are read under ``FOR UPDATE``, so two clerks lending
the last copy of a book at the same moment cannot both succeed.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from errors import CapacityError, InvalidStateError, StateError, UnavailableError
from models import (
    FINE_TRANSITIONS,
    LOAN_TRANSITIONS,
    RESERVATION_TRANSITIONS,
    Fine,
    FineStatus,
    Loan,
    LoanStatus,
    Reservation,
    ReservationStatus,
)
from repository import LedgerRepository
from settings import LedgerSettings, load_settings

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

OVERDUE_SCAN = "mark_overdue"
EXPIRY_SCAN = "expire_reservations"


@dataclass
class AvailabilityMismatch:
    book_id: int
    title: str
    stored: int
    expected: int


def _advance(record, target, transitions):
    if target not in transitions[record.status]:
        raise InvalidStateError(
            f"{type(record).__name__} {record.id} cannot go from {record.status.value} to {target.value}"
        )
    record.status = target


def days_late(loan: Loan, today: date) -> int:
    end = loan.return_date or today
    return max(0, (end - loan.due_date).days)


def compute_fine(loan: Loan, fine_per_day: Decimal, today: date) -> Decimal:
    """Fine owed for ``loan``: the daily rate times whole days past due.

    Loans that are not late owe ``0.00``.
    """
    return (fine_per_day * days_late(loan, today)).quantize(CENT)


def reservation_expiry(reservation: Reservation, expiry_days: int) -> Optional[date]:
    if reservation.status != ReservationStatus.ACTIVE:
        return None
    return reservation.reservation_date + timedelta(days=expiry_days)


class LoanLedger:
    """Entry point for every loan, fine and reservation state change.

    ``session_factory`` must build sessions with ``expire_on_commit=False``:
    the rows handed back to callers are read after the session is closed.
    When ``settings`` is omitted they are loaded from LibrarySettings at the
    start of each operation.
    """

    def __init__(
        self,
        session_factory,
        settings: Optional[LedgerSettings] = None,
        clock: Callable[[], date] = date.today,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock

    @contextmanager
    def _transaction(self):
        session = self.session_factory()
        try:
            with session.begin():
                config = self.settings or load_settings(session)
                yield LedgerRepository(session), config
        finally:
            session.close()

    # Loans

    def create_loan(self, member_id: int, book_id: int) -> Loan:
        today = self.clock()
        with self._transaction() as (repo, config):
            member = repo.get_member(member_id, lock=True)
            book = repo.get_book(book_id, lock=True)

            if repo.count_active_loans(member.id) >= config.max_book_loans:
                raise CapacityError(
                    f"Member {member.id} already has {config.max_book_loans} books on loan"
                )
            held_for_others = repo.count_holds(book.id, exclude_member_id=member.id)
            if book.copies_available - held_for_others <= 0:
                raise UnavailableError(f"No copy of book {book.id} is available")

            reservation = repo.active_reservation(member.id, book.id)
            if reservation is not None:
                _advance(reservation, ReservationStatus.COMPLETED, RESERVATION_TRANSITIONS)

            book.copies_available -= 1
            loan = repo.add(
                Loan(
                    member_id=member.id,
                    book_id=book.id,
                    loan_date=today,
                    due_date=today + timedelta(days=config.default_loan_duration),
                    status=LoanStatus.LOANED,
                )
            )
        logger.info("Loan %s: book %s to member %s, due %s", loan.id, book_id, member_id, loan.due_date)
        return loan

    def return_loan(self, loan_id: int) -> Loan:
        today = self.clock()
        with self._transaction() as (repo, config):
            loan = repo.get_loan(loan_id, lock=True)
            if loan.status == LoanStatus.RETURNED:
                raise InvalidStateError(f"Loan {loan.id} was already returned on {loan.return_date}")
            if today < loan.loan_date:
                raise InvalidStateError(f"Loan {loan.id} cannot be returned before {loan.loan_date}")
            book = repo.get_book(loan.book_id, lock=True)

            loan.return_date = today
            if today > loan.due_date:
                if loan.status == LoanStatus.LOANED:
                    _advance(loan, LoanStatus.OVERDUE, LOAN_TRANSITIONS)
                self._settle_fine(repo, loan, config, today)
            _advance(loan, LoanStatus.RETURNED, LOAN_TRANSITIONS)
            if book.copies_available < book.total_copies:
                book.copies_available += 1
            else:
                logger.warning(
                    "Book %s already shows all %d copies available, counter left unchanged",
                    book.id,
                    book.total_copies,
                )

            self._activate_next(repo, book, config, today)
        logger.info("Loan %s returned on %s", loan.id, today)
        return loan

    def mark_overdue(self) -> List[Loan]:
        """Flag loans past their due date and keep one fine per overdue loan.

        Safe to run repeatedly: later runs only bring unpaid fines up to date.
        Returns the loans that became overdue in this run.
        """
        today = self.clock()
        with self._transaction() as (repo, config):
            if not repo.try_scan_lock(OVERDUE_SCAN):
                logger.warning("Overdue scan already running, skipping")
                return []
            try:
                marked = []
                for loan in repo.loans_due_before(today):
                    _advance(loan, LoanStatus.OVERDUE, LOAN_TRANSITIONS)
                    marked.append(loan)
                for loan in repo.overdue_loans():
                    self._settle_fine(repo, loan, config, today)
            finally:
                repo.release_scan_lock(OVERDUE_SCAN)
        logger.info("Overdue scan on %s marked %d loan(s)", today, len(marked))
        return marked

    # Fines

    def compute_fine(self, loan_id: int) -> Decimal:
        today = self.clock()
        with self._transaction() as (repo, config):
            loan = repo.get_loan(loan_id)
            return compute_fine(loan, config.fine_per_day, today)

    def pay_fine(self, fine_id: int) -> Fine:
        today = self.clock()
        with self._transaction() as (repo, _):
            fine = repo.get_fine(fine_id, lock=True)
            _advance(fine, FineStatus.PAID, FINE_TRANSITIONS)
            fine.payment_date = today
        logger.info("Fine %s paid (%s)", fine.id, fine.amount)
        return fine

    def waive_fine(self, fine_id: int) -> Fine:
        with self._transaction() as (repo, _):
            fine = repo.get_fine(fine_id, lock=True)
            _advance(fine, FineStatus.WAIVED, FINE_TRANSITIONS)
        logger.info("Fine %s waived", fine.id)
        return fine

    def outstanding_fines(self, member_id: int) -> Tuple[List[Fine], Decimal]:
        with self._transaction() as (repo, _):
            member = repo.get_member(member_id)
            fines = repo.unpaid_fines(member.id)
        total = sum((fine.amount for fine in fines), Decimal("0.00"))
        return fines, total.quantize(CENT)

    def _settle_fine(self, repo, loan, config, today):
        amount = compute_fine(loan, config.fine_per_day, today)
        fine = repo.fine_for_loan(loan.id)
        if fine is None:
            if amount > 0:
                fine = repo.add(Fine(loan_id=loan.id, amount=amount, status=FineStatus.UNPAID))
                logger.info("Fine %s of %s opened for loan %s", fine.id, amount, loan.id)
        elif fine.status == FineStatus.UNPAID and fine.amount != amount:
            fine.amount = amount
        return fine

    # Reservations

    def reserve(self, member_id: int, book_id: int) -> Reservation:
        today = self.clock()
        with self._transaction() as (repo, _):
            member = repo.get_member(member_id)
            book = repo.get_book(book_id, lock=True)
            if book.copies_available - repo.count_holds(book.id, exclude_member_id=member.id) > 0:
                raise StateError(f"Book {book.id} has a copy available, borrow it instead")
            if repo.open_reservation(member.id, book.id) is not None:
                raise StateError(f"Member {member.id} already has a reservation for book {book.id}")
            reservation = repo.add(
                Reservation(
                    member_id=member.id,
                    book_id=book.id,
                    reservation_date=today,
                    status=ReservationStatus.PENDING,
                )
            )
        logger.info("Reservation %s: member %s queued for book %s", reservation.id, member_id, book_id)
        return reservation

    def activate_next_reservation(self, book_id: int) -> Optional[Reservation]:
        today = self.clock()
        with self._transaction() as (repo, config):
            book = repo.get_book(book_id, lock=True)
            return self._activate_next(repo, book, config, today)

    def expire_reservations(self) -> List[Reservation]:
        """Cancel active reservations nobody collected in time.

        Each freed copy is offered to the next pending reservation.
        Returns the cancelled reservations.
        """
        today = self.clock()
        with self._transaction() as (repo, config):
            if not repo.try_scan_lock(EXPIRY_SCAN):
                logger.warning("Reservation expiry scan already running, skipping")
                return []
            try:
                expired = []
                for candidate in repo.active_reservations():
                    if today <= reservation_expiry(candidate, config.reservation_expiry_days):
                        continue
                    book = repo.get_book(candidate.book_id, lock=True)
                    reservation = repo.get_reservation(candidate.id, lock=True)
                    # Collected or cancelled while we waited on the book
                    if reservation.status != ReservationStatus.ACTIVE:
                        continue
                    _advance(reservation, ReservationStatus.CANCELLED, RESERVATION_TRANSITIONS)
                    expired.append(reservation)
                    self._activate_next(repo, book, config, today)
            finally:
                repo.release_scan_lock(EXPIRY_SCAN)
        logger.info("Reservation expiry scan on %s cancelled %d reservation(s)", today, len(expired))
        return expired

    def cancel_reservation(self, reservation_id: int) -> Reservation:
        today = self.clock()
        with self._transaction() as (repo, config):
            book_id = repo.get_reservation(reservation_id).book_id
            book = repo.get_book(book_id, lock=True)
            reservation = repo.get_reservation(reservation_id, lock=True)
            was_active = reservation.status == ReservationStatus.ACTIVE
            _advance(reservation, ReservationStatus.CANCELLED, RESERVATION_TRANSITIONS)
            if was_active:
                self._activate_next(repo, book, config, today)
        logger.info("Reservation %s cancelled", reservation.id)
        return reservation

    def _activate_next(self, repo, book, config, today):
        if book.copies_available - repo.count_holds(book.id) <= 0:
            return None
        reservation = repo.next_pending(book.id)
        if reservation is None:
            return None
        _advance(reservation, ReservationStatus.ACTIVE, RESERVATION_TRANSITIONS)
        reservation.reservation_date = today
        logger.info(
            "Reservation %s active for member %s until %s",
            reservation.id,
            reservation.member_id,
            reservation_expiry(reservation, config.reservation_expiry_days),
        )
        return reservation

    # Consistency

    def audit_availability(self) -> List[AvailabilityMismatch]:
        """Compare each book's CopiesAvailable with its loan history."""
        with self._transaction() as (repo, _):
            mismatches = []
            for book in repo.all_books():
                expected = book.total_copies - repo.count_book_active_loans(book.id)
                if book.copies_available != expected:
                    mismatches.append(AvailabilityMismatch(book.id, book.title, book.copies_available, expected))
        for mismatch in mismatches:
            logger.warning(
                "Book %s stores %d available copies, loans imply %d",
                mismatch.book_id,
                mismatch.stored,
                mismatch.expected,
            )
        return mismatches
