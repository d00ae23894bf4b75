import threading
import zlib
from typing import List, Optional

from sqlalchemy import func, text

from errors import RecordNotFoundError
from models import Book, Fine, FineStatus, Loan, LoanStatus, Member, Reservation, ReservationStatus

ACTIVE_LOAN_STATUSES = (LoanStatus.LOANED, LoanStatus.OVERDUE)

_local_scan_locks = {}
_local_scan_guard = threading.Lock()


class LedgerRepository:
    """Row access for the ledger, bound to one session and its transaction.

    Rows the ledger is about to change are read with ``FOR UPDATE`` so that
    concurrent writers on the same Book/Loan/Reservation serialize on the
    database's row locks.

    Lock order is Member, Loan, Book, then Fine and Reservation rows. A path
    that finds a reservation first reads it unlocked, locks its Book, then
    re-reads the reservation with ``lock=True``.
    """

    def __init__(self, session):
        self.session = session

    def _get(self, model, record_id, label, lock=False):
        query = self.session.query(model).filter(model.id == record_id)
        if lock:
            # Re-reads under lock must see the committed row, not the cached one.
            query = query.with_for_update().populate_existing()
        record = query.first()
        if record is None:
            raise RecordNotFoundError(f"{label} {record_id} not found")
        return record

    def get_member(self, member_id: int, lock: bool = False) -> Member:
        return self._get(Member, member_id, "Member", lock)

    def get_book(self, book_id: int, lock: bool = False) -> Book:
        return self._get(Book, book_id, "Book", lock)

    def get_loan(self, loan_id: int, lock: bool = False) -> Loan:
        return self._get(Loan, loan_id, "Loan", lock)

    def get_fine(self, fine_id: int, lock: bool = False) -> Fine:
        return self._get(Fine, fine_id, "Fine", lock)

    def get_reservation(self, reservation_id: int, lock: bool = False) -> Reservation:
        return self._get(Reservation, reservation_id, "Reservation", lock)

    def add(self, record):
        self.session.add(record)
        self.session.flush()
        return record

    # Loans

    def count_active_loans(self, member_id: int) -> int:
        return (
            self.session.query(func.count(Loan.id))
            .filter(Loan.member_id == member_id, Loan.status.in_(ACTIVE_LOAN_STATUSES))
            .scalar()
        )

    def count_book_active_loans(self, book_id: int) -> int:
        return (
            self.session.query(func.count(Loan.id))
            .filter(Loan.book_id == book_id, Loan.status.in_(ACTIVE_LOAN_STATUSES))
            .scalar()
        )

    def loans_due_before(self, day) -> List[Loan]:
        return (
            self.session.query(Loan)
            .filter(Loan.status == LoanStatus.LOANED, Loan.due_date < day)
            .order_by(Loan.id)
            .with_for_update()
            .all()
        )

    def overdue_loans(self) -> List[Loan]:
        return (
            self.session.query(Loan)
            .filter(Loan.status == LoanStatus.OVERDUE)
            .order_by(Loan.id)
            .with_for_update()
            .all()
        )

    # Fines

    def fine_for_loan(self, loan_id: int) -> Optional[Fine]:
        return (
            self.session.query(Fine)
            .filter(Fine.loan_id == loan_id)
            .order_by(Fine.id)
            .with_for_update()
            .first()
        )

    def unpaid_fines(self, member_id: int) -> List[Fine]:
        return (
            self.session.query(Fine)
            .join(Loan, Fine.loan_id == Loan.id)
            .filter(Loan.member_id == member_id, Fine.status == FineStatus.UNPAID)
            .order_by(Fine.id)
            .all()
        )

    # Reservations

    def open_reservation(self, member_id: int, book_id: int) -> Optional[Reservation]:
        return (
            self.session.query(Reservation)
            .filter(
                Reservation.member_id == member_id,
                Reservation.book_id == book_id,
                Reservation.status.in_((ReservationStatus.PENDING, ReservationStatus.ACTIVE)),
            )
            .first()
        )

    def active_reservation(self, member_id: int, book_id: int) -> Optional[Reservation]:
        return (
            self.session.query(Reservation)
            .filter(
                Reservation.member_id == member_id,
                Reservation.book_id == book_id,
                Reservation.status == ReservationStatus.ACTIVE,
            )
            .with_for_update()
            .first()
        )

    def count_holds(self, book_id: int, exclude_member_id: Optional[int] = None) -> int:
        query = self.session.query(func.count(Reservation.id)).filter(
            Reservation.book_id == book_id,
            Reservation.status == ReservationStatus.ACTIVE,
        )
        if exclude_member_id is not None:
            query = query.filter(Reservation.member_id != exclude_member_id)
        return query.scalar()

    def next_pending(self, book_id: int) -> Optional[Reservation]:
        # FIFO by date; same-day reservations keep insertion order.
        return (
            self.session.query(Reservation)
            .filter(Reservation.book_id == book_id, Reservation.status == ReservationStatus.PENDING)
            .order_by(Reservation.reservation_date, Reservation.id)
            .with_for_update()
            .first()
        )

    def active_reservations(self) -> List[Reservation]:
        return (
            self.session.query(Reservation)
            .filter(Reservation.status == ReservationStatus.ACTIVE)
            .order_by(Reservation.id)
            .all()
        )

    def all_books(self) -> List[Book]:
        return self.session.query(Book).order_by(Book.id).all()

    # Scan locking

    def try_scan_lock(self, name: str) -> bool:
        """Take the advisory lock for a batch scan without waiting.

        On PostgreSQL the lock is transaction scoped and released at commit
        or rollback. Other backends use an in-process lock which the caller
        must hand back with ``release_scan_lock``; it does not exclude a
        second process, so two sweeps on a SQLite file rely on the database
        refusing the second writer.
        """
        if self.session.get_bind().dialect.name == "postgresql":
            key = zlib.crc32(name.encode("utf-8"))
            return bool(
                self.session.execute(text("SELECT pg_try_advisory_xact_lock(:key)"), {"key": key}).scalar()
            )
        with _local_scan_guard:
            lock = _local_scan_locks.setdefault(name, threading.Lock())
        return lock.acquire(blocking=False)

    def release_scan_lock(self, name: str) -> None:
        if self.session.get_bind().dialect.name == "postgresql":
            return
        lock = _local_scan_locks.get(name)
        if lock is not None and lock.locked():
            lock.release()
