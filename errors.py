class LedgerError(Exception):
    """Base exception for loan ledger errors."""


class CapacityError(LedgerError):
    """Member already holds the maximum number of active loans."""


class UnavailableError(LedgerError):
    """No free copy of the book is left to lend."""


class InvalidStateError(LedgerError):
    """Illegal status transition, e.g. returning a returned loan."""


class StateError(LedgerError):
    """Reservation refused: the book can be borrowed, or is already reserved by the member."""


class RecordNotFoundError(LedgerError):
    """Requested member, book, loan, fine or reservation does not exist."""


class SettingsError(LedgerError):
    """A library setting is unknown or its value cannot be parsed."""
