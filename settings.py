"""Typed view of the LibrarySettings key/value table.

The ledger reads four settings. Rows hold strings, so each key has a parser
that turns the stored text into its typed value (integer days, a decimal
currency amount, an integer count).
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from errors import SettingsError
from models import DEFAULT_SETTINGS, Setting

logger = logging.getLogger(__name__)


def _parse_days(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise ValueError("must not be negative")
    return value


def _parse_count(raw: str) -> int:
    value = int(raw)
    if value < 1:
        raise ValueError("must be at least 1")
    return value


def _parse_money(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ValueError("not a decimal amount")
    if not value.is_finite() or value < 0:
        raise ValueError("must be a non-negative amount")
    return value


# SettingName -> (LedgerSettings field, parser)
RECOGNIZED = {
    "DefaultLoanDuration": ("default_loan_duration", _parse_days),
    "FinePerDay": ("fine_per_day", _parse_money),
    "MaxBookLoans": ("max_book_loans", _parse_count),
    "ReservationExpiryDays": ("reservation_expiry_days", _parse_days),
}

_DEFAULTS = {name: value for name, value, _ in DEFAULT_SETTINGS}


def parse_setting(name: str, raw: str):
    if name not in RECOGNIZED:
        raise SettingsError(f"Unknown setting: {name}")
    _, parser = RECOGNIZED[name]
    try:
        return parser(raw.strip())
    except (ValueError, AttributeError) as exc:
        raise SettingsError(f"Invalid value {raw!r} for {name}: {exc}") from exc


@dataclass(frozen=True)
class LedgerSettings:
    default_loan_duration: int
    fine_per_day: Decimal
    max_book_loans: int
    reservation_expiry_days: int

    @classmethod
    def from_mapping(cls, rows: Dict[str, str]) -> "LedgerSettings":
        """Build settings from SettingName -> SettingValue pairs.

        Unrecognized names are ignored; recognized names that are missing
        fall back to the seeded default.
        """
        values = {}
        for name, (field_name, _) in RECOGNIZED.items():
            raw: Optional[str] = rows.get(name)
            if raw is None:
                logger.warning("Setting %s missing, using default %s", name, _DEFAULTS[name])
                raw = _DEFAULTS[name]
            values[field_name] = parse_setting(name, raw)
        return cls(**values)

    @classmethod
    def defaults(cls) -> "LedgerSettings":
        return cls(**{field: parse_setting(name, _DEFAULTS[name]) for name, (field, _) in RECOGNIZED.items()})


def load_settings(session) -> LedgerSettings:
    rows = {setting.name: setting.value for setting in session.query(Setting).all()}
    return LedgerSettings.from_mapping(rows)


def update_setting(session, name: str, raw: str) -> Setting:
    """Validate and store a new value for a recognized setting."""
    parse_setting(name, raw)
    setting = session.query(Setting).filter(Setting.name == name).first()
    if setting is None:
        description = next(desc for key, _, desc in DEFAULT_SETTINGS if key == name)
        setting = Setting(name=name, value=raw.strip(), description=description)
        session.add(setting)
    else:
        setting.value = raw.strip()
    logger.info("Setting %s updated to %s", name, raw.strip())
    return setting
