from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

_CENT = Decimal("0.01")


def wire_amount(value: Decimal) -> Decimal:
    """Round an amount to cents, as WSFE expects for every Imp* field."""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def wire_date(value: date) -> str:
    """Format a date as YYYYMMDD."""
    return value.strftime("%Y%m%d")


def parse_wire_date(value: str | None) -> date | None:
    """Parse a YYYYMMDD string returned by WSFE; empty values give None."""
    if not value:
        return None
    return datetime.strptime(value.strip(), "%Y%m%d").date()
