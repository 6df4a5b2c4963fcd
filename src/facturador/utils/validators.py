from __future__ import annotations

import re
from datetime import datetime

_CUIT_WEIGHTS = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)


def only_digits(value: object) -> str:
    return re.sub(r"\D+", "", str(value or ""))


def validate_cuit(value: str) -> str:
    """Validate a CUIT/CUIL (dashes allowed) and return its 11 digits.

    Raises ValueError if the length or the check digit is wrong.
    """
    digits = only_digits(value)
    if len(digits) != 11:
        raise ValueError(f"CUIT inválido: '{value}' (se esperan 11 dígitos)")
    total = sum(int(d) * w for d, w in zip(digits[:10], _CUIT_WEIGHTS, strict=True))
    check = 11 - total % 11
    if check == 11:
        check = 0
    elif check == 10:
        check = 9
    if check != int(digits[10]):
        raise ValueError(f"CUIT inválido: '{value}' (dígito verificador incorrecto)")
    return digits


def validate_wire_date(value: str) -> str:
    """Validate a date in the WSFE format (YYYYMMDD).

    Returns the value unchanged if valid.
    Raises ValueError for invalid dates.
    """
    if not re.fullmatch(r"\d{8}", str(value)):
        raise ValueError(f"Fecha inválida: '{value}'. Use AAAAMMDD.")
    try:
        datetime.strptime(value, "%Y%m%d")
    except ValueError:
        raise ValueError(f"Fecha inválida: '{value}'. Use AAAAMMDD.") from None
    return value
