from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import TypeVar

from facturador.services.exceptions import ValidationError

T = TypeVar("T")

# Concepto
CONCEPT_PRODUCTS = 1
CONCEPT_SERVICES = 2
CONCEPT_MIXED = 3
SERVICE_CONCEPTS = frozenset({CONCEPT_SERVICES, CONCEPT_MIXED})

# CondicionIVAReceptorId
VAT_REGISTERED = 1  # IVA Responsable Inscripto
FINAL_CONSUMER = 5  # Consumidor Final

# CbteTipo -> letter class
VOUCHER_CLASS = {
    1: "A", 2: "A", 3: "A", 4: "A", 5: "A", 39: "A", 60: "A", 63: "A",
    201: "A", 202: "A", 203: "A",
    6: "B", 7: "B", 8: "B", 9: "B", 10: "B", 40: "B", 61: "B", 64: "B",
    206: "B", 207: "B", 208: "B",
    11: "C", 12: "C", 13: "C", 15: "C",
    211: "C", 212: "C", 213: "C",
    51: "M", 52: "M", 53: "M", 54: "M",
    19: "E", 20: "E", 21: "E",
}
VAT_BEARING_CLASSES = frozenset({"A", "B", "M"})

# AlicIva Id by percentage
VAT_RATE_IDS = {
    Decimal("0"): 3,
    Decimal("2.5"): 9,
    Decimal("5"): 8,
    Decimal("10.5"): 4,
    Decimal("21"): 5,
    Decimal("27"): 6,
}

DEFAULT_CURRENCY = "PES"


def voucher_class(voucher_type: int | None) -> str | None:
    """Return the letter (A/B/C/E/M) of a voucher type, or None if unknown."""
    if voucher_type is None:
        return None
    return VOUCHER_CLASS.get(voucher_type)


def to_decimal(value: object, field_name: str) -> Decimal:
    """Parse a caller-supplied amount, raising ValidationError when not numeric."""
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value))
        except InvalidOperation:
            raise ValidationError(f"{field_name}: valor numérico inválido '{value}'") from None
    if not d.is_finite():
        raise ValidationError(f"{field_name}: valor numérico inválido '{value}'")
    return d


def _opt_int(value: object, field_name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name}: se esperaba un entero, no '{value}'") from None


def _entries(items: list | None, factory: Callable[[dict], T], field_name: str) -> tuple[T, ...]:
    try:
        return tuple(factory(item) for item in items or [])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name}: entrada incompleta o inválida ({exc})") from exc


@dataclass(frozen=True)
class VatRate:
    """One AlicIva entry: rate id, taxable base and VAT amount."""

    rate_id: int
    base: Decimal
    amount: Decimal

    @classmethod
    def from_dict(cls, d: dict) -> VatRate:
        return cls(
            rate_id=int(d["Id"]),
            base=to_decimal(d["BaseImp"], "BaseImp"),
            amount=to_decimal(d["Importe"], "Importe"),
        )


@dataclass(frozen=True)
class OtherTax:
    """One Tributo entry (provincial, municipal or other non-VAT tax)."""

    tax_id: int
    description: str
    base: Decimal
    rate: Decimal
    amount: Decimal

    @classmethod
    def from_dict(cls, d: dict) -> OtherTax:
        return cls(
            tax_id=int(d["Id"]),
            description=str(d.get("Desc", "")),
            base=to_decimal(d["BaseImp"], "BaseImp"),
            rate=to_decimal(d.get("Alic", 0), "Alic"),
            amount=to_decimal(d["Importe"], "Importe"),
        )


@dataclass(frozen=True)
class AssociatedVoucher:
    """Reference to a previous voucher (credit/debit notes)."""

    voucher_type: int
    point_of_sale: int
    number: int
    cuit: str | None = None
    date: str | None = None  # YYYYMMDD

    @classmethod
    def from_dict(cls, d: dict) -> AssociatedVoucher:
        cuit = d.get("Cuit")
        return cls(
            voucher_type=int(d["Tipo"]),
            point_of_sale=int(d["PtoVta"]),
            number=int(d["Nro"]),
            cuit=str(cuit) if cuit else None,
            date=d.get("CbteFch"),
        )


@dataclass(frozen=True)
class VoucherRequest:
    """Caller's description of a voucher to authorize (one FECAEDetRequest)."""

    point_of_sale: int | None
    voucher_type: int | None
    concept: int | None
    total: Decimal
    doc_type: int = 99
    doc_number: int = 0
    number_from: int = 0
    number_to: int = 0
    voucher_date: str | None = None  # YYYYMMDD, None means today
    net: Decimal = Decimal("0")
    untaxed: Decimal = Decimal("0")
    exempt: Decimal = Decimal("0")
    vat: Decimal = Decimal("0")
    other_taxes_total: Decimal = Decimal("0")
    vat_rates: tuple[VatRate, ...] = ()
    receptor_vat_condition: int | None = None
    service_from: str | None = None
    service_to: str | None = None
    payment_due: str | None = None
    other_taxes: tuple[OtherTax, ...] = ()
    associated: tuple[AssociatedVoucher, ...] = ()
    currency: str = DEFAULT_CURRENCY
    exchange_rate: Decimal = Decimal("1")
    same_currency_payment: str = "N"

    @classmethod
    def from_dict(cls, d: dict) -> VoucherRequest:
        """Create a VoucherRequest from the JSON body used by the CLI.

        Keys follow the WSFE field names in lowerCamelCase (``ptoVta``,
        ``cbteTipo``, ``impTotal``...), applying zero defaults for omitted amounts.
        """
        if "impTotal" not in d:
            raise ValidationError("Falta el campo impTotal")
        return cls(
            point_of_sale=_opt_int(d.get("ptoVta"), "ptoVta"),
            voucher_type=_opt_int(d.get("cbteTipo"), "cbteTipo"),
            concept=_opt_int(d.get("concepto"), "concepto"),
            total=to_decimal(d["impTotal"], "impTotal"),
            doc_type=_opt_int(d.get("docTipo"), "docTipo") or 99,
            doc_number=_opt_int(d.get("docNro"), "docNro") or 0,
            number_from=_opt_int(d.get("cbteDesde"), "cbteDesde") or 0,
            number_to=_opt_int(d.get("cbteHasta"), "cbteHasta") or 0,
            voucher_date=d.get("cbteFch") or None,
            net=to_decimal(d.get("impNeto") or 0, "impNeto"),
            untaxed=to_decimal(d.get("impTotConc") or 0, "impTotConc"),
            exempt=to_decimal(d.get("impOpEx") or 0, "impOpEx"),
            vat=to_decimal(d.get("impIVA") or 0, "impIVA"),
            other_taxes_total=to_decimal(d.get("impTrib") or 0, "impTrib"),
            vat_rates=_entries(d.get("iva"), VatRate.from_dict, "iva"),
            receptor_vat_condition=_opt_int(
                d.get("condicionIVAReceptor"), "condicionIVAReceptor"
            ),
            service_from=d.get("fchServDesde") or None,
            service_to=d.get("fchServHasta") or None,
            payment_due=d.get("fchVtoPago") or None,
            other_taxes=_entries(d.get("tributos"), OtherTax.from_dict, "tributos"),
            associated=_entries(d.get("cbtesAsoc"), AssociatedVoucher.from_dict, "cbtesAsoc"),
            currency=d.get("monId") or DEFAULT_CURRENCY,
            exchange_rate=to_decimal(d.get("monCotiz") or 1, "monCotiz"),
            same_currency_payment=d.get("canMisMonExt") or "N",
        )


class Outcome(Enum):
    APPROVED = "approved"
    APPROVED_WITH_OBSERVATIONS = "approved_with_observations"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Observation:
    code: str
    message: str


@dataclass(frozen=True)
class VoucherResult:
    """Outcome of a successful FECAESolicitar call for one voucher."""

    cae: str
    cae_expiration: date | None
    number_from: int
    number_to: int
    outcome: Outcome
    observations: tuple[Observation, ...] = ()
    point_of_sale: int | None = None
    voucher_type: int | None = None

    def to_dict(self) -> dict:
        return {
            "cae": self.cae,
            "caeFchVto": self.cae_expiration.isoformat() if self.cae_expiration else None,
            "cbteDesde": self.number_from,
            "cbteHasta": self.number_to,
            "resultado": self.outcome.value,
            "observaciones": [{"code": o.code, "msg": o.message} for o in self.observations],
            "ptoVta": self.point_of_sale,
            "cbteTipo": self.voucher_type,
        }
