from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from facturador.models.voucher import (
    FINAL_CONSUMER,
    SERVICE_CONCEPTS,
    VAT_BEARING_CLASSES,
    VAT_RATE_IDS,
    VAT_REGISTERED,
    AssociatedVoucher,
    OtherTax,
    VatRate,
    VoucherRequest,
    voucher_class,
)
from facturador.services.exceptions import ValidationError
from facturador.utils.formatters import wire_amount, wire_date
from facturador.utils.validators import validate_wire_date

ART = timezone(timedelta(hours=-3))

_VALID_CONCEPTS = frozenset({1, 2, 3})
_TOLERANCE = Decimal("0.01")


def _today_art() -> date:
    return datetime.now(ART).date()


def default_receptor_vat_condition(voucher_type: int | None) -> int:
    """Class A vouchers go to VAT-registered receptors; everything else to final consumers."""
    if voucher_class(voucher_type) == "A":
        return VAT_REGISTERED
    return FINAL_CONSUMER


def derive_vat_rates(net: Decimal, vat: Decimal) -> tuple[VatRate, ...]:
    """Build a single AlicIva entry for the rate closest to vat/net, within one cent."""
    if net <= 0:
        raise ValidationError("No se puede deducir la alícuota de IVA sin importe neto")
    diff, rate_id = min(
        (abs(wire_amount(net * pct / 100) - vat), rate_id) for pct, rate_id in VAT_RATE_IDS.items()
    )
    if diff <= _TOLERANCE:
        return (VatRate(rate_id=rate_id, base=wire_amount(net), amount=wire_amount(vat)),)
    raise ValidationError(
        f"impIVA {vat} no corresponde a ninguna alícuota vigente sobre impNeto {net}; "
        "informe el detalle de IVA"
    )


def _check_date(value: str, field_name: str) -> None:
    try:
        validate_wire_date(value)
    except ValueError as exc:
        raise ValidationError(f"{field_name}: {exc}") from None


def validate_voucher(voucher: VoucherRequest) -> None:
    """Raise ValidationError if *voucher* cannot be turned into a detail record."""
    missing = [
        name
        for name, value in (
            ("ptoVta", voucher.point_of_sale),
            ("cbteTipo", voucher.voucher_type),
            ("concepto", voucher.concept),
        )
        if not value
    ]
    if missing:
        raise ValidationError(f"Faltan campos: {', '.join(missing)}")
    if voucher.concept not in _VALID_CONCEPTS:
        raise ValidationError(f"concepto inválido: {voucher.concept} (1, 2 o 3)")
    if voucher.number_from <= 0 or voucher.number_to <= 0:
        raise ValidationError("cbteDesde y cbteHasta deben ser mayores que cero")
    if voucher.number_from > voucher.number_to:
        raise ValidationError("cbteDesde no puede ser mayor que cbteHasta")

    amounts = {
        "impTotal": voucher.total,
        "impNeto": voucher.net,
        "impTotConc": voucher.untaxed,
        "impOpEx": voucher.exempt,
        "impIVA": voucher.vat,
        "impTrib": voucher.other_taxes_total,
    }
    for name, amount in amounts.items():
        if amount < 0:
            raise ValidationError(f"{name} no puede ser negativo")
    parts = voucher.net + voucher.untaxed + voucher.exempt + voucher.vat
    if abs(parts + voucher.other_taxes_total - voucher.total) > _TOLERANCE:
        raise ValidationError(
            "impTotal debe ser igual a impNeto + impTotConc + impOpEx + impIVA + impTrib"
        )

    cls = voucher_class(voucher.voucher_type)
    if cls is not None and cls not in VAT_BEARING_CLASSES and voucher.vat_rates:
        raise ValidationError(f"Los comprobantes clase {cls} no llevan detalle de IVA")

    if voucher.voucher_date:
        _check_date(voucher.voucher_date, "cbteFch")
    if voucher.concept in SERVICE_CONCEPTS:
        for name, value in (
            ("fchServDesde", voucher.service_from),
            ("fchServHasta", voucher.service_to),
            ("fchVtoPago", voucher.payment_due),
        ):
            if not value:
                raise ValidationError(f"{name} es obligatorio para concepto servicios")
            _check_date(value, name)


def _vat_entries(voucher: VoucherRequest) -> tuple[VatRate, ...]:
    if voucher_class(voucher.voucher_type) not in VAT_BEARING_CLASSES:
        return ()
    if voucher.vat_rates:
        return voucher.vat_rates
    if voucher.vat != 0:
        return derive_vat_rates(voucher.net, voucher.vat)
    return ()


def _alic_iva(rate: VatRate) -> dict:
    return {"Id": rate.rate_id, "BaseImp": wire_amount(rate.base), "Importe": wire_amount(rate.amount)}


def _tributo(tax: OtherTax) -> dict:
    return {
        "Id": tax.tax_id,
        "Desc": tax.description,
        "BaseImp": wire_amount(tax.base),
        "Alic": tax.rate,
        "Importe": wire_amount(tax.amount),
    }


def _cbte_asoc(ref: AssociatedVoucher) -> dict:
    entry: dict = {"Tipo": ref.voucher_type, "PtoVta": ref.point_of_sale, "Nro": ref.number}
    if ref.cuit:
        entry["Cuit"] = ref.cuit
    if ref.date:
        entry["CbteFch"] = ref.date
    return entry


def build_header(voucher: VoucherRequest) -> dict:
    """FeCabReq for a single-record request."""
    return {"CantReg": 1, "PtoVta": voucher.point_of_sale, "CbteTipo": voucher.voucher_type}


def build_detail(voucher: VoucherRequest, today: date | None = None) -> dict:
    """Map *voucher* to a FECAEDetRequest dict.

    Optional groups (service dates, CbtesAsoc, Tributos, Iva) only appear when
    they apply; CondicionIVAReceptorId is always set.
    """
    validate_voucher(voucher)

    condition = voucher.receptor_vat_condition
    if condition is None:
        condition = default_receptor_vat_condition(voucher.voucher_type)

    detail: dict = {
        "Concepto": voucher.concept,
        "DocTipo": voucher.doc_type,
        "DocNro": voucher.doc_number,
        "CbteDesde": voucher.number_from,
        "CbteHasta": voucher.number_to,
        "CbteFch": voucher.voucher_date or wire_date(today or _today_art()),
        "ImpTotal": wire_amount(voucher.total),
        "ImpTotConc": wire_amount(voucher.untaxed),
        "ImpNeto": wire_amount(voucher.net),
        "ImpOpEx": wire_amount(voucher.exempt),
        "ImpTrib": wire_amount(voucher.other_taxes_total),
        "ImpIVA": wire_amount(voucher.vat),
    }
    if voucher.concept in SERVICE_CONCEPTS:
        detail["FchServDesde"] = voucher.service_from
        detail["FchServHasta"] = voucher.service_to
        detail["FchVtoPago"] = voucher.payment_due
    detail["MonId"] = voucher.currency
    detail["MonCotiz"] = voucher.exchange_rate
    detail["CanMisMonExt"] = voucher.same_currency_payment
    detail["CondicionIVAReceptorId"] = condition

    if voucher.associated:
        detail["CbtesAsoc"] = {"CbteAsoc": [_cbte_asoc(a) for a in voucher.associated]}
    if voucher.other_taxes:
        detail["Tributos"] = {"Tributo": [_tributo(t) for t in voucher.other_taxes]}
    vat_rates = _vat_entries(voucher)
    if vat_rates:
        detail["Iva"] = {"AlicIva": [_alic_iva(r) for r in vat_rates]}
    return detail
