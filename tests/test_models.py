from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from facturador.models.credentials import Credentials
from facturador.models.ticket import AccessTicket
from facturador.models.voucher import (
    Observation,
    Outcome,
    VoucherRequest,
    VoucherResult,
    voucher_class,
)
from facturador.services.exceptions import ValidationError


class TestVoucherRequestFromDict:
    def test_required_and_defaults(self, voucher_dict):
        v = VoucherRequest.from_dict(voucher_dict)
        assert (v.point_of_sale, v.voucher_type, v.concept) == (1, 1, 1)
        assert v.total == Decimal("121.00")
        assert v.exempt == Decimal("0")
        assert v.currency == "PES"
        assert v.exchange_rate == Decimal("1")
        assert v.receptor_vat_condition is None
        assert v.vat_rates == ()

    def test_minimal_payload_defaults(self):
        v = VoucherRequest.from_dict({"ptoVta": 1, "cbteTipo": 11, "concepto": 1, "impTotal": 10})
        assert v.doc_type == 99
        assert v.doc_number == 0
        assert v.voucher_date is None

    def test_nested_lists(self, voucher_dict):
        voucher_dict["iva"] = [{"Id": 5, "BaseImp": "100", "Importe": "21"}]
        voucher_dict["tributos"] = [{"Id": 99, "Desc": "Percepción", "BaseImp": 100, "Alic": 1, "Importe": 1}]
        v = VoucherRequest.from_dict(voucher_dict)
        assert v.vat_rates[0].rate_id == 5
        assert v.vat_rates[0].amount == Decimal("21")
        assert v.other_taxes[0].description == "Percepción"

    def test_missing_total(self, voucher_dict):
        del voucher_dict["impTotal"]
        with pytest.raises(ValidationError, match="impTotal"):
            VoucherRequest.from_dict(voucher_dict)

    def test_non_numeric_amount(self, voucher_dict):
        voucher_dict["impNeto"] = "cien"
        with pytest.raises(ValidationError, match="impNeto"):
            VoucherRequest.from_dict(voucher_dict)

    def test_non_integer_field(self, voucher_dict):
        voucher_dict["ptoVta"] = "uno"
        with pytest.raises(ValidationError, match="ptoVta"):
            VoucherRequest.from_dict(voucher_dict)

    def test_incomplete_vat_entry(self, voucher_dict):
        voucher_dict["iva"] = [{"Id": 5}]
        with pytest.raises(ValidationError, match="iva"):
            VoucherRequest.from_dict(voucher_dict)

    def test_receptor_condition(self, voucher_dict):
        voucher_dict["condicionIVAReceptor"] = "6"
        assert VoucherRequest.from_dict(voucher_dict).receptor_vat_condition == 6


class TestVoucherClass:
    @pytest.mark.parametrize(
        "voucher_type,expected",
        [
            (1, "A"), (8, "B"), (11, "C"), (19, "E"), (21, "E"), (51, "M"),
            (201, "A"), (213, "C"), (999, None), (None, None),
        ],
    )
    def test_classes(self, voucher_type, expected):
        assert voucher_class(voucher_type) == expected


class TestVoucherResult:
    def test_to_dict(self):
        result = VoucherResult(
            cae="75103456789012",
            cae_expiration=date(2025, 3, 20),
            number_from=16,
            number_to=16,
            outcome=Outcome.APPROVED_WITH_OBSERVATIONS,
            observations=(Observation("10217", "aviso"),),
            point_of_sale=1,
            voucher_type=6,
        )
        assert result.to_dict() == {
            "cae": "75103456789012",
            "caeFchVto": "2025-03-20",
            "cbteDesde": 16,
            "cbteHasta": 16,
            "resultado": "approved_with_observations",
            "observaciones": [{"code": "10217", "msg": "aviso"}],
            "ptoVta": 1,
            "cbteTipo": 6,
        }


class TestAccessTicket:
    def test_validity_is_strict(self):
        expires = datetime(2025, 3, 11, tzinfo=UTC)
        ticket = AccessTicket("t", "s", expires)
        assert ticket.is_valid(datetime(2025, 3, 10, 23, 59, 59, tzinfo=UTC))
        assert not ticket.is_valid(expires)

    def test_dict_round_trip_keeps_offset(self):
        ticket = AccessTicket("t", "s", datetime.fromisoformat("2025-03-10T21:00:00-03:00"))
        assert AccessTicket.from_dict(ticket.to_dict()) == ticket

    def test_naive_timestamp_read_as_utc(self):
        ticket = AccessTicket.from_dict({"token": "t", "sign": "s", "expires_at": "2025-03-11T00:00:00"})
        assert ticket.expires_at.tzinfo is UTC


class TestCredentials:
    def test_repr_hides_secrets(self, credentials):
        text = repr(credentials)
        assert "BEGIN" not in text
        assert "20123456786" in text

    def test_cuit_number(self, credentials):
        assert credentials.cuit_number == 20123456786

    def test_defaults(self):
        creds = Credentials(cert_pem=b"c", key_pem=b"k", cuit="20123456786")
        assert creds.env == "homologacion"
        assert creds.service == "wsfe"
