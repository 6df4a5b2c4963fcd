from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree

from facturador.models.credentials import Credentials
from facturador.models.voucher import VoucherRequest

WSFE_NS = "http://ar.gov.afip.dif.FEV1/"


def wsfe_payload(operation: str, result_xml: str) -> etree._Element:
    """Build the ``<op>Response`` element a transport would hand back."""
    return etree.fromstring(
        f'<{operation}Response xmlns="{WSFE_NS}">'
        f"<{operation}Result>{result_xml}</{operation}Result>"
        f"</{operation}Response>"
    )


def login_payload(token: str, sign: str, expiration: str) -> etree._Element:
    ticket = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<loginTicketResponse version="1.0"><header>'
        "<source>CN=wsaahomo</source><destination>SERIALNUMBER=CUIT 20123456786</destination>"
        "<uniqueId>1</uniqueId><generationTime>2025-01-01T00:00:00.000-03:00</generationTime>"
        f"<expirationTime>{expiration}</expirationTime>"
        f"</header><credentials><token>{token}</token><sign>{sign}</sign></credentials>"
        "</loginTicketResponse>"
    )
    escaped = ticket.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    return etree.fromstring(
        '<ns1:loginCmsResponse xmlns:ns1="http://wsaa.view.ws.afip.gov.ar">'
        f"<ns1:loginCmsReturn>{escaped}</ns1:loginCmsReturn>"
        "</ns1:loginCmsResponse>"
    )


class FakeClock:
    """Settable clock for expiration tests."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 10, 12, 0, tzinfo=UTC))


# --- Certificate fixtures ---


def _make_cert(key, common_name: str):
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, "CUIT 20123456786"),
        ]
    )
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(datetime.now(UTC) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key, _make_cert(key, "facturador-test")


@pytest.fixture(scope="session")
def self_signed_pem(test_key_and_cert):
    key, cert = test_key_and_cert
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


@pytest.fixture(scope="session")
def other_key_pem():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def test_pfx(tmp_path, test_key_and_cert):
    key, cert = test_key_and_cert
    pfx_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(b"testpass"),
    )
    pfx_path = tmp_path / "test.pfx"
    pfx_path.write_bytes(pfx_data)
    return str(pfx_path), "testpass"


@pytest.fixture
def credentials(self_signed_pem) -> Credentials:
    key_pem, cert_pem = self_signed_pem
    return Credentials(cert_pem=cert_pem, key_pem=key_pem, cuit="20123456786")


# --- Voucher fixtures ---


@pytest.fixture
def voucher_dict() -> dict:
    return {
        "ptoVta": 1,
        "cbteTipo": 1,
        "concepto": 1,
        "docTipo": 80,
        "docNro": 30712345671,
        "cbteDesde": 15,
        "cbteHasta": 15,
        "cbteFch": "20250310",
        "impTotal": "121.00",
        "impNeto": "100.00",
        "impIVA": "21.00",
    }


@pytest.fixture
def voucher(voucher_dict) -> VoucherRequest:
    return VoucherRequest.from_dict(voucher_dict)


@pytest.fixture
def service_voucher() -> VoucherRequest:
    return VoucherRequest(
        point_of_sale=2,
        voucher_type=11,
        concept=2,
        total=Decimal("5000"),
        net=Decimal("5000"),
        number_from=7,
        number_to=7,
        voucher_date="20250310",
        service_from="20250201",
        service_to="20250228",
        payment_due="20250320",
    )


# --- Config dir fixture ---


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    cfg = tmp_path / "config"
    data = tmp_path / "data"
    cfg.mkdir()
    data.mkdir()
    monkeypatch.setenv("FACTURADOR_CONFIG_DIR", str(cfg))
    monkeypatch.setenv("FACTURADOR_DATA_DIR", str(data))
    for var in (
        "ARCA_CUIT",
        "ARCA_ENV",
        "ARCA_CERT",
        "ARCA_KEY",
        "ARCA_CERT_PATH",
        "ARCA_KEY_PATH",
        "ARCA_PFX_PATH",
        "ARCA_PFX_PASSWORD",
        "ARCA_KEY_PASSWORD",
        "ARCA_PTO_VTA",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("facturador.config._get_keyring_password", lambda: None)
    return cfg


@pytest.fixture
def make_wsfe_payload():
    return wsfe_payload


@pytest.fixture
def make_login_payload():
    return login_payload
