from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
    pkcs12,
)
from cryptography.x509 import Certificate

from facturador.services.exceptions import ConfigurationError


def load_pfx(pfx_path: str, password: str) -> tuple[bytes, bytes, list[Certificate]]:
    """Read a PKCS#12 bundle and return (key_pem, cert_pem, ca_chain).

    The key comes back unencrypted so it can feed the CMS signer directly.
    """
    try:
        pfx_data = Path(pfx_path).expanduser().read_bytes()
        private_key, certificate, chain = pkcs12.load_key_and_certificates(
            pfx_data, password.encode() if password else None
        )
    except OSError as exc:
        raise ConfigurationError(f"No se pudo leer ARCA_PFX_PATH '{pfx_path}': {exc}") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Archivo PKCS#12 inválido o contraseña incorrecta: {exc}") from exc

    if private_key is None or certificate is None:
        raise ConfigurationError("El archivo PKCS#12 no contiene certificado y clave privada")

    key_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.PKCS8,
        encryption_algorithm=NoEncryption(),
    )
    return key_pem, certificate.public_bytes(Encoding.PEM), list(chain or [])


def normalize_pem(value: str | bytes) -> bytes:
    """Turn a PEM pasted into a single-line env var (literal ``\\n``) back into PEM bytes."""
    text = value.decode() if isinstance(value, bytes) else value
    return text.replace("\\n", "\n").strip().encode() + b"\n"


def load_certificate(cert_pem: bytes) -> Certificate:
    try:
        return x509.load_pem_x509_certificate(cert_pem)
    except ValueError as exc:
        raise ConfigurationError(f"Certificado PEM inválido: {exc}") from exc


def load_private_key(key_pem: bytes, password: str | None = None) -> PrivateKeyTypes:
    try:
        return load_pem_private_key(key_pem, password.encode() if password else None)
    except TypeError as exc:
        # encrypted key without password, or password given for a plain key
        raise ConfigurationError(f"Clave privada: {exc}") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Clave privada inválida: {exc}") from exc


def _public_der(obj: Certificate | PrivateKeyTypes) -> bytes:
    public_key = obj.public_key()
    return public_key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)


def load_key_pair(
    cert_pem: bytes, key_pem: bytes, password: str | None = None
) -> tuple[Certificate, PrivateKeyTypes]:
    """Parse a certificate and its private key, checking that they belong together."""
    certificate = load_certificate(cert_pem)
    private_key = load_private_key(key_pem, password)
    if _public_der(certificate) != _public_der(private_key):
        raise ConfigurationError("La clave privada no corresponde al certificado")
    return certificate, private_key


def describe_certificate(certificate: Certificate) -> dict:
    now = datetime.now(UTC)
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc,
        "not_after": certificate.not_valid_after_utc,
        "valid": certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc,
        "serial": certificate.serial_number,
    }
