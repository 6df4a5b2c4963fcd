from __future__ import annotations

import base64

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import Encoding, pkcs7

from facturador.services.exceptions import ConfigurationError
from facturador.utils.certificate import load_key_pair


def sign_tra(
    tra_xml: bytes,
    cert_pem: bytes,
    key_pem: bytes,
    key_password: str | None = None,
) -> str:
    """Sign the TRA as PKCS#7/CMS SignedData with SHA-256 and return it base64 encoded.

    The signer certificate is attached and the signed attributes are
    content-type, signing-time and message-digest. The TRA travels inside the
    structure because WSAA reads the request from the envelope itself.
    """
    certificate, private_key = load_key_pair(cert_pem, key_pem, key_password)
    if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ConfigurationError("Tipo de clave privada no soportado para firma CMS")

    der = (
        pkcs7.PKCS7SignatureBuilder()
        .set_data(tra_xml)
        .add_signer(certificate, private_key, hashes.SHA256())
        .sign(
            Encoding.DER,
            [pkcs7.PKCS7Options.Binary, pkcs7.PKCS7Options.NoCapabilities],
        )
    )
    return base64.b64encode(der).decode("ascii")
