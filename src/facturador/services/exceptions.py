from __future__ import annotations


class FacturadorError(Exception):
    """Base class for every error raised by the invoicing core."""


class ConfigurationError(FacturadorError):
    """Credential material or settings are missing or unusable."""


class ValidationError(FacturadorError):
    """Caller-supplied voucher data is malformed."""


class TransportError(FacturadorError):
    """The remote authority could not be reached or answered at the HTTP level.

    ``maybe_delivered`` is True when the request may have been accepted before
    the failure (e.g. a read timeout). A voucher submission in that state has an
    unknown outcome and must be re-queried before resubmitting.
    """

    def __init__(self, message: str, *, maybe_delivered: bool = False) -> None:
        super().__init__(message)
        self.maybe_delivered = maybe_delivered


class AuthenticationError(FacturadorError):
    """The WSAA round trip did not produce an access ticket."""


class AlreadyAuthenticatedError(AuthenticationError):
    """WSAA reports a ticket for this identity and service is still active."""


def _format_pairs(pairs: list[tuple[str, str]]) -> str:
    return "; ".join(f"[{code}] {msg}" for code, msg in pairs)


class RemoteRejection(FacturadorError):
    """WSFE returned a top-level ``Errors`` collection; nothing was authorized."""

    def __init__(self, errors: list[tuple[str, str]], response: dict | None = None) -> None:
        super().__init__(_format_pairs(errors))
        self.errors = list(errors)
        self.response = response or {}


class VoucherRejected(FacturadorError):
    """WSFE processed the request but rejected the voucher (``Resultado`` = R)."""

    def __init__(
        self, observations: list[tuple[str, str]], response: dict | None = None
    ) -> None:
        super().__init__("Rechazado: " + _format_pairs(observations))
        self.observations = list(observations)
        self.response = response or {}


class SoapFault(Exception):
    """A SOAP ``Fault`` element came back; translated by the calling client."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}" if code else message)
        self.code = code
        self.message = message
