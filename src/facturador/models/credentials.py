from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Credentials:
    """Material the core needs to authenticate against ARCA."""

    cert_pem: bytes = field(repr=False)
    key_pem: bytes = field(repr=False)
    cuit: str
    env: str = "homologacion"
    key_password: str | None = field(default=None, repr=False)
    service: str = "wsfe"
    point_of_sale: int | None = None

    @property
    def cuit_number(self) -> int:
        return int(self.cuit)
