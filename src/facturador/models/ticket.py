from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from lxml import etree

ARCA_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S+00:00"


def format_arca_time(value: datetime) -> str:
    """Render *value* in UTC with a fixed ``+00:00`` offset, as WSAA expects."""
    return value.astimezone(UTC).strftime(ARCA_TIME_FORMAT)


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, tag)
    if text is not None:
        el.text = text
    return el


@dataclass(frozen=True)
class AuthRequest:
    """Ticket de Requerimiento de Acceso (TRA) sent to WSAA."""

    unique_id: int
    generation_time: datetime
    expiration_time: datetime
    service: str

    def to_xml(self) -> bytes:
        """Render the ``loginTicketRequest`` document, UTC times at second precision."""
        root = etree.Element("loginTicketRequest")
        root.set("version", "1.0")
        header = _sub(root, "header")
        _sub(header, "uniqueId", str(self.unique_id))
        _sub(header, "generationTime", format_arca_time(self.generation_time))
        _sub(header, "expirationTime", format_arca_time(self.expiration_time))
        _sub(root, "service", self.service)
        return etree.tostring(root, xml_declaration=True, encoding="UTF-8")


@dataclass(frozen=True)
class AccessTicket:
    """Token + sign pair returned by WSAA, valid until ``expires_at``."""

    token: str
    sign: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "sign": self.sign,
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> AccessTicket:
        expires_at = datetime.fromisoformat(d["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return cls(token=d["token"], sign=d["sign"], expires_at=expires_at)
