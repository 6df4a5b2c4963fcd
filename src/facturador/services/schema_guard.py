from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

RECEPTOR_VAT_FIELD = "CondicionIVAReceptorId"

# FECAEDetRequest sequence: ... MonId, MonCotiz, CanMisMonExt, CondicionIVAReceptorId, ...
# The field goes right after the last of these anchors that is present.
_ANCHORS = ("CanMisMonExt", "MonCotiz")

_PRESENT_RE = re.compile(rb"<(?:[\w.-]+:)?" + RECEPTOR_VAT_FIELD.encode() + rb"[\s/>]")


def _anchor_re(name: str) -> re.Pattern[bytes]:
    tag = name.encode()
    return re.compile(
        rb"</(?:([\w.-]+):)?" + tag + rb"\s*>"
        rb"|<(?:([\w.-]+):)?" + tag + rb"(?:\s[^>]*)?/>"
    )


_ANCHOR_RES = [(name, _anchor_re(name)) for name in _ANCHORS]


def has_receptor_vat_condition(document: bytes) -> bool:
    return _PRESENT_RE.search(document) is not None


def ensure_receptor_vat_condition(document: bytes, value: int) -> bytes:
    """Re-insert ``CondicionIVAReceptorId`` if the marshaller dropped it.

    WSDL revisions published before the field existed make the serializer omit
    it, while the authority rejects vouchers without it. The element is added
    after the anchor with the anchor's namespace prefix. Documents that already
    carry the field are returned unchanged.
    """
    if has_receptor_vat_condition(document):
        return document

    for name, pattern in _ANCHOR_RES:
        match = pattern.search(document)
        if match is None:
            continue
        prefix = match.group(1) or match.group(2)
        tag = (prefix + b":" if prefix else b"") + RECEPTOR_VAT_FIELD.encode()
        element = b"<" + tag + b">" + str(int(value)).encode() + b"</" + tag + b">"
        logger.warning(
            "%s missing from serialized request; inserted after %s (value %s)",
            RECEPTOR_VAT_FIELD,
            name,
            value,
        )
        return document[: match.end()] + element + document[match.end() :]

    logger.warning("%s missing and no anchor found; request left unchanged", RECEPTOR_VAT_FIELD)
    return document
