from __future__ import annotations

import logging

from lxml import etree

from facturador.models.voucher import Observation, Outcome, VoucherRequest, VoucherResult
from facturador.services.exceptions import (
    RemoteRejection,
    SoapFault,
    TransportError,
    VoucherRejected,
)
from facturador.services.http_retry import WSFE_READ, WSFE_SUBMIT, RetryPolicy
from facturador.services.schema_guard import ensure_receptor_vat_condition
from facturador.services.soap_transport import SoapTransport
from facturador.services.voucher_builder import build_detail, build_header
from facturador.services.wsaa_client import AuthClient
from facturador.utils.formatters import parse_wire_date

logger = logging.getLogger(__name__)

WSFE_NS = "http://ar.gov.afip.dif.FEV1/"
DETAIL_TYPE = f"{{{WSFE_NS}}}FECAEDetRequest"
_NS = {"fe": WSFE_NS}

# FEParamGetPtosVenta answers "602 Sin Resultados" when no point of sale exists
NO_RESULTS = "602"


def _local(tag: str) -> str:
    return etree.QName(tag).localname


def element_to_dict(el: etree._Element) -> dict:
    """Convert a response element into nested dicts keyed by local name.

    Repeated children become lists; leaf values are stripped text.
    """
    out: dict = {}
    for child in el:
        if not isinstance(child.tag, str):
            continue
        key = _local(child.tag)
        value = element_to_dict(child) if len(child) else (child.text or "").strip()
        if key in out:
            if not isinstance(out[key], list):
                out[key] = [out[key]]
            out[key].append(value)
        else:
            out[key] = value
    return out


def _pairs(parent: etree._Element, path: str) -> list[tuple[str, str]]:
    return [
        (el.findtext("fe:Code", default="", namespaces=_NS).strip(),
         el.findtext("fe:Msg", default="", namespaces=_NS).strip())
        for el in parent.findall(path, _NS)
    ]


def _result(payload: etree._Element, operation: str) -> etree._Element:
    result = payload.find(f"fe:{operation}Result", _NS)
    if result is None:
        raise TransportError(f"Respuesta {operation} sin {operation}Result")
    return result


def _log_events(result: etree._Element, operation: str) -> None:
    for code, msg in _pairs(result, "fe:Events/fe:Evt"):
        logger.info("WSFE event on %s: [%s] %s", operation, code, msg)


def _raise_errors(result: etree._Element) -> None:
    errors = _pairs(result, "fe:Errors/fe:Err")
    if errors:
        raise RemoteRejection(errors, response=element_to_dict(result))


def parse_cae_response(payload: etree._Element) -> VoucherResult:
    """Interpret a ``FECAESolicitarResponse`` for a single voucher.

    Raises RemoteRejection for a top-level Errors list and VoucherRejected
    when the voucher itself was rejected.
    """
    result = _result(payload, "FECAESolicitar")
    _log_events(result, "FECAESolicitar")
    _raise_errors(result)

    det = result.find("fe:FeDetResp/fe:FECAEDetResponse", _NS)
    if det is None:
        raise TransportError(
            "Respuesta FECAESolicitar sin detalle; consulte el comprobante antes de reintentar",
            maybe_delivered=True,
        )
    observations = _pairs(det, "fe:Observaciones/fe:Obs")
    if det.findtext("fe:Resultado", default="", namespaces=_NS).strip() == "R":
        raise VoucherRejected(observations, response=element_to_dict(result))

    cab = result.find("fe:FeCabResp", _NS)
    point_of_sale = voucher_type = None
    if cab is not None:
        point_of_sale = int(cab.findtext("fe:PtoVta", default="0", namespaces=_NS) or 0) or None
        voucher_type = int(cab.findtext("fe:CbteTipo", default="0", namespaces=_NS) or 0) or None

    return VoucherResult(
        cae=det.findtext("fe:CAE", default="", namespaces=_NS).strip(),
        cae_expiration=parse_wire_date(det.findtext("fe:CAEFchVto", namespaces=_NS)),
        number_from=int(det.findtext("fe:CbteDesde", default="0", namespaces=_NS)),
        number_to=int(det.findtext("fe:CbteHasta", default="0", namespaces=_NS)),
        outcome=Outcome.APPROVED_WITH_OBSERVATIONS if observations else Outcome.APPROVED,
        observations=tuple(Observation(code, msg) for code, msg in observations),
        point_of_sale=point_of_sale,
        voucher_type=voucher_type,
    )


class _WsfeClient:
    def __init__(self, auth: AuthClient, transport: SoapTransport) -> None:
        self.auth = auth
        self.transport = transport

    def _auth_header(self) -> dict:
        ticket = self.auth.get_ticket()
        return {
            "Token": ticket.token,
            "Sign": ticket.sign,
            "Cuit": self.auth.credentials.cuit_number,
        }

    def _send(self, operation: str, body: bytes, policy: RetryPolicy) -> etree._Element:
        try:
            return self.transport.send(operation, body, policy)
        except SoapFault as fault:
            raise RemoteRejection([(fault.code, fault.message)]) from fault

    def _call(self, operation: str, policy: RetryPolicy = WSFE_READ, **params) -> etree._Element:
        body = self.transport.serialize(operation, Auth=self._auth_header(), **params)
        result = _result(self._send(operation, body, policy), operation)
        _log_events(result, operation)
        _raise_errors(result)
        return result


class InvoiceClient(_WsfeClient):
    """Requests CAE authorization for vouchers (FECAESolicitar).

    Numbers are not assigned here: the caller reads the last authorized
    number and sends the next one. Two callers doing that concurrently for
    the same point of sale and voucher type will collide, so submissions
    that need strict sequence must be serialized by the caller
    (see ``emission.emit_next``).
    """

    def _prune_unknown(self, detail: dict) -> dict:
        known = self.transport.known_fields(DETAIL_TYPE)
        if known is None:
            return detail
        dropped = [key for key in detail if key not in known]
        if not dropped:
            return detail
        logger.warning("WSDL does not declare %s; left to the schema guard", ", ".join(dropped))
        return {key: value for key, value in detail.items() if key in known}

    def authorize(self, voucher: VoucherRequest) -> VoucherResult:
        detail = build_detail(voucher)
        condition = detail["CondicionIVAReceptorId"]
        request = {
            "FeCabReq": build_header(voucher),
            "FeDetReq": {"FECAEDetRequest": [self._prune_unknown(detail)]},
        }
        document = self.transport.serialize(
            "FECAESolicitar", Auth=self._auth_header(), FeCAEReq=request
        )
        document = ensure_receptor_vat_condition(document, condition)
        try:
            result = parse_cae_response(self._send("FECAESolicitar", document, WSFE_SUBMIT))
        except VoucherRejected as exc:
            logger.info(
                "Voucher %s-%s #%s rejected: %s",
                voucher.point_of_sale,
                voucher.voucher_type,
                voucher.number_from,
                exc,
            )
            raise
        logger.info(
            "Voucher %s-%s #%s authorized, CAE %s (%s)",
            voucher.point_of_sale,
            voucher.voucher_type,
            result.number_from,
            result.cae,
            result.outcome.value,
        )
        return result


class ReferenceClient(_WsfeClient):
    """Read-only WSFE queries: status, numbering, lookups and parameter tables."""

    def status(self) -> dict:
        """FEDummy: health of the application, database and auth servers. No ticket needed."""
        try:
            payload = self.transport.call("FEDummy", WSFE_READ)
        except SoapFault as fault:
            raise RemoteRejection([(fault.code, fault.message)]) from fault
        return element_to_dict(_result(payload, "FEDummy"))

    def last_authorized(self, point_of_sale: int, voucher_type: int) -> int:
        result = self._call("FECompUltimoAutorizado", PtoVta=point_of_sale, CbteTipo=voucher_type)
        return int(result.findtext("fe:CbteNro", default="0", namespaces=_NS) or 0)

    def lookup(self, voucher_type: int, point_of_sale: int, number: int) -> dict:
        result = self._call(
            "FECompConsultar",
            FeCompConsReq={"CbteTipo": voucher_type, "CbteNro": number, "PtoVta": point_of_sale},
        )
        found = result.find("fe:ResultGet", _NS)
        return element_to_dict(found) if found is not None else {}

    def _param_list(self, operation: str, **params) -> list[dict]:
        result = self._call(operation, **params)
        rows = result.find("fe:ResultGet", _NS)
        if rows is None:
            return []
        return [element_to_dict(row) for row in rows if isinstance(row.tag, str)]

    def voucher_types(self) -> list[dict]:
        return self._param_list("FEParamGetTiposCbte")

    def vat_types(self) -> list[dict]:
        return self._param_list("FEParamGetTiposIva")

    def doc_types(self) -> list[dict]:
        return self._param_list("FEParamGetTiposDoc")

    def currencies(self) -> list[dict]:
        return self._param_list("FEParamGetTiposMonedas")

    def points_of_sale(self) -> list[dict]:
        try:
            return self._param_list("FEParamGetPtosVenta")
        except RemoteRejection as exc:
            if exc.errors and all(code == NO_RESULTS for code, _ in exc.errors):
                return []
            raise

    def receptor_vat_conditions(self, voucher_class: str | None = None) -> list[dict]:
        if voucher_class:
            return self._param_list("FEParamGetCondicionIvaReceptor", ClaseCmp=voucher_class)
        return self._param_list("FEParamGetCondicionIvaReceptor")
