from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

import requests
import zeep.exceptions
from lxml import etree
from zeep import Client, Settings
from zeep.transports import Transport

from facturador.services.exceptions import SoapFault, TransportError, ValidationError
from facturador.services.http_retry import WSFE_READ, RetryableHTTPError, RetryPolicy, retry_call

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
_SOAP_XPATH_NS = {"soap": SOAP_ENV_NS}

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)


def parse_xml(content: bytes) -> etree._Element:
    return etree.fromstring(content, _PARSER)


def _find_fault(root: etree._Element) -> SoapFault | None:
    fault = root.find(".//soap:Fault", _SOAP_XPATH_NS)
    if fault is None:
        return None
    return SoapFault(
        fault.findtext("faultcode", default="").strip(),
        fault.findtext("faultstring", default="").strip(),
    )


def _check_response(resp: Any, operation: str, policy: RetryPolicy) -> None:
    if resp.ok:
        return
    # SOAP 1.1 faults travel with HTTP 500
    try:
        fault = _find_fault(parse_xml(resp.content))
    except (etree.XMLSyntaxError, ValueError):
        fault = None
    if fault is not None:
        raise fault
    body = resp.text[:500] if resp.text else ""
    if resp.status_code in policy.retryable_status_codes:
        raise RetryableHTTPError(f"Error ARCA {operation} ({resp.status_code}): {body}")
    raise TransportError(f"Error ARCA {operation} ({resp.status_code}): {body}")


def _body_payload(content: bytes, operation: str) -> etree._Element:
    """Return the operation response element inside the SOAP Body."""
    try:
        root = parse_xml(content)
    except etree.XMLSyntaxError as exc:
        raise TransportError(f"Respuesta SOAP ilegible en {operation}: {exc}") from exc
    fault = _find_fault(root)
    if fault is not None:
        raise fault
    body = root.find("soap:Body", _SOAP_XPATH_NS)
    if body is None or len(body) == 0:
        raise TransportError(f"Respuesta SOAP sin Body en {operation}")
    return body[0]


class SoapTransport:
    """Serialize requests from the service WSDL (zeep) and post them (requests).

    Serialization and transmission are separate steps so callers can inspect
    or repair the outgoing document in between.
    """

    def __init__(
        self,
        wsdl: str,
        endpoint: str,
        *,
        timeout: float,
        soap_action_ns: str | None = None,
        session: requests.Session | None = None,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self.wsdl = wsdl
        self.endpoint = endpoint
        self.timeout = timeout
        self._soap_action_ns = soap_action_ns
        self._session = session or requests.Session()
        self._sleep = sleep_func
        self._client: Client | None = None
        self._client_lock = threading.Lock()

    def _zeep_client(self) -> Client:
        with self._client_lock:
            if self._client is None:
                transport = Transport(
                    session=self._session,
                    timeout=self.timeout,
                    operation_timeout=self.timeout,
                )
                try:
                    self._client = Client(
                        self.wsdl, transport=transport, settings=Settings(strict=False)
                    )
                except (requests.exceptions.RequestException, zeep.exceptions.Error) as exc:
                    raise TransportError(f"No se pudo cargar el WSDL {self.wsdl}: {exc}") from exc
            return self._client

    def known_fields(self, type_qname: str) -> frozenset[str] | None:
        """Element names the loaded WSDL declares for *type_qname*, or None if unknown."""
        try:
            xsd_type = self._zeep_client().get_type(type_qname)
        except zeep.exceptions.LookupError:
            return None
        return frozenset(name for name, _ in xsd_type.elements)

    def serialize(self, operation: str, **params: Any) -> bytes:
        """Render the SOAP envelope for *operation* as UTF-8 bytes."""
        client = self._zeep_client()
        try:
            envelope = client.create_message(client.service, operation, **params)
        except (zeep.exceptions.Error, TypeError) as exc:
            raise ValidationError(f"Solicitud {operation} inválida para el WSDL: {exc}") from exc
        return etree.tostring(envelope, xml_declaration=True, encoding="utf-8")

    def _soap_action(self, operation: str) -> str:
        if self._soap_action_ns is None:
            return ""
        return f"{self._soap_action_ns}{operation}"

    def send(
        self, operation: str, body: bytes, policy: RetryPolicy = WSFE_READ
    ) -> etree._Element:
        """Post a serialized envelope and return the response element from the Body.

        Raises SoapFault for a SOAP Fault and TransportError for network or
        HTTP-level failures.
        """
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": f'"{self._soap_action(operation)}"',
        }

        def _do_post():
            resp = self._session.post(
                self.endpoint, data=body, headers=headers, timeout=self.timeout
            )
            _check_response(resp, operation, policy)
            return resp.content

        logger.debug("SOAP %s -> %s", operation, self.endpoint)
        try:
            content = retry_call(_do_post, policy, sleep_func=self._sleep)
        except requests.exceptions.ConnectTimeout as exc:
            raise TransportError(f"Sin conexión con ARCA en {operation}: {exc}") from exc
        except requests.exceptions.Timeout as exc:
            raise TransportError(
                f"Tiempo de espera agotado en {operation}: {exc}", maybe_delivered=True
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Error de comunicación en {operation}: {exc}") from exc
        return _body_payload(content, operation)

    def call(
        self, operation: str, policy: RetryPolicy = WSFE_READ, **params: Any
    ) -> etree._Element:
        return self.send(operation, self.serialize(operation, **params), policy)
