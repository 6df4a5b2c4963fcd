from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from lxml import etree

from facturador.models.credentials import Credentials
from facturador.models.ticket import AccessTicket
from facturador.services.cms_signer import sign_tra
from facturador.services.exceptions import (
    AlreadyAuthenticatedError,
    AuthenticationError,
    SoapFault,
)
from facturador.services.http_retry import (
    WSAA_ALREADY_AUTHENTICATED,
    WSAA_LOGIN,
    RetryPolicy,
    retry_call,
)
from facturador.services.soap_transport import SoapTransport, parse_xml
from facturador.services.ticket_store import TicketStore
from facturador.services.tra_builder import build_auth_request

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def is_already_authenticated(fault: SoapFault) -> bool:
    """True when WSAA refuses the login because a ticket is still active."""
    text = f"{fault.code} {fault.message}".lower()
    return "alreadyauthenticated" in text


def parse_login_response(payload: etree._Element) -> AccessTicket:
    """Extract token, sign and expiration from a ``loginCmsResponse`` element.

    ``loginCmsReturn`` carries the ticket document as escaped XML text.
    """
    returns = payload.xpath(".//*[local-name()='loginCmsReturn']")
    if not returns or not (returns[0].text or "").strip():
        raise AuthenticationError("Respuesta de WSAA sin loginCmsReturn")
    try:
        ticket_xml = parse_xml(returns[0].text.strip().encode("utf-8"))
    except etree.XMLSyntaxError as exc:
        raise AuthenticationError(f"Ticket de acceso ilegible: {exc}") from exc

    token = ticket_xml.findtext("credentials/token")
    sign = ticket_xml.findtext("credentials/sign")
    expiration = ticket_xml.findtext("header/expirationTime")
    if not token or not sign or not expiration:
        raise AuthenticationError("Ticket de acceso incompleto (token, sign o expirationTime)")
    try:
        expires_at = datetime.fromisoformat(expiration.strip())
    except ValueError as exc:
        raise AuthenticationError(f"expirationTime inválido: {expiration!r}") from exc
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return AccessTicket(token=token.strip(), sign=sign.strip(), expires_at=expires_at)


class AuthClient:
    """Obtains and caches WSAA access tickets for one identity and service.

    ``get_ticket`` returns the stored ticket while it is valid and otherwise
    runs build, sign and loginCms. Acquisition is single-flight: concurrent
    callers that find no valid ticket wait for the one login in progress and
    then reuse its result.
    """

    def __init__(
        self,
        credentials: Credentials,
        transport: SoapTransport,
        store: TicketStore | None = None,
        clock: Callable[[], datetime] = _utc_now,
        retry_policy: RetryPolicy = WSAA_ALREADY_AUTHENTICATED,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self.credentials = credentials
        self.transport = transport
        self.store = store if store is not None else TicketStore(clock)
        self._clock = clock
        self._retry_policy = retry_policy
        self._sleep = sleep_func
        self._lock = threading.Lock()

    def get_ticket(self) -> AccessTicket:
        ticket = self.store.current()
        if ticket is not None:
            logger.debug("Reusing WSAA ticket valid until %s", ticket.expires_at.isoformat())
            return ticket

        with self._lock:
            # another caller may have authenticated while we waited
            ticket = self.store.current()
            if ticket is not None:
                logger.debug("Ticket obtained by concurrent login, reusing it")
                return ticket
            ticket = self._authenticate()
            self.store.set(ticket)
            logger.info(
                "WSAA ticket for %s obtained, expires %s",
                self.credentials.service,
                ticket.expires_at.isoformat(),
            )
            return ticket

    def invalidate(self) -> None:
        """Forget the cached ticket so the next call logs in again."""
        with self._lock:
            self.store.invalidate()
        logger.info("WSAA ticket cache invalidated")

    def _authenticate(self) -> AccessTicket:
        try:
            return retry_call(self._login, self._retry_policy, sleep_func=self._sleep)
        except AlreadyAuthenticatedError as exc:
            raise AuthenticationError(
                f"WSAA mantiene un ticket activo para {self.credentials.service} "
                f"tras {self._retry_policy.max_attempts} intentos: {exc}"
            ) from exc

    def _login(self) -> AccessTicket:
        request = build_auth_request(self.credentials.service, clock=self._clock)
        cms = sign_tra(
            request.to_xml(),
            self.credentials.cert_pem,
            self.credentials.key_pem,
            self.credentials.key_password,
        )
        logger.info("Requesting WSAA ticket for service %s", self.credentials.service)
        try:
            payload = self.transport.call("loginCms", WSAA_LOGIN, in0=cms)
        except SoapFault as fault:
            if is_already_authenticated(fault):
                logger.warning("WSAA reports an active ticket: %s", fault.message)
                raise AlreadyAuthenticatedError(str(fault)) from fault
            raise AuthenticationError(f"WSAA rechazó la autenticación: {fault}") from fault
        return parse_login_response(payload)
