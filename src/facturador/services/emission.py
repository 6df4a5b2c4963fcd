from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass

import requests
from filelock import FileLock

from facturador.config import (
    ENDPOINTS,
    WSAA_TIMEOUT,
    WSFE_TIMEOUT,
    get_lock_dir,
    get_ticket_path,
    load_credentials,
)
from facturador.models.credentials import Credentials
from facturador.models.voucher import VoucherRequest, VoucherResult
from facturador.services.soap_transport import SoapTransport
from facturador.services.ticket_store import FileTicketStore, TicketStore
from facturador.services.voucher_builder import validate_voucher
from facturador.services.wsaa_client import AuthClient
from facturador.services.wsfe_client import WSFE_NS, InvoiceClient, ReferenceClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Clients sharing one authenticated identity against one environment."""

    credentials: Credentials
    auth: AuthClient
    invoices: InvoiceClient
    reference: ReferenceClient


def build_transports(env: str, session: requests.Session | None = None) -> tuple[SoapTransport, SoapTransport]:
    """Return (wsaa, wsfe) transports for *env*."""
    wsaa = ENDPOINTS[env]["wsaa"]
    wsfe = ENDPOINTS[env]["wsfe"]
    session = session or requests.Session()
    return (
        SoapTransport(wsaa["wsdl"], wsaa["url"], timeout=WSAA_TIMEOUT, session=session),
        SoapTransport(
            wsfe["wsdl"], wsfe["url"], timeout=WSFE_TIMEOUT, soap_action_ns=WSFE_NS, session=session
        ),
    )


def connect(
    credentials: Credentials | None = None,
    store: TicketStore | None = None,
) -> Services:
    """Wire the auth, invoice and reference clients from configuration.

    Without an explicit *store* the ticket is persisted under the data dir,
    one file per CUIT and environment.
    """
    credentials = credentials or load_credentials()
    if store is None:
        store = FileTicketStore(get_ticket_path(credentials.cuit, credentials.env))
    wsaa, wsfe = build_transports(credentials.env)
    auth = AuthClient(credentials, wsaa, store=store)
    logger.debug("Connected to ARCA %s as %s", credentials.env, credentials.cuit)
    return Services(
        credentials=credentials,
        auth=auth,
        invoices=InvoiceClient(auth, wsfe),
        reference=ReferenceClient(auth, wsfe),
    )


def _numbering_lock(services: Services, voucher: VoucherRequest) -> FileLock:
    creds = services.credentials
    name = f"{creds.env}-{creds.cuit}-{voucher.point_of_sale}-{voucher.voucher_type}.lock"
    lock_dir = get_lock_dir()
    lock_dir.mkdir(parents=True, exist_ok=True)
    return FileLock(lock_dir / name)


def _submit_next(services: Services, voucher: VoucherRequest) -> VoucherResult:
    last = services.reference.last_authorized(voucher.point_of_sale, voucher.voucher_type)
    number = last + 1
    logger.info(
        "Next number for %s-%s is %d", voucher.point_of_sale, voucher.voucher_type, number
    )
    numbered = dataclasses.replace(voucher, number_from=number, number_to=number)
    return services.invoices.authorize(numbered)


def emit_next(
    services: Services,
    voucher: VoucherRequest,
    serialize_locally: bool = True,
) -> VoucherResult:
    """Authorize *voucher* with the number after the last authorized one.

    Reading the last number and submitting the next is not atomic at ARCA:
    two emitters racing on the same point of sale and voucher type can pick
    the same number and one of them will be rejected. With
    ``serialize_locally`` the read-and-submit runs under a file lock per
    (environment, CUIT, point of sale, voucher type), which only protects
    emitters on this host.
    """
    # Numbers are assigned below; anything else invalid fails before auth.
    validate_voucher(dataclasses.replace(voucher, number_from=1, number_to=1))
    if not serialize_locally:
        return _submit_next(services, voucher)
    with _numbering_lock(services, voucher):
        return _submit_next(services, voucher)
