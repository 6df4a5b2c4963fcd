from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from importlib.resources import files
from pathlib import Path

from facturador.services.exceptions import (
    ConfigurationError,
    FacturadorError,
    RemoteRejection,
    TransportError,
    ValidationError,
    VoucherRejected,
)

PARAM_TABLES = {
    "tipos-comprobante": "voucher_types",
    "tipos-iva": "vat_types",
    "puntos-venta": "points_of_sale",
    "tipos-doc": "doc_types",
    "monedas": "currencies",
    "condiciones-iva": "receptor_vat_conditions",
}


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _ok(data: object) -> int:
    _print_json({"ok": True, "data": data})
    return 0


def _error(exc: Exception) -> dict:
    payload: dict = {"ok": False, "error": str(exc)}
    if isinstance(exc, RemoteRejection):
        payload["errors"] = [{"code": c, "msg": m} for c, m in exc.errors]
    elif isinstance(exc, VoucherRejected):
        payload["observaciones"] = [{"code": c, "msg": m} for c, m in exc.observations]
    elif isinstance(exc, TransportError) and exc.maybe_delivered:
        payload["maybe_delivered"] = True
    return payload


def _exit_code(exc: Exception) -> int:
    if isinstance(exc, (ValidationError, ConfigurationError)):
        return 2
    return 1


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _init_config(args: argparse.Namespace) -> int:
    """Copy the bundled arca.yaml template and optionally store the key passphrase."""
    from facturador.config import _set_keyring_password, get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    created = []
    dest = config_dir / "arca.yaml.example"
    if not dest.exists():
        template = files("facturador") / "templates" / "arca.yaml.example"
        dest.write_bytes(template.read_bytes())
        created.append(str(dest))

    stored = False
    if args.guardar_clave:
        if not _check_keyring_available():
            raise ConfigurationError("No hay un keyring del sistema disponible")
        password = getpass.getpass("Contraseña de la clave privada: ")
        stored = _set_keyring_password(password)
        if not stored:
            raise ConfigurationError("No se pudo guardar la contraseña en el keyring")

    return _ok(
        {
            "config_dir": str(config_dir),
            "data_dir": str(data_dir),
            "creados": created,
            "clave_en_keyring": stored,
        }
    )


def _describe_certificate() -> int:
    from facturador.config import load_credentials
    from facturador.utils.certificate import describe_certificate, load_certificate

    credentials = load_credentials()
    info = describe_certificate(load_certificate(credentials.cert_pem))
    info["cuit"] = credentials.cuit
    info["entorno"] = credentials.env
    return _ok(info)


def _read_voucher(source: str) -> dict:
    try:
        text = sys.stdin.read() if source == "-" else Path(source).read_text()
    except OSError as exc:
        raise ValidationError(f"No se pudo leer {source}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"JSON inválido en {source}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("El comprobante debe ser un objeto JSON")
    return data


def _run(args: argparse.Namespace) -> int:
    from facturador.models.voucher import VoucherRequest
    from facturador.services.emission import connect, emit_next

    services = connect()

    if args.command == "estado":
        return _ok(services.reference.status())

    if args.command == "autenticar":
        if args.forzar:
            services.auth.invalidate()
        ticket = services.auth.get_ticket()
        return _ok({"expira": ticket.expires_at.isoformat(), "entorno": services.credentials.env})

    if args.command == "invalidar":
        services.auth.invalidate()
        return _ok({"invalidado": True})

    if args.command == "ultimo":
        number = services.reference.last_authorized(args.punto_venta, args.tipo)
        return _ok({"ptoVta": args.punto_venta, "cbteTipo": args.tipo, "cbteNro": number})

    if args.command == "emitir":
        data = _read_voucher(args.archivo)
        if data.get("ptoVta") in (None, "") and services.credentials.point_of_sale:
            data["ptoVta"] = services.credentials.point_of_sale
        voucher = VoucherRequest.from_dict(data)
        result = emit_next(services, voucher, serialize_locally=not args.sin_bloqueo)
        return _ok(result.to_dict())

    if args.command == "consultar":
        return _ok(services.reference.lookup(args.tipo, args.punto_venta, args.numero))

    if args.command == "parametros":
        return _ok(getattr(services.reference, PARAM_TABLES[args.tabla])())

    raise ValidationError(f"Comando desconocido: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="facturador",
        description="Factura electrónica ARCA (WSAA + WSFEv1)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log detallado en stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="crear arca.yaml.example en el directorio de configuración")
    p.add_argument(
        "--guardar-clave",
        action="store_true",
        help="guardar la contraseña de la clave privada en el keyring del sistema",
    )

    sub.add_parser("estado", help="estado de los servidores de ARCA (FEDummy)")

    p = sub.add_parser("autenticar", help="obtener (o reutilizar) el ticket de acceso")
    p.add_argument("--forzar", action="store_true", help="descartar el ticket guardado antes")

    sub.add_parser("invalidar", help="descartar el ticket de acceso guardado")
    sub.add_parser("certificado", help="datos del certificado configurado")

    p = sub.add_parser("ultimo", help="último número autorizado")
    p.add_argument("punto_venta", type=int)
    p.add_argument("tipo", type=int)

    p = sub.add_parser("emitir", help="autorizar un comprobante descrito en JSON")
    p.add_argument("archivo", help="archivo JSON o '-' para stdin")
    p.add_argument(
        "--sin-bloqueo",
        action="store_true",
        help="no serializar la numeración con un lock local",
    )

    p = sub.add_parser("consultar", help="consultar un comprobante emitido")
    p.add_argument("tipo", type=int)
    p.add_argument("punto_venta", type=int)
    p.add_argument("numero", type=int)

    p = sub.add_parser("parametros", help="tablas de referencia de WSFE")
    p.add_argument("tabla", choices=sorted(PARAM_TABLES))

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the facturador CLI."""
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )
    try:
        if args.command == "init":
            return _init_config(args)
        if args.command == "certificado":
            return _describe_certificate()
        return _run(args)
    except FacturadorError as exc:
        _print_json(_error(exc))
        return _exit_code(exc)


if __name__ == "__main__":
    sys.exit(main())
