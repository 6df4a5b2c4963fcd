from __future__ import annotations

import os
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

from facturador.models.credentials import Credentials
from facturador.services.exceptions import ConfigurationError
from facturador.utils.certificate import load_pfx, normalize_pem
from facturador.utils.validators import validate_cuit

APP_NAME = "arca-facturador"
KEYRING_SERVICE = "arca-facturador"
KEYRING_USERNAME = "private-key-password"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only sources available before .env is loaded count (shell env var, dev layout,
    an existing platformdirs directory).
    """
    from_env = os.environ.get("FACTURADOR_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default."""
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/facturador/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FACTURADOR_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FACTURADOR_DATA_DIR", "data", kind="data")


ENDPOINTS = {
    "homologacion": {
        "wsaa": {
            "wsdl": "https://wsaahomo.afip.gov.ar/ws/services/LoginCms?WSDL",
            "url": "https://wsaahomo.afip.gov.ar/ws/services/LoginCms",
        },
        "wsfe": {
            "wsdl": "https://wswhomo.afip.gov.ar/wsfev1/service.asmx?WSDL",
            "url": "https://wswhomo.afip.gov.ar/wsfev1/service.asmx",
        },
    },
    "produccion": {
        "wsaa": {
            "wsdl": "https://wsaa.afip.gov.ar/ws/services/LoginCms?WSDL",
            "url": "https://wsaa.afip.gov.ar/ws/services/LoginCms",
        },
        "wsfe": {
            "wsdl": "https://servicios1.afip.gov.ar/wsfev1/service.asmx?WSDL",
            "url": "https://servicios1.afip.gov.ar/wsfev1/service.asmx",
        },
    },
}

_ENV_ALIASES = {
    "homologacion": "homologacion",
    "test": "homologacion",
    "testing": "homologacion",
    "homo": "homologacion",
    "produccion": "produccion",
    "production": "produccion",
    "prod": "produccion",
}

WSAA_TIMEOUT = 30
WSFE_TIMEOUT = 60


def normalize_env(value: str | None) -> str:
    """Map an environment selector (or alias) to ``homologacion``/``produccion``."""
    if not value:
        return "homologacion"
    env = _ENV_ALIASES.get(value.strip().lower())
    if env is None:
        raise ConfigurationError(
            f"Entorno desconocido: '{value}' (use homologacion o produccion)"
        )
    return env


# --- Keyring helpers ---


def _get_keyring_password() -> str | None:
    """Try to get the private-key passphrase from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return None


def _set_keyring_password(password: str) -> bool:
    """Store the private-key passphrase in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, password)
        return True
    except Exception:
        return False


def get_key_password() -> str | None:
    """Passphrase for the private key: ARCA_KEY_PASSWORD, then the keyring, else None."""
    pwd = os.environ.get("ARCA_KEY_PASSWORD")
    if pwd is not None:
        return pwd
    return _get_keyring_password()


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text()) or {}


def load_settings() -> dict:
    """Load ``arca.yaml`` from the config dir; missing file gives an empty dict."""
    path = get_config_dir() / "arca.yaml"
    if not path.exists():
        return {}
    try:
        data = load_yaml(path)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"arca.yaml inválido: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("arca.yaml debe contener un mapeo de claves")
    return data


def get_env(settings: dict | None = None) -> str:
    settings = load_settings() if settings is None else settings
    return normalize_env(os.environ.get("ARCA_ENV") or settings.get("entorno"))


def get_ticket_path(cuit: str, env: str) -> Path:
    """Where the persistent ticket cache for one identity and environment lives."""
    return get_data_dir() / "tickets" / f"{cuit}-{env}.json"


def get_lock_dir() -> Path:
    return get_data_dir() / "locks"


def _read_file(path: str, label: str) -> bytes:
    try:
        return Path(path).expanduser().read_bytes()
    except OSError as exc:
        raise ConfigurationError(f"No se pudo leer {label} '{path}': {exc}") from exc


def _load_cert_material() -> tuple[bytes, bytes, str | None]:
    """Return (cert_pem, key_pem, key_password) from the first configured source."""
    cert = os.environ.get("ARCA_CERT")
    key = os.environ.get("ARCA_KEY")
    if cert and key:
        return normalize_pem(cert), normalize_pem(key), get_key_password()

    cert_path = os.environ.get("ARCA_CERT_PATH")
    key_path = os.environ.get("ARCA_KEY_PATH")
    if cert_path and key_path:
        return (
            _read_file(cert_path, "ARCA_CERT_PATH"),
            _read_file(key_path, "ARCA_KEY_PATH"),
            get_key_password(),
        )

    pfx_path = os.environ.get("ARCA_PFX_PATH")
    if pfx_path:
        key_pem, cert_pem, _ = load_pfx(pfx_path, os.environ.get("ARCA_PFX_PASSWORD", ""))
        return cert_pem, key_pem, None

    if cert or key:
        missing = "ARCA_KEY" if cert else "ARCA_CERT"
    elif cert_path or key_path:
        missing = "ARCA_KEY_PATH" if cert_path else "ARCA_CERT_PATH"
    else:
        missing = "ARCA_CERT/ARCA_KEY, ARCA_CERT_PATH/ARCA_KEY_PATH o ARCA_PFX_PATH"
    raise ConfigurationError(f"Falta el material del certificado: {missing}")


def _default_point_of_sale(settings: dict) -> int | None:
    raw = os.environ.get("ARCA_PTO_VTA") or settings.get("punto_venta")
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"punto_venta inválido: '{raw}'") from None
    if value <= 0:
        raise ConfigurationError(f"punto_venta debe ser mayor que cero, no {value}")
    return value


def load_credentials() -> Credentials:
    """Assemble the credentials for the core from env vars and ``arca.yaml``.

    Raises ConfigurationError naming the missing or invalid setting.
    """
    settings = load_settings()
    raw_cuit = os.environ.get("ARCA_CUIT") or settings.get("cuit")
    if not raw_cuit:
        raise ConfigurationError("Falta ARCA_CUIT (o 'cuit' en arca.yaml)")
    try:
        cuit = validate_cuit(str(raw_cuit))
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from None

    point_of_sale = _default_point_of_sale(settings)
    cert_pem, key_pem, key_password = _load_cert_material()
    return Credentials(
        cert_pem=cert_pem,
        key_pem=key_pem,
        cuit=cuit,
        env=get_env(settings),
        key_password=key_password,
        service=str(settings.get("servicio") or "wsfe"),
        point_of_sale=point_of_sale,
    )
