from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from facturador.models.ticket import AuthRequest
from facturador.services.exceptions import ConfigurationError

# generationTime is backdated to absorb clock drift against WSAA.
GENERATION_SKEW = timedelta(minutes=10)
VALIDITY_HORIZON = timedelta(hours=10)

_id_lock = threading.Lock()
_last_unique_id = 0


def _next_unique_id(now: datetime) -> int:
    global _last_unique_id
    with _id_lock:
        _last_unique_id = max(int(now.timestamp()), _last_unique_id)
        return _last_unique_id


def _utc_now() -> datetime:
    return datetime.now(UTC)


def build_auth_request(
    service: str,
    clock: Callable[[], datetime] = _utc_now,
) -> AuthRequest:
    """Build a fresh TRA for *service* valid from now - skew to now + horizon.

    The unique id is seconds since the epoch, never lower than the last id
    handed out by this process.
    """
    if not service or not service.strip():
        raise ConfigurationError("Nombre de servicio WSAA vacío")
    now = clock()
    return AuthRequest(
        unique_id=_next_unique_id(now),
        generation_time=now - GENERATION_SKEW,
        expiration_time=now + VALIDITY_HORIZON,
        service=service.strip(),
    )
