from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from filelock import FileLock

from facturador.models.ticket import AccessTicket

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TicketStore:
    """Holds at most one access ticket.

    Expiration is checked against the clock on every read, never at write time.
    Not thread-safe on its own; ``AuthClient`` serializes access to it.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._ticket: AccessTicket | None = None

    def current(self) -> AccessTicket | None:
        """Return the stored ticket if it has not expired yet, else None."""
        ticket = self._read()
        if ticket is None or not ticket.is_valid(self._clock()):
            return None
        return ticket

    def set(self, ticket: AccessTicket) -> None:
        self._write(ticket)

    def invalidate(self) -> None:
        """Drop the stored ticket (e.g. credentials or environment changed)."""
        self._clear()

    def _read(self) -> AccessTicket | None:
        return self._ticket

    def _write(self, ticket: AccessTicket) -> None:
        self._ticket = ticket

    def _clear(self) -> None:
        self._ticket = None


class FileTicketStore(TicketStore):
    """Ticket store persisted as JSON so a ticket survives process restarts.

    WSAA refuses a new login while a previous ticket is alive, so reusing the
    persisted one avoids the already-authenticated clash after a restart.
    """

    def __init__(self, path: Path | str, clock: Callable[[], datetime] = _utc_now) -> None:
        super().__init__(clock)
        self.path = Path(path)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold an exclusive file lock during ticket read/write."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(self.path.with_suffix(".lock")):
            yield

    def _read(self) -> AccessTicket | None:
        with self._locked():
            if not self.path.exists():
                return None
            try:
                return AccessTicket.from_dict(json.loads(self.path.read_text()))
            except (ValueError, KeyError, TypeError):
                logger.warning("Discarding unreadable ticket cache %s", self.path)
                self.path.unlink(missing_ok=True)
                return None

    def _write(self, ticket: AccessTicket) -> None:
        with self._locked():
            tmp = self.path.with_suffix(".tmp")
            tmp.touch(mode=0o600, exist_ok=True)
            tmp.write_text(json.dumps(ticket.to_dict(), indent=2))
            os.replace(tmp, self.path)

    def _clear(self) -> None:
        with self._locked():
            self.path.unlink(missing_ok=True)
