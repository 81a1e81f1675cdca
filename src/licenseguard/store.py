"""In-process holder for the single active entitlement."""

from __future__ import annotations

import logging
import threading
from datetime import datetime

from licenseguard.models import Entitlement, utcnow

logger = logging.getLogger(__name__)


class LifecycleStore:
    """Thread-safe slot for the current :class:`Entitlement`.

    Holds at most one entitlement.  Writers replace the whole value under
    the lock, so readers see either the old entitlement or the new one.
    Expiry is computed at read time by callers; nothing here removes an
    entitlement because it lapsed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: Entitlement | None = None

    def current(self) -> Entitlement | None:
        with self._lock:
            return self._current

    def commit(self, entitlement: Entitlement) -> None:
        with self._lock:
            previous = self._current
            self._current = entitlement
        if previous is not None:
            logger.debug(
                "Replaced entitlement for %s (expired %s)",
                previous.subject_id,
                previous.expires_at.isoformat(),
            )

    def clear(self) -> None:
        with self._lock:
            self._current = None

    def is_licensed(self, now: datetime | None = None) -> bool:
        """True when an entitlement is present and not expired."""
        current = self.current()
        return current is not None and not current.is_expired(now or utcnow())
