"""Background loops that watch the active entitlement.

Two independent loops poll the :class:`~licenseguard.store.LifecycleStore`:

* :class:`StartupGate` blocks until a valid entitlement exists, so the
  host service does not start unlicensed.
* :class:`ExpiryEnforcer` keeps polling afterwards and issues a
  :class:`TerminationRequest` as soon as the entitlement is missing or
  expired.  It never kills the process itself; the request goes to a
  supervisor (see :mod:`licenseguard.supervisor`).

Both loops sleep on a :class:`Ticker` so tests can drive time by hand.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from licenseguard import exit_codes
from licenseguard.models import utcnow
from licenseguard.store import LifecycleStore

logger = logging.getLogger(__name__)

DEFAULT_GATE_INTERVAL = 5.0
DEFAULT_ENFORCE_INTERVAL = 15.0


class Ticker:
    """Cancellable sleep between polls."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait(self, interval: float) -> bool:
        """Sleep for *interval* seconds.  Returns False if cancelled."""
        return not self._cancelled.wait(interval)

    def cancel(self) -> None:
        self._cancelled.set()


@dataclass(frozen=True)
class TerminationRequest:
    """Ask the supervisor to end the process with *exit_code*."""

    reason: str
    exit_code: int
    message: str


class GateState(enum.Enum):
    WAITING = "waiting"
    SATISFIED = "satisfied"


class EnforcerState(enum.Enum):
    HEALTHY = "healthy"
    TERMINATED = "terminated"


# ---------------------------------------------------------------------------
# Startup gate
# ---------------------------------------------------------------------------


class StartupGate:
    """Blocks until the store holds an unexpired entitlement.

    Checks immediately, then once per *interval*.  :meth:`wait` only
    returns False when the gate is cancelled; otherwise it returns True
    eventually or runs forever.
    """

    def __init__(
        self,
        store: LifecycleStore,
        *,
        interval: float = DEFAULT_GATE_INTERVAL,
        ticker: Optional[Ticker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._interval = interval
        self._ticker = ticker or Ticker()
        self._clock = clock
        self._state = GateState.WAITING

    @property
    def state(self) -> GateState:
        return self._state

    def poll(self) -> bool:
        if self._state is GateState.SATISFIED:
            return True
        if self._store.is_licensed(self._clock()):
            self._state = GateState.SATISFIED
            current = self._store.current()
            logger.info("Valid license exists for %s", current.subject_id if current else "?")
            return True
        return False

    def wait(self) -> bool:
        logger.info("Waiting for a valid license (poll every %.0fs)", self._interval)
        while not self.poll():
            if not self._ticker.wait(self._interval):
                logger.info("Startup gate cancelled")
                return False
        return True

    def cancel(self) -> None:
        self._ticker.cancel()


# ---------------------------------------------------------------------------
# Expiry enforcer
# ---------------------------------------------------------------------------


class ExpiryEnforcer:
    """Requests process termination once the entitlement is gone or expired.

    Lifecycle::

        enforcer = ExpiryEnforcer(store, on_terminate=supervisor.request_termination)
        enforcer.start()
        ...
        enforcer.stop()

    The first poll happens as soon as the loop starts.  A termination
    request is issued once and is final.  It is handed to ``on_terminate``
    again on every tick until that call succeeds.  :meth:`stop` only stops the
    thread.

    Args:
        store: Lifecycle store to watch.
        on_terminate: Receives the :class:`TerminationRequest`.
        interval: Seconds between polls.
        ticker: Sleep implementation; a fresh :class:`Ticker` by default.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        store: LifecycleStore,
        on_terminate: Callable[[TerminationRequest], None],
        *,
        interval: float = DEFAULT_ENFORCE_INTERVAL,
        ticker: Optional[Ticker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._on_terminate = on_terminate
        self._interval = interval
        self._ticker = ticker or Ticker()
        self._clock = clock
        self._state = EnforcerState.HEALTHY
        self._request: Optional[TerminationRequest] = None
        self._delivered = False
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> EnforcerState:
        return self._state

    @property
    def termination_request(self) -> Optional[TerminationRequest]:
        return self._request

    @property
    def delivered(self) -> bool:
        return self._delivered

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll(self) -> Optional[TerminationRequest]:
        """Check the store once; returns the termination request once it has been delivered.

        The request is fixed the first time it is issued.  If
        ``on_terminate`` raises, the request stays pending and is handed
        over again on the next poll.
        """
        with self._lock:
            if self._delivered:
                return self._request

            request = self._request
            if request is None:
                request = self._check()
                if request is None:
                    return None
                self._state = EnforcerState.TERMINATED
                self._request = request
                logger.error("Terminating: %s", request.message)

            self._on_terminate(request)
            self._delivered = True
            return request

    def _check(self) -> Optional[TerminationRequest]:
        current = self._store.current()
        if current is None:
            return TerminationRequest(
                reason="missing",
                exit_code=exit_codes.LICENSE_MISSING,
                message="license does not exist",
            )
        if current.is_expired(self._clock()):
            return TerminationRequest(
                reason="expired",
                exit_code=exit_codes.LICENSE_EXPIRED,
                message=f"license expired at {current.expires_at.isoformat()}, get a new license",
            )
        return None

    def run(self) -> None:
        """Poll until the termination request is delivered or the loop is stopped."""
        while True:
            try:
                if self.poll() is not None:
                    return
            except Exception:
                logger.exception("Expiry enforcer poll error, retrying in %.0fs", self._interval)
            if not self._ticker.wait(self._interval):
                return

    def start(self) -> None:
        """Run the loop in a daemon thread."""
        if self.running:
            return
        self._thread = threading.Thread(
            target=self.run,
            name="licenseguard-expiry-enforcer",
            daemon=True,
        )
        self._thread.start()
        logger.info("Expiry enforcer started (poll every %.0fs)", self._interval)

    def stop(self) -> None:
        self._ticker.cancel()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Expiry enforcer stopped")
