"""Turns termination requests into an actual process exit.

Watch loops and the validator never exit the process themselves.  They
hand a :class:`~licenseguard.watch.TerminationRequest` to a
:class:`Supervisor`, whose :meth:`Supervisor.run` blocks the main thread
and performs the exit.  Tests pass their own ``exit_func``.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from typing import Optional

from licenseguard import exit_codes
from licenseguard.errors import PersistenceAfterRemovalError
from licenseguard.watch import TerminationRequest

logger = logging.getLogger(__name__)


class Supervisor:
    """Collects the first termination request and exits the process with its code."""

    def __init__(self, exit_func: Callable[[int], object] = os._exit) -> None:
        self._exit_func = exit_func
        self._requested = threading.Event()
        self._request: Optional[TerminationRequest] = None
        self._lock = threading.Lock()

    @property
    def request(self) -> Optional[TerminationRequest]:
        return self._request

    @property
    def terminating(self) -> bool:
        return self._requested.is_set()

    def request_termination(self, request: TerminationRequest) -> None:
        """Record *request*.  Only the first request counts; it cannot be withdrawn."""
        with self._lock:
            if self._request is not None:
                logger.debug("Ignoring termination request %s, already terminating", request.reason)
                return
            self._request = request
        logger.critical("Termination requested (%s): %s", request.reason, request.message)
        self._requested.set()

    def on_fatal(self, error: PersistenceAfterRemovalError) -> None:
        """Validator hook: durable and in-memory state diverged."""
        self.request_termination(
            TerminationRequest(
                reason="inconsistent_state",
                exit_code=exit_codes.INCONSISTENT_STATE,
                message=str(error),
            )
        )

    def wait(self, timeout: Optional[float] = None) -> Optional[TerminationRequest]:
        """Block until a request arrives or *timeout* elapses."""
        self._requested.wait(timeout)
        return self._request

    def run(self) -> None:
        """Block until termination is requested, then exit."""
        request = self.wait()
        if request is None:
            return
        # os._exit skips interpreter cleanup, so flush log output first.
        for handler in logging.getLogger().handlers:
            handler.flush()
        self._exit_func(request.exit_code)
