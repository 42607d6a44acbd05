"""
Maintenance gate — freezes writes while the active backend is being moved.

One gate is shared by every adapter in the process (data backends and the
control store). The thread that holds the gate keeps full access; every
other thread gets MaintenanceMode on any write. Reads are never blocked.

Write transactions register with the gate for their whole duration:

    with gate.writer():          # refused while another thread holds the gate
        ... BEGIN ... COMMIT ...

    with gate.hold("switch"):    # new writers refused, then waits until the
        ...                      # writes already under way have finished

so nothing another thread started before the hold can commit inside it.
"""

import logging
import threading
from contextlib import contextmanager

from .errors import MaintenanceMode

log = logging.getLogger(__name__)

DRAIN_TIMEOUT = 30.0


class MaintenanceGate:

    def __init__(self, drain_timeout: float = DRAIN_TIMEOUT):
        self.drain_timeout = drain_timeout
        self._cond = threading.Condition()
        self._owner = None
        self._writers = {}   # thread ident → open write transactions
        self.reason = None

    @property
    def active(self) -> bool:
        return self._owner is not None

    def _refuse(self, ident):
        if self._owner is not None and self._owner != ident:
            raise MaintenanceMode(
                "Maintenance mode active. Try again shortly.",
                details={"reason": self.reason},
            )

    @contextmanager
    def writer(self):
        """Register one write transaction of the calling thread."""
        me = threading.get_ident()
        with self._cond:
            self._refuse(me)
            self._writers[me] = self._writers.get(me, 0) + 1
        try:
            yield
        finally:
            with self._cond:
                left = self._writers[me] - 1
                if left:
                    self._writers[me] = left
                else:
                    del self._writers[me]
                self._cond.notify_all()

    def _others_writing(self, me) -> bool:
        return any(ident != me for ident in self._writers)

    @contextmanager
    def hold(self, reason: str):
        me = threading.get_ident()
        with self._cond:
            if self._owner is not None:
                raise MaintenanceMode(
                    "Maintenance mode already active",
                    details={"reason": self.reason},
                )
            self._owner = me
            self.reason = reason
            drained = self._cond.wait_for(lambda: not self._others_writing(me), self.drain_timeout)
            if not drained:
                self._owner = None
                self.reason = None
                self._cond.notify_all()
                log.warning("maintenance mode not entered: writes still open after %.1fs", self.drain_timeout)
                raise MaintenanceMode(
                    "Timed out waiting for in-flight writes",
                    details={"reason": reason},
                )
        log.info("maintenance mode on: %s", reason)
        try:
            yield self
        finally:
            with self._cond:
                self._owner = None
                self.reason = None
                self._cond.notify_all()
            log.info("maintenance mode off: %s", reason)

    def __repr__(self):
        return f"<MaintenanceGate active={self.active}>"
