"""
Common plumbing for the scan-driven state machines.

Each machine serializes its scans and protects its state against two races:

- A scan submitted while the previous one is still waiting for the backend
  is refused with BUSY instead of racing it.
- A response that arrives after the operator cancelled (or the machine was
  reset) belongs to an older *generation* and is discarded, never applied.

Every applied transition also bumps a *version*. The background progress
poller reads the version before its request and only applies its result if
the version is unchanged and no scan is in flight, so a refresh can never
overwrite a transition.
"""

import threading
from typing import Any, Callable, Optional, Tuple

from PySide6.QtCore import QObject, Signal

from exceptions import ScanStationError, StationBusyError
from logger import get_logger

logger = get_logger(__name__)

# Status returned when a late response is dropped
DISCARDED = "DISCARDED"


class ScanMachine(QObject):
    """
    Base class for the packing and carton machines.

    Attributes:
        operation_rejected (Signal): Emitted with (status, message) whenever an
                                     operation fails or is refused.
        backend: FulfillmentApiClient (or any object with the same methods)
        last_status (str): Status of the most recent operation
        last_message (str): Human-readable message of the most recent failure
    """
    operation_rejected = Signal(str, str)  # status, message

    def __init__(self, backend):
        super().__init__()
        self.backend = backend
        self.last_status = ""
        self.last_message = ""

        self._lock = threading.RLock()
        self._busy = False
        self._generation = 0
        self._version = 0

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._busy

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def _begin(self, precondition: Callable[[], Any]) -> Tuple[int, Any]:
        """
        Claim the machine for one operation.

        Args:
            precondition: Raises WrongPhaseError/WrongKindError if the current
                          state does not allow the operation; otherwise returns
                          the state the operation works on (open box, carton...)

        Returns:
            (generation the operation belongs to, precondition result), both
            read under the same lock so a concurrent cancel cannot split them

        Raises:
            StationBusyError: Another operation is in flight
            ScanInputError: Raised by ``precondition``
        """
        with self._lock:
            if self._busy:
                raise StationBusyError("Still processing the previous scan")
            target = precondition()
            self._busy = True
            return self._generation, target

    def _end(self) -> None:
        with self._lock:
            self._busy = False

    def _is_stale(self, generation: int) -> bool:
        """True if the machine was cancelled/reset since ``generation`` began."""
        if generation != self._generation:
            logger.info(f"Discarding late response (generation {generation}, now {self._generation})")
            return True
        return False

    def _transition(self) -> None:
        """Record an applied transition. Caller holds the lock."""
        self._version += 1

    def _invalidate(self) -> None:
        """Drop any in-flight operation's right to apply. Caller holds the lock."""
        self._generation += 1
        self._version += 1

    def _ok(self, payload: Any, status: str) -> Tuple[Any, str]:
        self.last_status = status
        self.last_message = ""
        return payload, status

    def _reject(self, error: ScanStationError) -> Tuple[None, str]:
        """Record and announce a failed operation; state is left untouched."""
        status = error.kind
        message = error.get_display_message()
        self.last_status = status
        self.last_message = message
        logger.warning(f"{type(self).__name__} rejected [{status}]: {message}")
        self.operation_rejected.emit(status, message)
        return None, status

    def _discarded(self) -> Tuple[None, str]:
        self.last_status = DISCARDED
        return None, DISCARDED

    def _read_for_refresh(self, reader: Callable[[], Any]) -> Optional[Any]:
        """
        Run a read-only refresh request outside the lock.

        Returns the result, or None when the read failed. Refresh failures
        are logged only; the next tick tries again.
        """
        try:
            return reader()
        except ScanStationError as e:
            logger.debug(f"Progress refresh failed [{e.kind}]: {e}")
            return None

    def _can_apply_refresh(self, version: int) -> bool:
        """Caller holds the lock."""
        if self._busy or self._version != version:
            logger.debug("Progress refresh dropped: state changed while reading")
            return False
        return True
