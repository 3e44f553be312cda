"""
Purchase-order lifecycle: from imported order to transmission to Trysor/T4.

A PO's state is never set by the station. It is recomputed from the backend
record (carton counts and the backend's own label) after every carton or
box change. The only transitions the station drives are the two terminal
actions, both irreversible and both requiring operator confirmation:

    IMPORTED -> IN_PROGRESS -> COMPLETED -> SENT
         \\            \\            \\
          +-----------+------------+--> CANCELLED
"""

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from PySide6.QtCore import QObject, Signal

from exceptions import (
    BackendError,
    ScanStationError,
    StationBusyError,
    ValidationFailedError,
    WrongPhaseError,
)
from logger import get_logger
from models import PoState, PurchaseOrder, SendRecord, SendValidation

logger = get_logger(__name__)

# List filters offered to the PO screens
PO_FILTERS = {
    'all': None,
    'active': {PoState.IMPORTED, PoState.IN_PROGRESS, PoState.COMPLETED},
    'completed': {PoState.COMPLETED, PoState.SENT},
    'shippable': {PoState.IMPORTED, PoState.IN_PROGRESS, PoState.COMPLETED},
}

ConfirmFn = Callable[[str], bool]


def derive_state(po: PurchaseOrder) -> PoState:
    """
    Compute the local aggregate state of a purchase order.

    Terminal backend states win. Otherwise the PO is COMPLETED exactly when
    it has cartons and all of them are complete, IN_PROGRESS once any carton
    is complete (or the backend says work started), IMPORTED before that.
    """
    if po.state.is_terminal:
        return po.state
    if po.carton_total > 0 and po.carton_completed >= po.carton_total:
        return PoState.COMPLETED
    if po.carton_completed > 0 or po.state in (PoState.IN_PROGRESS, PoState.COMPLETED):
        return PoState.IN_PROGRESS
    return PoState.IMPORTED


class PurchaseOrderController(QObject):
    """
    Aggregates carton completion into PO state and gates send/cancel.

    ``send`` and ``cancel`` return (payload, status) tuples, status being one of:
        "PO_SENT" / "PO_CANCELLED"
        "WRONG_PHASE"        - PO not in a state that allows the action (no network call)
        "VALIDATION_FAILED"  - Trysor/T4 pre-send check refused the PO
        "NOT_CONFIRMED"      - Operator declined the confirmation
        "BUSY"               - Another send/cancel for this PO is in flight
        "NOT_FOUND" / "REJECTED" / "BACKEND_UNAVAILABLE" / "TIMEOUT"

    Failures leave the PO state unchanged and are never retried.

    Attributes:
        po_state_changed (Signal): (po_number, new_state)
        po_completed (Signal): All cartons of the PO are complete (po_number)
        po_sent (Signal): PO transmitted to T4 (po_number)
        po_cancelled (Signal): PO cancelled in T4 (po_number)
        operation_rejected (Signal): (status, message)
    """
    po_state_changed = Signal(str, str)
    po_completed = Signal(str)
    po_sent = Signal(str)
    po_cancelled = Signal(str)
    operation_rejected = Signal(str, str)

    def __init__(self, backend):
        super().__init__()
        self.backend = backend
        self.last_status = ""
        self.last_message = ""

        self._lock = threading.RLock()
        self._orders: Dict[str, PurchaseOrder] = {}
        self._states: Dict[str, PoState] = {}
        self._in_flight: set = set()

    def state_of(self, po_number: str) -> Optional[PoState]:
        """Local aggregate state, or None if the PO was never loaded."""
        with self._lock:
            return self._states.get(po_number)

    def order(self, po_number: str) -> Optional[PurchaseOrder]:
        with self._lock:
            return self._orders.get(po_number)

    def is_busy(self, po_number: Optional[str] = None) -> bool:
        with self._lock:
            if po_number is None:
                return bool(self._in_flight)
            return po_number in self._in_flight

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def refresh(self, po_number: str) -> PurchaseOrder:
        """
        Re-read a PO from the backend and recompute its aggregate state.

        Raises:
            BackendError: If the PO cannot be read
        """
        po = self.backend.get_purchase_order(po_number)
        self._apply(po)
        return po

    def list_orders(self, status_filter: str = 'all') -> List[PurchaseOrder]:
        """
        List purchase orders, recomputing the state of each.

        Args:
            status_filter: One of 'all', 'active', 'completed', 'shippable'
        """
        if status_filter not in PO_FILTERS:
            raise ValueError(f"Unknown PO filter: {status_filter}")

        orders = self.backend.list_purchase_orders()
        for po in orders:
            self._apply(po)

        allowed = PO_FILTERS[status_filter]
        if allowed is None:
            return orders
        return [po for po in orders if self.state_of(po.po_number) in allowed]

    def validate(self, po_number: str) -> SendValidation:
        """
        Ask Trysor/T4 whether the PO may be sent. Read-only and repeatable.

        Raises:
            BackendUnavailableError: If the check itself could not run
        """
        validation = self.backend.validate_for_send(po_number)
        logger.info(f"PO {po_number} validation: {'passed' if validation.passed else 'failed'}"
                    f"{' - ' + validation.message if validation.message else ''}")
        return validation

    def preview(self, po_number: str) -> Dict[str, Any]:
        """Fetch the payload that ``send`` would transmit. Read-only."""
        return self.backend.preview_send(po_number)

    def send_history(self, po_number: Optional[str] = None) -> List[SendRecord]:
        """Past transmissions to Trysor/T4, optionally for one PO."""
        return self.backend.list_send_history(po_number)

    def _apply(self, po: PurchaseOrder) -> PoState:
        with self._lock:
            old_state = self._states.get(po.po_number)
            self._orders[po.po_number] = po
            # SENT/CANCELLED reached here are final even if the backend lags
            if old_state is not None and old_state.is_terminal:
                return old_state
            new_state = derive_state(po)
            self._states[po.po_number] = new_state

        if old_state != new_state:
            logger.info(f"PO {po.po_number}: {old_state.value if old_state else 'unknown'} -> {new_state.value}")
            self.po_state_changed.emit(po.po_number, new_state.value)
            if new_state == PoState.COMPLETED:
                self.po_completed.emit(po.po_number)
        return new_state

    # ------------------------------------------------------------------
    # Terminal actions
    # ------------------------------------------------------------------

    def send(self, po_number: str, confirm: Optional[ConfirmFn] = None) -> Tuple[Any, str]:
        """
        Transmit a completed PO to Trysor/T4.

        Preconditions, checked in order:
        1. Local aggregate state is COMPLETED (checked without any network call)
        2. The Trysor/T4 validation passes
        3. ``confirm`` returns True for the confirmation prompt

        Args:
            po_number: PO to send
            confirm: Called with a prompt; must return True to proceed. No
                     callback means no confirmation, and nothing is sent.
        """
        state = self.state_of(po_number)
        if state != PoState.COMPLETED:
            current = state.value if state else "UNKNOWN"
            return self._reject(WrongPhaseError(
                f"PO {po_number} is {current}; only COMPLETED orders can be sent"))

        try:
            self._claim(po_number)
        except StationBusyError as e:
            return self._reject(e)

        try:
            try:
                validation = self.validate(po_number)
            except BackendError as e:
                return self._reject(e)
            if not validation.passed:
                return self._reject(ValidationFailedError(
                    validation.message or f"PO {po_number} is not ready to send"))

            if not self._confirmed(confirm, f"Send PO {po_number} to Trysor/T4?"):
                return self._not_confirmed(po_number, "send")

            try:
                result = self.backend.send_purchase_order(po_number)
            except BackendError as e:
                return self._reject(e)

            self._set_terminal(po_number, PoState.SENT)
            logger.info(f"PO {po_number} sent to Trysor/T4")
            self.po_sent.emit(po_number)
            return self._ok(result, "PO_SENT")
        finally:
            self._release(po_number)

    def cancel(self, po_number: str, confirm: Optional[ConfirmFn] = None) -> Tuple[Any, str]:
        """
        Cancel a PO in Trysor/T4. Allowed until the PO is SENT.

        Args:
            po_number: PO to cancel
            confirm: Called with a prompt; must return True to proceed
        """
        state = self.state_of(po_number)
        if state is None or state.is_terminal:
            current = state.value if state else "UNKNOWN"
            return self._reject(WrongPhaseError(f"PO {po_number} is {current} and cannot be cancelled"))

        try:
            self._claim(po_number)
        except StationBusyError as e:
            return self._reject(e)

        try:
            if not self._confirmed(confirm, f"Cancel PO {po_number} in Trysor/T4?"):
                return self._not_confirmed(po_number, "cancel")

            try:
                result = self.backend.cancel_purchase_order(po_number)
            except BackendError as e:
                return self._reject(e)

            self._set_terminal(po_number, PoState.CANCELLED)
            logger.info(f"PO {po_number} cancelled")
            self.po_cancelled.emit(po_number)
            return self._ok(result, "PO_CANCELLED")
        finally:
            self._release(po_number)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _claim(self, po_number: str) -> None:
        with self._lock:
            if po_number in self._in_flight:
                raise StationBusyError(f"PO {po_number} is already being processed")
            self._in_flight.add(po_number)

    def _release(self, po_number: str) -> None:
        with self._lock:
            self._in_flight.discard(po_number)

    @staticmethod
    def _confirmed(confirm: Optional[ConfirmFn], prompt: str) -> bool:
        return bool(confirm and confirm(prompt))

    def _set_terminal(self, po_number: str, state: PoState) -> None:
        with self._lock:
            self._states[po_number] = state
        self.po_state_changed.emit(po_number, state.value)

    def _ok(self, payload: Any, status: str) -> Tuple[Any, str]:
        self.last_status = status
        self.last_message = ""
        return payload, status

    def _not_confirmed(self, po_number: str, action: str) -> Tuple[None, str]:
        logger.info(f"Operator declined to {action} PO {po_number}")
        self.last_status = "NOT_CONFIRMED"
        self.last_message = f"{action.capitalize()} of PO {po_number} not confirmed"
        return None, "NOT_CONFIRMED"

    def _reject(self, error: ScanStationError) -> Tuple[None, str]:
        status = error.kind
        message = error.get_display_message()
        self.last_status = status
        self.last_message = message
        logger.warning(f"PO operation rejected [{status}]: {message}")
        self.operation_rejected.emit(status, message)
        return None, status
