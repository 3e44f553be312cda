"""
Operator scan session: the single entry point for scanner input.

A ScanSession owns one machine of each kind for one operator at one station:
the production packing machine, the carton fulfillment machine and the PO
controller. Each scan goes through

    raw text -> dispatch (normalize + route) -> one machine operation
             -> ScanOutcome for the presentation layer

Only one box or one carton can be open at a time: switching phase or PO is
refused while either is open, and while a send/cancel is in flight.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from PySide6.QtCore import QObject, Signal

from carton_logic import CartonFulfillmentMachine, CartonMachineState
from exceptions import BackendError, WrongPhaseError
from logger import get_logger, set_operator_context, set_po_context, set_station_context
from models import CartonType
from packing_logic import PackingState, ProductionPackingMachine
from po_lifecycle import ConfirmFn, PurchaseOrderController
from progress_poller import ProgressPoller
from scan_dispatcher import Action, InvalidCode, Operation, Phase, PhaseViolation, Selection, dispatch

logger = get_logger(__name__)

# Statuses that mean the scan did what the operator intended
SUCCESS_STATUSES = {
    "BOX_STARTED", "PAIR_OK", "BOX_COMPLETE", "BOX_CANCELLED",
    "CARTON_SELECTED", "CARTON_COMPLETE", "CARTON_CLOSED", "ALREADY_COMPLETE",
    "PO_SELECTED", "PHASE_SET", "VALIDATION_PASSED", "PO_SENT", "PO_CANCELLED",
}


@dataclass(frozen=True)
class ScanOutcome:
    """
    Result of one scan or session operation, ready to render.

    Attributes:
        status: Machine-readable status (e.g. "PAIR_OK", "WRONG_KIND")
        message: Human-readable reason for failures, empty on success
        payload: Box, Carton, CartonProgress, SendValidation... when relevant
        operation: Operation the scan was routed to, if any
    """
    status: str
    message: str = ""
    payload: Any = None
    operation: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in SUCCESS_STATUSES


class ScanSession(QObject):
    """
    Coordinates the workflow machines for one operator session.

    Attributes:
        packing (ProductionPackingMachine)
        cartons (CartonFulfillmentMachine)
        orders (PurchaseOrderController)
        scan_processed (Signal): Every ScanOutcome produced by submit_scan
        phase_violation (Signal): (expected_kind, message) for misrouted scans
    """
    scan_processed = Signal(object)
    phase_violation = Signal(str, str)

    def __init__(self, backend, phase: Phase = Phase.PRODUCTION,
                 po_number: Optional[str] = None,
                 station_id: Optional[str] = None,
                 operator_id: Optional[str] = None):
        super().__init__()
        self.backend = backend
        self._phase = phase
        self._po_number = po_number
        self._poller: Optional[ProgressPoller] = None

        self.packing = ProductionPackingMachine(backend)
        self.cartons = CartonFulfillmentMachine(backend, po_number)
        self.orders = PurchaseOrderController(backend)

        self.packing.box_completed.connect(self._on_box_completed)
        self.cartons.carton_completed.connect(self._on_carton_completed)

        set_station_context(station_id)
        set_operator_context(operator_id)
        set_po_context(po_number)
        logger.info(f"ScanSession started: phase {phase.value}, PO {po_number}")

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def po_number(self) -> Optional[str]:
        return self._po_number

    def active_selection(self) -> Selection:
        if self.packing.state == PackingState.PACKING:
            return Selection.BOX
        carton = self.cartons.snapshot()
        if carton.state == CartonMachineState.CARTON_SELECTED:
            if carton.carton_type == CartonType.MONO_SKU:
                return Selection.MONO_SKU_CARTON
            return Selection.MUSICAL_CARTON
        return Selection.NONE

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def _locked_reason(self) -> Optional[str]:
        if self.active_selection() != Selection.NONE:
            return "Finish, cancel or close the open box/carton first"
        if self.orders.is_busy():
            return "A purchase order is being sent or cancelled"
        return None

    def set_phase(self, phase: Phase) -> ScanOutcome:
        reason = self._locked_reason()
        if reason:
            return self._refused(WrongPhaseError(reason))
        self._phase = phase
        logger.info(f"Phase set to {phase.value}")
        return ScanOutcome("PHASE_SET", payload=phase)

    def select_purchase_order(self, po_number: str) -> ScanOutcome:
        """Load a PO and make its cartons the shipping target."""
        reason = self._locked_reason()
        if reason:
            return self._refused(WrongPhaseError(reason))

        try:
            po = self.orders.refresh(po_number)
        except BackendError as e:
            return self._refused(e)

        refused = self._switch_po(po_number)
        if refused:
            return refused
        return ScanOutcome("PO_SELECTED", payload=po)

    def _switch_po(self, po_number: str) -> Optional[ScanOutcome]:
        """Point the session and the carton machine at one PO; outcome only if refused."""
        _, status = self.cartons.set_purchase_order(po_number)
        if status != "PO_SELECTED":
            return ScanOutcome(status, self.cartons.last_message)
        self._po_number = po_number
        return None

    def cancel_active(self) -> ScanOutcome:
        """Cancel the open box or close the open carton, locally."""
        selection = self.active_selection()
        if selection == Selection.BOX:
            return self._from_machine(self.packing, self.packing.cancel_box())
        if selection in (Selection.MONO_SKU_CARTON, Selection.MUSICAL_CARTON):
            return self._from_machine(self.cartons, self.cartons.close_carton())
        return self._refused(WrongPhaseError("Nothing is open"))

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def submit_scan(self, raw_input: str) -> ScanOutcome:
        """
        Process one scan from the scanner input.

        Returns:
            ScanOutcome describing what happened; also emitted as scan_processed
        """
        result = dispatch(self._phase, self.active_selection(), raw_input)

        if isinstance(result, InvalidCode):
            logger.warning(f"Invalid scan {raw_input!r}: {result.message}")
            outcome = ScanOutcome(result.status, result.message)
        elif isinstance(result, PhaseViolation):
            logger.warning(f"Scan {raw_input!r} rejected: {result.message}")
            self.phase_violation.emit(result.expected, result.message)
            outcome = ScanOutcome(result.status, result.message)
        else:
            outcome = self._invoke(result)

        self.scan_processed.emit(outcome)
        return outcome

    def _invoke(self, action: Action) -> ScanOutcome:
        operation = action.operation
        argument = action.argument
        logger.info(f"Scan {action.code.canonical} -> {operation.value}")

        if operation == Operation.START_BOX:
            outcome = self._from_machine(self.packing, self.packing.start_box(argument))
        elif operation == Operation.SCAN_BOX_PAIR:
            outcome = self._from_machine(self.packing, self.packing.scan_pair(argument))
        elif operation == Operation.SELECT_CARTON:
            outcome = self._from_machine(self.cartons, self.cartons.select_carton(argument))
        elif operation == Operation.ASSIGN_BOX:
            outcome = self._from_machine(self.cartons, self.cartons.assign_box(argument))
        elif operation == Operation.SCAN_CARTON_PAIR:
            outcome = self._from_machine(self.cartons, self.cartons.scan_pair(argument))
        else:
            outcome = self._validate_po(argument)

        return ScanOutcome(outcome.status, outcome.message, outcome.payload, operation.value)

    def _validate_po(self, po_number: str) -> ScanOutcome:
        try:
            self.orders.refresh(po_number)
            validation = self.orders.validate(po_number)
        except BackendError as e:
            return self._refused(e)

        refused = self._switch_po(po_number)
        if refused:
            return refused
        status = "VALIDATION_PASSED" if validation.passed else "VALIDATION_FAILED"
        return ScanOutcome(status, validation.message, validation)

    # ------------------------------------------------------------------
    # PO actions
    # ------------------------------------------------------------------

    def send_purchase_order(self, confirm: Optional[ConfirmFn] = None) -> ScanOutcome:
        return self._po_action(self.orders.send, confirm)

    def cancel_purchase_order(self, confirm: Optional[ConfirmFn] = None) -> ScanOutcome:
        return self._po_action(self.orders.cancel, confirm)

    def _po_action(self, action: Callable[..., Tuple[Any, str]],
                   confirm: Optional[ConfirmFn]) -> ScanOutcome:
        if self._po_number is None:
            return self._refused(WrongPhaseError("Select a purchase order first"))
        if self.active_selection() != Selection.NONE:
            return self._refused(WrongPhaseError("Close the open box or carton first"))
        payload, status = action(self._po_number, confirm)
        return ScanOutcome(status, self.orders.last_message, payload)

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------

    def refresh_active(self) -> Any:
        """Refresh whatever is open; used as the poller's tick."""
        selection = self.active_selection()
        if selection == Selection.BOX:
            return self.packing.refresh_progress()
        if selection == Selection.MUSICAL_CARTON:
            return self.cartons.refresh_progress()
        return None

    def start_polling(self, config_path: str = "config.ini") -> ProgressPoller:
        if self._poller is None:
            self._poller = ProgressPoller.from_config(self.refresh_active, config_path)
        self._poller.start()
        return self._poller

    def stop_polling(self) -> None:
        if self._poller is not None:
            self._poller.stop()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _from_machine(machine, result: Tuple[Any, str]) -> ScanOutcome:
        payload, status = result
        message = "" if status in SUCCESS_STATUSES else machine.last_message
        return ScanOutcome(status, message, payload)

    @staticmethod
    def _refused(error) -> ScanOutcome:
        message = error.get_display_message()
        logger.warning(f"Session operation refused [{error.kind}]: {message}")
        return ScanOutcome(error.kind, message)

    def _refresh_po_quietly(self) -> None:
        if self._po_number is None:
            return
        try:
            self.orders.refresh(self._po_number)
        except BackendError as e:
            logger.error(f"Could not refresh PO {self._po_number} after completion: {e}")

    def _on_box_completed(self, box_code: str) -> None:
        self._refresh_po_quietly()

    def _on_carton_completed(self, carton_code: str) -> None:
        self._refresh_po_quietly()
