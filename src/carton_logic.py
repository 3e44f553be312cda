"""
Shipping: completing the cartons of a purchase order.

Two kinds of carton exist:
- Mono-SKU: holds one packed production box. The operator scans the carton
  label, then the box label ($); the assignment completes the carton at once.
- Musical: holds pairs of several SKUs. The operator scans the carton label,
  then the QR of each pair; the carton completes when every SKU line reaches
  its required quantity.

States:
    NO_CARTON_SELECTED -> CARTON_SELECTED(type) -> COMPLETE (surfaced, then
    back to NO_CARTON_SELECTED)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple

from PySide6.QtCore import Signal

from exceptions import (
    BackendError,
    NotFoundError,
    ScanInputError,
    WrongKindError,
    WrongPhaseError,
)
from logger import get_logger, set_po_context
from models import Carton, CartonProgress, CartonType, PendingCartons
from scan_codes import BOX_MARKER, normalize_carton_id
from scan_machine import ScanMachine

logger = get_logger(__name__)


class CartonMachineState(str, Enum):
    NO_CARTON_SELECTED = "NO_CARTON_SELECTED"
    CARTON_SELECTED = "CARTON_SELECTED"
    COMPLETE = "COMPLETE"


@dataclass(frozen=True)
class CartonSnapshot:
    """Read-only view of the carton machine for the presentation layer."""
    state: CartonMachineState
    po_number: Optional[str] = None
    carton: Optional[Carton] = None
    progress: Optional[CartonProgress] = None
    last_completed_carton: Optional[str] = None
    version: int = 0

    @property
    def carton_type(self) -> Optional[CartonType]:
        return self.carton.carton_type if self.carton else None


class CartonFulfillmentMachine(ScanMachine):
    """
    Governs completing one shipping carton at a time within a purchase order.

    Operation results are (payload, status) tuples, status being one of:
        "CARTON_SELECTED"  - Carton opened; payload is the Carton
        "ALREADY_COMPLETE" - Carton was finished before (informational)
        "PAIR_OK"          - Musical pair counted; payload is the CartonProgress
        "CARTON_COMPLETE"  - Carton finished by this scan; payload is the Carton
        "CARTON_CLOSED"    - Local close of the carton panel
        "PO_SELECTED"      - Purchase order switched
        "WRONG_KIND"       - Box code where carton/pair expected, or vice versa
        "WRONG_PHASE"      - Operation not allowed in the current state
        "NOT_FOUND" / "REJECTED" / "BACKEND_UNAVAILABLE" / "TIMEOUT"
        "BUSY" / "DISCARDED"

    Attributes:
        carton_selected (Signal): Carton opened (Carton)
        carton_progress (Signal): Musical progress (carton_code, scanned, required)
        carton_completed (Signal): Carton finished (carton_code)
        carton_already_complete (Signal): Scanned carton was already finished (carton_code)
        progress_changed (Signal): Background refresh applied (CartonProgress)
    """
    carton_selected = Signal(object)
    carton_progress = Signal(str, int, int)
    carton_completed = Signal(str)
    carton_already_complete = Signal(str)
    progress_changed = Signal(object)

    def __init__(self, backend, po_number: Optional[str] = None):
        super().__init__(backend)
        self._po_number = po_number
        self._state = CartonMachineState.NO_CARTON_SELECTED
        self._carton: Optional[Carton] = None
        self._progress: Optional[CartonProgress] = None
        self._last_completed_carton: Optional[str] = None
        logger.info(f"CartonFulfillmentMachine initialized (PO {po_number})")

    @property
    def state(self) -> CartonMachineState:
        with self._lock:
            return self._state

    @property
    def po_number(self) -> Optional[str]:
        with self._lock:
            return self._po_number

    def snapshot(self) -> CartonSnapshot:
        with self._lock:
            return CartonSnapshot(
                state=self._state,
                po_number=self._po_number,
                carton=self._carton,
                progress=self._progress,
                last_completed_carton=self._last_completed_carton,
                version=self._version,
            )

    def set_purchase_order(self, po_number: str) -> Tuple[Optional[str], str]:
        """Switch the PO whose cartons are being fulfilled."""
        with self._lock:
            allowed = not self._busy and self._state == CartonMachineState.NO_CARTON_SELECTED
            if allowed:
                self._po_number = po_number
                self._invalidate()

        if not allowed:
            return self._reject(WrongPhaseError("Finish or close the current carton first"))
        set_po_context(po_number)
        logger.info(f"Shipping PO set to {po_number}")
        return self._ok(po_number, "PO_SELECTED")

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def _require_no_carton(self) -> str:
        if self._po_number is None:
            raise WrongPhaseError("Select a purchase order first")
        if self._state != CartonMachineState.NO_CARTON_SELECTED:
            raise WrongPhaseError(
                f"Carton {self._carton.carton_code if self._carton else ''} is still open"
            )
        return self._po_number

    def _require_selected(self, carton_type: CartonType, kind_hint: str) -> Carton:
        if self._state != CartonMachineState.CARTON_SELECTED or self._carton is None:
            raise WrongPhaseError("Scan a carton first")
        if self._carton.carton_type != carton_type:
            raise WrongKindError(kind_hint)
        return self._carton

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def select_carton(self, carton_code: str) -> Tuple[Optional[Carton], str]:
        """
        Open the carton labelled ``carton_code`` in the current PO.

        A Mono-SKU carton that already has its box, or a Musical carton whose
        lines are all satisfied, is reported as ALREADY_COMPLETE and no carton
        is opened.
        """
        if BOX_MARKER in carton_code:
            return self._reject(WrongKindError(
                "Scan the carton first, not the box",
                expected="CARTON_CODE", received="BOX_CODE"))

        try:
            generation, po_number = self._begin(self._require_no_carton)
        except ScanInputError as e:
            return self._reject(e)

        try:
            wanted = normalize_carton_id(carton_code)
            try:
                pending = self.backend.get_pending_cartons(po_number)
                carton = self._find_carton(pending, wanted)
                if carton is None:
                    raise NotFoundError(f'Carton "{carton_code}" not found in PO {po_number}')

                progress = None
                if carton.carton_type == CartonType.MONO_SKU:
                    if carton.box_assigned:
                        return self._already_complete(carton)
                else:
                    self.backend.start_carton_scan(carton.carton_id)
                    progress = self.backend.get_carton_detail(carton.carton_id)
                    if progress.is_complete:
                        return self._already_complete(carton)
            except BackendError as e:
                return self._reject(e)

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                self._state = CartonMachineState.CARTON_SELECTED
                self._carton = carton
                self._progress = progress
                self._transition()

            logger.info(f"Carton {carton.carton_code} selected ({carton.carton_type.value})")
            self.carton_selected.emit(carton)
            return self._ok(carton, "CARTON_SELECTED")
        finally:
            self._end()

    def assign_box(self, box_code: str) -> Tuple[Optional[Carton], str]:
        """
        Bind a packed box to the open Mono-SKU carton.

        Mono-SKU completion is binary: the first successful assignment
        completes the carton.
        """
        if BOX_MARKER not in box_code:
            return self._reject(WrongKindError(
                "Scan the box label (with the $ symbol)",
                expected="BOX_CODE", received="PAIR_CODE"))

        try:
            generation, carton = self._begin(lambda: self._require_selected(
                CartonType.MONO_SKU, "Musical cartons take pairs, not boxes"))
        except ScanInputError as e:
            return self._reject(e)

        try:
            try:
                self.backend.assign_box_to_carton(box_code, carton.carton_id)
            except BackendError as e:
                return self._reject(e)

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                self._state = CartonMachineState.COMPLETE
                self._transition()

            logger.info(f"Box {box_code} assigned to carton {carton.carton_code}")
            return self._complete(carton)
        finally:
            self._end()

    def scan_pair(self, pair_code: str) -> Tuple[Any, str]:
        """
        Count one pair into the open Musical carton.

        Outcomes reported by the backend:
        - the carton was already complete: ALREADY_COMPLETE, carton closed
        - this scan completed it: CARTON_COMPLETE, carton closed
        - partial progress: PAIR_OK, detail rows refreshed
        """
        if BOX_MARKER in pair_code:
            return self._reject(WrongKindError(
                "Musical cartons don't use boxes. Scan the pair QR",
                expected="PAIR_CODE", received="BOX_CODE"))

        try:
            generation, carton = self._begin(lambda: self._require_selected(
                CartonType.MUSICAL, "Scan the box label (with the $ symbol)"))
        except ScanInputError as e:
            return self._reject(e)

        try:
            try:
                result = self.backend.scan_carton_pair(carton.carton_id, pair_code)
            except BackendError as e:
                return self._reject(e)

            if result.already_complete:
                with self._lock:
                    if self._is_stale(generation):
                        return self._discarded()
                    self._clear()
                return self._already_complete(carton)

            if result.carton_complete:
                with self._lock:
                    if self._is_stale(generation):
                        return self._discarded()
                    self._state = CartonMachineState.COMPLETE
                    self._transition()
                logger.info(f"Pair {pair_code} completed carton {carton.carton_code}")
                return self._complete(carton)

            # Partial progress: re-read the detail rows. The pair is already
            # recorded, so a failed re-read keeps the previous rows.
            try:
                progress = self.backend.get_carton_detail(carton.carton_id)
            except BackendError as e:
                logger.warning(f"Could not refresh carton {carton.carton_code} detail: {e}")
                progress = self._progress

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                self._progress = progress
                self._transition()

            logger.info(
                f"Pair {pair_code} -> carton {carton.carton_code}: "
                f"{result.detail_scanned}/{result.detail_required}"
            )
            if progress is not None:
                self.carton_progress.emit(carton.carton_code, progress.scanned_count,
                                          progress.required_count)
            return self._ok(progress, "PAIR_OK")
        finally:
            self._end()

    def close_carton(self) -> Tuple[Optional[Carton], str]:
        """
        Close the carton panel locally.

        Nothing is sent to the backend; a response still in flight for this
        carton will be discarded.
        """
        with self._lock:
            carton = self._carton
            is_open = self._state == CartonMachineState.CARTON_SELECTED and carton is not None
            if is_open:
                self._clear()

        if not is_open:
            return self._reject(WrongPhaseError("No carton is open"))

        logger.info(f"Carton {carton.carton_code} closed without completing")
        return self._ok(carton, "CARTON_CLOSED")

    def refresh_progress(self) -> Optional[CartonProgress]:
        """
        Re-read the open Musical carton's detail rows from the backend.

        Read-only and idempotent; called by the background poller. Dropped
        if a scan is in flight or a transition happened meanwhile.
        """
        with self._lock:
            carton = self._carton
            if (self._state != CartonMachineState.CARTON_SELECTED or self._busy
                    or carton is None or carton.carton_type != CartonType.MUSICAL):
                return None
            version = self._version

        progress = self._read_for_refresh(lambda: self.backend.get_carton_detail(carton.carton_id))
        if progress is None:
            return None

        with self._lock:
            if not self._can_apply_refresh(version):
                return None
            self._progress = progress

        self.progress_changed.emit(progress)
        return progress

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _find_carton(pending: PendingCartons, wanted: str) -> Optional[Carton]:
        for carton in pending.all():
            if normalize_carton_id(carton.carton_code) == wanted:
                return carton
        return None

    def _clear(self) -> None:
        """Back to NO_CARTON_SELECTED. Caller holds the lock."""
        self._state = CartonMachineState.NO_CARTON_SELECTED
        self._carton = None
        self._progress = None
        self._invalidate()

    def _already_complete(self, carton: Carton) -> Tuple[Carton, str]:
        logger.info(f"Carton {carton.carton_code} is already complete")
        self.carton_already_complete.emit(carton.carton_code)
        return self._ok(carton, "ALREADY_COMPLETE")

    def _complete(self, carton: Carton) -> Tuple[Carton, str]:
        self.carton_completed.emit(carton.carton_code)
        with self._lock:
            self._last_completed_carton = carton.carton_code
            self._clear()
        logger.info(f"Carton {carton.carton_code} complete")
        return self._ok(carton, "CARTON_COMPLETE")
