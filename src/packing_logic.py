"""
Production packing: filling one box ("Caja") with its pairs.

The operator scans a box label (a code carrying "$"), then scans the QR code
of every pair going into it. The backend counts the pairs; when the count
reaches the box's required quantity the box is packed and the station is
ready for the next box.

States:
    IDLE -> PACKING -> PACKED (surfaced, then immediately back to IDLE)
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from PySide6.QtCore import Signal

from exceptions import AlreadyPackedError, BackendError, ScanInputError, WrongPhaseError
from logger import get_logger
from models import Box, BoxProgress, BoxState
from scan_machine import ScanMachine

logger = get_logger(__name__)


class PackingState(str, Enum):
    IDLE = "IDLE"
    PACKING = "PACKING"
    PACKED = "PACKED"


@dataclass(frozen=True)
class PackingSnapshot:
    """Read-only view of the packing machine for the presentation layer."""
    state: PackingState
    box: Optional[Box] = None
    progress: Optional[BoxProgress] = None
    last_completed_box: Optional[str] = None
    version: int = 0


class ProductionPackingMachine(ScanMachine):
    """
    Governs filling one production box with its required count of pairs.

    Operation results are (payload, status) tuples, status being one of:
        "BOX_STARTED"       - Box opened; payload is the Box
        "PAIR_OK"           - Pair counted, box not yet full; payload is the Box
        "BOX_COMPLETE"      - Pair counted and box full; payload is the Box
        "BOX_CANCELLED"     - Local cancel; payload is the Box
        "ALREADY_PACKED"    - Box was completed earlier
        "NOT_FOUND"         - Unknown box code
        "WRONG_PHASE"       - Operation not allowed in the current state
        "REJECTED"          - Backend refused the pair (duplicate, wrong SKU...)
        "BACKEND_UNAVAILABLE" / "TIMEOUT"
        "BUSY"              - Previous scan still in flight
        "DISCARDED"         - Response arrived after a cancel and was dropped

    Attributes:
        box_started (Signal): Box opened (Box)
        pair_scanned (Signal): Progress (box_code, scanned_count, required_count)
        box_completed (Signal): Box packed (box_code)
        box_cancelled (Signal): Box dropped locally (box_code)
        progress_changed (Signal): Background refresh applied (BoxProgress)
    """
    box_started = Signal(object)
    pair_scanned = Signal(str, int, int)
    box_completed = Signal(str)
    box_cancelled = Signal(str)
    progress_changed = Signal(object)

    def __init__(self, backend):
        super().__init__(backend)
        self._state = PackingState.IDLE
        self._box: Optional[Box] = None
        self._progress: Optional[BoxProgress] = None
        self._last_completed_box: Optional[str] = None
        logger.info("ProductionPackingMachine initialized")

    @property
    def state(self) -> PackingState:
        with self._lock:
            return self._state

    def snapshot(self) -> PackingSnapshot:
        with self._lock:
            return PackingSnapshot(
                state=self._state,
                box=self._box,
                progress=self._progress,
                last_completed_box=self._last_completed_box,
                version=self._version,
            )

    def _require_idle(self) -> None:
        if self._state != PackingState.IDLE:
            raise WrongPhaseError(
                f"Box {self._box.box_code if self._box else ''} is still open. "
                f"Finish or cancel it first"
            )

    def _require_packing(self) -> Box:
        if self._state != PackingState.PACKING or self._box is None:
            raise WrongPhaseError("Scan a box first")
        return self._box

    def start_box(self, box_code: str) -> Tuple[Optional[Box], str]:
        """
        Open the box labelled ``box_code`` for packing.

        Args:
            box_code: Normalized box code (contains "$")

        Returns:
            (Box, "BOX_STARTED") on success, (None, status) otherwise
        """
        try:
            generation, _ = self._begin(self._require_idle)
        except ScanInputError as e:
            return self._reject(e)

        try:
            logger.info(f"Opening box {box_code}")
            try:
                box = self.backend.start_packing(box_code)
            except BackendError as e:
                return self._reject(e)

            if box.state != BoxState.PACKING or box.is_full:
                return self._reject(AlreadyPackedError(f"Box {box_code} is already packed"))

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                self._state = PackingState.PACKING
                self._box = box
                self._progress = None
                self._transition()

            logger.info(
                f"Box {box.box_code} opened: SKU {box.sku.sku_number}, "
                f"{box.scanned_count}/{box.required_count} pairs"
            )
            self.box_started.emit(box)
            return self._ok(box, "BOX_STARTED")
        finally:
            self._end()

    def scan_pair(self, pair_code: str) -> Tuple[Optional[Box], str]:
        """
        Count one pair into the open box.

        When the backend reports the box full, the machine passes through
        PACKED, emits ``box_completed`` and resets to IDLE so the next box
        can be scanned straight away.
        """
        try:
            generation, box = self._begin(self._require_packing)
        except ScanInputError as e:
            return self._reject(e)

        try:
            try:
                result = self.backend.scan_box_pair(box.box_id, pair_code)
            except BackendError as e:
                return self._reject(e)

            with self._lock:
                if self._is_stale(generation):
                    return self._discarded()
                required = result.required_count or box.required_count
                box = replace(box, scanned_count=result.scanned_count, required_count=required)
                complete = result.complete or (required > 0 and result.scanned_count >= required)
                self._box = box
                self._transition()
                if complete:
                    self._state = PackingState.PACKED
                    box = replace(box, state=BoxState.PACKED)

            if not complete:
                logger.info(f"Pair {pair_code} -> box {box.box_code}: {box.scanned_count}/{box.required_count}")
                self.pair_scanned.emit(box.box_code, box.scanned_count, box.required_count)
                return self._ok(box, "PAIR_OK")

            logger.info(f"Box {box.box_code} complete ({box.scanned_count} pairs)")
            self.pair_scanned.emit(box.box_code, box.scanned_count, box.required_count)
            self.box_completed.emit(box.box_code)
            self._reset(completed_box=box.box_code)
            return self._ok(box, "BOX_COMPLETE")
        finally:
            self._end()

    def cancel_box(self) -> Tuple[Optional[Box], str]:
        """
        Drop the open box locally and return to IDLE.

        Nothing is sent to the backend; pairs already recorded stay recorded.
        A response still in flight for this box will be discarded.
        """
        with self._lock:
            box = self._box
            is_open = self._state == PackingState.PACKING and box is not None
            if is_open:
                self._state = PackingState.IDLE
                self._box = None
                self._progress = None
                self._invalidate()

        if not is_open:
            return self._reject(WrongPhaseError("No box is open"))

        logger.info(f"Box {box.box_code} cancelled at {box.scanned_count}/{box.required_count}")
        self.box_cancelled.emit(box.box_code)
        return self._ok(box, "BOX_CANCELLED")

    def _reset(self, completed_box: Optional[str] = None) -> None:
        with self._lock:
            self._state = PackingState.IDLE
            self._box = None
            self._progress = None
            if completed_box:
                self._last_completed_box = completed_box
            self._invalidate()

    def refresh_progress(self) -> Optional[BoxProgress]:
        """
        Re-read the open box's progress from the backend.

        Read-only and idempotent; called by the background poller. The result
        is dropped if a scan is in flight or a transition happened meanwhile.

        Returns:
            The applied BoxProgress, or None if nothing was applied
        """
        with self._lock:
            if self._state != PackingState.PACKING or self._busy:
                return None
            box = self._box
            version = self._version

        progress = self._read_for_refresh(lambda: self.backend.get_box_progress(box.box_id))
        if progress is None:
            return None

        with self._lock:
            if not self._can_apply_refresh(version):
                return None
            self._progress = progress
            self._box = replace(
                self._box,
                scanned_count=progress.scanned_count,
                required_count=progress.required_count or self._box.required_count,
            )

        self.progress_changed.emit(progress)
        return progress
