"""
Scan routing: which operation a scan should trigger.

Given the station's phase, what is currently selected and the raw scanner
text, ``dispatch`` normalizes the code and decides the single legal
operation for that situation, or explains which kind of code was expected.
It never calls the backend; the state machines do that.

Routing table:

    PHASE          SELECTION         BOX CODE ($)        OTHER CODE
    PRODUCTION     NONE              start_box           expected box
    PRODUCTION     BOX               expected pair       scan_box_pair
    SHIPPING       NONE              expected carton     select_carton
    SHIPPING       MONO_SKU_CARTON   assign_box          expected box
    SHIPPING       MUSICAL_CARTON    expected pair       scan_carton_pair
    PO_VALIDATION  NONE              expected PO         validate_po
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from exceptions import EmptyCodeError
from scan_codes import CodeKind, ScanCode, normalize


class Phase(str, Enum):
    PRODUCTION = "PRODUCTION"
    SHIPPING = "SHIPPING"
    PO_VALIDATION = "PO_VALIDATION"


class Selection(str, Enum):
    """What the active machine currently holds open."""
    NONE = "NONE"
    BOX = "BOX"
    MONO_SKU_CARTON = "MONO_SKU_CARTON"
    MUSICAL_CARTON = "MUSICAL_CARTON"


class Operation(str, Enum):
    START_BOX = "start_box"
    SCAN_BOX_PAIR = "scan_box_pair"
    SELECT_CARTON = "select_carton"
    ASSIGN_BOX = "assign_box"
    SCAN_CARTON_PAIR = "scan_carton_pair"
    VALIDATE_PO = "validate_po"


# Pseudo-kind used for PO numbers in violation reports
PO_NUMBER = "PO_NUMBER"


@dataclass(frozen=True)
class Action:
    """The one operation to invoke, with its argument."""
    operation: Operation
    code: ScanCode
    argument: str


@dataclass(frozen=True)
class PhaseViolation:
    """The scan does not fit the current phase/selection."""
    expected: str
    received: str
    message: str
    status: str = "WRONG_KIND"


@dataclass(frozen=True)
class InvalidCode:
    """Nothing usable was left after cleaning the scan."""
    raw: str
    message: str
    status: str = "EMPTY_CODE"


DispatchResult = Union[Action, PhaseViolation, InvalidCode]


def _violation(code: ScanCode, expected: str, message: str) -> PhaseViolation:
    return PhaseViolation(expected=expected, received=code.kind.value, message=message)


def _dispatch_production(selection: Selection, code: ScanCode) -> DispatchResult:
    if selection == Selection.NONE:
        if code.is_box:
            return Action(Operation.START_BOX, code, code.canonical)
        return _violation(code, CodeKind.BOX_CODE.value, "Scan a box first")

    if selection == Selection.BOX:
        if code.is_box:
            return _violation(code, CodeKind.PAIR_CODE.value,
                              "A box is already open. Scan its pairs or cancel it")
        return Action(Operation.SCAN_BOX_PAIR, code, code.canonical)

    return PhaseViolation(expected=CodeKind.BOX_CODE.value, received=code.kind.value,
                          message="A carton is open; close it before packing",
                          status="WRONG_PHASE")


def _dispatch_shipping(selection: Selection, code: ScanCode) -> DispatchResult:
    if selection == Selection.NONE:
        if code.is_box:
            return _violation(code, CodeKind.CARTON_CODE.value, "Scan the carton first, not the box")
        carton_code = code.as_kind(CodeKind.CARTON_CODE)
        return Action(Operation.SELECT_CARTON, carton_code, carton_code.canonical)

    if selection == Selection.MONO_SKU_CARTON:
        if code.is_box:
            return Action(Operation.ASSIGN_BOX, code, code.canonical)
        return _violation(code, CodeKind.BOX_CODE.value, "Scan the box label (with the $ symbol)")

    if selection == Selection.MUSICAL_CARTON:
        if code.is_box:
            return _violation(code, CodeKind.PAIR_CODE.value,
                              "Musical cartons don't use boxes. Scan the pair QR")
        return Action(Operation.SCAN_CARTON_PAIR, code, code.canonical)

    return PhaseViolation(expected=CodeKind.CARTON_CODE.value, received=code.kind.value,
                          message="A box is open; finish or cancel it before shipping",
                          status="WRONG_PHASE")


def _dispatch_po_validation(selection: Selection, raw: str, code: ScanCode) -> DispatchResult:
    if selection != Selection.NONE:
        return PhaseViolation(expected=PO_NUMBER, received=code.kind.value,
                              message="Close the open box or carton first",
                              status="WRONG_PHASE")
    if code.is_box:
        return _violation(code, PO_NUMBER, "Scan or type a PO number, not a box")
    # PO numbers keep their dashes, so use the trimmed text rather than the token
    return Action(Operation.VALIDATE_PO, code, raw.strip().upper())


def dispatch(phase: Phase, selection: Selection, raw_input: Optional[str]) -> DispatchResult:
    """
    Decide what a scan means in the current situation.

    Args:
        phase: Station phase
        selection: What the active machine holds open
        raw_input: Text from the scanner

    Returns:
        Action to invoke, PhaseViolation explaining the expected code, or
        InvalidCode when the scan is empty after cleaning
    """
    try:
        code = normalize(raw_input)
    except EmptyCodeError as e:
        return InvalidCode(raw=raw_input or "", message=str(e))

    if phase == Phase.PRODUCTION:
        return _dispatch_production(selection, code)
    if phase == Phase.SHIPPING:
        return _dispatch_shipping(selection, code)
    if phase == Phase.PO_VALIDATION:
        return _dispatch_po_validation(selection, raw_input, code)
    raise ValueError(f"Unknown phase: {phase}")
