"""
Custom exceptions for the Scan Station.

This module defines the error taxonomy shared by the code normalizer, the
workflow state machines and the backend client. Every exception carries a
machine-readable ``kind`` so the state machines can report a status string
to the presentation layer without inspecting messages.

Two families exist and they are handled differently:
- Local input errors (ScanInputError) are detected before any network call.
  They mean the operator must scan something else and are never retried.
- Backend errors (BackendError) carry the backend's human-readable message
  verbatim. They are not retried automatically either: a scan is a discrete
  physical action the operator can simply repeat.

Exception hierarchy:
    ScanStationError (base)
    ├── ScanInputError (local validation, no network call made)
    │   ├── EmptyCodeError (nothing left after cleaning the scan)
    │   ├── WrongKindError (box code where pair/carton expected, or vice versa)
    │   ├── WrongPhaseError (operation invoked outside its required state)
    │   └── StationBusyError (previous scan still being processed)
    └── BackendError (remote call failed)
        ├── NotFoundError (unknown box/carton/PO)
        ├── RejectedError (business rule failure, e.g. duplicate pair)
        │   └── AlreadyPackedError (box completed earlier)
        ├── ValidationFailedError (PO not ready to send)
        ├── BackendUnavailableError (connection refused, 5xx, bad payload)
        │   └── BackendTimeoutError (transport timeout)
        └── ConfigurationError (backend settings missing or invalid)
"""

from typing import Optional


class ScanStationError(Exception):
    """
    Base exception for all Scan Station errors.

    Subclasses set ``kind`` to the status string reported to the UI.
    This allows catching all application errors with a single except clause:
        try:
            machine.start_box(code)
        except ScanStationError as e:
            logger.error(f"Scan failed [{e.kind}]: {e}")
    """
    kind = "ERROR"

    def get_display_message(self) -> str:
        """Return the message to show the operator."""
        return str(self) or self.kind


class ScanInputError(ScanStationError):
    """
    Raised when scanner input is invalid for the current phase.

    Detected locally, before any backend call. The operator has to change
    what is being scanned, so these are never retried.
    """
    kind = "INVALID_INPUT"


class EmptyCodeError(ScanInputError):
    """
    Raised when a scan is empty, or becomes empty after cleaning.

    Common causes:
    - Operator pressed Enter on an empty input
    - Scanner emitted only whitespace or punctuation
    - Verification URL with no trailing code segment
    """
    kind = "EMPTY_CODE"

    def __init__(self, raw: str = "", message: str = "Invalid code"):
        super().__init__(message)
        self.raw = raw


class WrongKindError(ScanInputError):
    """
    Raised when the code kind does not fit the active selection.

    Example: a box code ($) scanned while a Musical carton is open, or a pair
    QR scanned while a Mono-SKU carton waits for its box.

    Attributes:
        expected (str): The code kind that would have been accepted
        received (str): The code kind that was scanned
    """
    kind = "WRONG_KIND"

    def __init__(self, message: str, expected: Optional[str] = None, received: Optional[str] = None):
        super().__init__(message)
        self.expected = expected
        self.received = received


class WrongPhaseError(ScanInputError):
    """Raised when an operation is invoked outside the state it requires."""
    kind = "WRONG_PHASE"


class StationBusyError(ScanInputError):
    """
    Raised when a scan arrives while the previous one is still in flight.

    Each scan is one task that must finish before the next can change the
    same machine. Fast double-scans land here instead of racing.
    """
    kind = "BUSY"


class BackendError(ScanStationError):
    """
    Raised when a backend call fails.

    The message is the backend-provided reason, kept verbatim so operators
    see exactly what the server said.

    Attributes:
        status_code (int | None): HTTP status of the failed response, if any
    """
    kind = "BACKEND_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(BackendError):
    """Raised when the backend does not know the box, carton or PO."""
    kind = "NOT_FOUND"


class RejectedError(BackendError):
    """
    Raised when the backend refuses an operation on business grounds.

    Examples:
    - Pair QR already counted in another box or carton
    - Pair SKU does not match the active box
    - Box SKU does not match the Mono-SKU carton
    """
    kind = "REJECTED"


class AlreadyPackedError(RejectedError):
    """Raised when a box label is scanned for packing after it was completed."""
    kind = "ALREADY_PACKED"


class ValidationFailedError(BackendError):
    """Raised when a purchase order fails the pre-send validation."""
    kind = "VALIDATION_FAILED"


class BackendUnavailableError(BackendError):
    """
    Raised when the backend cannot be reached or answers with garbage.

    Covers connection refused, DNS failures, 5xx responses and bodies that
    are not the expected JSON envelope. Recoverable: the operator rescans
    once the station is back online.
    """
    kind = "BACKEND_UNAVAILABLE"


class BackendTimeoutError(BackendUnavailableError):
    """Raised when the transport gives up waiting for the backend."""
    kind = "TIMEOUT"


class ConfigurationError(BackendError):
    """Raised when backend settings in config.ini are missing or invalid."""
    kind = "CONFIGURATION_ERROR"
