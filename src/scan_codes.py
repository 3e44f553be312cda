"""
Scanner input normalization.

Handheld and USB scanners type into a plain text input, so whatever arrives
is free text: QR codes printed as verification URLs, protocol letters
prepended by the scanner, stray whitespace, and characters mangled by the
scanner's keyboard layout. This module turns that text into a canonical
token and classifies it.

Examples:
    "httpsÑ--verify.crocs.com-Q-66QAKYGBRAHX" -> "66QAKYGBRAHX" (PAIR_CODE)
    "  q-abc123$45-9  "                       -> "ABC123$45-9"  (BOX_CODE)
    "c-100"                                   -> "C100"

Everything here is pure and free of I/O.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from exceptions import EmptyCodeError


class CodeKind(str, Enum):
    """What a scanned code refers to."""
    BOX_CODE = "BOX_CODE"
    PAIR_CODE = "PAIR_CODE"
    CARTON_CODE = "CARTON_CODE"


# Box labels are the only codes carrying a dollar sign
BOX_MARKER = "$"

# Pair QR codes encode a verification URL. Scanners set up with a Spanish
# keyboard layout emit "/" as "-" and ":" as "Ñ", so the dotted host may also
# arrive with dashes.
VERIFICATION_URL_MARKERS = ("VERIFY.CROCS.COM", "VERIFY-CROCS-COM")
_URL_SEPARATORS = re.compile(r"[/\-]")

# Protocol letter some scanners prepend: "Q-" or "Q/"
_PROTOCOL_PREFIX = re.compile(r"^Q[-/]", re.IGNORECASE)

_BOX_DISALLOWED = re.compile(r"[^A-Z0-9$\-]")
_CODE_DISALLOWED = re.compile(r"[^A-Z0-9]")


@dataclass(frozen=True)
class ScanCode:
    """
    A normalized scanner token.

    Attributes:
        raw: The text exactly as received from the scanner
        canonical: Cleaned uppercase token used for every backend call
        kind: BOX_CODE, or the phase-dependent non-box kind
    """
    raw: str
    canonical: str
    kind: CodeKind

    @property
    def is_box(self) -> bool:
        return self.kind == CodeKind.BOX_CODE

    def as_kind(self, kind: CodeKind) -> "ScanCode":
        """Re-label a non-box code once the phase says what it refers to."""
        if self.is_box or kind == CodeKind.BOX_CODE:
            return self
        return replace(self, kind=kind)


def _strip_url_wrapper(text: str) -> str:
    if any(marker in text for marker in VERIFICATION_URL_MARKERS):
        return _URL_SEPARATORS.split(text)[-1]
    return text


def normalize(raw: Optional[str], non_box_kind: CodeKind = CodeKind.PAIR_CODE) -> ScanCode:
    """
    Normalize raw scanner text into a ScanCode.

    Algorithm:
    1. Trim whitespace; empty input is rejected
    2. Uppercase
    3. If a verification-URL marker is present, keep only the last path segment
    4. Strip a leading "Q-" / "Q/" protocol prefix
    5. Codes with "$" are box codes and keep [A-Z0-9$-]; anything else keeps
       [A-Z0-9] and gets ``non_box_kind``
    6. Reject the code if nothing is left

    Args:
        raw: Text from the scanner input
        non_box_kind: Kind assigned to codes without "$" (pair or carton,
                      decided by the caller's phase)

    Returns:
        ScanCode with canonical token and kind

    Raises:
        EmptyCodeError: If the input is empty before or after cleaning
    """
    text = (raw or "").strip()
    if not text:
        raise EmptyCodeError(raw or "", "Empty scan")

    text = text.upper()
    text = _strip_url_wrapper(text)
    text = _PROTOCOL_PREFIX.sub("", text)

    if BOX_MARKER in text:
        kind = CodeKind.BOX_CODE
        canonical = _BOX_DISALLOWED.sub("", text)
    else:
        kind = non_box_kind
        canonical = _CODE_DISALLOWED.sub("", text)

    if not canonical:
        raise EmptyCodeError(raw, "Invalid code")

    return ScanCode(raw=raw, canonical=canonical, kind=kind)


def normalize_carton_id(carton_id: Optional[str]) -> str:
    """
    Clean a carton identifier coming from the backend.

    Scanned carton codes lose their dashes and spaces during normalization,
    so the backend's identifiers go through the same filter before comparing.
    """
    return _CODE_DISALLOWED.sub("", str(carton_id or "").upper())
