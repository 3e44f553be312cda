"""
Pytest configuration file for Scan Station tests.

This file sets up the Python path so tests can import the flat modules
under 'src', and provides factories for the backend payload objects the
state machines consume.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Get the repository root directory (parent of tests directory)
repo_root = Path(__file__).parent.parent

# Add src directory to sys.path (for src modules)
src_dir = repo_root / 'src'
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

from models import (  # noqa: E402
    Box,
    BoxState,
    Carton,
    CartonDetail,
    CartonProgress,
    CartonType,
    PendingCartons,
    PoState,
    PurchaseOrder,
    Sku,
)


def make_box(box_code="BOX$1", required=2, scanned=0, state=BoxState.PACKING, box_id=11):
    """Helper to create a Box as returned by start_packing."""
    return Box(
        box_id=box_id,
        box_code=box_code,
        sku=Sku(sku_number="205089-001-M9"),
        required_count=required,
        scanned_count=scanned,
        state=state,
    )


def make_mono_carton(carton_code="M200", box_assigned=False, carton_id=7):
    return Carton(
        carton_id=carton_id,
        carton_code=carton_code,
        carton_type=CartonType.MONO_SKU,
        sku_number="205089-001-M9",
        required_count=12,
        box_assigned=box_assigned,
    )


def make_musical_carton(carton_code="C100", carton_id=9):
    return Carton(
        carton_id=carton_id,
        carton_code=carton_code,
        carton_type=CartonType.MUSICAL,
        required_count=5,
        sku_count=2,
    )


def make_progress(carton, counts):
    """
    Helper to create CartonProgress for a Musical carton.

    Args:
        carton: Musical Carton
        counts: List of (sku_number, scanned, required) tuples
    """
    details = [
        CartonDetail(detail_id=i, sku_number=sku, required_count=required, scanned_count=scanned)
        for i, (sku, scanned, required) in enumerate(counts, start=1)
    ]
    return CartonProgress(carton=carton, details=details)


def make_po(po_number="PO-1", state=PoState.IN_PROGRESS, total=4, completed=2):
    return PurchaseOrder(
        po_number=po_number,
        state=state,
        carton_total=total,
        carton_completed=completed,
    )


@pytest.fixture
def backend():
    """A MagicMock standing in for FulfillmentApiClient."""
    return MagicMock()


@pytest.fixture
def pending_cartons():
    return PendingCartons(
        mono_sku=[make_mono_carton()],
        musical=[make_musical_carton()],
    )
