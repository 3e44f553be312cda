"""
Integration-style tests for ScanSession: raw scanner text in, outcomes out,
with every machine wired to one mocked backend.
"""

import pytest
from unittest.mock import MagicMock

from conftest import make_box, make_po, make_progress
from exceptions import BackendUnavailableError, NotFoundError
from models import BoxScanResult, CartonScanResult, PoState, SendValidation
from scan_dispatcher import Phase, Selection
from scan_session import ScanOutcome, ScanSession


@pytest.fixture
def session(backend, pending_cartons):
    backend.get_pending_cartons.return_value = pending_cartons
    backend.get_purchase_order.return_value = make_po(total=4, completed=2)
    return ScanSession(backend, station_id="LINE-2", operator_id="017")


@pytest.fixture
def shipping(session):
    session.set_phase(Phase.SHIPPING)
    session.select_purchase_order("PO-1")
    return session


class TestProduction:

    def test_box_flow_from_raw_scans(self, session, backend):
        backend.start_packing.return_value = make_box("BOX$1", required=1)
        backend.scan_box_pair.return_value = BoxScanResult(1, 1, True)

        outcome = session.submit_scan("  q-box$1 ")
        assert outcome.status == "BOX_STARTED"
        assert outcome.operation == "start_box"
        assert session.active_selection() == Selection.BOX
        backend.start_packing.assert_called_once_with("BOX$1")

        outcome = session.submit_scan("httpsÑ--verify.crocs.com-Q-66QAKYGBRAHX")
        assert outcome.status == "BOX_COMPLETE"
        assert outcome.ok
        backend.scan_box_pair.assert_called_once_with(11, "66QAKYGBRAHX")
        assert session.active_selection() == Selection.NONE

    def test_pair_before_box_is_wrong_kind(self, session, backend):
        violations = []
        session.phase_violation.connect(lambda expected, msg: violations.append(expected))

        outcome = session.submit_scan("PAIR1")

        assert outcome.status == "WRONG_KIND"
        assert not outcome.ok
        assert violations == ["BOX_CODE"]
        backend.start_packing.assert_not_called()

    def test_empty_scan(self, session, backend):
        outcome = session.submit_scan("   ")
        assert outcome.status == "EMPTY_CODE"
        assert backend.method_calls == []

    def test_every_scan_is_emitted(self, session):
        processed = []
        session.scan_processed.connect(processed.append)

        session.submit_scan("")
        session.submit_scan("PAIR1")

        assert [o.status for o in processed] == ["EMPTY_CODE", "WRONG_KIND"]

    def test_rejection_message_is_surfaced(self, session, backend):
        backend.start_packing.side_effect = NotFoundError("Caja no encontrada")

        outcome = session.submit_scan("BOX$404")

        assert outcome == ScanOutcome("NOT_FOUND", "Caja no encontrada", None, "start_box")

    def test_cancel_active_box(self, session, backend):
        backend.start_packing.return_value = make_box()
        session.submit_scan("BOX$1")

        outcome = session.cancel_active()

        assert outcome.status == "BOX_CANCELLED"
        assert session.active_selection() == Selection.NONE

    def test_cancel_with_nothing_open(self, session):
        assert session.cancel_active().status == "WRONG_PHASE"


class TestPhaseSwitching:

    def test_phase_switch_refused_while_box_open(self, session, backend):
        backend.start_packing.return_value = make_box()
        session.submit_scan("BOX$1")

        outcome = session.set_phase(Phase.SHIPPING)

        assert outcome.status == "WRONG_PHASE"
        assert session.phase == Phase.PRODUCTION

    def test_phase_switch(self, session):
        outcome = session.set_phase(Phase.SHIPPING)
        assert outcome.status == "PHASE_SET"
        assert session.phase == Phase.SHIPPING

    def test_select_po_refused_while_carton_open(self, shipping):
        shipping.submit_scan("M200")

        outcome = shipping.select_purchase_order("PO-2")

        assert outcome.status == "WRONG_PHASE"
        assert shipping.po_number == "PO-1"

    def test_select_unknown_po(self, session, backend):
        backend.get_purchase_order.side_effect = NotFoundError("PO no encontrada")

        outcome = session.select_purchase_order("PO-X")

        assert outcome.status == "NOT_FOUND"
        assert session.po_number is None


class TestShipping:

    def test_mono_carton_flow_refreshes_po(self, shipping, backend):
        backend.get_purchase_order.reset_mock()

        assert shipping.submit_scan("M200").status == "CARTON_SELECTED"
        assert shipping.active_selection() == Selection.MONO_SKU_CARTON

        outcome = shipping.submit_scan("BOX$1")

        assert outcome.status == "CARTON_COMPLETE"
        assert outcome.operation == "assign_box"
        backend.get_purchase_order.assert_called_once_with("PO-1")

    def test_musical_carton_flow(self, shipping, backend):
        carton = backend.get_pending_cartons.return_value.musical[0]
        backend.get_carton_detail.return_value = make_progress(carton, [("A", 0, 1)])
        backend.scan_carton_pair.return_value = CartonScanResult(False, True, 1, 1)

        assert shipping.submit_scan("c-100").status == "CARTON_SELECTED"
        assert shipping.active_selection() == Selection.MUSICAL_CARTON
        assert shipping.submit_scan("BOX$1").status == "WRONG_KIND"

        outcome = shipping.submit_scan("PAIR1")

        assert outcome.status == "CARTON_COMPLETE"
        assert shipping.active_selection() == Selection.NONE

    def test_po_refresh_failure_does_not_fail_the_scan(self, shipping, backend):
        shipping.submit_scan("M200")
        backend.get_purchase_order.side_effect = BackendUnavailableError("down")

        outcome = shipping.submit_scan("BOX$1")

        assert outcome.status == "CARTON_COMPLETE"


class TestPoValidation:

    def test_validate_po_scan(self, session, backend):
        backend.validate_for_send.return_value = SendValidation(True, "")
        session.set_phase(Phase.PO_VALIDATION)

        outcome = session.submit_scan("po-1")

        assert outcome.status == "VALIDATION_PASSED"
        assert outcome.operation == "validate_po"
        assert session.po_number == "PO-1"
        backend.validate_for_send.assert_called_once_with("PO-1")

    def test_validation_failure_is_reported(self, session, backend):
        backend.validate_for_send.return_value = SendValidation(False, "Faltan cartones")
        session.set_phase(Phase.PO_VALIDATION)

        outcome = session.submit_scan("PO-1")

        assert outcome.status == "VALIDATION_FAILED"
        assert outcome.message == "Faltan cartones"

    def test_validated_po_becomes_shipping_target(self, session, backend):
        backend.validate_for_send.return_value = SendValidation(True)
        session.select_purchase_order("PO-A")
        session.set_phase(Phase.PO_VALIDATION)
        session.submit_scan("PO-B")
        session.set_phase(Phase.SHIPPING)
        backend.get_pending_cartons.reset_mock()

        outcome = session.submit_scan("M200")

        assert outcome.status == "CARTON_SELECTED"
        assert session.po_number == "PO-B"
        assert session.cartons.po_number == "PO-B"
        backend.get_pending_cartons.assert_called_once_with("PO-B")

    def test_send_selected_po(self, session, backend):
        backend.get_purchase_order.return_value = make_po(total=4, completed=4)
        backend.validate_for_send.return_value = SendValidation(True)
        backend.send_purchase_order.return_value = {}
        session.select_purchase_order("PO-1")

        outcome = session.send_purchase_order(MagicMock(return_value=True))

        assert outcome.status == "PO_SENT"
        assert session.orders.state_of("PO-1") == PoState.SENT

    def test_send_without_po(self, session, backend):
        outcome = session.send_purchase_order(MagicMock(return_value=True))
        assert outcome.status == "WRONG_PHASE"
        backend.send_purchase_order.assert_not_called()


class TestPolling:

    def test_refresh_active_targets_open_box(self, session, backend):
        backend.start_packing.return_value = make_box()
        session.submit_scan("BOX$1")

        session.refresh_active()

        backend.get_box_progress.assert_called_once_with(11)

    def test_refresh_active_with_nothing_open(self, session, backend):
        assert session.refresh_active() is None
        backend.get_box_progress.assert_not_called()
        backend.get_carton_detail.assert_not_called()
