"""
Unit tests for FulfillmentApiClient.

The requests.Session is replaced by a MagicMock, so no HTTP traffic
happens; responses are mocks exposing ok / status_code / json().
"""

import configparser

import pytest
import requests
from unittest.mock import MagicMock

from backend_client import FulfillmentApiClient
from exceptions import (
    BackendTimeoutError,
    BackendUnavailableError,
    ConfigurationError,
    NotFoundError,
    RejectedError,
)
from models import BoxState, CartonType, PoState


def make_response(body, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def client(http):
    return FulfillmentApiClient(base_url="http://backend/api/", timeout=5, session=http)


class TestConstruction:

    def test_trailing_slash_stripped(self, client):
        assert client.base_url == "http://backend/api"

    def test_empty_base_url(self, http):
        with pytest.raises(ConfigurationError):
            FulfillmentApiClient(base_url="", session=http)

    def test_non_positive_timeout(self, http):
        with pytest.raises(ConfigurationError):
            FulfillmentApiClient(timeout=0, session=http)

    def test_from_config(self, tmp_path, monkeypatch):
        config = configparser.ConfigParser()
        config['Backend'] = {'BaseUrl': 'http://station-backend:3000/api', 'TimeoutSeconds': '4'}
        path = tmp_path / "config.ini"
        with open(path, 'w', encoding='utf-8') as f:
            config.write(f)
        monkeypatch.delenv("SCAN_STATION_API_URL", raising=False)

        client = FulfillmentApiClient.from_config(str(path))

        assert client.base_url == "http://station-backend:3000/api"
        assert client.timeout == 4

    def test_env_var_overrides_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SCAN_STATION_API_URL", "http://override/api")
        client = FulfillmentApiClient.from_config(str(tmp_path / "missing.ini"))
        assert client.base_url == "http://override/api"

    def test_invalid_timeout_in_config(self, tmp_path):
        path = tmp_path / "config.ini"
        path.write_text("[Backend]\nTimeoutSeconds = soon\n", encoding='utf-8')
        with pytest.raises(ConfigurationError):
            FulfillmentApiClient.from_config(str(path))


class TestErrorMapping:

    def test_404_is_not_found(self, client, http):
        http.request.return_value = make_response({"success": False, "error": "Caja no encontrada"}, 404)

        with pytest.raises(NotFoundError) as exc_info:
            client.start_packing("BOX$1")

        assert str(exc_info.value) == "Caja no encontrada"
        assert exc_info.value.status_code == 404

    @pytest.mark.parametrize("status_code", [400, 409, 422])
    def test_business_refusals(self, client, http, status_code):
        http.request.return_value = make_response({"error": "QR ya escaneado"}, status_code)

        with pytest.raises(RejectedError, match="QR ya escaneado"):
            client.scan_box_pair(11, "ABC")

    def test_success_false_in_2xx_is_rejected(self, client, http):
        http.request.return_value = make_response({"success": False, "message": "SKU no coincide"})

        with pytest.raises(RejectedError, match="SKU no coincide"):
            client.assign_box_to_carton("BOX$1", 7)

    def test_5xx_is_unavailable(self, client, http):
        http.request.return_value = make_response(ValueError("no json"), 502)

        with pytest.raises(BackendUnavailableError) as exc_info:
            client.get_box_progress(11)

        assert exc_info.value.status_code == 502

    def test_timeout(self, client, http):
        http.request.side_effect = requests.Timeout("read timed out")

        with pytest.raises(BackendTimeoutError):
            client.start_packing("BOX$1")

    def test_timeout_is_unavailable(self):
        assert issubclass(BackendTimeoutError, BackendUnavailableError)

    def test_connection_error(self, client, http):
        http.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(BackendUnavailableError):
            client.list_purchase_orders()

    def test_non_json_success_body(self, client, http):
        http.request.return_value = make_response(ValueError("html"), 200)

        with pytest.raises(BackendUnavailableError):
            client.list_purchase_orders()


class TestEndpoints:

    def test_start_packing(self, client, http):
        http.request.return_value = make_response({"success": True, "data": {"caja": {
            "id": 11, "codigo_caja": "BOX$1", "sku_number": "205089-001-M9",
            "cantidad_pares": 12, "cantidad_escaneada": 3, "estado": "empacando",
        }}})

        box = client.start_packing("BOX$1")

        assert box.box_id == 11
        assert box.required_count == 12
        assert box.scanned_count == 3
        assert box.state == BoxState.PACKING
        http.request.assert_called_once_with(
            "POST", "http://backend/api/cajas/start-packing",
            json={"codigoCaja": "BOX$1"}, params=None, timeout=5)

    def test_scan_box_pair(self, client, http):
        http.request.return_value = make_response({"success": True, "data": {"caja": {
            "cantidad_escaneada": 12, "cantidad_requerida": 12, "completa": True}}})

        result = client.scan_box_pair(11, "ABC")

        assert result.complete
        assert result.scanned_count == 12

    def test_pending_cartons(self, client, http):
        http.request.return_value = make_response({"success": True, "data": {
            "monoSku": [{"id": 7, "carton_id": "M-200", "caja_asignada": True, "cantidad_requerida": 12}],
            "musical": [{"id": 9, "carton_id": "C100", "total_pares_requeridos": 5,
                         "total_pares_escaneados": 2, "total_skus": 2}],
        }})

        pending = client.get_pending_cartons("PO-1")

        mono, musical = pending.all()
        assert mono.carton_type == CartonType.MONO_SKU
        assert mono.box_assigned and mono.is_complete
        assert musical.carton_type == CartonType.MUSICAL
        assert musical.scanned_count == 2
        assert http.request.call_args[0][1].endswith("/embarque/cartones-pendientes/PO-1")

    def test_box_progress_with_history(self, client, http):
        http.request.return_value = make_response({"success": True, "data": {
            "caja": {"cantidad_escaneada": 2, "cantidad_pares": 12},
            "historial": [{"codigo_qr": "ABC", "fecha_escaneo": "2025-11-05T14:30:45"}],
        }})

        progress = client.get_box_progress(11)

        assert progress.remaining == 10
        assert not progress.complete
        assert progress.history[0].qr_code == "ABC"
        assert progress.history[0].scanned_at.minute == 30

    def test_carton_history(self, client, http):
        http.request.return_value = make_response({"success": True, "data": [
            {"codigo_qr": "A1", "fecha_escaneo": "2025-11-05T14:30:45"},
            {"codigo_qr": "A2", "fecha_escaneo": None},
        ]})

        history = client.get_carton_history(9)

        assert [h.qr_code for h in history] == ["A1", "A2"]
        assert history[1].scanned_at is None
        assert http.request.call_args[0][1].endswith("/cartones/9/history")

    def test_scan_carton_pair_already_complete(self, client, http):
        http.request.return_value = make_response({"success": True, "alreadyComplete": True})

        result = client.scan_carton_pair(9, "ABC")

        assert result.already_complete

    def test_scan_carton_pair_progress(self, client, http):
        http.request.return_value = make_response({"success": True, "data": {
            "carton": {"completo": False},
            "detalle": {"cantidadEscaneada": 2, "cantidadRequerida": 3},
        }})

        result = client.scan_carton_pair(9, "ABC")

        assert not result.already_complete
        assert not result.carton_complete
        assert (result.detail_scanned, result.detail_required) == (2, 3)

    def test_carton_detail(self, client, http):
        http.request.return_value = make_response({"success": True, "data": {
            "id": 9, "carton_id": "C100",
            "detalles": [
                {"id": 1, "sku_number": "A", "cantidad_requerida": 3, "cantidad_escaneada": 3},
                {"id": 2, "sku_number": "B", "cantidad_requerida": 2, "cantidad_escaneada": 1},
            ],
        }})

        progress = client.get_carton_detail(9)

        assert progress.required_count == 5
        assert progress.remaining == 1
        assert not progress.is_complete

    def test_purchase_order(self, client, http):
        http.request.return_value = make_response({"success": True, "data": {
            "po_number": "PO-1", "estado": "en_proceso", "cartones_totales": 4,
            "cartones_completos": 1, "created_at": "2025-11-05T14:30:45Z",
        }})

        po = client.get_purchase_order("PO-1")

        assert po.state == PoState.IN_PROGRESS
        assert po.progress_percentage == 25
        assert po.created_at.year == 2025

    @pytest.mark.parametrize("estado", ["completada", "completo", "COMPLETO"])
    def test_completed_po_spellings(self, client, http, estado):
        http.request.return_value = make_response({"success": True, "data": {
            "po_number": "PO-1", "estado": estado}})

        assert client.get_purchase_order("PO-1").state == PoState.COMPLETED

    def test_path_segments_are_encoded(self, client, http):
        http.request.return_value = make_response({"success": True, "data": {
            "po_number": "PO/1#2", "estado": "importada"}})

        client.get_purchase_order("PO/1#2")
        assert http.request.call_args[0][1].endswith("/purchase-orders/PO%2F1%232")

        client.send_purchase_order("PO 7?x")
        assert http.request.call_args[0][1].endswith("/trysor/send/PO%207%3Fx")

        http.request.return_value = make_response({"success": True, "data": []})
        client.get_carton_history("../9")
        assert http.request.call_args[0][1].endswith("/cartones/..%2F9/history")

    def test_validate_refusal_is_an_answer(self, client, http):
        http.request.return_value = make_response(
            {"success": False, "error": "Faltan cartones por completar"}, 400)

        validation = client.validate_for_send("PO-1")

        assert not validation.passed
        assert validation.message == "Faltan cartones por completar"

    def test_validate_unavailable_still_raises(self, client, http):
        http.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(BackendUnavailableError):
            client.validate_for_send("PO-1")

    def test_preview_unwraps_trysor_data(self, client, http):
        http.request.return_value = make_response(
            {"success": True, "data": {"trysorData": {"po": "PO-1", "cartones": 4}}})
        assert client.preview_send("PO-1") == {"po": "PO-1", "cartones": 4}

    def test_send_history_filter(self, client, http):
        http.request.return_value = make_response({"success": True, "data": [
            {"id": 1, "po_number": "PO-1", "estado": "enviado", "fecha_envio": "2025-11-06T09:00:00"},
        ]})

        records = client.list_send_history("PO-1")

        assert records[0].po_number == "PO-1"
        assert http.request.call_args[1]["params"] == {"po_number": "PO-1"}
