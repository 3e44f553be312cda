"""
HTTP client for the fulfillment backend.

Wraps the backend's REST API (boxes, cartons, purchase orders and the
Trysor/T4 send workflow) behind one method per operation. Every response
envelope ({"success": ..., "data": ..., "error": ...}) is decoded here into
the dataclasses of ``models`` and every failure is raised as one of the
typed exceptions of ``exceptions``; nothing untyped leaves this module.

Calls are never retried: a scan is a physical action the operator repeats.
"""

import os
import configparser
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from exceptions import (
    BackendError,
    BackendTimeoutError,
    BackendUnavailableError,
    ConfigurationError,
    NotFoundError,
    RejectedError,
)
from logger import get_logger
from models import (
    Box,
    BoxProgress,
    BoxScanResult,
    CartonProgress,
    CartonScanResult,
    PairScan,
    PendingCartons,
    PurchaseOrder,
    SendRecord,
    SendValidation,
)

logger = get_logger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000/api"
DEFAULT_TIMEOUT_SECONDS = 10

# Environment override for the backend URL, checked before config.ini
BASE_URL_ENV_VAR = "SCAN_STATION_API_URL"

# HTTP statuses the backend uses for business-rule refusals
_REJECTION_STATUSES = {400, 409, 422}


def _segment(value: Any) -> str:
    """Encode one URL path segment; "/", "#" and "?" in ids must not reshape the path."""
    return quote(str(value), safe='')


class FulfillmentApiClient:
    """
    Client for the fulfillment backend REST API.

    Attributes:
        base_url (str): API root, e.g. "http://localhost:3000/api"
        timeout (float): Seconds before a call surfaces as BackendTimeoutError
        session (requests.Session): Shared connection pool
    """

    def __init__(self, base_url: str = DEFAULT_BASE_URL,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        if not base_url:
            raise ConfigurationError("Backend BaseUrl is empty")
        if timeout <= 0:
            raise ConfigurationError(f"Backend timeout must be positive, got {timeout}")

        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

        logger.info(f"FulfillmentApiClient initialized: {self.base_url} (timeout {self.timeout}s)")

    @classmethod
    def from_config(cls, config_path: str = "config.ini") -> "FulfillmentApiClient":
        """
        Build a client from the [Backend] section of config.ini.

        The SCAN_STATION_API_URL environment variable takes precedence over
        BaseUrl so a station can be pointed at another backend without
        editing its config file.
        """
        config = cls._load_config(config_path)
        base_url = (os.environ.get(BASE_URL_ENV_VAR)
                    or config.get('Backend', 'BaseUrl', fallback=DEFAULT_BASE_URL))
        try:
            timeout = config.getfloat('Backend', 'TimeoutSeconds', fallback=DEFAULT_TIMEOUT_SECONDS)
        except ValueError as e:
            raise ConfigurationError(f"Invalid Backend TimeoutSeconds in {config_path}: {e}")
        return cls(base_url=base_url, timeout=timeout)

    @staticmethod
    def _load_config(config_path: str) -> configparser.ConfigParser:
        """Load configuration from config.ini."""
        config = configparser.ConfigParser()

        if not Path(config_path).exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
            return config

        try:
            config.read(config_path, encoding='utf-8')
            logger.info(f"Configuration loaded from {config_path}")
        except configparser.Error as e:
            raise ConfigurationError(f"Failed to parse {config_path}: {e}")

        return config

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, *,
                 json: Optional[Dict[str, Any]] = None,
                 params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Perform one request and return the decoded JSON envelope.

        Raises:
            BackendTimeoutError: Transport timeout
            BackendUnavailableError: Connection failure, 5xx, non-JSON body
            NotFoundError: HTTP 404
            RejectedError: HTTP 400/409/422, or success=false in a 2xx body
        """
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url}")

        try:
            response = self.session.request(method, url, json=json, params=params,
                                            timeout=self.timeout)
        except requests.Timeout as e:
            logger.error(f"Backend timeout on {method} {path}: {e}")
            raise BackendTimeoutError(f"Backend did not answer within {self.timeout}s")
        except requests.RequestException as e:
            logger.error(f"Backend unreachable on {method} {path}: {e}")
            raise BackendUnavailableError(f"Cannot reach backend: {e}")

        try:
            envelope = response.json()
        except ValueError:
            envelope = None

        if not response.ok:
            raise self._error_for(response.status_code, envelope, path)

        if not isinstance(envelope, dict):
            logger.error(f"Non-JSON response on {method} {path} (HTTP {response.status_code})")
            raise BackendUnavailableError("Backend returned an unreadable response",
                                          status_code=response.status_code)

        if envelope.get('success') is False:
            message = self._message_of(envelope, "Operation rejected by backend")
            logger.warning(f"Backend rejected {method} {path}: {message}")
            raise RejectedError(message, status_code=response.status_code)

        return envelope

    @staticmethod
    def _message_of(envelope: Any, default: str) -> str:
        if isinstance(envelope, dict):
            return str(envelope.get('error') or envelope.get('message') or default)
        return default

    def _error_for(self, status_code: int, envelope: Any, path: str) -> BackendError:
        if status_code == 404:
            error_class, default = NotFoundError, "Not found"
        elif status_code in _REJECTION_STATUSES:
            error_class, default = RejectedError, "Operation rejected by backend"
        elif status_code >= 500:
            error_class, default = BackendUnavailableError, f"Backend error (HTTP {status_code})"
        else:
            error_class, default = RejectedError, f"Request failed (HTTP {status_code})"

        message = self._message_of(envelope, default)
        logger.warning(f"HTTP {status_code} on {path}: {message}")
        return error_class(message, status_code=status_code)

    @staticmethod
    def _data(envelope: Dict[str, Any]) -> Any:
        return envelope.get('data')

    # ------------------------------------------------------------------
    # Boxes (production)
    # ------------------------------------------------------------------

    def start_packing(self, box_code: str) -> Box:
        """Open (or resume) the box labelled ``box_code``."""
        envelope = self._request("POST", "/cajas/start-packing", json={"codigoCaja": box_code})
        data = self._data(envelope) or {}
        return Box.from_api(data.get('caja') if isinstance(data, dict) else None)

    def scan_box_pair(self, box_id: Any, qr_code: str) -> BoxScanResult:
        """Record a pair QR against an open box."""
        envelope = self._request("POST", "/cajas/scan-qr",
                                 json={"cajaId": box_id, "codigoQr": qr_code})
        return BoxScanResult.from_api(self._data(envelope))

    def get_box_progress(self, box_id: Any) -> BoxProgress:
        envelope = self._request("GET", f"/cajas/{_segment(box_id)}/progress")
        return BoxProgress.from_api(self._data(envelope))

    # ------------------------------------------------------------------
    # Cartons (shipping)
    # ------------------------------------------------------------------

    def get_pending_cartons(self, po_number: str) -> PendingCartons:
        """List the cartons of a PO still waiting for fulfillment."""
        envelope = self._request("GET", f"/embarque/cartones-pendientes/{_segment(po_number)}")
        return PendingCartons.from_api(self._data(envelope))

    def start_carton_scan(self, carton_id: Any) -> None:
        """Begin a pair scan session on a Musical carton."""
        self._request("POST", f"/cartones/{_segment(carton_id)}/start-scan")

    def get_carton_detail(self, carton_id: Any) -> CartonProgress:
        envelope = self._request("GET", f"/cartones/{_segment(carton_id)}")
        return CartonProgress.from_api(self._data(envelope))

    def scan_carton_pair(self, carton_id: Any, qr_code: str) -> CartonScanResult:
        """Record a pair QR against a Musical carton."""
        envelope = self._request("POST", "/cartones/scan-qr",
                                 json={"cartonId": carton_id, "codigoQr": qr_code})
        return CartonScanResult.from_api(envelope)

    def assign_box_to_carton(self, box_code: str, carton_id: Any) -> None:
        """Bind a packed box to a Mono-SKU carton."""
        self._request("POST", "/embarque/assign-box-to-carton",
                      json={"codigoCaja": box_code, "cartonId": carton_id})

    def get_carton_history(self, carton_id: Any) -> List[PairScan]:
        envelope = self._request("GET", f"/cartones/{_segment(carton_id)}/history")
        return [PairScan.from_api(row) for row in self._data(envelope) or []]

    # ------------------------------------------------------------------
    # Purchase orders and Trysor/T4
    # ------------------------------------------------------------------

    def list_purchase_orders(self) -> List[PurchaseOrder]:
        envelope = self._request("GET", "/purchase-orders")
        return [PurchaseOrder.from_api(row) for row in self._data(envelope) or []]

    def get_purchase_order(self, po_number: str) -> PurchaseOrder:
        envelope = self._request("GET", f"/purchase-orders/{_segment(po_number)}")
        return PurchaseOrder.from_api(self._data(envelope))

    def validate_for_send(self, po_number: str) -> SendValidation:
        """
        Ask whether a PO may be sent to Trysor/T4.

        A refusal is a normal answer here, not an error: the backend reports
        it with success=false (and often HTTP 400) plus a reason, which is
        returned as ``SendValidation(passed=False, message=reason)``.
        """
        try:
            envelope = self._request("GET", f"/trysor/validate/{_segment(po_number)}")
        except RejectedError as e:
            return SendValidation(passed=False, message=str(e))
        return SendValidation.from_api(envelope)

    def preview_send(self, po_number: str) -> Dict[str, Any]:
        """Fetch the payload that would be transmitted to Trysor/T4."""
        envelope = self._request("GET", f"/trysor/preview/{_segment(po_number)}")
        data = self._data(envelope) or {}
        return data.get('trysorData', data) if isinstance(data, dict) else {}

    def send_purchase_order(self, po_number: str) -> Dict[str, Any]:
        envelope = self._request("POST", f"/trysor/send/{_segment(po_number)}")
        return self._data(envelope) or {}

    def cancel_purchase_order(self, po_number: str) -> Dict[str, Any]:
        envelope = self._request("POST", f"/trysor/cancel/{_segment(po_number)}")
        return self._data(envelope) or {}

    def list_send_history(self, po_number: Optional[str] = None) -> List[SendRecord]:
        params = {"po_number": po_number} if po_number else None
        envelope = self._request("GET", "/envios-trysor", params=params)
        return [SendRecord.from_api(row) for row in self._data(envelope) or []]
