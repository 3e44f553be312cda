"""
Typed entities exchanged with the fulfillment backend.

The backend speaks Spanish field names (codigo_caja, cantidad_pares,
cantidad_escaneada, estado, ...). Payloads are decoded into these dataclasses
exactly once, in the ``from_api`` constructors, so the state machines never
look at raw dictionaries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

from exceptions import BackendUnavailableError


class BoxState(str, Enum):
    PACKING = "PACKING"
    PACKED = "PACKED"
    ASSIGNED = "ASSIGNED"


class CartonType(str, Enum):
    MONO_SKU = "MONO_SKU"
    MUSICAL = "MUSICAL"


class CartonState(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"


class PoState(str, Enum):
    IMPORTED = "IMPORTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SENT = "SENT"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (PoState.SENT, PoState.CANCELLED)


# Backend "estado" labels
_BOX_STATES = {
    'pendiente': BoxState.PACKING,
    'empacando': BoxState.PACKING,
    'en_proceso': BoxState.PACKING,
    'empacada': BoxState.PACKED,
    'completa': BoxState.PACKED,
    'asignada': BoxState.ASSIGNED,
}

_CARTON_STATES = {
    'pendiente': CartonState.PENDING,
    'en_proceso': CartonState.IN_PROGRESS,
    'completo': CartonState.COMPLETE,
}

_PO_STATES = {
    'importada': PoState.IMPORTED,
    'en_proceso': PoState.IN_PROGRESS,
    'completada': PoState.COMPLETED,
    'completo': PoState.COMPLETED,
    'enviada': PoState.SENT,
    'cancelada': PoState.CANCELLED,
}


def _require(payload: Any, what: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise BackendUnavailableError(f"Unexpected {what} payload from backend")
    return payload


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return date_parser.isoparse(str(value))
    except ValueError:
        return None


@dataclass(frozen=True)
class Sku:
    sku_number: str
    style_name: str = ""
    color_name: str = ""
    size: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Sku":
        return cls(
            sku_number=str(data.get('sku_number', '')),
            style_name=str(data.get('style_name') or ''),
            color_name=str(data.get('color_name') or ''),
            size=str(data.get('size') or ''),
        )


@dataclass(frozen=True)
class PairScan:
    """One line of a box or carton scan history."""
    qr_code: str
    scanned_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PairScan":
        return cls(
            qr_code=str(data.get('codigo_qr', '')),
            scanned_at=_parse_timestamp(data.get('fecha_escaneo')),
        )


@dataclass(frozen=True)
class Box:
    """
    A production box ("Caja") holding pairs of a single SKU.

    Attributes:
        box_id: Backend primary key, used for follow-up calls
        box_code: The $-bearing label code
        sku: Product packed in the box
        required_count: Pairs the box must hold
        scanned_count: Pairs counted so far
        state: PACKING, PACKED or ASSIGNED
    """
    box_id: Any
    box_code: str
    sku: Sku
    required_count: int
    scanned_count: int = 0
    state: BoxState = BoxState.PACKING

    @property
    def is_full(self) -> bool:
        return self.required_count > 0 and self.scanned_count >= self.required_count

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Box":
        data = _require(data, "box")
        required = _int(data.get('cantidad_pares', data.get('cantidad_requerida')))
        scanned = _int(data.get('cantidad_escaneada'))
        state = _BOX_STATES.get(str(data.get('estado', '')).lower(), BoxState.PACKING)
        if state == BoxState.PACKING and required and scanned >= required:
            state = BoxState.PACKED
        return cls(
            box_id=data.get('id'),
            box_code=str(data.get('codigo_caja', '')),
            sku=Sku.from_api(data),
            required_count=required,
            scanned_count=scanned,
            state=state,
        )


@dataclass(frozen=True)
class BoxScanResult:
    """Backend answer to a pair scanned into a box."""
    scanned_count: int
    required_count: int
    complete: bool

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "BoxScanResult":
        box = _require(_require(data, "box scan").get('caja'), "box scan")
        scanned = _int(box.get('cantidad_escaneada'))
        required = _int(box.get('cantidad_requerida', box.get('cantidad_pares')))
        complete = bool(box.get('completa')) or (required > 0 and scanned >= required)
        return cls(scanned_count=scanned, required_count=required, complete=complete)


@dataclass(frozen=True)
class BoxProgress:
    """Read-only progress snapshot of a box, used by the poller."""
    scanned_count: int
    required_count: int
    percentage: float
    remaining: int
    complete: bool
    history: List[PairScan] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "BoxProgress":
        data = _require(data, "box progress")
        box = data.get('caja') or {}
        scanned = _int(box.get('cantidad_escaneada'))
        required = _int(box.get('cantidad_pares'))
        percentage = box.get('porcentaje')
        if percentage is None:
            percentage = (scanned / required * 100) if required else 0.0
        remaining = data.get('restantes')
        return cls(
            scanned_count=scanned,
            required_count=required,
            percentage=float(percentage),
            remaining=_int(remaining, max(required - scanned, 0)),
            complete=bool(data.get('completa')) or (required > 0 and scanned >= required),
            history=[PairScan.from_api(h) for h in data.get('historial') or []],
        )


@dataclass(frozen=True)
class Carton:
    """
    A shipping carton of a purchase order.

    Mono-SKU cartons are closed by assigning one packed box; Musical cartons
    by scanning individual pairs across several SKUs.
    """
    carton_id: Any
    carton_code: str
    carton_type: CartonType
    state: CartonState = CartonState.PENDING
    sku_number: str = ""
    style_name: str = ""
    required_count: int = 0
    scanned_count: int = 0
    box_assigned: bool = False
    sku_count: int = 0

    @property
    def is_complete(self) -> bool:
        if self.state == CartonState.COMPLETE:
            return True
        if self.carton_type == CartonType.MONO_SKU:
            return self.box_assigned
        return self.required_count > 0 and self.scanned_count >= self.required_count

    @classmethod
    def from_api(cls, data: Dict[str, Any], carton_type: Optional[CartonType] = None) -> "Carton":
        data = _require(data, "carton")
        if carton_type is None:
            carton_type = (CartonType.MONO_SKU if data.get('tipo') == 'mono_sku'
                           else CartonType.MUSICAL)
        if carton_type == CartonType.MONO_SKU:
            required = _int(data.get('cantidad_requerida'))
            scanned = required if data.get('caja_asignada') else 0
        else:
            required = _int(data.get('total_pares_requeridos', data.get('cantidad_requerida')))
            scanned = _int(data.get('total_pares_escaneados', data.get('cantidad_escaneada')))
        return cls(
            carton_id=data.get('id'),
            carton_code=str(data.get('carton_id', '')),
            carton_type=carton_type,
            state=_CARTON_STATES.get(str(data.get('estado', '')).lower(), CartonState.PENDING),
            sku_number=str(data.get('sku_number') or ''),
            style_name=str(data.get('style_name') or ''),
            required_count=required,
            scanned_count=scanned,
            box_assigned=bool(data.get('caja_asignada')),
            sku_count=_int(data.get('total_skus')),
        )


@dataclass(frozen=True)
class CartonDetail:
    """Per-SKU progress line inside a Musical carton."""
    detail_id: Any
    sku_number: str
    required_count: int
    scanned_count: int
    style_name: str = ""

    @property
    def is_satisfied(self) -> bool:
        return self.scanned_count >= self.required_count

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CartonDetail":
        return cls(
            detail_id=data.get('id'),
            sku_number=str(data.get('sku_number', '')),
            required_count=_int(data.get('cantidad_requerida')),
            scanned_count=_int(data.get('cantidad_escaneada')),
            style_name=str(data.get('style_name') or ''),
        )


@dataclass(frozen=True)
class CartonProgress:
    """A Musical carton with its detail rows."""
    carton: Carton
    details: List[CartonDetail] = field(default_factory=list)

    @property
    def scanned_count(self) -> int:
        return sum(d.scanned_count for d in self.details)

    @property
    def required_count(self) -> int:
        return sum(d.required_count for d in self.details)

    @property
    def percentage(self) -> float:
        required = self.required_count
        return (self.scanned_count / required * 100) if required else 0.0

    @property
    def remaining(self) -> int:
        return sum(max(d.required_count - d.scanned_count, 0) for d in self.details)

    @property
    def is_complete(self) -> bool:
        return bool(self.details) and all(d.is_satisfied for d in self.details)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CartonProgress":
        data = _require(data, "carton detail")
        return cls(
            carton=Carton.from_api(data, CartonType.MUSICAL),
            details=[CartonDetail.from_api(d) for d in data.get('detalles') or []],
        )


@dataclass(frozen=True)
class CartonScanResult:
    """
    Backend answer to a pair scanned into a Musical carton.

    Attributes:
        already_complete: The carton was complete before this scan
        carton_complete: The carton is complete after this scan
        detail_scanned / detail_required: Progress of the matched SKU line
    """
    already_complete: bool
    carton_complete: bool
    detail_scanned: int = 0
    detail_required: int = 0

    @classmethod
    def from_api(cls, envelope: Dict[str, Any]) -> "CartonScanResult":
        envelope = _require(envelope, "carton scan")
        if envelope.get('alreadyComplete'):
            return cls(already_complete=True, carton_complete=True)
        data = _require(envelope.get('data'), "carton scan")
        carton = data.get('carton') or {}
        detail = data.get('detalle') or {}
        return cls(
            already_complete=False,
            carton_complete=bool(carton.get('completo')),
            detail_scanned=_int(detail.get('cantidadEscaneada')),
            detail_required=_int(detail.get('cantidadRequerida')),
        )


@dataclass(frozen=True)
class PendingCartons:
    """Cartons of a PO still waiting to be fulfilled, split by type."""
    mono_sku: List[Carton] = field(default_factory=list)
    musical: List[Carton] = field(default_factory=list)

    def all(self) -> List[Carton]:
        return list(self.mono_sku) + list(self.musical)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PendingCartons":
        data = _require(data, "pending cartons")
        return cls(
            mono_sku=[Carton.from_api(c, CartonType.MONO_SKU) for c in data.get('monoSku') or []],
            musical=[Carton.from_api(c, CartonType.MUSICAL) for c in data.get('musical') or []],
        )


@dataclass(frozen=True)
class PurchaseOrder:
    """
    A production/shipping purchase order.

    ``state`` is the backend's label; the local aggregate used to gate the
    send workflow is computed by ``po_lifecycle.derive_state``.
    """
    po_number: str
    state: PoState
    carton_total: int = 0
    carton_completed: int = 0
    pair_total: int = 0
    po_id: Any = None
    created_at: Optional[datetime] = None

    @property
    def progress_percentage(self) -> int:
        total = self.carton_total or 1
        return round(self.carton_completed / total * 100)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PurchaseOrder":
        data = _require(data, "purchase order")
        return cls(
            po_number=str(data.get('po_number', '')),
            state=_PO_STATES.get(str(data.get('estado', '')).lower(), PoState.IMPORTED),
            carton_total=_int(data.get('cartones_totales') or data.get('cantidad_cartones')),
            carton_completed=_int(data.get('cartones_completos')),
            pair_total=_int(data.get('cantidad_pares')),
            po_id=data.get('id'),
            created_at=_parse_timestamp(data.get('created_at')),
        )


@dataclass(frozen=True)
class SendValidation:
    """Outcome of the pre-send check against Trysor/T4."""
    passed: bool
    message: str = ""

    @classmethod
    def from_api(cls, envelope: Optional[Dict[str, Any]]) -> "SendValidation":
        envelope = envelope or {}
        return cls(
            passed=bool(envelope.get('success')),
            message=str(envelope.get('message') or envelope.get('error') or ''),
        )


@dataclass(frozen=True)
class SendRecord:
    """One past transmission of a PO to Trysor/T4."""
    record_id: Any
    po_number: str
    status: str
    sent_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "SendRecord":
        return cls(
            record_id=data.get('id'),
            po_number=str(data.get('po_number', '')),
            status=str(data.get('estado', '')),
            sent_at=_parse_timestamp(data.get('fecha_envio') or data.get('created_at')),
        )
