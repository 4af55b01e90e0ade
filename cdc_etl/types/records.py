"""
Typed source documents and enriched records.

Source documents arrive as loosely-typed maps. ``parse_document`` turns them
into one of the known variants (or ``UnknownDocument``), coercing fields
leniently: anything missing or of the wrong shape becomes ``None``.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Union

from cdc_etl.cdc.models import OperationType, RecordType


def as_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def as_datetime(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO-8601 strings (``Z`` suffix allowed) and epoch milliseconds."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, dict) and "$date" in value:
        return as_datetime(value["$date"])
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def as_dict(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


@dataclass
class OrderItem:
    product_id: Optional[str]
    quantity: Optional[float]
    price: Optional[float]

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "OrderItem":
        return OrderItem(
            product_id=as_str(d.get("productId")),
            quantity=as_float(d.get("quantity")),
            price=as_float(d.get("price")),
        )


@dataclass
class OrderDocument:
    order_id: Optional[str] = None
    customer_id: Optional[str] = None
    items: List[OrderItem] = field(default_factory=list)
    total_amount: Optional[float] = None
    status: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    payment_info: Optional[Dict[str, Any]] = None
    raw_items: Optional[List[Any]] = None

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "OrderDocument":
        raw_items = d.get("items") if isinstance(d.get("items"), list) else None
        items = [OrderItem.from_dict(item) for item in (raw_items or []) if isinstance(item, dict)]
        return OrderDocument(
            order_id=as_str(d.get("orderId")),
            customer_id=as_str(d.get("customerId")),
            items=items,
            total_amount=as_float(d.get("totalAmount")),
            status=as_str(d.get("status")),
            shipping_address=as_dict(d.get("shippingAddress")),
            payment_info=as_dict(d.get("paymentInfo")),
            raw_items=raw_items,
        )


@dataclass
class DeviceDocument:
    device_id: Optional[str] = None
    user_id: Optional[str] = None
    device_type: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    os_version: Optional[str] = None
    app_version: Optional[str] = None
    is_active: bool = False
    last_active: Optional[datetime] = None
    registration_date: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "DeviceDocument":
        return DeviceDocument(
            device_id=as_str(d.get("deviceId")),
            user_id=as_str(d.get("userId")),
            device_type=as_str(d.get("deviceType")),
            manufacturer=as_str(d.get("manufacturer")),
            model=as_str(d.get("model")),
            os_version=as_str(d.get("osVersion")),
            app_version=as_str(d.get("appVersion")),
            is_active=as_bool(d.get("isActive")),
            last_active=as_datetime(d.get("lastActive")),
            registration_date=as_datetime(d.get("registrationDate")),
            metadata=as_dict(d.get("metadata")),
        )


@dataclass
class UserActivityDocument:
    user_id: Optional[str] = None
    activity_type: Optional[str] = None
    timestamp: Optional[datetime] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    session_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    duration: Optional[float] = None

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "UserActivityDocument":
        return UserActivityDocument(
            user_id=as_str(d.get("userId")),
            activity_type=as_str(d.get("activityType")),
            timestamp=as_datetime(d.get("timestamp")),
            device_id=as_str(d.get("deviceId")),
            ip_address=as_str(d.get("ipAddress")),
            location=as_dict(d.get("location")),
            session_id=as_str(d.get("sessionId")),
            metadata=as_dict(d.get("metadata")),
            duration=as_float(d.get("duration")),
        )


@dataclass
class UnknownDocument:
    fields: Dict[str, Any] = field(default_factory=dict)


SourceDocumentPayload = Union[OrderDocument, DeviceDocument, UserActivityDocument, UnknownDocument]

_PARSERS = {
    RecordType.ORDER: OrderDocument.from_dict,
    RecordType.DEVICE: DeviceDocument.from_dict,
    RecordType.USER_ACTIVITY: UserActivityDocument.from_dict,
}


def parse_document(record_type: Optional[RecordType], document: Any) -> Optional[SourceDocumentPayload]:
    """Return the typed variant for ``document``, or ``None`` when there is no usable map."""
    if not isinstance(document, dict) or not document:
        return None
    parser = _PARSERS.get(record_type)
    if parser is None:
        return UnknownDocument(fields=dict(document))
    return parser(document)


@dataclass
class EnrichedRecord:
    """A change event after enrichment, ready to be mapped to a sink row"""
    record_type: RecordType
    operation_type: OperationType
    document_id: str
    event_timestamp: str
    data: Dict[str, Any]
    enriched: Dict[str, Any]
    document: Optional[SourceDocumentPayload] = None
