"""
Per-record-type enrichment.

Every function here is a pure function of its inputs: the current time is
passed in explicitly so that the same document always enriches the same way.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional

from cdc_etl.cdc.models import ChangeEvent, RecordType
from cdc_etl.types.records import (
    DeviceDocument,
    EnrichedRecord,
    OrderDocument,
    UserActivityDocument,
    as_float,
    parse_document,
)

logger = logging.getLogger(__name__)

DEFAULT_TAX_RATE = 0.08
DEFAULT_CURRENCY = "USD"

WEEKDAYS = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]

_CENTS = Decimal("0.01")


def _money(value: Decimal) -> str:
    return str(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


def _decimal(value: Optional[float]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return None
    # inf and nan contribute nothing to an amount
    return number if number.is_finite() else None


def categorize_device(device_type: Optional[str]) -> str:
    if not device_type:
        return "unknown"
    if "phone" in device_type or device_type == "smartphone":
        return "mobile"
    if "tablet" in device_type:
        return "tablet"
    if "desktop" in device_type or "pc" in device_type:
        return "desktop"
    return "other"


def categorize_activity(activity_type: Optional[str]) -> str:
    if not activity_type:
        return "unknown"
    if any(word in activity_type for word in ("login", "logout", "register")):
        return "account"
    if any(word in activity_type for word in ("purchase", "payment")):
        return "transaction"
    if any(word in activity_type for word in ("view", "search")):
        return "browsing"
    return "other"


def _as_utc(timestamp: datetime) -> datetime:
    # naive timestamps are taken as already being UTC
    if timestamp.tzinfo is None:
        return timestamp
    return timestamp.astimezone(timezone.utc)


def time_of_day(timestamp: Optional[datetime]) -> str:
    if timestamp is None:
        return "unknown"
    hour = _as_utc(timestamp).hour
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def weekday_name(timestamp: Optional[datetime]) -> str:
    if timestamp is None:
        return "unknown"
    # datetime.weekday() is Monday=0; the name table is Sunday=0
    return WEEKDAYS[(_as_utc(timestamp).weekday() + 1) % 7]


def determine_region(latitude: Optional[float], longitude: Optional[float]) -> str:
    if not latitude or not longitude:
        return "unknown"
    if longitude < -115:
        return "west_coast"
    if longitude > -80:
        return "east_coast"
    return "central"


def enrich_order(order: Optional[OrderDocument], now: datetime,
                 tax_rate: float = DEFAULT_TAX_RATE,
                 currency: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
    """Compute subtotal, tax and total as two-decimal strings."""
    subtotal = Decimal("0")
    if order is not None:
        for item in order.items:
            quantity, price = _decimal(item.quantity), _decimal(item.price)
            if quantity is None or price is None:
                continue
            subtotal += quantity * price

    tax = subtotal * Decimal(str(tax_rate))
    total = subtotal + tax
    try:
        amounts = {"subtotal": _money(subtotal), "tax": _money(tax), "total": _money(total)}
    except InvalidOperation:
        # amounts beyond decimal precision
        logger.warning("Order amounts out of range (subtotal %s), using zero amounts", subtotal)
        amounts = {"subtotal": "0.00", "tax": "0.00", "total": "0.00"}
    return {
        **amounts,
        "currency": currency,
        "processingDate": now.isoformat(),
    }


def enrich_device(device: Optional[DeviceDocument], now: datetime) -> Dict[str, Any]:
    if device is None:
        return {
            "deviceCategory": "unknown",
            "isActive": False,
            "daysSinceRegistration": 0,
            "processingDate": now.isoformat(),
        }

    days = 0
    if device.registration_date is not None:
        registered = device.registration_date
        if registered.tzinfo is None and now.tzinfo is not None:
            registered = registered.replace(tzinfo=timezone.utc)
        elif registered.tzinfo is not None and now.tzinfo is None:
            registered = registered.astimezone(timezone.utc).replace(tzinfo=None)
        days = max(0, (now - registered).days)

    return {
        "deviceCategory": categorize_device(device.device_type),
        "isActive": bool(device.is_active),
        "daysSinceRegistration": days,
        "processingDate": now.isoformat(),
    }


def enrich_user_activity(activity: Optional[UserActivityDocument], now: datetime) -> Dict[str, Any]:
    if activity is None:
        return {
            "activityCategory": "unknown",
            "timeOfDay": "unknown",
            "weekday": "unknown",
            "geoInfo": None,
            "processingDate": now.isoformat(),
        }

    geo_info = None
    if activity.location:
        location = activity.location
        geo_info = {
            "region": determine_region(as_float(location.get("latitude")), as_float(location.get("longitude"))),
            "isInternational": location.get("country") != "USA",
        }

    return {
        "activityCategory": categorize_activity(activity.activity_type),
        "timeOfDay": time_of_day(activity.timestamp),
        "weekday": weekday_name(activity.timestamp),
        "geoInfo": geo_info,
        "processingDate": now.isoformat(),
    }


class RecordEnricher:
    """Routes each change event to the enrichment function for its record type."""

    def __init__(self, tax_rate: float = DEFAULT_TAX_RATE, currency: str = DEFAULT_CURRENCY,
                 clock: Optional[Callable[[], datetime]] = None):
        self.tax_rate = tax_rate
        self.currency = currency
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def enrich(self, event: ChangeEvent) -> Optional[EnrichedRecord]:
        """
        Enrich a single event. Returns ``None`` for collections without a
        record type; a missing or malformed document yields neutral values.
        """
        record_type = event.record_type
        if record_type is None:
            logger.debug("No enrichment for collection %s, skipping %s", event.collection, event.document_key)
            return None

        now = self.clock()
        document = parse_document(record_type, event.full_document)
        if event.full_document is not None and document is None:
            logger.warning("Empty %s document %s, using default enrichment", record_type.value, event.document_key)

        if record_type is RecordType.ORDER:
            enriched = enrich_order(document, now, self.tax_rate, self.currency)
        elif record_type is RecordType.DEVICE:
            enriched = enrich_device(document, now)
        else:
            enriched = enrich_user_activity(document, now)

        return EnrichedRecord(
            record_type=record_type,
            operation_type=event.operation_type,
            document_id=event.document_key,
            event_timestamp=event.detected_at.isoformat(),
            data=dict(event.full_document) if isinstance(event.full_document, dict) else {},
            enriched=enriched,
            document=document,
        )
