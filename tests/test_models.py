"""
Tests for change events, record types and typed documents
"""
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cdc_etl.cdc.models import ChangeEvent, ChangeNotification, OperationType, RecordType
from cdc_etl.types.records import (
    DeviceDocument,
    OrderDocument,
    UnknownDocument,
    UserActivityDocument,
    as_datetime,
    parse_document,
)


def test_record_type_from_collection():
    assert RecordType.from_collection("orders") is RecordType.ORDER
    assert RecordType.from_collection("Devices") is RecordType.DEVICE
    assert RecordType.from_collection("useractivities") is RecordType.USER_ACTIVITY
    assert RecordType.from_collection("user_activities") is RecordType.USER_ACTIVITY
    assert RecordType.from_collection("userActivities") is RecordType.USER_ACTIVITY
    assert RecordType.from_collection("payments") is None
    assert RecordType.from_collection("") is None


def test_status_keys():
    assert [rt.status_key for rt in RecordType] == ["orders", "devices", "userActivities"]


def test_change_event_json_wire_format():
    detected = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)
    event = ChangeEvent(
        collection="orders",
        operation_type=OperationType.UPDATE,
        document_key="abc",
        full_document={"orderId": "o-1", "createdAt": detected, "amount": Decimal("1.50")},
        update_description={"updatedFields": {"status": "shipped"}},
        detected_at=detected,
    )

    payload = json.loads(event.to_json())
    assert payload["collection"] == "orders"
    assert payload["operationType"] == "update"
    assert payload["documentKey"] == "abc"
    assert payload["fullDocument"]["createdAt"] == "2024-03-01T12:30:00+00:00"
    assert payload["fullDocument"]["amount"] == 1.5
    assert payload["detectedAt"] == "2024-03-01T12:30:00+00:00"

    decoded = ChangeEvent.from_json(event.to_json())
    assert decoded.operation_type is OperationType.UPDATE
    assert decoded.detected_at == detected
    assert decoded.update_description == {"updatedFields": {"status": "shipped"}}


def test_change_event_is_immutable():
    event = ChangeEvent(collection="orders", operation_type=OperationType.INSERT, document_key="1")
    with pytest.raises(Exception):
        event.document_key = "2"


def test_document_key_mapping_is_normalized():
    event = ChangeEvent.from_dict({"collection": "devices", "operationType": "insert", "documentKey": {"_id": 42}})
    assert event.document_key == "42"


@pytest.mark.parametrize("payload", [
    {"operationType": "insert", "documentKey": "1"},
    {"collection": "orders", "operationType": "upsert", "documentKey": "1"},
    {"collection": "orders", "operationType": "insert"},
])
def test_invalid_change_events_are_rejected(payload):
    with pytest.raises(ValueError):
        ChangeEvent.from_dict(payload)


def test_non_json_payload_is_rejected():
    with pytest.raises(ValueError):
        ChangeEvent.from_json(b"not json")


def test_notification_to_event():
    notification = ChangeNotification(operation_type="DELETE", document_key={"_id": "x1"})
    event = notification.to_event("orders")
    assert event.operation_type is OperationType.DELETE
    assert event.document_key == "x1"
    assert event.full_document is None


def test_parse_order_document():
    doc = parse_document(RecordType.ORDER, {
        "orderId": "o-1",
        "customerId": "c-9",
        "items": [{"productId": "p1", "quantity": 2, "price": 29.99}, "garbage"],
        "totalAmount": "109.97",
        "shippingAddress": {"city": "Austin", "country": "USA"},
    })
    assert isinstance(doc, OrderDocument)
    assert len(doc.items) == 1
    assert doc.items[0].quantity == 2.0
    assert doc.total_amount == 109.97
    assert doc.shipping_address["city"] == "Austin"


def test_parse_tolerates_malformed_fields():
    device = parse_document(RecordType.DEVICE, {"deviceType": ["phone"], "registrationDate": "yesterday"})
    assert isinstance(device, DeviceDocument)
    assert device.device_type is None
    assert device.registration_date is None

    activity = parse_document(RecordType.USER_ACTIVITY, {"timestamp": {"$date": "2024-01-07T14:00:00Z"}})
    assert isinstance(activity, UserActivityDocument)
    assert activity.timestamp == datetime(2024, 1, 7, 14, 0, tzinfo=timezone.utc)


def test_parse_document_edge_cases():
    assert parse_document(RecordType.ORDER, None) is None
    assert parse_document(RecordType.ORDER, {}) is None
    assert parse_document(RecordType.ORDER, "text") is None
    assert isinstance(parse_document(None, {"a": 1}), UnknownDocument)


def test_as_datetime_epoch_millis():
    assert as_datetime(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert as_datetime(True) is None
