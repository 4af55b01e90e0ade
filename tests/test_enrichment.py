"""
Tests for per-record-type enrichment
"""
from datetime import datetime, timedelta, timezone

import pytest

from cdc_etl.cdc.models import ChangeEvent, OperationType, RecordType
from cdc_etl.streaming.enrichment import (
    RecordEnricher,
    categorize_activity,
    categorize_device,
    determine_region,
    enrich_device,
    enrich_order,
    enrich_user_activity,
    time_of_day,
    weekday_name,
)
from cdc_etl.types.records import parse_document

NOW = datetime(2024, 1, 11, 12, 0, tzinfo=timezone.utc)


def test_order_arithmetic():
    order = parse_document(RecordType.ORDER, {
        "items": [
            {"productId": "p1", "quantity": 2, "price": 29.99},
            {"productId": "p2", "quantity": 1, "price": 49.99},
        ]
    })
    enriched = enrich_order(order, NOW, tax_rate=0.08)

    assert enriched["subtotal"] == "109.97"
    assert enriched["tax"] == "8.80"
    assert enriched["total"] == "118.77"
    assert enriched["currency"] == "USD"
    assert enriched["processingDate"] == NOW.isoformat()


def test_order_rounding_is_half_up():
    order = parse_document(RecordType.ORDER, {"items": [{"quantity": 1, "price": 0.125}]})
    enriched = enrich_order(order, NOW, tax_rate=0.0)
    assert enriched["subtotal"] == "0.13"


@pytest.mark.parametrize("price", [float("inf"), "Infinity", "-Infinity", float("nan"), "NaN", "ten", None])
def test_order_items_with_unusable_price_are_ignored(price):
    order = parse_document(RecordType.ORDER, {
        "items": [{"quantity": 1, "price": 10}, {"quantity": 1, "price": price}],
    })
    enriched = enrich_order(order, NOW, tax_rate=0.08)
    assert (enriched["subtotal"], enriched["tax"], enriched["total"]) == ("10.00", "0.80", "10.80")


@pytest.mark.parametrize("quantity", [float("inf"), "Infinity", float("nan"), "two", None, {"n": 2}])
def test_order_items_with_unusable_quantity_are_ignored(quantity):
    order = parse_document(RecordType.ORDER, {
        "items": [{"quantity": quantity, "price": 99.5}, {"quantity": 2, "price": 5}],
    })
    enriched = enrich_order(order, NOW, tax_rate=0.08)
    assert (enriched["subtotal"], enriched["tax"], enriched["total"]) == ("10.00", "0.80", "10.80")


@pytest.mark.parametrize("price", [1e30, "1e30", 1e300])
def test_order_amounts_beyond_precision_fall_back_to_zero(price):
    order = parse_document(RecordType.ORDER, {"items": [{"quantity": 1, "price": price}]})
    enriched = enrich_order(order, NOW)
    assert (enriched["subtotal"], enriched["tax"], enriched["total"]) == ("0.00", "0.00", "0.00")
    assert enriched["currency"] == "USD"


def test_record_enricher_survives_extreme_order_amounts():
    enricher = RecordEnricher(clock=lambda: NOW)
    event = ChangeEvent(
        collection="orders",
        operation_type=OperationType.INSERT,
        document_key="o1",
        full_document={"items": [{"quantity": 3, "price": float("inf")}, {"quantity": 1, "price": 1e30}]},
    )
    record = enricher.enrich(event)
    assert record.enriched["total"] == "0.00"


def test_order_without_document_uses_zero_amounts():
    enriched = enrich_order(None, NOW)
    assert (enriched["subtotal"], enriched["tax"], enriched["total"]) == ("0.00", "0.00", "0.00")


@pytest.mark.parametrize("device_type,expected", [
    ("smartphone", "mobile"),
    ("android_phone", "mobile"),
    ("tablet", "tablet"),
    ("desktop", "desktop"),
    ("pc", "desktop"),
    ("smartwatch", "other"),
    (None, "unknown"),
])
def test_categorize_device(device_type, expected):
    assert categorize_device(device_type) == expected


@pytest.mark.parametrize("activity_type,expected", [
    ("login", "account"),
    ("register", "account"),
    ("purchase", "transaction"),
    ("payment_failed", "transaction"),
    ("page_view", "browsing"),
    ("search", "browsing"),
    ("share", "other"),
    (None, "unknown"),
])
def test_categorize_activity(activity_type, expected):
    assert categorize_activity(activity_type) == expected


@pytest.mark.parametrize("hour,expected", [
    (4, "night"), (5, "morning"), (11, "morning"), (12, "afternoon"),
    (14, "afternoon"), (17, "evening"), (20, "evening"), (21, "night"),
])
def test_time_of_day(hour, expected):
    assert time_of_day(datetime(2024, 1, 7, hour, tzinfo=timezone.utc)) == expected


def test_time_of_day_uses_utc():
    eastern = timezone(timedelta(hours=-5))
    # 09:00 at UTC-5 is 14:00 UTC
    assert time_of_day(datetime(2024, 1, 7, 9, tzinfo=eastern)) == "afternoon"


def test_weekday_is_sunday_first():
    assert weekday_name(datetime(2024, 1, 7, 10, tzinfo=timezone.utc)) == "sunday"
    assert weekday_name(datetime(2024, 1, 8, 10, tzinfo=timezone.utc)) == "monday"
    assert weekday_name(datetime(2024, 1, 13, 10, tzinfo=timezone.utc)) == "saturday"
    assert weekday_name(None) == "unknown"


def test_determine_region():
    assert determine_region(37.77, -122.41) == "west_coast"
    assert determine_region(40.71, -74.0) == "east_coast"
    assert determine_region(41.88, -87.63) == "central"
    assert determine_region(0, 0) == "unknown"
    assert determine_region(None, -100) == "unknown"


def test_enrich_device():
    device = parse_document(RecordType.DEVICE, {
        "deviceType": "smartphone",
        "isActive": True,
        "registrationDate": "2024-01-01T00:00:00Z",
    })
    enriched = enrich_device(device, NOW)
    assert enriched == {
        "deviceCategory": "mobile",
        "isActive": True,
        "daysSinceRegistration": 10,
        "processingDate": NOW.isoformat(),
    }


def test_enrich_device_defaults():
    enriched = enrich_device(None, NOW)
    assert enriched["deviceCategory"] == "unknown"
    assert enriched["isActive"] is False
    assert enriched["daysSinceRegistration"] == 0


def test_enrich_user_activity():
    activity = parse_document(RecordType.USER_ACTIVITY, {
        "activityType": "purchase",
        "timestamp": "2024-01-07T14:30:00Z",
        "location": {"latitude": 48.85, "longitude": 2.35, "city": "Paris", "country": "France"},
    })
    enriched = enrich_user_activity(activity, NOW)
    assert enriched["activityCategory"] == "transaction"
    assert enriched["timeOfDay"] == "afternoon"
    assert enriched["weekday"] == "sunday"
    assert enriched["geoInfo"] == {"region": "east_coast", "isInternational": True}


def test_enrich_user_activity_without_location():
    activity = parse_document(RecordType.USER_ACTIVITY, {"activityType": "login"})
    enriched = enrich_user_activity(activity, NOW)
    assert enriched["geoInfo"] is None
    assert enriched["timeOfDay"] == "unknown"
    assert enriched["weekday"] == "unknown"


def test_record_enricher_is_deterministic():
    enricher = RecordEnricher(clock=lambda: NOW)
    event = ChangeEvent(
        collection="devices",
        operation_type=OperationType.INSERT,
        document_key="d1",
        full_document={"deviceType": "tablet"},
    )
    first = enricher.enrich(event)
    second = enricher.enrich(event)

    assert first.record_type is RecordType.DEVICE
    assert first.document_id == "d1"
    assert first.enriched == second.enriched
    assert first.event_timestamp == event.detected_at.isoformat()


def test_record_enricher_handles_missing_document():
    enricher = RecordEnricher(clock=lambda: NOW)
    event = ChangeEvent(collection="useractivities", operation_type=OperationType.DELETE, document_key="a1")
    record = enricher.enrich(event)
    assert record.enriched["activityCategory"] == "unknown"
    assert record.data == {}


def test_record_enricher_skips_unknown_collections():
    enricher = RecordEnricher(clock=lambda: NOW)
    event = ChangeEvent(collection="payments", operation_type=OperationType.INSERT, document_key="p1")
    assert enricher.enrich(event) is None
