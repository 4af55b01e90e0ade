"""
WarehouseWriter - idempotent, transactional persistence of enriched records.

Each per-type batch is written inside a single transaction: every row is
upserted by ``document_id`` (a later write fully replaces the row) and any
row-level failure rolls the whole batch back.
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from cdc_etl.backends.duckdb_backend import DuckDBBackend
from cdc_etl.cdc.models import RecordType
from cdc_etl.types.records import (
    DeviceDocument,
    EnrichedRecord,
    OrderDocument,
    UserActivityDocument,
    as_datetime,
    as_float,
)
from cdc_etl.warehouse.schema import TableLayout, build_layouts

logger = logging.getLogger(__name__)


class SinkWriteError(Exception):
    """A batch could not be written; its transaction was rolled back"""

    def __init__(self, record_type: RecordType, message: str):
        super().__init__(f"{record_type.value}: {message}")
        self.record_type = record_type


def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def order_row(record: EnrichedRecord) -> Dict[str, Any]:
    order = record.document if isinstance(record.document, OrderDocument) else OrderDocument()
    enriched = record.enriched
    return {
        "document_id": record.document_id,
        "order_id": order.order_id,
        "customer_id": order.customer_id,
        "operation_type": record.operation_type.value,
        "status": order.status,
        "total_amount": order.total_amount or 0.0,
        "subtotal": as_float(enriched.get("subtotal")) or 0.0,
        "tax": as_float(enriched.get("tax")) or 0.0,
        "total": as_float(enriched.get("total")) or 0.0,
        "currency": enriched.get("currency") or "USD",
        "shipping_address": _json(order.shipping_address),
        "items": _json(order.raw_items),
        "event_timestamp": record.event_timestamp,
        "processing_timestamp": enriched.get("processingDate"),
    }


def device_row(record: EnrichedRecord) -> Dict[str, Any]:
    device = record.document if isinstance(record.document, DeviceDocument) else DeviceDocument()
    enriched = record.enriched
    return {
        "document_id": record.document_id,
        "device_id": device.device_id,
        "user_id": device.user_id,
        "operation_type": record.operation_type.value,
        "device_type": device.device_type,
        "manufacturer": device.manufacturer,
        "model": device.model,
        "os_version": device.os_version,
        "app_version": device.app_version,
        "is_active": bool(device.is_active),
        "device_category": enriched.get("deviceCategory"),
        "days_since_registration": int(enriched.get("daysSinceRegistration") or 0),
        "registration_date": _iso(device.registration_date),
        "last_active_date": _iso(device.last_active),
        "event_timestamp": record.event_timestamp,
        "processing_timestamp": enriched.get("processingDate"),
    }


def user_activity_row(record: EnrichedRecord) -> Dict[str, Any]:
    activity = record.document if isinstance(record.document, UserActivityDocument) else UserActivityDocument()
    enriched = record.enriched
    location = None
    if activity.location:
        location = {**activity.location, **(enriched.get("geoInfo") or {})}
    return {
        "document_id": record.document_id,
        "user_id": activity.user_id,
        "operation_type": record.operation_type.value,
        "activity_type": activity.activity_type,
        "session_id": activity.session_id,
        "device_id": activity.device_id,
        "ip_address": activity.ip_address,
        "activity_category": enriched.get("activityCategory"),
        "time_of_day": enriched.get("timeOfDay"),
        "weekday": enriched.get("weekday"),
        "duration": activity.duration,
        "location": _json(location),
        "activity_timestamp": _iso(as_datetime(activity.timestamp)),
        "event_timestamp": record.event_timestamp,
        "processing_timestamp": enriched.get("processingDate"),
    }


ROW_MAPPERS = {
    RecordType.ORDER: order_row,
    RecordType.DEVICE: device_row,
    RecordType.USER_ACTIVITY: user_activity_row,
}


class WarehouseWriter:
    """Maps enriched records to typed rows and upserts them into DuckDB."""

    def __init__(self, backend: DuckDBBackend, table_names: Optional[Dict[RecordType, str]] = None):
        self.backend = backend
        self.layouts: Dict[RecordType, TableLayout] = build_layouts(table_names)

    def initialize(self):
        """Create tables and their write sequences if they do not exist yet."""
        for layout in self.layouts.values():
            for statement in layout.create_statements():
                self.backend.run(statement)
        logger.info("Warehouse tables ready: %s", ", ".join(layout.table_name for layout in self.layouts.values()))

    def to_rows(self, record_type: RecordType, records: List[EnrichedRecord]) -> List[Dict[str, Any]]:
        """
        Map records to rows. When a document appears more than once, only the
        last occurrence is kept so the batch writes each key once.
        """
        mapper = ROW_MAPPERS[record_type]
        rows: Dict[str, Dict[str, Any]] = {}
        for record in records:
            if record.record_type is not record_type:
                raise ValueError(f"{record.record_type.value} record in a {record_type.value} batch")
            rows.pop(record.document_id, None)
            rows[record.document_id] = mapper(record)
        return list(rows.values())

    def _upsert_sync(self, record_type: RecordType, rows: List[Dict[str, Any]]) -> int:
        layout = self.layouts[record_type]
        statement = layout.upsert_statement()
        columns = layout.column_names
        with self.backend.transaction():
            for row in rows:
                self.backend.run(statement, [row[name] for name in columns])
        return len(rows)

    async def upsert_batch(self, record_type: RecordType, records: List[EnrichedRecord]) -> int:
        """
        Upsert one per-type batch atomically.

        Raises:
            SinkWriteError: the batch was rolled back.
        """
        if not records:
            logger.warning("Empty batch for %s", record_type.value)
            return 0

        rows = self.to_rows(record_type, records)
        logger.info("Uploading batch of %d records to %s", len(rows), self.layouts[record_type].table_name)
        loop = asyncio.get_running_loop()
        try:
            written = await loop.run_in_executor(None, self._upsert_sync, record_type, rows)
        except Exception as e:
            logger.error("Error uploading batch to %s, rolled back: %s", record_type.value, e)
            raise SinkWriteError(record_type, str(e)) from e
        logger.info("Successfully uploaded %d records to %s", written, record_type.value)
        return written

    def get_status(self) -> Dict[str, Any]:
        """Per-type row counts; zero counts plus an error message if the query fails."""
        status: Dict[str, Any] = {}
        try:
            for record_type, layout in self.layouts.items():
                rows = self.backend.fetch_rows(layout.count_statement())
                status[record_type.status_key] = int(rows[0]["count"]) if rows else 0
        except Exception as e:
            logger.error("Error getting warehouse status: %s", e)
            status = {record_type.status_key: 0 for record_type in self.layouts}
            status["error"] = str(e)
        return status

    def get_latest(self, collection: str, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Most recently written rows of a record type.

        Unknown collection names yield an empty list rather than an error.
        """
        record_type = RecordType.from_collection(collection)
        if record_type is None:
            logger.warning("Unknown collection requested: %s", collection)
            return []
        layout = self.layouts[record_type]
        try:
            return self.backend.fetch_rows(layout.latest_statement(), [max(0, int(limit))])
        except Exception as e:
            logger.error("Error getting latest records for %s: %s", collection, e)
            return []

    def ping(self) -> bool:
        return self.backend.ping()

    def close(self):
        self.backend.close()
