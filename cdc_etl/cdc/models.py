"""
Data models for CDC (Change Data Capture) system
"""
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, Optional


class OperationType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"


class RecordType(str, Enum):
    """Record types the pipeline knows how to enrich, keyed by source collection"""
    ORDER = "orders"
    DEVICE = "devices"
    USER_ACTIVITY = "useractivities"

    @property
    def status_key(self) -> str:
        return _STATUS_KEYS[self]

    @classmethod
    def from_collection(cls, name: Optional[str]) -> Optional["RecordType"]:
        """Resolve a collection name, tolerating case and the snake/camel spellings."""
        if not name:
            return None
        normalized = name.replace("_", "").lower()
        for record_type in cls:
            if record_type.value == normalized:
                return record_type
        return None


_STATUS_KEYS = {
    RecordType.ORDER: "orders",
    RecordType.DEVICE: "devices",
    RecordType.USER_ACTIVITY: "userActivities",
}


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    return str(value)


def normalize_document_key(document_key: Any) -> str:
    """Stringify a document key; ``{"_id": X}`` mappings collapse to ``str(X)``."""
    if isinstance(document_key, dict):
        if "_id" in document_key:
            return str(document_key["_id"])
        if len(document_key) == 1:
            return str(next(iter(document_key.values())))
    return str(document_key)


@dataclass(frozen=True)
class ChangeEvent:
    """Represents one mutation of one source document"""
    collection: str
    operation_type: OperationType
    document_key: str
    full_document: Optional[Dict[str, Any]] = None
    update_description: Optional[Dict[str, Any]] = None
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def record_type(self) -> Optional[RecordType]:
        return RecordType.from_collection(self.collection)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "operationType": self.operation_type.value,
            "documentKey": self.document_key,
            "fullDocument": self.full_document,
            "updateDescription": self.update_description,
            "detectedAt": self.detected_at.isoformat(),
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), default=_json_default).encode("utf-8")

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ChangeEvent":
        if not isinstance(d, dict):
            raise ValueError(f"Change event must be a JSON object, got {type(d).__name__}")
        collection = d.get("collection")
        if not collection:
            raise ValueError("Change event is missing 'collection'")
        try:
            operation_type = OperationType(d.get("operationType"))
        except ValueError:
            raise ValueError(f"Unknown operation type: {d.get('operationType')!r}") from None
        if d.get("documentKey") is None:
            raise ValueError("Change event is missing 'documentKey'")

        detected_at = d.get("detectedAt")
        if detected_at:
            detected_at = datetime.fromisoformat(str(detected_at).replace("Z", "+00:00"))
        else:
            detected_at = datetime.now(timezone.utc)

        full_document = d.get("fullDocument")
        update_description = d.get("updateDescription")
        return ChangeEvent(
            collection=collection,
            operation_type=operation_type,
            document_key=normalize_document_key(d["documentKey"]),
            full_document=full_document if isinstance(full_document, dict) else None,
            update_description=update_description if isinstance(update_description, dict) else None,
            detected_at=detected_at,
        )

    @staticmethod
    def from_json(payload: bytes) -> "ChangeEvent":
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"Change event is not valid JSON: {e}") from e
        return ChangeEvent.from_dict(data)


@dataclass
class ChangeNotification:
    """A raw change notification as delivered by a source store subscription"""
    operation_type: str
    document_key: Any
    full_document: Optional[Dict[str, Any]] = None
    update_description: Optional[Dict[str, Any]] = None

    def to_event(self, collection: str) -> ChangeEvent:
        return ChangeEvent(
            collection=collection,
            operation_type=OperationType(str(self.operation_type).lower()),
            document_key=normalize_document_key(self.document_key),
            full_document=self.full_document,
            update_description=self.update_description,
        )
