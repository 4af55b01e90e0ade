"""
Warehouse table layouts, one per record type.
"""
import re
from dataclasses import dataclass
from typing import Dict, List, Tuple

from cdc_etl.cdc.models import RecordType

DEFAULT_TABLE_NAMES = {
    RecordType.ORDER: "orders",
    RecordType.DEVICE: "devices",
    RecordType.USER_ACTIVITY: "user_activities",
}

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

ORDER_COLUMNS: List[Tuple[str, str]] = [
    ("document_id", "VARCHAR PRIMARY KEY"),
    ("order_id", "VARCHAR"),
    ("customer_id", "VARCHAR"),
    ("operation_type", "VARCHAR"),
    ("status", "VARCHAR"),
    ("total_amount", "DOUBLE"),
    ("subtotal", "DOUBLE"),
    ("tax", "DOUBLE"),
    ("total", "DOUBLE"),
    ("currency", "VARCHAR"),
    ("shipping_address", "VARCHAR"),  # JSON
    ("items", "VARCHAR"),  # JSON array
    ("event_timestamp", "VARCHAR"),
    ("processing_timestamp", "VARCHAR"),
]

DEVICE_COLUMNS: List[Tuple[str, str]] = [
    ("document_id", "VARCHAR PRIMARY KEY"),
    ("device_id", "VARCHAR"),
    ("user_id", "VARCHAR"),
    ("operation_type", "VARCHAR"),
    ("device_type", "VARCHAR"),
    ("manufacturer", "VARCHAR"),
    ("model", "VARCHAR"),
    ("os_version", "VARCHAR"),
    ("app_version", "VARCHAR"),
    ("is_active", "BOOLEAN"),
    ("device_category", "VARCHAR"),
    ("days_since_registration", "INTEGER"),
    ("registration_date", "VARCHAR"),
    ("last_active_date", "VARCHAR"),
    ("event_timestamp", "VARCHAR"),
    ("processing_timestamp", "VARCHAR"),
]

USER_ACTIVITY_COLUMNS: List[Tuple[str, str]] = [
    ("document_id", "VARCHAR PRIMARY KEY"),
    ("user_id", "VARCHAR"),
    ("operation_type", "VARCHAR"),
    ("activity_type", "VARCHAR"),
    ("session_id", "VARCHAR"),
    ("device_id", "VARCHAR"),
    ("ip_address", "VARCHAR"),
    ("activity_category", "VARCHAR"),
    ("time_of_day", "VARCHAR"),
    ("weekday", "VARCHAR"),
    ("duration", "DOUBLE"),
    ("location", "VARCHAR"),  # JSON: location merged with geoInfo
    ("activity_timestamp", "VARCHAR"),
    ("event_timestamp", "VARCHAR"),
    ("processing_timestamp", "VARCHAR"),
]

COLUMNS: Dict[RecordType, List[Tuple[str, str]]] = {
    RecordType.ORDER: ORDER_COLUMNS,
    RecordType.DEVICE: DEVICE_COLUMNS,
    RecordType.USER_ACTIVITY: USER_ACTIVITY_COLUMNS,
}


def validate_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


@dataclass
class TableLayout:
    record_type: RecordType
    table_name: str

    def __post_init__(self):
        validate_identifier(self.table_name)

    @property
    def sequence_name(self) -> str:
        return f"{self.table_name}_write_seq"

    @property
    def column_names(self) -> List[str]:
        return [name for name, _ in COLUMNS[self.record_type]]

    def create_statements(self) -> List[str]:
        columns = ",\n    ".join(f"{name} {sql_type}" for name, sql_type in COLUMNS[self.record_type])
        return [
            f'CREATE SEQUENCE IF NOT EXISTS "{self.sequence_name}" START 1',
            f'CREATE TABLE IF NOT EXISTS "{self.table_name}" (\n    {columns},\n    write_seq BIGINT\n)',
        ]

    def upsert_statement(self) -> str:
        # write_seq is refreshed on every write so read-back follows write order
        names = self.column_names
        placeholders = ", ".join("?" for _ in names)
        return (
            f'INSERT OR REPLACE INTO "{self.table_name}" ({", ".join(names)}, write_seq) '
            f"VALUES ({placeholders}, nextval('{self.sequence_name}'))"
        )

    def latest_statement(self) -> str:
        return (
            f'SELECT {", ".join(self.column_names)} FROM "{self.table_name}" '
            f"ORDER BY write_seq DESC LIMIT ?"
        )

    def count_statement(self) -> str:
        return f'SELECT COUNT(*) AS count FROM "{self.table_name}"'


def build_layouts(table_names: Dict[RecordType, str] = None) -> Dict[RecordType, TableLayout]:
    names = dict(DEFAULT_TABLE_NAMES)
    names.update(table_names or {})
    return {record_type: TableLayout(record_type, names[record_type]) for record_type in RecordType}
