"""Closed set of tables that take part in synchronization."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Tuple

from .errors import MalformedPayload, UnknownTable

# Keys that address a record inside change data and never reach the stored payload.
RESERVED_KEYS = frozenset({"serverId", "baseVersion", "recordLocalId", "_id", "storeId", "version", "tombstone", "updatedAt"})


class TrackedTable(str, Enum):
    PRODUCTS = "products"
    CATEGORIES = "categories"
    SALES = "sales"
    CUSTOMERS = "customers"
    CREDITS = "credits"
    EMPLOYEES = "employees"
    SHIFTS = "shifts"
    CLOCK_EVENTS = "clockEvents"


@dataclass(frozen=True)
class TableDescriptor:
    table: TrackedTable
    required_fields: Tuple[str, ...] = ()
    unique_fields: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.table.value

    def clean_payload(self, data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise MalformedPayload("data must be an object")
        return {key: value for key, value in data.items() if key not in RESERVED_KEYS}

    def validate_create(self, payload: Dict[str, Any]) -> None:
        for field in self.required_fields:
            if payload.get(field) in (None, ""):
                raise MalformedPayload(f"{field} is required", field=field)

    def unique_values(self, payload: Dict[str, Any]) -> Dict[str, str]:
        """Unique fields present in payload; empty values are not indexed."""
        values = {}
        for field in self.unique_fields:
            value = payload.get(field)
            if value in (None, ""):
                continue
            values[field] = str(value).strip().lower()
        return values


DESCRIPTORS: Dict[TrackedTable, TableDescriptor] = {
    TrackedTable.PRODUCTS: TableDescriptor(TrackedTable.PRODUCTS, required_fields=("name", "price")),
    TrackedTable.CATEGORIES: TableDescriptor(TrackedTable.CATEGORIES, required_fields=("name",)),
    TrackedTable.SALES: TableDescriptor(
        TrackedTable.SALES,
        required_fields=("items", "subtotal", "total", "paymentMethod"),
    ),
    TrackedTable.CUSTOMERS: TableDescriptor(TrackedTable.CUSTOMERS, required_fields=("name",)),
    TrackedTable.CREDITS: TableDescriptor(
        TrackedTable.CREDITS,
        required_fields=("customerId", "saleId", "amount", "dueDate"),
    ),
    TrackedTable.EMPLOYEES: TableDescriptor(
        TrackedTable.EMPLOYEES,
        required_fields=("name",),
        unique_fields=("email",),
    ),
    TrackedTable.SHIFTS: TableDescriptor(
        TrackedTable.SHIFTS,
        required_fields=("employeeId", "date", "startTime", "endTime"),
    ),
    TrackedTable.CLOCK_EVENTS: TableDescriptor(
        TrackedTable.CLOCK_EVENTS,
        required_fields=("employeeId", "clockIn"),
    ),
}

TABLE_NAMES = tuple(table.value for table in TrackedTable)
TABLE_CHOICES = [(name, name) for name in TABLE_NAMES]


def get_descriptor(name) -> TableDescriptor:
    try:
        return DESCRIPTORS[TrackedTable(name)]
    except ValueError:
        raise UnknownTable(f"unknown table {name!r}") from None
