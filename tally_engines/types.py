"""
Counting domain types -- enums, entity snapshots, engine inputs and outputs.

Pure frozen dataclasses and enums shared by the stage machine, the serial
reconciliation engine, the discrepancy resolver and the report builder.

Architecture: tally_engines -- pure domain, zero I/O.  The service layer
builds these from ORM rows (``to_dto()``) and hands them to the engines;
engines never see a Session.

Invariants supported:
    - Quantities are ``Decimal`` (never float).
    - ``InventorySnapshot`` is the explicit aggregate passed into every
      engine call; engines hold no cross-call state.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any
from uuid import UUID


# =============================================================================
# Enums
# =============================================================================


class InventoryStatus(str, Enum):
    """Inventory-level counting status (ordered as in the stage workflow)."""

    PLANNING = "planning"
    OPEN = "open"
    COUNT1_OPEN = "count1_open"
    COUNT1_CLOSED = "count1_closed"
    COUNT2_OPEN = "count2_open"
    COUNT2_CLOSED = "count2_closed"
    COUNT2_COMPLETED = "count2_completed"
    COUNT3_REQUIRED = "count3_required"
    COUNT3_OPEN = "count3_open"
    COUNT3_CLOSED = "count3_closed"
    AUDIT_MODE = "audit_mode"
    CLOSED = "closed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (InventoryStatus.CLOSED, InventoryStatus.CANCELLED)


class CountStage(IntEnum):
    """The four count passes.  COUNT4 is the audit / control-desk count."""

    COUNT1 = 1
    COUNT2 = 2
    COUNT3 = 3
    COUNT4 = 4

    @property
    def label(self) -> str:
        return f"count{self.value}"


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    COUNTING = "COUNTING"
    COMPLETED = "COMPLETED"


class SerialStatus(str, Enum):
    PENDING = "PENDING"
    FOUND = "FOUND"
    MISSING = "MISSING"
    EXTRA = "EXTRA"


class DiscrepancyType(str, Enum):
    SERIAL_MISMATCH = "SERIAL_MISMATCH"
    DUPLICATE_SERIAL = "DUPLICATE_SERIAL"
    QUANTITY_SERIAL_MISMATCH = "QUANTITY_SERIAL_MISMATCH"
    LOCATION_MISMATCH = "LOCATION_MISMATCH"


class Severity(str, Enum):
    """Audit priority of a discrepancy.  Drives prioritization, not correctness."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SerialDiscrepancyKind(str, Enum):
    LOCATION_MISMATCH = "LOCATION_MISMATCH"
    NOT_FOUND = "NOT_FOUND"
    UNEXPECTED_FOUND = "UNEXPECTED_FOUND"


class SerialDiscrepancyStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    MIGRATED_TO_ERP = "MIGRATED_TO_ERP"


# =============================================================================
# Entity snapshots (populated by the service, consumed by engines)
# =============================================================================


@dataclass(frozen=True)
class InventoryScope:
    """Selected locations and categories.  ``None`` means "all"."""

    location_ids: frozenset[UUID] | None = None
    category_ids: frozenset[UUID] | None = None

    def includes_location(self, location_id: UUID) -> bool:
        return self.location_ids is None or location_id in self.location_ids

    def includes_category(self, category_id: UUID | None) -> bool:
        if self.category_ids is None:
            return True
        return category_id is not None and category_id in self.category_ids


@dataclass(frozen=True)
class Inventory:
    """One counting campaign."""

    id: UUID
    code: str
    status: InventoryStatus
    scope: InventoryScope = field(default_factory=InventoryScope)
    created_by: UUID | None = None
    started_at: datetime | None = None
    predicted_end_at: datetime | None = None
    ended_at: datetime | None = None
    last_activity_at: datetime | None = None
    stock_committed_at: datetime | None = None
    migrated_at: datetime | None = None
    description: str | None = None


@dataclass(frozen=True)
class InventoryItem:
    """One (inventory, product, location) triple -- the unit of manual counting.

    ``expected_quantity`` is the stock snapshot taken at open and is never
    recomputed.
    """

    id: UUID
    inventory_id: UUID
    product_id: UUID
    location_id: UUID
    expected_quantity: Decimal
    count1: Decimal | None = None
    count2: Decimal | None = None
    count3: Decimal | None = None
    count4: Decimal | None = None
    final_quantity: Decimal | None = None
    status: ItemStatus = ItemStatus.PENDING
    serial_controlled: bool = False
    category_id: UUID | None = None

    def count_for(self, stage: CountStage) -> Decimal | None:
        return getattr(self, stage.label)

    @property
    def latest_manual_count(self) -> Decimal | None:
        """The most recent non-null manual count (count4 first)."""
        for stage in reversed(CountStage):
            value = self.count_for(stage)
            if value is not None:
                return value
        return None

    @property
    def is_resolved(self) -> bool:
        return self.final_quantity is not None

    @property
    def has_count_divergence(self) -> bool:
        """count1 and count2 both present and different."""
        return (
            self.count1 is not None
            and self.count2 is not None
            and self.count1 != self.count2
        )


@dataclass(frozen=True)
class InventorySerialItem:
    """One (inventory, serial number) record for a serialized asset.

    ``location_id`` is the expected location at snapshot time;
    ``found_location_id`` is where the asset was last read.
    """

    id: UUID
    inventory_id: UUID
    serial_number: str
    product_id: UUID
    location_id: UUID
    expected: bool = True
    found_location_id: UUID | None = None
    count1_found: bool | None = None
    count2_found: bool | None = None
    count3_found: bool | None = None
    count4_found: bool | None = None
    status: SerialStatus = SerialStatus.PENDING
    final_status: bool | None = None

    def found_in(self, stage: CountStage) -> bool:
        return bool(getattr(self, f"{stage.label}_found"))

    @property
    def was_read(self) -> bool:
        return any(self.found_in(stage) for stage in CountStage)

    @property
    def effective_location_id(self) -> UUID:
        """Location the asset counts toward: where it was found, else where expected."""
        return self.found_location_id or self.location_id


@dataclass(frozen=True)
class RegisteredAsset:
    """An asset as known by the live asset registry."""

    serial_number: str
    product_id: UUID
    location_id: UUID
    category_id: UUID | None = None


@dataclass(frozen=True)
class InventorySnapshot:
    """The explicit aggregate: one inventory with all of its items and serial rows."""

    inventory: Inventory
    items: tuple[InventoryItem, ...] = ()
    serial_items: tuple[InventorySerialItem, ...] = ()

    def serials_expected_at(self, item: InventoryItem) -> tuple[InventorySerialItem, ...]:
        """Serial rows whose snapshot location is this item's (product, location)."""
        return tuple(
            s for s in self.serial_items
            if s.product_id == item.product_id
            and s.location_id == item.location_id
            and s.expected
        )

    def extras_found_at(self, item: InventoryItem) -> tuple[InventorySerialItem, ...]:
        """EXTRA rows of this product that were found at this item's location."""
        return tuple(
            s for s in self.serial_items
            if s.status == SerialStatus.EXTRA
            and s.product_id == item.product_id
            and s.effective_location_id == item.location_id
        )


# =============================================================================
# Engine outputs
# =============================================================================


@dataclass(frozen=True)
class SerialTally:
    """Serial-derived aggregation for one InventoryItem.

    ``found`` counts snapshot serials read at their expected location,
    ``extra`` counts EXTRA reads attributed to this location.  Extras are
    reported separately and never folded into ``expected``.
    """

    item_id: UUID
    expected: int = 0
    found: int = 0
    missing: int = 0
    pending: int = 0
    moved_away: int = 0
    extra: int = 0

    @property
    def quantity(self) -> Decimal:
        return Decimal(self.found + self.extra)


@dataclass(frozen=True)
class ItemResolution:
    """Outcome of resolving one item at a stage boundary."""

    item_id: UUID
    final_quantity: Decimal | None
    requires_count3: bool = False
    source: str = ""


@dataclass(frozen=True)
class Discrepancy:
    """A computed comparison between counts, serial evidence and expected stock."""

    type: DiscrepancyType
    severity: Severity
    message: str
    item_id: UUID | None = None
    product_id: UUID | None = None
    location_id: UUID | None = None
    serial_number: str | None = None
    expected: Decimal | None = None
    observed: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return _plain({
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "item_id": self.item_id,
            "product_id": self.product_id,
            "location_id": self.location_id,
            "serial_number": self.serial_number,
            "expected": self.expected,
            "observed": self.observed,
        })


@dataclass(frozen=True)
class SerialDiscrepancyFinding:
    """A serial-level reconciliation finding, persisted by the discrepancy register."""

    kind: SerialDiscrepancyKind
    serial_number: str
    product_id: UUID
    expected_location_id: UUID | None
    found_location_id: UUID | None

    def to_dict(self) -> dict[str, Any]:
        return _plain({
            "kind": self.kind,
            "serial_number": self.serial_number,
            "product_id": self.product_id,
            "expected_location_id": self.expected_location_id,
            "found_location_id": self.found_location_id,
        })


@dataclass(frozen=True)
class ValidationReport:
    """Integrity validation result.  ``is_valid`` is True when ``issues`` is empty."""

    inventory_id: UUID
    is_valid: bool
    issues: tuple[Discrepancy, ...] = ()
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "inventory_id": str(self.inventory_id),
            "is_valid": self.is_valid,
            "issues": [i.to_dict() for i in self.issues],
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


@dataclass(frozen=True)
class ReconciliationSummary:
    total_items: int = 0
    total_products: int = 0
    products_with_serial: int = 0
    products_manual: int = 0
    serial_items_expected: int = 0
    serial_items_found: int = 0
    serial_items_missing: int = 0
    serial_items_extra: int = 0
    items_with_discrepancy: int = 0
    divergent_items: int = 0
    accuracy_percent: Decimal = Decimal("100.0")

    def to_dict(self) -> dict[str, Any]:
        return _plain(dict(self.__dict__))


@dataclass(frozen=True)
class ProductDetail:
    """Per-item reconciliation line."""

    item_id: UUID
    product_id: UUID
    location_id: UUID
    expected_quantity: Decimal
    count1: Decimal | None
    count2: Decimal | None
    count3: Decimal | None
    count4: Decimal | None
    final_quantity: Decimal | None
    serial_controlled: bool
    serial_found: int
    serial_missing: int
    serial_extra: int
    has_discrepancy: bool
    severity: Severity | None = None

    def to_dict(self) -> dict[str, Any]:
        return _plain(dict(self.__dict__))


@dataclass(frozen=True)
class ReconciliationReport:
    inventory_id: UUID
    summary: ReconciliationSummary
    product_details: tuple[ProductDetail, ...] = ()
    serial_discrepancies: tuple[SerialDiscrepancyFinding, ...] = ()
    recommendations: tuple[str, ...] = ()
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "inventory_id": str(self.inventory_id),
            "summary": self.summary.to_dict(),
            "product_details": [d.to_dict() for d in self.product_details],
            "serial_discrepancies": [d.to_dict() for d in self.serial_discrepancies],
            "recommendations": list(self.recommendations),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


def _plain(values: Mapping[str, Any]) -> dict[str, Any]:
    """JSON-safe copy: UUID/Decimal -> str, Enum -> value."""
    out: dict[str, Any] = {}
    for key, val in values.items():
        if isinstance(val, Enum):
            out[key] = val.value
        elif isinstance(val, (UUID, Decimal)):
            out[key] = str(val)
        elif isinstance(val, datetime):
            out[key] = val.isoformat()
        else:
            out[key] = val
    return out
