"""
Counting Domain Models (``tally_modules.counting.models``).

Responsibility
--------------
Frozen value objects exchanged between ``InventoryCountService`` and its
callers: count receipts, blind count-sheet lines, serial read results,
count corrections, elevated item reviews, stock positions and stock-commit
lines.  Entity snapshots (Inventory, InventoryItem, InventorySerialItem) live in
``tally_engines.types`` and are re-exported here.

Architecture
------------
Layer: **Modules** -- pure data structures, no I/O.

Invariants
----------
- Blind counting: ``CountReceipt`` and ``CountSheetLine`` never carry the
  expected quantity or another stage's count.
- Quantities are ``Decimal``.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from tally_kernel.logging_config import get_logger
from tally_engines.types import (
    CountStage,
    Discrepancy,
    Inventory,
    InventoryItem,
    InventoryScope,
    InventorySerialItem,
    InventorySnapshot,
    InventoryStatus,
    ItemStatus,
    RegisteredAsset,
    SerialDiscrepancyKind,
    SerialDiscrepancyStatus,
    SerialStatus,
    SerialTally,
)

logger = get_logger("modules.counting.models")


@dataclass(frozen=True)
class StockPosition:
    """One (product, location) stock line offered by the snapshot provider."""
    product_id: UUID
    location_id: UUID
    quantity: Decimal
    category_id: UUID | None = None
    serial_controlled: bool = False

    def __post_init__(self):
        if self.quantity < 0:
            raise ValueError(f"Stock quantity cannot be negative: {self.quantity}")


@dataclass(frozen=True)
class CountReceipt:
    """Acknowledgement of one recorded count.  Carries only the value just recorded."""
    item_id: UUID
    stage: CountStage
    quantity: Decimal
    counter_id: UUID
    recorded_at: datetime
    corrected: bool = False
    unchanged: bool = False


@dataclass(frozen=True)
class CountSheetLine:
    """One line of the blind count sheet for an open stage."""
    item_id: UUID
    product_id: UUID
    location_id: UUID
    stage: CountStage
    counted: bool


@dataclass(frozen=True)
class SerialReadResult:
    """Outcome of registering one serial read."""
    serial_item_id: UUID
    serial_number: str
    stage: CountStage
    status: SerialStatus
    found_location_id: UUID
    duplicate: bool = False
    created: bool = False


@dataclass(frozen=True)
class StageCount:
    """One stage's recorded count, exposed only on the elevated read path."""
    stage: CountStage
    quantity: Decimal | None
    counted_by: UUID | None
    counted_at: datetime | None


@dataclass(frozen=True)
class CountCorrection:
    """One corrected count, with the value and counter it replaced."""
    id: UUID
    item_id: UUID
    stage: CountStage
    previous_quantity: Decimal
    previous_counter_id: UUID | None
    previous_recorded_at: datetime | None
    new_quantity: Decimal
    new_counter_id: UUID
    corrected_at: datetime


@dataclass(frozen=True)
class ItemReview:
    """Supervisor / auditor view of an item: every stage, expected and serial evidence."""
    item_id: UUID
    product_id: UUID
    location_id: UUID
    expected_quantity: Decimal
    counts: tuple[StageCount, ...]
    final_quantity: Decimal | None
    status: ItemStatus
    serial_tally: SerialTally | None
    discrepancies: tuple[Discrepancy, ...] = ()
    corrections: tuple[CountCorrection, ...] = ()


@dataclass(frozen=True)
class StockCommitLine:
    """Final (product, location, quantity) handed to the stock committer or ERP exporter."""
    product_id: UUID
    location_id: UUID
    final_quantity: Decimal
    expected_quantity: Decimal

    @property
    def adjustment(self) -> Decimal:
        return self.final_quantity - self.expected_quantity


@dataclass(frozen=True)
class SerialDiscrepancyRecord:
    """A persisted entry of the serial discrepancy register."""
    id: UUID
    inventory_id: UUID
    kind: SerialDiscrepancyKind
    serial_number: str
    product_id: UUID
    expected_location_id: UUID | None
    found_location_id: UUID | None
    status: SerialDiscrepancyStatus
    resolved_by: UUID | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None


@dataclass(frozen=True)
class SerialDiscrepancySummary:
    """Register totals for one inventory."""
    inventory_id: UUID
    total: int
    by_kind: dict[str, int]
    by_status: dict[str, int]


__all__ = [
    "CountReceipt",
    "CountSheetLine",
    "CountStage",
    "Inventory",
    "InventoryItem",
    "InventoryScope",
    "InventorySerialItem",
    "InventorySnapshot",
    "InventoryStatus",
    "ItemReview",
    "ItemStatus",
    "RegisteredAsset",
    "SerialDiscrepancyKind",
    "SerialDiscrepancyRecord",
    "SerialDiscrepancyStatus",
    "SerialDiscrepancySummary",
    "SerialReadResult",
    "SerialStatus",
    "StageCount",
    "StockCommitLine",
    "StockPosition",
]
