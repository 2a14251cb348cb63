"""
Module: tally_modules.counting.orm
Responsibility: SQLAlchemy ORM persistence models for the counting module.
    Maps the frozen entity snapshots in ``tally_engines.types`` to tables
    for inventories, inventory items, inventory serial items and the
    serial discrepancy register, plus the append-only count correction trail.

Architecture position: Modules > Counting > ORM.  Inherits from TrackedBase
    (tally_kernel.db.base).  Products, locations and categories are external
    entities referenced by UUID columns with NO foreign key constraints.

Invariants enforced:
    - (inventory_id, product_id, location_id) is unique per item.
    - (inventory_id, serial_number) is unique per serial row.
    - Quantities use Decimal (Numeric(18,4)) -- never float.
    - Enum fields stored as String(50).
    - Every mutable row carries ``version`` as SQLAlchemy ``version_id_col``:
      an UPDATE against a stale version raises StaleDataError.
    - count_corrections rows are append-only: ORM before_update /
      before_delete listeners raise ImmutabilityViolationError.

Failure modes:
    - IntegrityError on a duplicate inventory code, item triple or serial.
    - StaleDataError on a lost optimistic-lock race (translated by the
      service to ConcurrentModificationError).

The repository owns these tables only as an adapter; no counting policy
lives here.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from tally_kernel.db.base import TrackedBase
from tally_kernel.exceptions import ImmutabilityViolationError


def _aware(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes; every stored timestamp is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _uuid_list(values) -> list[str] | None:
    if values is None:
        return None
    return sorted(str(v) for v in values)


def _uuid_set(values: list[str] | None) -> frozenset[UUID] | None:
    if values is None:
        return None
    return frozenset(UUID(v) for v in values)


# =============================================================================
# InventoryModel
# =============================================================================

class InventoryModel(TrackedBase):
    """
    ORM model for a counting campaign.

    Maps to: tally_engines.types.Inventory (frozen dataclass).

    Guarantees:
        - status holds an InventoryStatus value.
        - scope is stored as two JSON lists; NULL means "all".
    """

    __tablename__ = "inventories"

    __table_args__ = (
        UniqueConstraint("code", name="uq_inventory_code"),
        Index("idx_inventory_status", "status"),
    )

    code: Mapped[str] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="planning")

    scope_location_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    scope_category_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    predicted_end_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(nullable=True)
    stock_committed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    migrated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self):
        """Convert ORM model to frozen Inventory DTO."""
        from tally_engines.types import Inventory, InventoryScope, InventoryStatus
        return Inventory(
            id=self.id,
            code=self.code,
            status=InventoryStatus(self.status),
            scope=InventoryScope(
                location_ids=_uuid_set(self.scope_location_ids),
                category_ids=_uuid_set(self.scope_category_ids),
            ),
            created_by=self.created_by_id,
            started_at=_aware(self.started_at),
            predicted_end_at=_aware(self.predicted_end_at),
            ended_at=_aware(self.ended_at),
            last_activity_at=_aware(self.last_activity_at),
            stock_committed_at=_aware(self.stock_committed_at),
            migrated_at=_aware(self.migrated_at),
            description=self.description,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "InventoryModel":
        """Create ORM model from frozen Inventory DTO."""
        return cls(
            id=dto.id,
            code=dto.code,
            description=dto.description,
            status=dto.status.value if hasattr(dto.status, "value") else dto.status,
            scope_location_ids=_uuid_list(dto.scope.location_ids),
            scope_category_ids=_uuid_list(dto.scope.category_ids),
            started_at=dto.started_at,
            predicted_end_at=dto.predicted_end_at,
            last_activity_at=dto.last_activity_at,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<InventoryModel {self.code} status={self.status} v{self.version}>"


# =============================================================================
# InventoryItemModel
# =============================================================================

class InventoryItemModel(TrackedBase):
    """
    ORM model for one (inventory, product, location) counting line.

    Maps to: tally_engines.types.InventoryItem (frozen dataclass).

    Guarantees:
        - expected_quantity is written once, at open.
        - countN / countN_by / countN_at are written by the count service only.
    """

    __tablename__ = "inventory_items"

    __table_args__ = (
        UniqueConstraint(
            "inventory_id", "product_id", "location_id",
            name="uq_inventory_item_triple",
        ),
        Index("idx_inventory_item_inventory", "inventory_id"),
    )

    inventory_id: Mapped[UUID] = mapped_column(ForeignKey("inventories.id"))
    product_id: Mapped[UUID] = mapped_column()
    location_id: Mapped[UUID] = mapped_column()
    category_id: Mapped[UUID | None] = mapped_column(nullable=True)
    serial_controlled: Mapped[bool] = mapped_column(Boolean, default=False)

    expected_quantity: Mapped[Decimal] = mapped_column()

    count1: Mapped[Decimal | None] = mapped_column(nullable=True)
    count1_by: Mapped[UUID | None] = mapped_column(nullable=True)
    count1_at: Mapped[datetime | None] = mapped_column(nullable=True)
    count2: Mapped[Decimal | None] = mapped_column(nullable=True)
    count2_by: Mapped[UUID | None] = mapped_column(nullable=True)
    count2_at: Mapped[datetime | None] = mapped_column(nullable=True)
    count3: Mapped[Decimal | None] = mapped_column(nullable=True)
    count3_by: Mapped[UUID | None] = mapped_column(nullable=True)
    count3_at: Mapped[datetime | None] = mapped_column(nullable=True)
    count4: Mapped[Decimal | None] = mapped_column(nullable=True)
    count4_by: Mapped[UUID | None] = mapped_column(nullable=True)
    count4_at: Mapped[datetime | None] = mapped_column(nullable=True)

    final_quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="PENDING")

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def stage_values(self, stage: int) -> tuple[Decimal | None, UUID | None, datetime | None]:
        """(count, counted_by, counted_at) for one stage."""
        return (
            getattr(self, f"count{stage}"),
            getattr(self, f"count{stage}_by"),
            _aware(getattr(self, f"count{stage}_at")),
        )

    def set_stage(self, stage: int, quantity: Decimal, counter_id: UUID, at: datetime) -> None:
        setattr(self, f"count{stage}", quantity)
        setattr(self, f"count{stage}_by", counter_id)
        setattr(self, f"count{stage}_at", at)

    def to_dto(self):
        """Convert ORM model to frozen InventoryItem DTO."""
        from tally_engines.types import InventoryItem, ItemStatus
        return InventoryItem(
            id=self.id,
            inventory_id=self.inventory_id,
            product_id=self.product_id,
            location_id=self.location_id,
            expected_quantity=self.expected_quantity,
            count1=self.count1,
            count2=self.count2,
            count3=self.count3,
            count4=self.count4,
            final_quantity=self.final_quantity,
            status=ItemStatus(self.status),
            serial_controlled=bool(self.serial_controlled),
            category_id=self.category_id,
        )

    def __repr__(self) -> str:
        return (
            f"<InventoryItemModel {self.id} product={self.product_id} "
            f"location={self.location_id} status={self.status}>"
        )


# =============================================================================
# InventorySerialItemModel
# =============================================================================

class InventorySerialItemModel(TrackedBase):
    """
    ORM model for one (inventory, serial number) row.

    Maps to: tally_engines.types.InventorySerialItem (frozen dataclass).

    Guarantees:
        - expected is False only for rows created from EXTRA reads.
        - location_id is the snapshot location and never changes;
          found_location_id tracks the latest read.
    """

    __tablename__ = "inventory_serial_items"

    __table_args__ = (
        UniqueConstraint("inventory_id", "serial_number", name="uq_inventory_serial"),
        Index("idx_inventory_serial_product_location", "inventory_id", "product_id", "location_id"),
    )

    inventory_id: Mapped[UUID] = mapped_column(ForeignKey("inventories.id"))
    serial_number: Mapped[str] = mapped_column(String(200))
    product_id: Mapped[UUID] = mapped_column()
    location_id: Mapped[UUID] = mapped_column()
    found_location_id: Mapped[UUID | None] = mapped_column(nullable=True)
    expected: Mapped[bool] = mapped_column(Boolean, default=True)

    count1_found: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    count1_by: Mapped[UUID | None] = mapped_column(nullable=True)
    count1_at: Mapped[datetime | None] = mapped_column(nullable=True)
    count2_found: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    count2_by: Mapped[UUID | None] = mapped_column(nullable=True)
    count2_at: Mapped[datetime | None] = mapped_column(nullable=True)
    count3_found: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    count3_by: Mapped[UUID | None] = mapped_column(nullable=True)
    count3_at: Mapped[datetime | None] = mapped_column(nullable=True)
    count4_found: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    count4_by: Mapped[UUID | None] = mapped_column(nullable=True)
    count4_at: Mapped[datetime | None] = mapped_column(nullable=True)

    status: Mapped[str] = mapped_column(String(50), default="PENDING")
    final_status: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def mark_read(self, stage: int, counter_id: UUID, at: datetime) -> None:
        setattr(self, f"count{stage}_found", True)
        setattr(self, f"count{stage}_by", counter_id)
        setattr(self, f"count{stage}_at", at)

    def to_dto(self):
        """Convert ORM model to frozen InventorySerialItem DTO."""
        from tally_engines.types import InventorySerialItem, SerialStatus
        return InventorySerialItem(
            id=self.id,
            inventory_id=self.inventory_id,
            serial_number=self.serial_number,
            product_id=self.product_id,
            location_id=self.location_id,
            expected=bool(self.expected),
            found_location_id=self.found_location_id,
            count1_found=self.count1_found,
            count2_found=self.count2_found,
            count3_found=self.count3_found,
            count4_found=self.count4_found,
            status=SerialStatus(self.status),
            final_status=self.final_status,
        )

    def __repr__(self) -> str:
        return f"<InventorySerialItemModel {self.serial_number} status={self.status}>"


# =============================================================================
# SerialDiscrepancyModel
# =============================================================================

class SerialDiscrepancyModel(TrackedBase):
    """
    ORM model for the serial discrepancy register.

    Guarantees:
        - One record per (inventory, serial, kind).
        - status moves PENDING -> RESOLVED -> MIGRATED_TO_ERP (or
          PENDING -> MIGRATED_TO_ERP on migration).
    """

    __tablename__ = "serial_discrepancies"

    __table_args__ = (
        UniqueConstraint(
            "inventory_id", "serial_number", "kind",
            name="uq_serial_discrepancy",
        ),
        Index("idx_serial_discrepancy_status", "inventory_id", "status"),
    )

    inventory_id: Mapped[UUID] = mapped_column(ForeignKey("inventories.id"))
    serial_number: Mapped[str] = mapped_column(String(200))
    product_id: Mapped[UUID] = mapped_column()
    kind: Mapped[str] = mapped_column(String(50))
    expected_location_id: Mapped[UUID | None] = mapped_column(nullable=True)
    found_location_id: Mapped[UUID | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="PENDING")
    resolved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self):
        """Convert ORM model to frozen SerialDiscrepancyRecord DTO."""
        from tally_engines.types import SerialDiscrepancyKind, SerialDiscrepancyStatus
        from tally_modules.counting.models import SerialDiscrepancyRecord
        return SerialDiscrepancyRecord(
            id=self.id,
            inventory_id=self.inventory_id,
            kind=SerialDiscrepancyKind(self.kind),
            serial_number=self.serial_number,
            product_id=self.product_id,
            expected_location_id=self.expected_location_id,
            found_location_id=self.found_location_id,
            status=SerialDiscrepancyStatus(self.status),
            resolved_by=self.resolved_by,
            resolved_at=_aware(self.resolved_at),
            resolution_notes=self.resolution_notes,
        )

    def __repr__(self) -> str:
        return (
            f"<SerialDiscrepancyModel {self.serial_number} kind={self.kind} "
            f"status={self.status}>"
        )


# =============================================================================
# CountCorrectionModel
# =============================================================================

class CountCorrectionModel(TrackedBase):
    """
    Append-only record of one corrected stage count.

    Maps to: tally_modules.counting.models.CountCorrection.

    Guarantees:
        - Written in the same transaction as the corrected count.
        - Never updated or deleted (ORM listeners below raise
          ImmutabilityViolationError).
        - created_by_id is the counter who submitted the correction.
    """

    __tablename__ = "count_corrections"

    __table_args__ = (
        Index("idx_count_correction_item", "item_id", "stage"),
    )

    inventory_id: Mapped[UUID] = mapped_column(ForeignKey("inventories.id"))
    item_id: Mapped[UUID] = mapped_column(ForeignKey("inventory_items.id"))
    stage: Mapped[int] = mapped_column(Integer)
    previous_quantity: Mapped[Decimal] = mapped_column()
    previous_counter_id: Mapped[UUID | None] = mapped_column(nullable=True)
    previous_recorded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    new_quantity: Mapped[Decimal] = mapped_column()
    corrected_at: Mapped[datetime] = mapped_column()

    def to_dto(self):
        """Convert ORM model to frozen CountCorrection DTO."""
        from tally_engines.types import CountStage
        from tally_modules.counting.models import CountCorrection
        return CountCorrection(
            id=self.id,
            item_id=self.item_id,
            stage=CountStage(self.stage),
            previous_quantity=self.previous_quantity,
            previous_counter_id=self.previous_counter_id,
            previous_recorded_at=_aware(self.previous_recorded_at),
            new_quantity=self.new_quantity,
            new_counter_id=self.created_by_id,
            corrected_at=_aware(self.corrected_at),
        )

    def __repr__(self) -> str:
        return (
            f"<CountCorrectionModel item={self.item_id} count{self.stage} "
            f"{self.previous_quantity} -> {self.new_quantity}>"
        )


@event.listens_for(CountCorrectionModel, "before_update")
def _reject_correction_update(mapper, connection, target):
    raise ImmutabilityViolationError("CountCorrection", str(target.id), "corrections are append-only")


@event.listens_for(CountCorrectionModel, "before_delete")
def _reject_correction_delete(mapper, connection, target):
    raise ImmutabilityViolationError("CountCorrection", str(target.id), "corrections are append-only")
