"""
SerialReconciliationEngine -- Pure engine for serialized asset reads.

Decides how a scanned serial number is applied to the inventory snapshot,
aggregates serial evidence per InventoryItem, and classifies serial-level
findings (location mismatch, not found, unexpected found, duplicates).

Architecture: tally_engines -- pure calculation, zero I/O.  The service
layer looks up the snapshot row and the asset registry, calls
``decide_read()`` and applies the returned decision to the ORM row.

Rules:
    - A read at the expected location of a snapshot serial is FOUND.
    - A read anywhere else is EXTRA and counts toward the item at the
      location where it was found, never toward the expected item.
    - Serials missing from the snapshot but known to the registry are
      created as EXTRA rows (``expected=False``); unknown serials raise
      ``UnknownSerialError`` and create nothing.
    - A second read of the same serial in the same stage is a DUPLICATE:
      idempotent success with no state change.
    - Never-scanned rows stay PENDING until close, then become MISSING.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from tally_kernel.exceptions import OutOfScopeReadError, UnknownSerialError
from tally_kernel.logging_config import get_logger
from tally_engines.tracer import traced_engine
from tally_engines.types import (
    CountStage,
    Inventory,
    InventoryItem,
    InventorySerialItem,
    InventorySnapshot,
    RegisteredAsset,
    SerialDiscrepancyFinding,
    SerialDiscrepancyKind,
    SerialStatus,
    SerialTally,
)

logger = get_logger("engines.serial_reconciliation")


class SerialReadAction(str, Enum):
    MARK_FOUND = "mark_found"
    CREATE_EXTRA = "create_extra"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class SerialReadDecision:
    """How a single serial read must be applied."""

    action: SerialReadAction
    serial_number: str
    stage: CountStage
    status: SerialStatus
    product_id: UUID
    expected_location_id: UUID
    found_location_id: UUID

    @property
    def location_mismatch(self) -> bool:
        return self.found_location_id != self.expected_location_id


class SerialReconciliationEngine:
    """Pure engine for serial reads and serial aggregation.

    Usage:
        engine = SerialReconciliationEngine()
        decision = engine.decide_read(
            inventory=inv, serial_number="SN-1", stage=CountStage.COUNT1,
            existing=row, registered=None, found_location_id=None,
        )
    """

    @traced_engine("serial_reconciliation", "1.0", fingerprint_fields=("serial_number", "stage"))
    def decide_read(
        self,
        *,
        inventory: Inventory,
        serial_number: str,
        stage: CountStage,
        existing: InventorySerialItem | None,
        registered: RegisteredAsset | None,
        found_location_id: UUID | None = None,
    ) -> SerialReadDecision:
        """Classify one read.

        Raises:
            UnknownSerialError: serial is in neither the snapshot nor the registry.
            OutOfScopeReadError: the found location lies outside the scope.
        """
        if existing is None and registered is None:
            raise UnknownSerialError(str(inventory.id), serial_number)

        if existing is not None:
            product_id = existing.product_id
            expected_location = existing.location_id
        else:
            product_id = registered.product_id
            expected_location = registered.location_id

        found_at = found_location_id or expected_location
        if not inventory.scope.includes_location(found_at):
            raise OutOfScopeReadError(str(inventory.id), serial_number, str(found_at))

        if existing is not None and existing.found_in(stage):
            return SerialReadDecision(
                action=SerialReadAction.DUPLICATE,
                serial_number=serial_number,
                stage=stage,
                status=existing.status,
                product_id=product_id,
                expected_location_id=expected_location,
                found_location_id=existing.effective_location_id,
            )

        if existing is None:
            return SerialReadDecision(
                action=SerialReadAction.CREATE_EXTRA,
                serial_number=serial_number,
                stage=stage,
                status=SerialStatus.EXTRA,
                product_id=product_id,
                expected_location_id=expected_location,
                found_location_id=found_at,
            )

        at_expected = existing.expected and found_at == expected_location
        return SerialReadDecision(
            action=SerialReadAction.MARK_FOUND,
            serial_number=serial_number,
            stage=stage,
            status=SerialStatus.FOUND if at_expected else SerialStatus.EXTRA,
            product_id=product_id,
            expected_location_id=expected_location,
            found_location_id=found_at,
        )

    @traced_engine("serial_reconciliation", "1.0", fingerprint_fields=("item",))
    def tally(
        self,
        *,
        snapshot: InventorySnapshot,
        item: InventoryItem,
    ) -> SerialTally:
        """Aggregate serial evidence for one item.

        found   -- snapshot serials with final_status True and status != EXTRA
        missing -- snapshot serials with final_status False
        pending -- snapshot serials never scanned
        moved_away -- snapshot serials found at another location
        extra   -- EXTRA serials of this product found at this location
        """
        children = snapshot.serials_expected_at(item)
        return SerialTally(
            item_id=item.id,
            expected=len(children),
            found=sum(
                1 for s in children
                if s.final_status is True and s.status != SerialStatus.EXTRA
            ),
            missing=sum(1 for s in children if s.final_status is False),
            pending=sum(1 for s in children if s.status == SerialStatus.PENDING),
            moved_away=sum(1 for s in children if s.status == SerialStatus.EXTRA),
            extra=len(snapshot.extras_found_at(item)),
        )

    def find_duplicates(
        self,
        serial_items: tuple[InventorySerialItem, ...],
    ) -> tuple[tuple[str, int], ...]:
        """(serial_number, occurrences) for serials stored more than once."""
        counts = Counter(s.serial_number for s in serial_items)
        return tuple(sorted((sn, n) for sn, n in counts.items() if n > 1))

    @traced_engine("serial_reconciliation", "1.0")
    def classify_findings(
        self,
        *,
        snapshot: InventorySnapshot,
    ) -> tuple[SerialDiscrepancyFinding, ...]:
        """Serial-level findings, ordered by serial number."""
        findings: list[SerialDiscrepancyFinding] = []
        for s in sorted(snapshot.serial_items, key=lambda r: r.serial_number):
            if s.expected and s.status == SerialStatus.EXTRA:
                kind = SerialDiscrepancyKind.LOCATION_MISMATCH
            elif s.expected and s.status in (SerialStatus.PENDING, SerialStatus.MISSING):
                kind = SerialDiscrepancyKind.NOT_FOUND
            elif not s.expected and s.final_status:
                kind = SerialDiscrepancyKind.UNEXPECTED_FOUND
            else:
                continue
            findings.append(SerialDiscrepancyFinding(
                kind=kind,
                serial_number=s.serial_number,
                product_id=s.product_id,
                expected_location_id=s.location_id if s.expected else None,
                found_location_id=s.found_location_id if s.was_read else None,
            ))
        return tuple(findings)

    def unscanned(
        self,
        serial_items: tuple[InventorySerialItem, ...],
    ) -> tuple[UUID, ...]:
        """Ids of rows never read in any stage -- resolved to MISSING at close."""
        return tuple(
            s.id for s in serial_items
            if s.status == SerialStatus.PENDING and not s.was_read
        )
