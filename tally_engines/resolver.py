"""
DiscrepancyResolver -- Pure final-quantity and discrepancy rules.

Responsibility:
    Decide an item's authoritative final quantity at each stage boundary
    and classify the discrepancies between manual counts, serial evidence
    and the expected (snapshotted) quantity.

Architecture position:
    Engines -- pure calculation, zero I/O.  Receives frozen dataclasses
    (InventoryItem, SerialTally, InventorySnapshot) and returns frozen
    dataclasses.  The service layer persists the outcome.

Invariants enforced:
    - count1 == count2 is sufficient to finalize a non-serial item,
      regardless of expected_quantity.
    - count3 is never auto-accepted; only count4 finalizes a divergent item.
    - For serial-controlled items the serial-derived quantity is the final
      quantity; manual counts only raise QUANTITY_SERIAL_MISMATCH.
    - Severity is a function of |observed - expected_quantity| only.

Audit relevance:
    Severity drives audit prioritization, never correctness.
"""

from __future__ import annotations

from decimal import Decimal

from tally_kernel.logging_config import get_logger
from tally_engines.tracer import traced_engine
from tally_engines.types import (
    Discrepancy,
    DiscrepancyType,
    InventoryItem,
    InventorySnapshot,
    ItemResolution,
    SerialStatus,
    SerialTally,
    Severity,
)

logger = get_logger("engines.resolver")

DEFAULT_LOW_MAX = Decimal("1")
DEFAULT_MEDIUM_MAX = Decimal("5")


class DiscrepancyResolver:
    """Stateless resolver.  Thresholds are fixed at construction.

    Usage:
        resolver = DiscrepancyResolver(low_max=Decimal("1"), medium_max=Decimal("5"))
        resolution = resolver.resolve_after_count2(item=item, tally=tally)
    """

    def __init__(
        self,
        low_max: Decimal = DEFAULT_LOW_MAX,
        medium_max: Decimal = DEFAULT_MEDIUM_MAX,
    ) -> None:
        if low_max < 0 or medium_max < low_max:
            raise ValueError(
                f"Invalid severity thresholds: low_max={low_max}, medium_max={medium_max}"
            )
        self._low_max = Decimal(low_max)
        self._medium_max = Decimal(medium_max)

    def classify_severity(self, difference: Decimal) -> Severity:
        diff = abs(Decimal(difference))
        if diff <= self._low_max:
            return Severity.LOW
        if diff <= self._medium_max:
            return Severity.MEDIUM
        return Severity.HIGH

    # -------------------------------------------------------------------------
    # Final quantity
    # -------------------------------------------------------------------------

    @traced_engine("resolver", "1.0", fingerprint_fields=("item", "tally"))
    def resolve_after_count2(
        self,
        *,
        item: InventoryItem,
        tally: SerialTally | None = None,
    ) -> ItemResolution:
        """Resolution run for every item when stage 2 closes."""
        if item.serial_controlled:
            return ItemResolution(
                item_id=item.id,
                final_quantity=(tally or SerialTally(item_id=item.id)).quantity,
                source="serial",
            )
        if item.is_resolved:
            return ItemResolution(
                item_id=item.id,
                final_quantity=item.final_quantity,
                source="already_resolved",
            )
        if item.count1 is not None and item.count1 == item.count2:
            return ItemResolution(
                item_id=item.id,
                final_quantity=item.count2,
                source="count_agreement",
            )
        logger.info(
            "item_requires_count3",
            extra={
                "item_id": str(item.id),
                "count1": str(item.count1),
                "count2": str(item.count2),
            },
        )
        return ItemResolution(
            item_id=item.id,
            final_quantity=None,
            requires_count3=True,
            source="count_divergence",
        )

    @traced_engine("resolver", "1.0", fingerprint_fields=("item", "count4"))
    def resolve_audit_count(
        self,
        *,
        item: InventoryItem,
        count4: Decimal,
        tally: SerialTally | None = None,
    ) -> ItemResolution:
        """count4 finalizes the item; serial evidence still wins for serial items."""
        if item.serial_controlled:
            return ItemResolution(
                item_id=item.id,
                final_quantity=(tally or SerialTally(item_id=item.id)).quantity,
                source="serial",
            )
        return ItemResolution(
            item_id=item.id,
            final_quantity=Decimal(count4),
            source="audit",
        )

    def refresh_serial(self, *, item: InventoryItem, tally: SerialTally) -> ItemResolution:
        """Recompute a resolved serial item after a later read changed its tally."""
        return ItemResolution(item_id=item.id, final_quantity=tally.quantity, source="serial")

    # -------------------------------------------------------------------------
    # Discrepancies
    # -------------------------------------------------------------------------

    def observed_quantity(self, item: InventoryItem, tally: SerialTally | None) -> Decimal | None:
        """The quantity the item is judged on: serial-derived, else final, else latest count."""
        if item.serial_controlled and tally is not None:
            return tally.quantity
        if item.final_quantity is not None:
            return item.final_quantity
        return item.latest_manual_count

    @traced_engine("resolver", "1.0", fingerprint_fields=("item", "tally"))
    def item_discrepancies(
        self,
        *,
        item: InventoryItem,
        tally: SerialTally | None = None,
    ) -> tuple[Discrepancy, ...]:
        """Item-level discrepancies for serial-controlled items."""
        if not item.serial_controlled or tally is None:
            return ()

        observed = self.observed_quantity(item, tally)
        severity = self.classify_severity(observed - item.expected_quantity)
        issues: list[Discrepancy] = []

        if tally.found != tally.expected:
            issues.append(Discrepancy(
                type=DiscrepancyType.SERIAL_MISMATCH,
                severity=severity,
                message=(
                    f"Expected {tally.expected} serials at location, "
                    f"found {tally.found}"
                ),
                item_id=item.id,
                product_id=item.product_id,
                location_id=item.location_id,
                expected=Decimal(tally.expected),
                observed=Decimal(tally.found),
            ))

        manual = item.latest_manual_count
        if manual is not None and manual != tally.quantity:
            issues.append(Discrepancy(
                type=DiscrepancyType.QUANTITY_SERIAL_MISMATCH,
                severity=severity,
                message=(
                    f"Manual count {manual} differs from serial-derived "
                    f"quantity {tally.quantity}"
                ),
                item_id=item.id,
                product_id=item.product_id,
                location_id=item.location_id,
                expected=tally.quantity,
                observed=manual,
            ))

        return tuple(issues)

    @traced_engine("resolver", "1.0")
    def serial_discrepancies(
        self,
        *,
        snapshot: InventorySnapshot,
        duplicates: tuple[tuple[str, int], ...] = (),
    ) -> tuple[Discrepancy, ...]:
        """LOCATION_MISMATCH per snapshot serial found elsewhere, DUPLICATE_SERIAL per duplicate."""
        issues: list[Discrepancy] = []
        for s in sorted(snapshot.serial_items, key=lambda r: r.serial_number):
            if s.expected and s.status == SerialStatus.EXTRA:
                issues.append(Discrepancy(
                    type=DiscrepancyType.LOCATION_MISMATCH,
                    severity=self.classify_severity(Decimal(1)),
                    message=(
                        f"Serial {s.serial_number} expected at {s.location_id}, "
                        f"found at {s.found_location_id}"
                    ),
                    product_id=s.product_id,
                    location_id=s.found_location_id,
                    serial_number=s.serial_number,
                ))
        for serial_number, occurrences in duplicates:
            issues.append(Discrepancy(
                type=DiscrepancyType.DUPLICATE_SERIAL,
                severity=self.classify_severity(Decimal(occurrences - 1)),
                message=f"Serial {serial_number} recorded {occurrences} times",
                serial_number=serial_number,
                expected=Decimal(1),
                observed=Decimal(occurrences),
            ))
        return tuple(issues)
