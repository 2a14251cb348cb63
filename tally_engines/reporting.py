"""
tally_engines.reporting -- Pure integrity and reconciliation report builder.

Responsibility:
    Derive the integrity ``ValidationReport`` and the
    ``ReconciliationReport`` (summary, per-item detail, serial findings,
    advisory recommendations) from an ``InventorySnapshot``.

Architecture position:
    Engines -- pure calculation, zero I/O.  Read-only by construction:
    inputs are frozen, outputs are frozen, and the report timestamp comes
    from the inventory's ``last_activity_at`` rather than a clock, so the
    same snapshot always yields byte-identical JSON.

Invariants enforced:
    - Output order is deterministic (items by product then location id,
      serials by serial number).
    - Recommendations are advisory text; nothing reads them back.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from tally_kernel.logging_config import get_logger
from tally_engines.resolver import DiscrepancyResolver
from tally_engines.serial_reconciliation import SerialReconciliationEngine
from tally_engines.tracer import traced_engine
from tally_engines.types import (
    InventoryItem,
    InventorySnapshot,
    ProductDetail,
    ReconciliationReport,
    ReconciliationSummary,
    SerialStatus,
    SerialTally,
    ValidationReport,
)

logger = get_logger("engines.reporting")

_ONE_DECIMAL = Decimal("0.1")
_HUNDRED = Decimal("100")


class ReportBuilder:
    """Builds reports from a snapshot.

    Usage:
        builder = ReportBuilder(accuracy_threshold_percent=Decimal("90"))
        report = builder.reconciliation_report(snapshot=snapshot)
        report.to_json()
    """

    def __init__(
        self,
        resolver: DiscrepancyResolver | None = None,
        serial_engine: SerialReconciliationEngine | None = None,
        accuracy_threshold_percent: Decimal = Decimal("90"),
        divergence_threshold_percent: Decimal = Decimal("10"),
    ) -> None:
        self._resolver = resolver or DiscrepancyResolver()
        self._serials = serial_engine or SerialReconciliationEngine()
        self._accuracy_threshold = Decimal(accuracy_threshold_percent)
        self._divergence_threshold = Decimal(divergence_threshold_percent)

    @traced_engine("reporting", "1.0")
    def validation_report(self, *, snapshot: InventorySnapshot) -> ValidationReport:
        """Integrity pass: valid when no discrepancy is found."""
        issues = []
        for item in _ordered(snapshot.items):
            issues.extend(self._resolver.item_discrepancies(
                item=item, tally=self._tally(snapshot, item),
            ))
        issues.extend(self._resolver.serial_discrepancies(
            snapshot=snapshot,
            duplicates=self._serials.find_duplicates(snapshot.serial_items),
        ))
        return ValidationReport(
            inventory_id=snapshot.inventory.id,
            is_valid=not issues,
            issues=tuple(issues),
            timestamp=snapshot.inventory.last_activity_at,
        )

    @traced_engine("reporting", "1.0")
    def reconciliation_report(self, *, snapshot: InventorySnapshot) -> ReconciliationReport:
        details = tuple(self._detail(snapshot, item) for item in _ordered(snapshot.items))
        summary = self._summary(snapshot, details)
        findings = self._serials.classify_findings(snapshot=snapshot)
        logger.debug(
            "reconciliation_report_built",
            extra={
                "inventory_id": str(snapshot.inventory.id),
                "total_items": summary.total_items,
                "items_with_discrepancy": summary.items_with_discrepancy,
            },
        )
        return ReconciliationReport(
            inventory_id=snapshot.inventory.id,
            summary=summary,
            product_details=details,
            serial_discrepancies=findings,
            recommendations=self.recommendations(summary),
            timestamp=snapshot.inventory.last_activity_at,
        )

    def recommendations(self, summary: ReconciliationSummary) -> tuple[str, ...]:
        out: list[str] = []
        if summary.serial_items_missing > 0:
            out.append(
                f"Verify {summary.serial_items_missing} serial numbers not found"
            )
        if summary.items_with_discrepancy > 0:
            out.append(
                f"Investigate discrepancies in {summary.items_with_discrepancy} items"
            )
        if summary.accuracy_percent < self._accuracy_threshold:
            out.append(
                f"Count accuracy {summary.accuracy_percent}% is below "
                f"{self._accuracy_threshold}%: recount the divergent items"
            )
        if summary.total_items and (
            Decimal(summary.divergent_items) * _HUNDRED / Decimal(summary.total_items)
            > self._divergence_threshold
        ):
            out.append(
                f"Count divergence affects {summary.divergent_items} of "
                f"{summary.total_items} items: review counting procedure"
            )
        if not out:
            out.append("Inventory is consistent and can be closed")
        return tuple(out)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _tally(self, snapshot: InventorySnapshot, item: InventoryItem) -> SerialTally | None:
        if not item.serial_controlled:
            return None
        return self._serials.tally(snapshot=snapshot, item=item)

    def _detail(self, snapshot: InventorySnapshot, item: InventoryItem) -> ProductDetail:
        tally = self._tally(snapshot, item)
        observed = self._resolver.observed_quantity(item, tally)
        issues = self._resolver.item_discrepancies(item=item, tally=tally)
        has_discrepancy = bool(issues) or (
            observed is not None and observed != item.expected_quantity
        )
        return ProductDetail(
            item_id=item.id,
            product_id=item.product_id,
            location_id=item.location_id,
            expected_quantity=item.expected_quantity,
            count1=item.count1,
            count2=item.count2,
            count3=item.count3,
            count4=item.count4,
            final_quantity=item.final_quantity,
            serial_controlled=item.serial_controlled,
            serial_found=tally.found if tally else 0,
            serial_missing=(tally.expected - tally.found - tally.moved_away) if tally else 0,
            serial_extra=tally.extra if tally else 0,
            has_discrepancy=has_discrepancy,
            severity=(
                self._resolver.classify_severity(observed - item.expected_quantity)
                if has_discrepancy and observed is not None
                else None
            ),
        )

    def _summary(
        self,
        snapshot: InventorySnapshot,
        details: tuple[ProductDetail, ...],
    ) -> ReconciliationSummary:
        items = snapshot.items
        serial_products = {i.product_id for i in items if i.serial_controlled}
        manual_products = {i.product_id for i in items if not i.serial_controlled}
        expected_rows = [s for s in snapshot.serial_items if s.expected]

        both_counted = [i for i in items if i.count1 is not None and i.count2 is not None]
        divergent = [i for i in items if i.has_count_divergence]
        if both_counted:
            accuracy = (
                Decimal(len(both_counted) - len(divergent)) * _HUNDRED
                / Decimal(len(both_counted))
            ).quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP)
        else:
            accuracy = Decimal("100.0")

        return ReconciliationSummary(
            total_items=len(items),
            total_products=len({i.product_id for i in items}),
            products_with_serial=len(serial_products),
            products_manual=len(manual_products - serial_products),
            serial_items_expected=len(expected_rows),
            serial_items_found=sum(1 for s in expected_rows if s.status == SerialStatus.FOUND),
            serial_items_missing=sum(1 for s in expected_rows if s.final_status is not True),
            serial_items_extra=sum(
                1 for s in snapshot.serial_items if s.status == SerialStatus.EXTRA
            ),
            items_with_discrepancy=sum(1 for d in details if d.has_discrepancy),
            divergent_items=len(divergent),
            accuracy_percent=accuracy,
        )


def _ordered(items: tuple[InventoryItem, ...]) -> list[InventoryItem]:
    return sorted(items, key=lambda i: (str(i.product_id), str(i.location_id)))
