"""
Tests for ReportBuilder -- integrity validation, reconciliation summary,
recommendations and deterministic output.
"""

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from tally_engines.reporting import ReportBuilder
from tally_engines.types import (
    DiscrepancyType,
    Inventory,
    InventoryItem,
    InventorySerialItem,
    InventorySnapshot,
    InventoryStatus,
    ReconciliationSummary,
    SerialStatus,
    Severity,
)

INV_ID = uuid4()
LOC = uuid4()
LAST_ACTIVITY = datetime(2024, 3, 5, 16, 30, tzinfo=UTC)


@pytest.fixture
def builder():
    return ReportBuilder()


def _item(count1, count2, *, expected="10", final=None, serial=False, product_id=None):
    return InventoryItem(
        id=uuid4(),
        inventory_id=INV_ID,
        product_id=product_id or uuid4(),
        location_id=LOC,
        expected_quantity=Decimal(expected),
        count1=None if count1 is None else Decimal(str(count1)),
        count2=None if count2 is None else Decimal(str(count2)),
        final_quantity=None if final is None else Decimal(str(final)),
        serial_controlled=serial,
    )


def _serial(product_id, sn, status, final_status):
    return InventorySerialItem(
        id=uuid4(),
        inventory_id=INV_ID,
        serial_number=sn,
        product_id=product_id,
        location_id=LOC,
        found_location_id=LOC if final_status else None,
        count1_found=True if final_status else None,
        status=status,
        final_status=final_status,
    )


def _snapshot(items=(), serials=()):
    return InventorySnapshot(
        inventory=Inventory(
            id=INV_ID,
            code="INV-R",
            status=InventoryStatus.AUDIT_MODE,
            last_activity_at=LAST_ACTIVITY,
        ),
        items=tuple(items),
        serial_items=tuple(serials),
    )


class TestValidationReport:

    def test_clean_inventory_is_valid(self, builder):
        report = builder.validation_report(snapshot=_snapshot([_item(10, 10, final=10)]))
        assert report.is_valid
        assert report.issues == ()
        assert report.timestamp == LAST_ACTIVITY

    def test_serial_mismatch_makes_invalid(self, builder):
        laptop = _item(2, 2, expected="2", serial=True)
        serials = [
            _serial(laptop.product_id, "SN-1", SerialStatus.FOUND, True),
            _serial(laptop.product_id, "SN-2", SerialStatus.MISSING, False),
        ]
        report = builder.validation_report(snapshot=_snapshot([laptop], serials))
        assert not report.is_valid
        assert {d.type for d in report.issues} == {
            DiscrepancyType.SERIAL_MISMATCH,
            DiscrepancyType.QUANTITY_SERIAL_MISMATCH,
        }

    def test_duplicate_serial_rows_reported(self, builder):
        product = uuid4()
        serials = [
            _serial(product, "SN-1", SerialStatus.FOUND, True),
            _serial(product, "SN-1", SerialStatus.FOUND, True),
        ]
        report = builder.validation_report(snapshot=_snapshot(serials=serials))
        assert [d.type for d in report.issues] == [DiscrepancyType.DUPLICATE_SERIAL]


class TestReconciliationReport:

    def test_accuracy_from_both_counted_items(self, builder):
        items = [_item(10, 10), _item(5, 5), _item(3, 3), _item(10, 12)]
        summary = builder.reconciliation_report(snapshot=_snapshot(items)).summary
        assert summary.divergent_items == 1
        assert summary.accuracy_percent == Decimal("75.0")

    def test_accuracy_is_quantized(self, builder):
        items = [_item(1, 1), _item(1, 1), _item(1, 2)]
        summary = builder.reconciliation_report(snapshot=_snapshot(items)).summary
        assert summary.accuracy_percent == Decimal("66.7")

    def test_accuracy_without_double_counts(self, builder):
        summary = builder.reconciliation_report(snapshot=_snapshot([_item(4, None)])).summary
        assert summary.accuracy_percent == Decimal("100.0")

    def test_summary_counts(self, builder):
        laptop = _item(None, None, expected="3", serial=True)
        screws = _item(10, 10, final=10)
        serials = [
            _serial(laptop.product_id, "SN-1", SerialStatus.FOUND, True),
            _serial(laptop.product_id, "SN-2", SerialStatus.FOUND, True),
            _serial(laptop.product_id, "SN-3", SerialStatus.MISSING, False),
            replace(
                _serial(laptop.product_id, "SN-4", SerialStatus.EXTRA, True),
                expected=False,
            ),
        ]
        summary = builder.reconciliation_report(snapshot=_snapshot([laptop, screws], serials)).summary

        assert summary.total_items == 2
        assert summary.total_products == 2
        assert summary.products_with_serial == 1
        assert summary.products_manual == 1
        assert summary.serial_items_expected == 3
        assert summary.serial_items_found == 2
        assert summary.serial_items_missing == 1
        assert summary.serial_items_extra == 1

    def test_product_detail_severity(self, builder):
        short = _item(4, 4, expected="10", final=4)
        report = builder.reconciliation_report(snapshot=_snapshot([short]))
        detail = report.product_details[0]
        assert detail.has_discrepancy
        assert detail.severity == Severity.HIGH

    def test_timestamp_is_last_activity(self, builder):
        report = builder.reconciliation_report(snapshot=_snapshot([_item(1, 1)]))
        assert report.timestamp == LAST_ACTIVITY

    def test_output_is_deterministic(self, builder):
        items = [_item(i, i) for i in range(6)]
        forward = builder.reconciliation_report(snapshot=_snapshot(items)).to_json()
        backward = builder.reconciliation_report(snapshot=_snapshot(reversed(items))).to_json()
        assert forward == backward


class TestRecommendations:

    def test_consistent(self, builder):
        assert builder.recommendations(ReconciliationSummary(total_items=4)) == (
            "Inventory is consistent and can be closed",
        )

    def test_missing_serials_and_discrepancies(self, builder):
        recs = builder.recommendations(ReconciliationSummary(
            total_items=10, serial_items_missing=2, items_with_discrepancy=3,
        ))
        assert recs[0] == "Verify 2 serial numbers not found"
        assert recs[1] == "Investigate discrepancies in 3 items"

    def test_low_accuracy_and_high_divergence(self, builder):
        recs = builder.recommendations(ReconciliationSummary(
            total_items=4, divergent_items=1, accuracy_percent=Decimal("75.0"),
        ))
        assert any("below 90%" in r for r in recs)
        assert any("1 of 4 items" in r for r in recs)

    def test_thresholds_are_configurable(self):
        lenient = ReportBuilder(
            accuracy_threshold_percent=Decimal("70"),
            divergence_threshold_percent=Decimal("30"),
        )
        recs = lenient.recommendations(ReconciliationSummary(
            total_items=4, divergent_items=1, accuracy_percent=Decimal("75.0"),
        ))
        assert recs == ("Inventory is consistent and can be closed",)
