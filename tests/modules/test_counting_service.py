"""
InventoryCountService lifecycle tests.

Covers snapshot materialization, the deterministic stage outcomes, blind
counting, count idempotency and correction, closure gating, stock commit,
cancellation, ERP migration and the elevated read path.
"""

from dataclasses import fields
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import event, func, select, update
from sqlalchemy.orm.exc import StaleDataError

from tally_kernel.exceptions import (
    AlreadyMigratedError,
    ConcurrentModificationError,
    CountAlreadyRecordedError,
    ImmutabilityViolationError,
    InsufficientRoleError,
    InvalidQuantityError,
    InvalidStageTransitionError,
    InventoryClosedError,
    StageClosedError,
    StagePreconditionError,
)
from tally_kernel.logging_config import LogContext
from tally_engines.types import CountStage, InventoryStatus, ItemStatus
from tally_modules.counting import CountingConfig, load_snapshot
from tally_modules.counting.models import CountReceipt, CountSheetLine
from tally_modules.counting.orm import CountCorrectionModel, InventoryItemModel
from tests.conftest import add_stock, count_stage, items_by_key

S = InventoryStatus


@pytest.fixture
def stocked(stock, site):
    """Two manual products in aisle 1, one in aisle 2."""
    add_stock(stock, site.screws, site.aisle_1, 10)
    add_stock(stock, site.bolts, site.aisle_1, 5)
    add_stock(stock, site.tools, site.aisle_2, 3)
    return stock


def _keys(site):
    return (site.screws, site.aisle_1), (site.bolts, site.aisle_1), (site.tools, site.aisle_2)


# =============================================================================
# Creation and snapshot
# =============================================================================


class TestCreateAndOpen:

    def test_create_starts_in_planning(self, service, actors, clock):
        inv = service.create_inventory("INV-1", actors.planner, description="Q1 count")
        assert inv.status == S.PLANNING
        assert inv.scope.location_ids is None
        assert inv.last_activity_at == clock.now()

    def test_duplicate_code_rejected(self, service, actors):
        service.create_inventory("INV-1", actors.planner)
        with pytest.raises(ValueError, match="already exists"):
            service.create_inventory("INV-1", actors.planner)

    def test_open_materializes_items(self, service, session, actors, stocked, site, clock):
        inv = service.create_inventory("INV-1", actors.planner)
        opened = service.open_inventory(inv.id, actors.planner)

        assert opened.status == S.OPEN
        assert opened.started_at == clock.now()
        items = items_by_key(session, inv.id)
        assert items[(site.screws, site.aisle_1)].expected_quantity == Decimal("10")
        assert items[(site.tools, site.aisle_2)].expected_quantity == Decimal("3")
        assert all(i.status == ItemStatus.PENDING for i in items.values())

    def test_scope_limits_items(self, service, session, actors, stocked, site):
        inv = service.create_inventory("INV-1", actors.planner, location_ids=[site.aisle_1])
        service.open_inventory(inv.id, actors.planner)
        items = items_by_key(session, inv.id)
        assert set(items) == {(site.screws, site.aisle_1), (site.bolts, site.aisle_1)}

    def test_snapshot_ignores_later_stock_changes(self, service, session, actors, stocked, site):
        inv = service.create_inventory("INV-1", actors.planner)
        service.open_inventory(inv.id, actors.planner)
        reads = stocked.reads

        add_stock(stocked, site.screws, site.aisle_1, 90)
        service.start_counting(inv.id, actors.planner)
        items = items_by_key(session, inv.id)
        assert items[(site.screws, site.aisle_1)].expected_quantity == Decimal("10")
        assert stocked.reads == reads


# =============================================================================
# Deterministic stage outcomes
# =============================================================================


class TestStageOutcomes:

    def test_agreement_finalizes_and_completes(self, start_inventory, run_stages, session, stocked, site):
        inv = start_inventory()
        screws, bolts, tools = _keys(site)
        quantities = {screws: 10, bolts: 4, tools: 3}

        result = run_stages(inv.id, quantities, quantities)

        assert result.status == S.COUNT2_COMPLETED
        items = items_by_key(session, inv.id)
        assert items[screws].final_quantity == Decimal("10")
        # Agreement wins over the expected quantity.
        assert items[bolts].final_quantity == Decimal("4")
        assert all(i.status == ItemStatus.COMPLETED for i in items.values())

    def test_divergence_sends_only_that_item_to_count3(
        self, service, start_inventory, run_stages, session, stocked, site,
    ):
        inv = start_inventory()
        screws, bolts, tools = _keys(site)
        result = run_stages(
            inv.id,
            {screws: 10, bolts: 5, tools: 3},
            {screws: 12, bolts: 5, tools: 3},
        )

        assert result.status == S.COUNT3_REQUIRED
        items = items_by_key(session, inv.id)
        assert items[screws].final_quantity is None
        assert items[bolts].final_quantity == Decimal("5")

        service.start_counting(inv.id, uuid4())
        sheet = service.get_count_sheet(inv.id, CountStage.COUNT3)
        assert [line.item_id for line in sheet] == [items[screws].id]

    def test_full_path_through_audit_to_close(
        self, service, start_inventory, run_stages, session, stocked, site, actors, committer, clock,
    ):
        inv = start_inventory()
        screws, bolts, tools = _keys(site)
        run_stages(inv.id, {screws: 10, bolts: 5, tools: 3}, {screws: 12, bolts: 5, tools: 3})
        service.start_counting(inv.id, actors.planner)
        count_stage(service, session, inv.id, CountStage.COUNT3, {screws: 11}, actors.counter_a)

        audit = service.close_stage(inv.id, actors.planner)
        assert audit.status == S.AUDIT_MODE

        with pytest.raises(StagePreconditionError) as exc:
            service.close_inventory(inv.id, actors.planner)
        screws_id = items_by_key(session, inv.id)[screws].id
        assert exc.value.unresolved_item_ids == (str(screws_id),)

        service.record_count(screws_id, CountStage.COUNT4, Decimal("11"), actors.supervisor)
        assert items_by_key(session, inv.id)[screws].final_quantity == Decimal("11")

        closed = service.close_inventory(inv.id, actors.planner)
        assert closed.status == S.CLOSED
        assert closed.stock_committed_at == clock.now()
        assert len(committer.calls) == 1
        committed_id, lines = committer.calls[0]
        assert committed_id == inv.id
        by_product = {line.product_id: line for line in lines}
        assert by_product[site.screws].final_quantity == Decimal("11")
        assert by_product[site.screws].adjustment == Decimal("1")

    def test_close_stage_with_missing_counts_changes_nothing(
        self, service, start_inventory, session, stocked, site, actors,
    ):
        inv = start_inventory()
        screws, bolts, _ = _keys(site)
        count_stage(service, session, inv.id, CountStage.COUNT1, {screws: 10, bolts: 5}, actors.counter_a)

        with pytest.raises(StagePreconditionError) as exc:
            service.close_stage(inv.id, actors.planner)
        assert len(exc.value.unresolved_item_ids) == 1
        assert service.get_count_sheet(inv.id, CountStage.COUNT1)

    def test_transitions_are_logged(self, start_inventory, captured_logs, stocked):
        start_inventory()
        transitions = [r for r in captured_logs() if r["message"] == "inventory_transition"]
        assert [(r["from_status"], r["to_status"]) for r in transitions] == [
            ("planning", "open"),
            ("open", "count1_open"),
        ]


# =============================================================================
# Count recording
# =============================================================================


class TestRecordCount:

    @pytest.fixture
    def screws_id(self, start_inventory, session, stocked, site):
        inv = start_inventory()
        return items_by_key(session, inv.id)[(site.screws, site.aisle_1)].id

    def test_receipt_is_blind(self, service, screws_id, actors, captured_logs):
        receipt = service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        names = {f.name for f in fields(CountReceipt)}
        assert "expected_quantity" not in names
        assert receipt.quantity == Decimal("10")
        assert any(r["message"] == "count_recorded" for r in captured_logs())

    def test_count_sheet_is_blind(self):
        names = {f.name for f in fields(CountSheetLine)}
        assert names.isdisjoint({"expected_quantity", "quantity", "count1", "count2"})

    def test_count_sheet_marks_counted(self, service, session, screws_id, actors):
        service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        inventory_id = session.get(InventoryItemModel, screws_id).inventory_id
        sheet = {line.item_id: line for line in service.get_count_sheet(inventory_id, 1)}
        assert sheet[screws_id].counted
        assert sum(1 for line in sheet.values() if not line.counted) == 2

    def test_count_sheet_for_closed_stage(self, service, session, screws_id):
        inventory_id = session.get(InventoryItemModel, screws_id).inventory_id
        with pytest.raises(StageClosedError):
            service.get_count_sheet(inventory_id, CountStage.COUNT2)

    def test_first_count_moves_item_to_counting(self, service, session, screws_id, actors):
        service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        assert session.get(InventoryItemModel, screws_id).status == ItemStatus.COUNTING.value

    def test_same_value_same_counter_is_noop(self, service, screws_id, actors, clock):
        first = service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        clock.advance(30)
        again = service.record_count(screws_id, CountStage.COUNT1, "10", actors.counter_a)
        assert again.unchanged
        assert again.recorded_at == first.recorded_at

    def test_different_value_requires_correction(self, service, session, screws_id, actors):
        service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        with pytest.raises(CountAlreadyRecordedError):
            service.record_count(screws_id, CountStage.COUNT1, 11, actors.counter_a)
        with pytest.raises(CountAlreadyRecordedError):
            service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_b)

        corrected = service.record_count(
            screws_id, CountStage.COUNT1, 11, actors.counter_b, correction=True,
        )
        assert corrected.corrected
        row = session.get(InventoryItemModel, screws_id)
        assert row.count1 == Decimal("11")
        assert row.count1_by == actors.counter_b

    def test_wrong_stage_rejected(self, service, screws_id, actors):
        with pytest.raises(StageClosedError) as exc:
            service.record_count(screws_id, CountStage.COUNT2, 10, actors.counter_a)
        assert exc.value.stage == 2

    def test_negative_quantity_rejected(self, service, session, screws_id, actors):
        with pytest.raises(InvalidQuantityError):
            service.record_count(screws_id, CountStage.COUNT1, -1, actors.counter_a)
        assert session.get(InventoryItemModel, screws_id).count1 is None

    @pytest.mark.parametrize("bad", ["NaN", "sNaN", "Infinity", "-Infinity", "abc", "", None])
    def test_non_finite_or_non_numeric_quantity_rejected(
        self, service, session, screws_id, actors, bad,
    ):
        with pytest.raises(InvalidQuantityError) as exc:
            service.record_count(screws_id, CountStage.COUNT1, bad, actors.counter_a)
        assert exc.value.item_id == str(screws_id)
        row = session.get(InventoryItemModel, screws_id)
        assert row.count1 is None
        assert row.status == ItemStatus.PENDING.value

    def test_correction_keeps_replaced_count(self, service, session, screws_id, actors, clock):
        first = service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        clock.advance(60)
        service.record_count(screws_id, CountStage.COUNT1, 12, actors.counter_b, correction=True)

        trail = session.execute(
            select(CountCorrectionModel).where(CountCorrectionModel.item_id == screws_id)
        ).scalars().all()
        assert len(trail) == 1
        entry = trail[0].to_dto()
        assert entry.stage == CountStage.COUNT1
        assert entry.previous_quantity == Decimal("10")
        assert entry.previous_counter_id == actors.counter_a
        assert entry.previous_recorded_at == first.recorded_at
        assert entry.new_quantity == Decimal("12")
        assert entry.new_counter_id == actors.counter_b
        assert entry.corrected_at == clock.now()

    def test_correction_log_names_replaced_value(self, service, screws_id, actors, captured_logs):
        service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        service.record_count(screws_id, CountStage.COUNT1, 12, actors.counter_b, correction=True)

        corrected = [r for r in captured_logs() if r["message"] == "count_corrected"]
        assert len(corrected) == 1
        assert Decimal(corrected[0]["previous_quantity"]) == Decimal("10")
        assert corrected[0]["previous_counter_id"] == str(actors.counter_a)
        assert Decimal(corrected[0]["quantity"]) == Decimal("12")
        assert corrected[0]["actor_id"] == str(actors.counter_b)

    def test_noop_and_first_count_leave_no_trail(self, service, session, screws_id, actors):
        service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        count = session.execute(select(func.count()).select_from(CountCorrectionModel)).scalar_one()
        assert count == 0

    def test_corrections_are_append_only(self, service, session, screws_id, actors):
        service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        service.record_count(screws_id, CountStage.COUNT1, 12, actors.counter_b, correction=True)
        entry = session.execute(select(CountCorrectionModel)).scalar_one()

        entry.previous_quantity = Decimal("12")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

        session.delete(session.execute(select(CountCorrectionModel)).scalar_one())
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_review_item_lists_corrections(self, service, screws_id, actors, clock):
        service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        clock.tick()
        service.record_count(screws_id, CountStage.COUNT1, 12, actors.counter_b, correction=True)
        clock.tick()
        service.record_count(screws_id, CountStage.COUNT1, 11, actors.counter_a, correction=True)

        review = service.review_item(screws_id, actors.supervisor)
        assert [(c.previous_quantity, c.new_quantity) for c in review.corrections] == [
            (Decimal("10"), Decimal("12")),
            (Decimal("12"), Decimal("11")),
        ]
        assert review.counts[0].quantity == Decimal("11")

    def test_count3_rejected_for_agreeing_item(
        self, service, start_inventory, run_stages, session, stocked, site, actors,
    ):
        inv = start_inventory()
        screws, bolts, tools = _keys(site)
        run_stages(inv.id, {screws: 10, bolts: 5, tools: 3}, {screws: 12, bolts: 5, tools: 3})
        service.start_counting(inv.id, actors.planner)
        bolts_id = items_by_key(session, inv.id)[bolts].id
        with pytest.raises(StageClosedError):
            service.record_count(bolts_id, CountStage.COUNT3, 5, actors.counter_a)

    def test_stale_row_surfaces_as_retryable_conflict(self, service, session, screws_id, actors):
        table = InventoryItemModel.__table__

        fired = []

        def _concurrent_writer(sess, flush_context, instances):
            if fired:
                return
            fired.append(True)
            sess.connection().execute(
                update(table)
                .where(table.c.id == screws_id)
                .values(version=table.c.version + 1)
            )

        event.listen(session, "before_flush", _concurrent_writer)
        try:
            with pytest.raises(ConcurrentModificationError) as exc:
                service.record_count(screws_id, CountStage.COUNT1, 10, actors.counter_a)
        finally:
            event.remove(session, "before_flush", _concurrent_writer)
        assert exc.value.retryable
        assert session.get(InventoryItemModel, screws_id).count1 is None


# =============================================================================
# Operation logging
# =============================================================================


class TestOperationLogging:

    def test_one_call_shares_one_correlation_id(
        self, start_inventory, run_stages, captured_logs, stocked, site,
    ):
        inv = start_inventory()
        quantities = dict.fromkeys(_keys(site), 1)
        run_stages(inv.id, quantities, quantities)

        closes = [r for r in captured_logs() if r.get("operation") == "close_count"]
        ids = list(dict.fromkeys(r["correlation_id"] for r in closes))
        assert len(ids) == 2
        stage2 = [r for r in closes if r["correlation_id"] == ids[1]]
        transitions = [r for r in stage2 if r["message"] == "inventory_transition"]
        assert [r["action"] for r in transitions] == ["close_count", "complete_count2"]
        assert any(r["message"] == "TALLY_ENGINE_TRACE" for r in stage2)
        assert all(r["inventory_id"] == str(inv.id) for r in stage2)

    def test_each_count_gets_its_own_correlation_id(
        self, service, start_inventory, session, captured_logs, stocked, site, actors,
    ):
        inv = start_inventory()
        quantities = dict.fromkeys(_keys(site), 1)
        count_stage(service, session, inv.id, CountStage.COUNT1, quantities, actors.counter_a)

        recorded = [r for r in captured_logs() if r["message"] == "count_recorded"]
        assert len(recorded) == 3
        assert len({r["correlation_id"] for r in recorded}) == 3
        assert {r["operation"] for r in recorded} == {"record_count"}

    def test_caller_correlation_id_is_kept(
        self, service, start_inventory, session, captured_logs, stocked, site, actors,
    ):
        inv = start_inventory()
        item_id = items_by_key(session, inv.id)[(site.screws, site.aisle_1)].id

        with LogContext.bind(correlation_id="req-42"):
            service.record_count(item_id, CountStage.COUNT1, 10, actors.counter_a)

        recorded = [r for r in captured_logs() if r["message"] == "count_recorded"]
        assert recorded[0]["correlation_id"] == "req-42"
        assert recorded[0]["stage"] == "count1"
        assert LogContext.get_all() == {}


# =============================================================================
# Audit roles
# =============================================================================


class TestAuditRoles:

    @pytest.fixture
    def in_audit(self, service, start_inventory, run_stages, stocked, site, actors):
        inv = start_inventory()
        quantities = dict.fromkeys(_keys(site), 1)
        run_stages(inv.id, quantities, quantities)
        service.begin_audit(inv.id, actors.planner)
        return inv

    def test_count4_requires_elevated_role(self, service, session, in_audit, site, actors):
        item_id = items_by_key(session, in_audit.id)[(site.screws, site.aisle_1)].id
        with pytest.raises(InsufficientRoleError):
            service.record_count(item_id, CountStage.COUNT4, 9, actors.counter_a)

    def test_count4_open_to_counters_when_configured(
        self, make_service, session, in_audit, site, actors,
    ):
        lenient = make_service(config=CountingConfig(require_supervisor_for_audit=False))
        item_id = items_by_key(session, in_audit.id)[(site.screws, site.aisle_1)].id
        lenient.record_count(item_id, CountStage.COUNT4, 9, actors.counter_a)
        assert items_by_key(session, in_audit.id)[(site.screws, site.aisle_1)].final_quantity == Decimal("9")

    def test_review_item_shows_every_stage(self, service, session, in_audit, site, actors):
        item_id = items_by_key(session, in_audit.id)[(site.screws, site.aisle_1)].id
        review = service.review_item(item_id, actors.supervisor)
        assert review.expected_quantity == Decimal("10")
        assert [c.stage for c in review.counts] == list(CountStage)
        assert review.counts[0].quantity == Decimal("1")
        assert review.counts[0].counted_by == actors.counter_a
        assert review.counts[1].counted_by == actors.counter_b
        assert review.counts[2].quantity is None

    def test_review_item_denied_to_counters(self, service, session, in_audit, site, actors):
        item_id = items_by_key(session, in_audit.id)[(site.screws, site.aisle_1)].id
        with pytest.raises(InsufficientRoleError):
            service.review_item(item_id, actors.counter_a)


# =============================================================================
# Cancellation and migration
# =============================================================================


class TestCancelAndMigrate:

    def test_cancel_is_terminal(self, service, start_inventory, session, stocked, site, actors, committer):
        inv = start_inventory()
        cancelled = service.cancel_inventory(inv.id, actors.planner, reason="wrong scope")
        assert cancelled.status == S.CANCELLED
        assert cancelled.ended_at is not None
        assert committer.calls == []

        item_id = items_by_key(session, inv.id)[(site.screws, site.aisle_1)].id
        with pytest.raises(InventoryClosedError):
            service.record_count(item_id, CountStage.COUNT1, 1, actors.counter_a)
        with pytest.raises(InventoryClosedError):
            service.cancel_inventory(inv.id, actors.planner)

    def test_cancel_from_planning(self, service, actors):
        inv = service.create_inventory("INV-C", actors.planner)
        assert service.cancel_inventory(inv.id, actors.planner).status == S.CANCELLED

    @pytest.fixture
    def closed(self, service, start_inventory, run_stages, stocked, site, actors):
        inv = start_inventory()
        quantities = dict.fromkeys(_keys(site), 2)
        run_stages(inv.id, quantities, quantities)
        service.begin_audit(inv.id, actors.planner)
        return service.close_inventory(inv.id, actors.planner)

    def test_closed_rejects_counts(self, service, session, closed, site, actors):
        item_id = items_by_key(session, closed.id)[(site.screws, site.aisle_1)].id
        with pytest.raises(InventoryClosedError):
            service.record_count(item_id, CountStage.COUNT4, 1, actors.supervisor)

    def test_migrate_once(self, service, closed, actors, erp, clock):
        migrated = service.migrate_to_erp(closed.id, actors.supervisor)
        assert migrated.migrated_at == clock.now()
        assert len(erp.calls) == 1

        with pytest.raises(AlreadyMigratedError):
            service.migrate_to_erp(closed.id, actors.supervisor)
        assert len(erp.calls) == 1

    def test_migrate_requires_closed(self, service, start_inventory, stocked, actors):
        inv = start_inventory()
        with pytest.raises(InvalidStageTransitionError):
            service.migrate_to_erp(inv.id, actors.supervisor)

    def test_migrate_without_exporter(self, make_service, closed, actors):
        with pytest.raises(RuntimeError):
            make_service(erp_exporter=None).migrate_to_erp(closed.id, actors.supervisor)

    def test_committer_failure_rolls_back_close(
        self, make_service, service, start_inventory, run_stages, stocked, site, actors, session, committer,
    ):
        class _LosingCommitter:
            def commit(self, inventory_id, lines):
                raise StaleDataError("stock row changed underneath")

        inv = start_inventory()
        quantities = dict.fromkeys(_keys(site), 2)
        run_stages(inv.id, quantities, quantities)
        service.begin_audit(inv.id, actors.planner)

        with pytest.raises(ConcurrentModificationError):
            make_service(stock_committer=_LosingCommitter()).close_inventory(inv.id, actors.planner)
        session.expire_all()
        assert load_snapshot(session, inv.id).inventory.status == S.AUDIT_MODE
        assert committer.calls == []
