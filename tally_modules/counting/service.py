"""
Counting Module Service (``tally_modules.counting.service``).

Responsibility
--------------
Orchestrates physical inventory counts by composing the pure engines
(``StageMachine``, ``SerialReconciliationEngine``, ``DiscrepancyResolver``)
with SQLAlchemy persistence and the external collaborators (stock
snapshot, asset registry, stock committer, ERP exporter, role provider).
This is a **thin glue layer** -- counting policy lives in the engines.

Architecture
------------
Layer: **Modules** -- stateful orchestration wrapper.

1. Lock the inventory row (``SELECT ... FOR UPDATE``) and load the
   explicit ``InventorySnapshot``.
2. Ask the engine what to do (transition plan, read decision, resolution).
3. Apply the outcome to ORM rows, stamp ``last_activity_at`` and commit.

Invariants
----------
- Each public method owns its transaction boundary: commit on success,
  rollback and re-raise on failure.  A rejected operation leaves no
  partial state.
- Every mutation locks the inventory row first, so a stage close is atomic
  with respect to in-flight counts.
- StaleDataError / IntegrityError from a lost race surface as the
  retryable ``ConcurrentModificationError``.
- Blind counting: ``record_count`` and ``get_count_sheet`` never return
  expected quantities or another stage's values.

Failure Modes
-------------
- ``InventoryClosedError``, ``StageClosedError``, ``StagePreconditionError``,
  ``InvalidStageTransitionError`` -- caller errors, rejected before mutation.
- ``UnknownSerialError``, ``OutOfScopeReadError`` -- serial data errors.
- ``AlreadyMigratedError`` -- irreversibility guard.
- Collaborator exceptions propagate after rollback.

Usage::

    service = InventoryCountService(
        session,
        stock_snapshot=snapshot_provider,
        asset_registry=registry,
        stock_committer=committer,
        clock=clock,
    )
    inv = service.create_inventory("INV-2024-01", actor_id)
    service.open_inventory(inv.id, actor_id)
    service.start_counting(inv.id, actor_id)
    service.record_count(item_id, CountStage.COUNT1, Decimal("10"), counter_id)
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tally_kernel.domain.clock import Clock, SystemClock
from tally_kernel.domain.workflow import Workflow
from tally_kernel.exceptions import (
    AlreadyMigratedError,
    ConcurrentModificationError,
    InsufficientRoleError,
    InvalidQuantityError,
    InvalidStageTransitionError,
    InventoryClosedError,
    InventoryItemNotFoundError,
    InventoryNotFoundError,
    CountAlreadyRecordedError,
    StageClosedError,
)
from tally_kernel.logging_config import LogContext, get_logger
from tally_engines.resolver import DiscrepancyResolver
from tally_engines.serial_reconciliation import (
    SerialReadAction,
    SerialReconciliationEngine,
)
from tally_engines.stage_machine import StageMachine, TransitionPlan
from tally_engines.types import (
    CountStage,
    Inventory,
    InventoryScope,
    InventorySnapshot,
    InventoryStatus,
    ItemStatus,
    SerialDiscrepancyStatus,
    SerialStatus,
)
from tally_modules.counting.config import CountingConfig
from tally_modules.counting.models import (
    CountReceipt,
    CountSheetLine,
    ItemReview,
    SerialReadResult,
    StageCount,
    StockCommitLine,
)
from tally_modules.counting.orm import (
    CountCorrectionModel,
    InventoryItemModel,
    InventoryModel,
    InventorySerialItemModel,
    SerialDiscrepancyModel,
)
from tally_modules.counting.ports import (
    AssetRegistry,
    ErpExporter,
    RoleProvider,
    StockCommitter,
    StockSnapshotProvider,
)
from tally_modules.counting.workflows import COUNTING_WORKFLOW

logger = get_logger("modules.counting.service")


# =============================================================================
# Snapshot loading (shared with the read-only report services)
# =============================================================================


def get_inventory_row(
    session: Session,
    inventory_id: UUID,
    for_update: bool = False,
) -> InventoryModel:
    """Get ORM InventoryModel by id, optionally with a row lock.

    Raises:
        InventoryNotFoundError: no such inventory.
    """
    stmt = select(InventoryModel).where(InventoryModel.id == inventory_id)
    if for_update:
        stmt = stmt.with_for_update()
    inv = session.execute(stmt).scalar_one_or_none()
    if inv is None:
        raise InventoryNotFoundError(str(inventory_id))
    return inv


def item_rows(session: Session, inventory_id: UUID) -> list[InventoryItemModel]:
    return list(session.execute(
        select(InventoryItemModel)
        .where(InventoryItemModel.inventory_id == inventory_id)
        .order_by(InventoryItemModel.product_id, InventoryItemModel.location_id)
    ).scalars())


def serial_rows(session: Session, inventory_id: UUID) -> list[InventorySerialItemModel]:
    return list(session.execute(
        select(InventorySerialItemModel)
        .where(InventorySerialItemModel.inventory_id == inventory_id)
        .order_by(InventorySerialItemModel.serial_number)
    ).scalars())


def load_snapshot(session: Session, inventory_id: UUID) -> InventorySnapshot:
    """Read the full aggregate for one inventory as frozen DTOs."""
    inv = get_inventory_row(session, inventory_id)
    return InventorySnapshot(
        inventory=inv.to_dto(),
        items=tuple(i.to_dto() for i in item_rows(session, inventory_id)),
        serial_items=tuple(s.to_dto() for s in serial_rows(session, inventory_id)),
    )


def _parse_quantity(item_id: UUID, raw: Decimal | int | str) -> Decimal:
    """Counted quantity as a finite, non-negative Decimal."""
    try:
        quantity = raw if isinstance(raw, Decimal) else Decimal(str(raw))
    except InvalidOperation:
        raise InvalidQuantityError(str(item_id), str(raw)) from None
    if not quantity.is_finite() or quantity < 0:
        raise InvalidQuantityError(str(item_id), str(raw))
    return quantity


class InventoryCountService:
    """
    Orchestrates counting operations through engines and persistence.

    Contract
    --------
    Every public method accepts domain-typed parameters, delegates the
    decision to an engine and persists the outcome.  On success the session
    is committed; on failure it is rolled back.

    Guarantees
    ----------
    - Stage legality comes from the counting workflow table only.
    - Snapshot at open: expected quantities and serial rows are read from
      the collaborators once and never re-derived.
    - Stock commit happens exactly once, on close.

    Non-goals
    ---------
    - No counting policy here (count agreement, serial precedence,
      severity) -- those live in ``tally_engines``.
    - No report building -- see ``tally_services.report_service``.
    """

    def __init__(
        self,
        session: Session,
        *,
        stock_snapshot: StockSnapshotProvider,
        asset_registry: AssetRegistry,
        stock_committer: StockCommitter,
        erp_exporter: ErpExporter | None = None,
        role_provider: RoleProvider | None = None,
        config: CountingConfig | None = None,
        clock: Clock | None = None,
        workflow: Workflow = COUNTING_WORKFLOW,
    ):
        self._session = session
        self._stock = stock_snapshot
        self._assets = asset_registry
        self._committer = stock_committer
        self._erp = erp_exporter
        self._roles = role_provider
        self._config = config or CountingConfig.with_defaults()
        self._clock = clock or SystemClock()

        # Stateless engines
        self._resolver = DiscrepancyResolver(
            low_max=self._config.severity_low_max,
            medium_max=self._config.severity_medium_max,
        )
        self._serials = SerialReconciliationEngine()
        self._machine = StageMachine(workflow, self._resolver, self._serials)

    # =========================================================================
    # Inventory lifecycle
    # =========================================================================

    def create_inventory(
        self,
        code: str,
        actor_id: UUID,
        *,
        location_ids: Iterable[UUID] | None = None,
        category_ids: Iterable[UUID] | None = None,
        description: str | None = None,
        predicted_end_at: datetime | None = None,
        inventory_id: UUID | None = None,
    ) -> Inventory:
        """
        Create an inventory in ``planning``.

        ``location_ids`` / ``category_ids`` of None select "all".

        Raises:
            ValueError: an inventory with ``code`` already exists.
        """
        duplicate = self._session.execute(
            select(InventoryModel.id).where(InventoryModel.code == code)
        ).scalar_one_or_none()
        if duplicate is not None:
            raise ValueError(f"Inventory code '{code}' already exists")

        now = self._clock.now()
        scope = InventoryScope(
            location_ids=frozenset(location_ids) if location_ids is not None else None,
            category_ids=frozenset(category_ids) if category_ids is not None else None,
        )
        dto = Inventory(
            id=inventory_id or uuid4(),
            code=code,
            status=InventoryStatus.PLANNING,
            scope=scope,
            created_by=actor_id,
            predicted_end_at=predicted_end_at,
            last_activity_at=now,
            description=description,
        )
        with LogContext.operation("create_inventory", inventory_id=dto.id, actor_id=actor_id):
            with self._unit_of_work("inventory", dto.id):
                self._session.add(InventoryModel.from_dto(dto, created_by_id=actor_id))
                self._session.flush()
            logger.info(
                "inventory_created",
                extra={
                    "code": code,
                    "location_scope": "all" if scope.location_ids is None else len(scope.location_ids),
                    "category_scope": "all" if scope.category_ids is None else len(scope.category_ids),
                },
            )
        return dto

    def open_inventory(self, inventory_id: UUID, actor_id: UUID) -> Inventory:
        """
        planning -> open.  Materializes items and serial rows from the
        stock snapshot and the asset registry.
        """
        return self._transition(inventory_id, "open", actor_id, self._materialize)

    def start_counting(self, inventory_id: UUID, actor_id: UUID) -> Inventory:
        """Open the next count stage (stage 1, 2 or 3)."""
        return self._transition(inventory_id, "start_count", actor_id)

    def close_stage(self, inventory_id: UUID, actor_id: UUID) -> Inventory:
        """
        Close the open count stage.

        Closing stage 2 resolves every item and branches to
        ``count2_completed`` or ``count3_required``; closing stage 3 moves
        straight to ``audit_mode``.

        Raises:
            StagePreconditionError: items still lack the stage's count.
        """
        return self._transition(inventory_id, "close_count", actor_id)

    def begin_audit(self, inventory_id: UUID, actor_id: UUID) -> Inventory:
        """count2_completed -> audit_mode."""
        return self._transition(inventory_id, "enter_audit", actor_id)

    def close_inventory(self, inventory_id: UUID, actor_id: UUID) -> Inventory:
        """
        audit_mode -> closed.

        Never-scanned serial rows become MISSING and the stock committer is
        invoked exactly once with the final quantities.

        Raises:
            StagePreconditionError: an item has no final quantity.
        """
        return self._transition(inventory_id, "close", actor_id, self._finalize)

    def cancel_inventory(
        self,
        inventory_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> Inventory:
        """Cancel from any non-terminal status.  No stock effect."""

        def _record_reason(inv: InventoryModel, plan: TransitionPlan) -> None:
            inv.cancel_reason = reason
            inv.ended_at = self._clock.now()

        return self._transition(inventory_id, "cancel", actor_id, _record_reason)

    def migrate_to_erp(self, inventory_id: UUID, actor_id: UUID) -> Inventory:
        """
        One-shot export of a closed inventory to the ERP.

        Raises:
            AlreadyMigratedError: the inventory was already migrated.
            InvalidStageTransitionError: the inventory is not closed.
        """
        if self._erp is None:
            raise RuntimeError("No ERP exporter configured for this service")

        with LogContext.operation("migrate_to_erp", inventory_id=inventory_id, actor_id=actor_id):
            with self._unit_of_work("inventory", inventory_id):
                inv = get_inventory_row(self._session, inventory_id, for_update=True)
                if inv.migrated_at is not None:
                    raise AlreadyMigratedError(
                        str(inventory_id), "erp", inv.to_dto().migrated_at.isoformat(),
                    )
                if inv.status != InventoryStatus.CLOSED.value:
                    raise InvalidStageTransitionError(
                        str(inventory_id), inv.status, "migrate_to_erp",
                    )

                lines = self._commit_lines(item_rows(self._session, inventory_id))
                self._erp.export(inventory_id, lines)

                now = self._clock.now()
                inv.migrated_at = now
                inv.last_activity_at = now
                records = self._session.execute(
                    select(SerialDiscrepancyModel)
                    .where(SerialDiscrepancyModel.inventory_id == inventory_id)
                ).scalars()
                migrated = 0
                for record in records:
                    record.status = SerialDiscrepancyStatus.MIGRATED_TO_ERP.value
                    migrated += 1
                self._session.flush()
                dto = inv.to_dto()

            logger.info(
                "inventory_migrated_to_erp",
                extra={"line_count": len(lines), "discrepancies_migrated": migrated},
            )
        return dto

    # =========================================================================
    # Count recording
    # =========================================================================

    def record_count(
        self,
        item_id: UUID,
        stage: CountStage | int,
        quantity: Decimal | int | str,
        counter_id: UUID,
        *,
        correction: bool = False,
    ) -> CountReceipt:
        """
        Record one manual count for ``stage``.

        Preconditions:
            - The inventory is not closed or cancelled.
            - ``stage`` is the open stage and applies to this item.
            - ``quantity`` is a finite number >= 0.
            - count4 requires an elevated role (when configured).

        Postconditions:
            - First write sets the count, counter and timestamp; the item
              moves PENDING -> COUNTING.
            - The same value from the same counter is a no-op
              (``CountReceipt.unchanged``).
            - A correction appends a ``CountCorrectionModel`` row holding
              the replaced value and counter.
            - count4 resolves the final quantity synchronously.

        Raises:
            InvalidQuantityError: negative, infinite or not a number.
            CountAlreadyRecordedError: a different value or counter without
                ``correction=True``.
        """
        stage = CountStage(stage)

        with LogContext.operation(
            "record_count", item_id=item_id, actor_id=counter_id, stage=stage.label,
        ):
            with self._unit_of_work("inventory_item", item_id):
                inv, item = self._lock_item(item_id)
                self._ensure_mutable(inv)
                quantity = _parse_quantity(item_id, quantity)

                item_dto = item.to_dto()
                status = InventoryStatus(inv.status)
                if self._machine.open_stage(status) != stage or not self._machine.accepts_stage(item_dto, stage):
                    raise StageClosedError(str(inv.id), int(stage), status.value, str(item_id))
                if stage == CountStage.COUNT4 and self._config.require_supervisor_for_audit:
                    self._require_elevated(counter_id, "record_count4")

                existing, existing_by, existing_at = item.stage_values(int(stage))
                if existing is not None:
                    if existing == quantity and existing_by == counter_id:
                        logger.info("count_unchanged")
                        return CountReceipt(
                            item_id=item.id,
                            stage=stage,
                            quantity=quantity,
                            counter_id=counter_id,
                            recorded_at=existing_at,
                            unchanged=True,
                        )
                    if not correction:
                        raise CountAlreadyRecordedError(
                            str(item_id), int(stage), str(existing_by),
                        )

                now = self._clock.now()
                if existing is not None:
                    self._session.add(CountCorrectionModel(
                        inventory_id=inv.id,
                        item_id=item.id,
                        stage=int(stage),
                        previous_quantity=existing,
                        previous_counter_id=existing_by,
                        previous_recorded_at=existing_at,
                        new_quantity=quantity,
                        corrected_at=now,
                        created_by_id=counter_id,
                    ))
                item.set_stage(int(stage), quantity, counter_id, now)
                if item.status == ItemStatus.PENDING.value:
                    item.status = ItemStatus.COUNTING.value

                if stage == CountStage.COUNT4:
                    snapshot = self._snapshot(inv)
                    tally = None
                    if item_dto.serial_controlled:
                        tally = self._serials.tally(snapshot=snapshot, item=item_dto)
                    resolution = self._resolver.resolve_audit_count(
                        item=item.to_dto(), count4=quantity, tally=tally,
                    )
                    item.final_quantity = resolution.final_quantity
                    item.status = ItemStatus.COMPLETED.value
                    logger.info(
                        "item_finalized",
                        extra={"source": resolution.source},
                    )

                inv.last_activity_at = now
                self._session.flush()

            with LogContext.bind(inventory_id=inv.id):
                if existing is None:
                    logger.info("count_recorded")
                else:
                    logger.info(
                        "count_corrected",
                        extra={
                            "previous_quantity": existing,
                            "previous_counter_id": existing_by,
                            "quantity": quantity,
                        },
                    )
        return CountReceipt(
            item_id=item_id,
            stage=stage,
            quantity=quantity,
            counter_id=counter_id,
            recorded_at=now,
            corrected=existing is not None,
        )

    def get_count_sheet(
        self,
        inventory_id: UUID,
        stage: CountStage | int,
    ) -> tuple[CountSheetLine, ...]:
        """
        Blind count sheet for the open stage: which items to count, and
        whether each already has a count.  No expected quantities, no values.

        Raises:
            StageClosedError: ``stage`` is not the open stage.
        """
        stage = CountStage(stage)
        snapshot = load_snapshot(self._session, inventory_id)
        status = InventoryStatus(snapshot.inventory.status)
        if self._machine.open_stage(status) != stage:
            raise StageClosedError(str(inventory_id), int(stage), status.value)
        return tuple(
            CountSheetLine(
                item_id=i.id,
                product_id=i.product_id,
                location_id=i.location_id,
                stage=stage,
                counted=i.count_for(stage) is not None,
            )
            for i in self._machine.items_for_stage(snapshot, stage)
        )

    def review_item(self, item_id: UUID, actor_id: UUID) -> ItemReview:
        """
        Elevated read path: every stage count with counter and timestamp,
        the expected quantity, serial evidence, discrepancies and the
        correction trail.

        Raises:
            InsufficientRoleError: actor lacks an elevated role.
        """
        with LogContext.operation("review_item", item_id=item_id, actor_id=actor_id):
            self._require_elevated(actor_id, "review_item")
            item = self._session.get(InventoryItemModel, item_id)
            if item is None:
                raise InventoryItemNotFoundError(str(item_id))
            snapshot = load_snapshot(self._session, item.inventory_id)
            dto = item.to_dto()
            tally = self._serials.tally(snapshot=snapshot, item=dto) if dto.serial_controlled else None
            counts = []
            for stage in CountStage:
                quantity, counted_by, counted_at = item.stage_values(int(stage))
                counts.append(StageCount(stage, quantity, counted_by, counted_at))
            corrections = self._session.execute(
                select(CountCorrectionModel)
                .where(CountCorrectionModel.item_id == item_id)
                .order_by(CountCorrectionModel.corrected_at, CountCorrectionModel.stage)
            ).scalars()

            logger.info("item_reviewed", extra={"inventory_id": str(item.inventory_id)})
            return ItemReview(
                item_id=dto.id,
                product_id=dto.product_id,
                location_id=dto.location_id,
                expected_quantity=dto.expected_quantity,
                counts=tuple(counts),
                final_quantity=dto.final_quantity,
                status=dto.status,
                serial_tally=tally,
                discrepancies=self._resolver.item_discrepancies(item=dto, tally=tally),
                corrections=tuple(c.to_dto() for c in corrections),
            )

    # =========================================================================
    # Serial reads
    # =========================================================================

    def register_serial_reading(
        self,
        inventory_id: UUID,
        serial_number: str,
        stage: CountStage | int,
        counter_id: UUID,
        found_location_id: UUID | None = None,
    ) -> SerialReadResult:
        """
        Register one scanned serial for ``stage``.

        ``found_location_id`` defaults to the serial's expected location.
        Re-reading a serial in the same stage is an idempotent success.

        Raises:
            UnknownSerialError: not in the snapshot nor in the registry.
            OutOfScopeReadError: found location outside the inventory scope.
            StageClosedError: ``stage`` is not the open stage.
        """
        stage = CountStage(stage)

        with LogContext.operation(
            "register_serial_reading",
            inventory_id=inventory_id,
            actor_id=counter_id,
            stage=stage.label,
            serial_number=serial_number,
        ):
            with self._unit_of_work("inventory_serial_item", inventory_id):
                inv = get_inventory_row(self._session, inventory_id, for_update=True)
                self._ensure_mutable(inv)
                status = InventoryStatus(inv.status)
                if self._machine.open_stage(status) != stage:
                    raise StageClosedError(str(inventory_id), int(stage), status.value)
                if stage == CountStage.COUNT4 and self._config.require_supervisor_for_audit:
                    self._require_elevated(counter_id, "register_serial_count4")

                row = self._session.execute(
                    select(InventorySerialItemModel)
                    .where(
                        InventorySerialItemModel.inventory_id == inventory_id,
                        InventorySerialItemModel.serial_number == serial_number,
                    )
                    .with_for_update()
                ).scalar_one_or_none()
                registered = self._assets.lookup_serial(serial_number) if row is None else None

                decision = self._serials.decide_read(
                    inventory=inv.to_dto(),
                    serial_number=serial_number,
                    stage=stage,
                    existing=row.to_dto() if row is not None else None,
                    registered=registered,
                    found_location_id=found_location_id,
                )

                if decision.action == SerialReadAction.DUPLICATE:
                    logger.info("serial_read_duplicate")
                    return SerialReadResult(
                        serial_item_id=row.id,
                        serial_number=serial_number,
                        stage=stage,
                        status=SerialStatus(row.status),
                        found_location_id=decision.found_location_id,
                        duplicate=True,
                    )

                now = self._clock.now()
                created = decision.action == SerialReadAction.CREATE_EXTRA
                if created:
                    row = InventorySerialItemModel(
                        inventory_id=inventory_id,
                        serial_number=serial_number,
                        product_id=decision.product_id,
                        location_id=decision.expected_location_id,
                        expected=False,
                        created_by_id=counter_id,
                    )
                    self._session.add(row)
                row.mark_read(int(stage), counter_id, now)
                row.status = decision.status.value
                row.found_location_id = decision.found_location_id
                row.final_status = True

                if decision.status == SerialStatus.EXTRA:
                    self._ensure_item_at(
                        inv, decision.product_id, decision.found_location_id,
                        registered.category_id if registered else None, counter_id,
                    )
                inv.last_activity_at = now
                self._session.flush()
                self._refresh_serial_finals(inv, decision.product_id)
                self._session.flush()

            logger.info(
                "serial_read_registered",
                extra={
                    "serial_status": decision.status.value,
                    "serial_created": created,
                    "location_mismatch": decision.location_mismatch,
                },
            )
        return SerialReadResult(
            serial_item_id=row.id,
            serial_number=serial_number,
            stage=stage,
            status=decision.status,
            found_location_id=decision.found_location_id,
            created=created,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    @contextmanager
    def _unit_of_work(self, entity_type: str, entity_id: UUID) -> Iterator[None]:
        """Commit on success; rollback and re-raise on failure."""
        try:
            yield
            self._session.commit()
        except (StaleDataError, IntegrityError) as exc:
            self._session.rollback()
            logger.warning(
                "concurrent_modification_detected",
                extra={"entity_type": entity_type, "entity_id": str(entity_id)},
            )
            raise ConcurrentModificationError(entity_type, str(entity_id)) from exc
        except Exception:
            self._session.rollback()
            raise

    def _transition(
        self,
        inventory_id: UUID,
        action: str,
        actor_id: UUID,
        apply: Callable[[InventoryModel, TransitionPlan], None] | None = None,
    ) -> Inventory:
        with LogContext.operation(action, inventory_id=inventory_id, actor_id=actor_id):
            with self._unit_of_work("inventory", inventory_id):
                inv = get_inventory_row(self._session, inventory_id, for_update=True)
                plan = self._machine.plan(snapshot=self._snapshot(inv), action=action)

                items = {i.id: i for i in item_rows(self._session, inventory_id)}
                for resolution in plan.resolutions:
                    if resolution.final_quantity is None:
                        continue
                    item = items[resolution.item_id]
                    item.final_quantity = resolution.final_quantity
                    item.status = ItemStatus.COMPLETED.value

                inv.status = plan.to_status.value
                inv.last_activity_at = self._clock.now()
                if apply is not None:
                    apply(inv, plan)
                self._session.flush()
                dto = inv.to_dto()

            for step in plan.steps:
                logger.info(
                    "inventory_transition",
                    extra={
                        "action": step.action,
                        "from_status": step.from_state,
                        "to_status": step.to_state,
                        "automatic": step.automatic,
                    },
                )
        return dto

    def _materialize(self, inv: InventoryModel, plan: TransitionPlan) -> None:
        """Snapshot stock and serialized assets into items and serial rows."""
        scope = inv.to_dto().scope
        seen: set[tuple[UUID, UUID]] = set()
        serial_count = 0
        for position in self._stock.list_positions(scope):
            key = (position.product_id, position.location_id)
            if key in seen:
                continue
            seen.add(key)
            self._session.add(InventoryItemModel(
                inventory_id=inv.id,
                product_id=position.product_id,
                location_id=position.location_id,
                category_id=position.category_id,
                serial_controlled=position.serial_controlled,
                expected_quantity=self._stock.get_stock_level(
                    position.product_id, position.location_id,
                ),
                status=ItemStatus.PENDING.value,
                created_by_id=inv.created_by_id,
            ))
            if not position.serial_controlled:
                continue
            for asset in self._assets.list_assets(position.product_id, position.location_id):
                self._session.add(InventorySerialItemModel(
                    inventory_id=inv.id,
                    serial_number=asset.serial_number,
                    product_id=asset.product_id,
                    location_id=asset.location_id,
                    expected=True,
                    status=SerialStatus.PENDING.value,
                    created_by_id=inv.created_by_id,
                ))
                serial_count += 1

        inv.started_at = self._clock.now()
        logger.info(
            "inventory_snapshot_materialized",
            extra={"item_count": len(seen), "serial_count": serial_count},
        )

    def _finalize(self, inv: InventoryModel, plan: TransitionPlan) -> None:
        """Resolve unscanned serials and commit final quantities to stock."""
        rows = serial_rows(self._session, inv.id)
        unscanned = set(self._serials.unscanned(tuple(r.to_dto() for r in rows)))
        for row in rows:
            if row.id in unscanned:
                row.status = SerialStatus.MISSING.value
                row.final_status = False

        lines = self._commit_lines(item_rows(self._session, inv.id))
        self._committer.commit(inv.id, lines)

        now = self._clock.now()
        inv.ended_at = now
        inv.stock_committed_at = now
        logger.info(
            "inventory_stock_committed",
            extra={"line_count": len(lines), "serials_missing": len(unscanned)},
        )

    def _commit_lines(self, items: list[InventoryItemModel]) -> tuple[StockCommitLine, ...]:
        return tuple(
            StockCommitLine(
                product_id=i.product_id,
                location_id=i.location_id,
                final_quantity=i.final_quantity,
                expected_quantity=i.expected_quantity,
            )
            for i in items
        )

    def _ensure_item_at(
        self,
        inv: InventoryModel,
        product_id: UUID,
        location_id: UUID,
        category_id: UUID | None,
        actor_id: UUID,
    ) -> None:
        """Materialize an expected-0 item so an EXTRA read has an item to count toward."""
        if not self._config.allow_extra_item_creation:
            return
        existing = self._session.execute(
            select(InventoryItemModel).where(
                InventoryItemModel.inventory_id == inv.id,
                InventoryItemModel.product_id == product_id,
                InventoryItemModel.location_id == location_id,
            )
        ).scalar_one_or_none()
        if existing is not None:
            return
        self._session.add(InventoryItemModel(
            inventory_id=inv.id,
            product_id=product_id,
            location_id=location_id,
            category_id=category_id,
            serial_controlled=True,
            expected_quantity=Decimal("0"),
            status=ItemStatus.COUNTING.value,
            created_by_id=actor_id,
        ))
        logger.info(
            "extra_item_materialized",
            extra={"product_id": str(product_id), "location_id": str(location_id)},
        )

    def _refresh_serial_finals(self, inv: InventoryModel, product_id: UUID) -> None:
        """Recompute already-resolved serial items of ``product_id`` after a read."""
        rows = [
            i for i in item_rows(self._session, inv.id)
            if i.product_id == product_id and i.serial_controlled and i.final_quantity is not None
        ]
        if not rows:
            return
        snapshot = self._snapshot(inv)
        for row in rows:
            dto = row.to_dto()
            resolution = self._resolver.refresh_serial(
                item=dto, tally=self._serials.tally(snapshot=snapshot, item=dto),
            )
            if resolution.final_quantity != row.final_quantity:
                row.final_quantity = resolution.final_quantity

    def _snapshot(self, inv: InventoryModel) -> InventorySnapshot:
        return InventorySnapshot(
            inventory=inv.to_dto(),
            items=tuple(i.to_dto() for i in item_rows(self._session, inv.id)),
            serial_items=tuple(s.to_dto() for s in serial_rows(self._session, inv.id)),
        )

    def _lock_item(self, item_id: UUID) -> tuple[InventoryModel, InventoryItemModel]:
        """Lock the parent inventory, then the item (same order as transitions)."""
        inventory_id = self._session.execute(
            select(InventoryItemModel.inventory_id).where(InventoryItemModel.id == item_id)
        ).scalar_one_or_none()
        if inventory_id is None:
            raise InventoryItemNotFoundError(str(item_id))
        inv = get_inventory_row(self._session, inventory_id, for_update=True)
        item = self._session.execute(
            select(InventoryItemModel)
            .where(InventoryItemModel.id == item_id)
            .with_for_update()
        ).scalar_one()
        return inv, item

    @staticmethod
    def _ensure_mutable(inv: InventoryModel) -> None:
        if InventoryStatus(inv.status).is_terminal:
            raise InventoryClosedError(str(inv.id), inv.status)

    def _require_elevated(self, actor_id: UUID, operation: str) -> None:
        roles = self._roles.get_actor_roles(actor_id) if self._roles is not None else ()
        if not set(roles) & set(self._config.elevated_roles):
            logger.warning(
                "elevated_role_required",
                extra={"operation": operation, "actor_id": str(actor_id)},
            )
            raise InsufficientRoleError(
                str(actor_id), operation, tuple(self._config.elevated_roles),
            )
