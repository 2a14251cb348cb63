"""
tally_engines.stage_machine -- Pure inventory stage state machine.

Responsibility:
    Answer every stage question from the declared counting ``Workflow``:
    which count stage is open for a status, which items a stage requires,
    whether a transition's guard holds, and -- for an action -- the full
    list of transitions to apply, automatic follow-ups included.

Architecture position:
    Engines -- pure calculation, zero I/O.  The workflow table is injected
    (declared in ``tally_modules.counting.workflows``); the service applies
    the returned ``TransitionPlan`` inside its transaction.

Invariants enforced:
    - Status moves only along declared transitions; an action with no
      transition from the current status is rejected.
    - Closed and cancelled inventories accept no action.
    - count2_closed branches automatically to count2_completed or
      count3_required; count3_closed moves automatically to audit_mode.
    - Only items with count1 != count2 (and no final quantity) enter
      stage 3.  Serial-controlled items never require manual stages 1-3.

Failure modes:
    - InventoryClosedError: inventory is terminal.
    - InvalidStageTransitionError: action not legal from current status.
    - StagePreconditionError: guard unmet; carries the blocking item ids.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from uuid import UUID

from tally_kernel.domain.workflow import Transition, Workflow
from tally_kernel.exceptions import (
    InvalidStageTransitionError,
    InventoryClosedError,
    StagePreconditionError,
)
from tally_kernel.logging_config import get_logger
from tally_engines.resolver import DiscrepancyResolver
from tally_engines.serial_reconciliation import SerialReconciliationEngine
from tally_engines.tracer import traced_engine
from tally_engines.types import (
    CountStage,
    InventoryItem,
    InventorySnapshot,
    InventoryStatus,
    ItemResolution,
)

logger = get_logger("engines.stage_machine")

# Guard names shared with the workflow declaration.
GUARD_STAGE_COUNTS_COMPLETE = "stage_counts_complete"
GUARD_ALL_ITEMS_RESOLVED = "all_items_resolved"
GUARD_COUNT_DIVERGENCE = "count_divergence_present"
GUARD_ALL_ITEMS_FINALIZED = "all_items_finalized"

_OPEN_STAGE: dict[InventoryStatus, CountStage] = {
    InventoryStatus.COUNT1_OPEN: CountStage.COUNT1,
    InventoryStatus.COUNT2_OPEN: CountStage.COUNT2,
    InventoryStatus.COUNT3_OPEN: CountStage.COUNT3,
    InventoryStatus.AUDIT_MODE: CountStage.COUNT4,
}

# Automatic chains are bounded by the table; this only guards a misdeclared cycle.
_MAX_AUTOMATIC_STEPS = 8


@dataclass(frozen=True)
class TransitionPlan:
    """Transitions to apply for one action, plus item resolutions they produce."""

    inventory_id: UUID
    action: str
    steps: tuple[Transition, ...]
    resolutions: tuple[ItemResolution, ...] = ()

    @property
    def from_status(self) -> InventoryStatus:
        return InventoryStatus(self.steps[0].from_state)

    @property
    def to_status(self) -> InventoryStatus:
        return InventoryStatus(self.steps[-1].to_state)

    @property
    def commits_stock(self) -> bool:
        return any(t.commits_stock for t in self.steps)


class StageMachine:
    """Stateless evaluator over an injected counting workflow.

    Usage:
        machine = StageMachine(COUNTING_WORKFLOW)
        plan = machine.plan(snapshot=snapshot, action="close_count")
        for step in plan.steps:
            ...
    """

    def __init__(
        self,
        workflow: Workflow,
        resolver: DiscrepancyResolver | None = None,
        serial_engine: SerialReconciliationEngine | None = None,
    ) -> None:
        self._workflow = workflow
        self._resolver = resolver or DiscrepancyResolver()
        self._serials = serial_engine or SerialReconciliationEngine()
        self._guards: dict[str, Callable[[InventorySnapshot, InventoryStatus], tuple[UUID, ...]]] = {
            GUARD_STAGE_COUNTS_COMPLETE: self._missing_stage_counts,
            GUARD_ALL_ITEMS_RESOLVED: self._unresolved_items,
            GUARD_COUNT_DIVERGENCE: self._unresolved_without_divergence,
            GUARD_ALL_ITEMS_FINALIZED: self._unresolved_items,
        }
        for t in workflow.transitions:
            if t.guard is not None and t.guard.name not in self._guards:
                raise ValueError(f"Workflow guard '{t.guard.name}' has no evaluator")

    # -------------------------------------------------------------------------
    # Stage questions
    # -------------------------------------------------------------------------

    @staticmethod
    def open_stage(status: InventoryStatus) -> CountStage | None:
        """The count stage accepting input in ``status``, or None."""
        return _OPEN_STAGE.get(InventoryStatus(status))

    @staticmethod
    def requires_stage(item: InventoryItem, stage: CountStage) -> bool:
        """Whether ``item`` takes a manual count in ``stage``."""
        if stage in (CountStage.COUNT1, CountStage.COUNT2):
            return not item.serial_controlled
        if stage == CountStage.COUNT3:
            return (
                not item.serial_controlled
                and item.has_count_divergence
                and not item.is_resolved
            )
        return True

    @classmethod
    def accepts_stage(cls, item: InventoryItem, stage: CountStage) -> bool:
        """Whether a manual count for ``stage`` may be recorded on ``item``.

        Serial-controlled items may carry optional manual counts in stages
        1 and 2; those are only compared against serial evidence.
        """
        if stage in (CountStage.COUNT1, CountStage.COUNT2):
            return True
        return cls.requires_stage(item, stage)

    def items_for_stage(
        self,
        snapshot: InventorySnapshot,
        stage: CountStage,
    ) -> tuple[InventoryItem, ...]:
        return tuple(i for i in snapshot.items if self.requires_stage(i, stage))

    def can(self, status: InventoryStatus, action: str) -> bool:
        return bool(self._workflow.find(InventoryStatus(status).value, action))

    def available_actions(self, status: InventoryStatus) -> tuple[str, ...]:
        seen: list[str] = []
        for t in self._workflow.transitions_from(InventoryStatus(status).value):
            if not t.automatic and t.action not in seen:
                seen.append(t.action)
        return tuple(seen)

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    @traced_engine("stage_machine", "1.0", fingerprint_fields=("action",))
    def plan(
        self,
        *,
        snapshot: InventorySnapshot,
        action: str,
    ) -> TransitionPlan:
        """Plan ``action`` from the snapshot's current status.

        Raises:
            InventoryClosedError, InvalidStageTransitionError, StagePreconditionError
        """
        inventory = snapshot.inventory
        status = InventoryStatus(inventory.status)
        if status.is_terminal:
            raise InventoryClosedError(str(inventory.id), status.value)

        candidates = [t for t in self._workflow.find(status.value, action) if not t.automatic]
        if not candidates:
            raise InvalidStageTransitionError(str(inventory.id), status.value, action)

        resolutions: dict[UUID, ItemResolution] = {}
        if any(t.commits_stock for t in candidates):
            for res in self._serial_refresh(snapshot):
                resolutions[res.item_id] = res
            snapshot = _apply(snapshot, resolutions.values())

        first = self._select(snapshot, status, action, candidates)
        steps: list[Transition] = [first]
        current = InventoryStatus(first.to_state)

        for _ in range(_MAX_AUTOMATIC_STEPS):
            automatic = [
                t for t in self._workflow.transitions_from(current.value) if t.automatic
            ]
            if not automatic:
                break
            if current == InventoryStatus.COUNT2_CLOSED:
                for res in self._resolve_count2(snapshot):
                    resolutions[res.item_id] = res
                snapshot = _apply(snapshot, resolutions.values())
            nxt = self._select(snapshot, current, automatic[0].action, automatic)
            steps.append(nxt)
            current = InventoryStatus(nxt.to_state)

        plan = TransitionPlan(
            inventory_id=inventory.id,
            action=action,
            steps=tuple(steps),
            resolutions=tuple(sorted(resolutions.values(), key=lambda r: str(r.item_id))),
        )
        logger.info(
            "stage_transition_planned",
            extra={
                "inventory_id": str(inventory.id),
                "action": action,
                "from_status": plan.from_status.value,
                "to_status": plan.to_status.value,
                "steps": [t.action for t in plan.steps],
            },
        )
        return plan

    def unresolved_for(
        self,
        snapshot: InventorySnapshot,
        status: InventoryStatus,
        guard_name: str,
    ) -> tuple[UUID, ...]:
        """Item ids blocking ``guard_name`` (empty when the guard holds)."""
        return self._guards[guard_name](snapshot, InventoryStatus(status))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _select(
        self,
        snapshot: InventorySnapshot,
        status: InventoryStatus,
        action: str,
        candidates: list[Transition],
    ) -> Transition:
        """First candidate whose guard holds; the last failure is raised."""
        for candidate in candidates[:-1]:
            if not self._blocking(snapshot, status, candidate):
                return candidate
        last = candidates[-1]
        self._check(snapshot, status, action, last)
        return last

    def _check(
        self,
        snapshot: InventorySnapshot,
        status: InventoryStatus,
        action: str,
        transition: Transition,
    ) -> None:
        blocking = self._blocking(snapshot, status, transition)
        if blocking:
            raise StagePreconditionError(
                str(snapshot.inventory.id),
                action,
                transition.guard.description,
                tuple(str(i) for i in blocking),
            )

    def _blocking(
        self,
        snapshot: InventorySnapshot,
        status: InventoryStatus,
        transition: Transition,
    ) -> tuple[UUID, ...]:
        if transition.guard is None:
            return ()
        return self._guards[transition.guard.name](snapshot, status)

    def _missing_stage_counts(
        self,
        snapshot: InventorySnapshot,
        status: InventoryStatus,
    ) -> tuple[UUID, ...]:
        stage = self.open_stage(status)
        if stage is None:
            return ()
        return tuple(
            i.id for i in self.items_for_stage(snapshot, stage)
            if i.count_for(stage) is None
        )

    @staticmethod
    def _unresolved_items(
        snapshot: InventorySnapshot,
        status: InventoryStatus,
    ) -> tuple[UUID, ...]:
        return tuple(i.id for i in snapshot.items if not i.is_resolved)

    @staticmethod
    def _unresolved_without_divergence(
        snapshot: InventorySnapshot,
        status: InventoryStatus,
    ) -> tuple[UUID, ...]:
        # Stage 3 can only settle items whose first two counts disagree.
        return tuple(
            i.id for i in snapshot.items
            if not i.is_resolved and not i.has_count_divergence
        )

    def _resolve_count2(self, snapshot: InventorySnapshot) -> list[ItemResolution]:
        out = []
        for item in snapshot.items:
            tally = self._serials.tally(snapshot=snapshot, item=item) if item.serial_controlled else None
            out.append(self._resolver.resolve_after_count2(item=item, tally=tally))
        return out

    def _serial_refresh(self, snapshot: InventorySnapshot) -> list[ItemResolution]:
        return [
            self._resolver.refresh_serial(
                item=item, tally=self._serials.tally(snapshot=snapshot, item=item),
            )
            for item in snapshot.items
            if item.serial_controlled
        ]


def _apply(
    snapshot: InventorySnapshot,
    resolutions: Iterable[ItemResolution],
) -> InventorySnapshot:
    """Snapshot with resolved final quantities applied."""
    by_id: Mapping[UUID, ItemResolution] = {r.item_id: r for r in resolutions}
    items = tuple(
        replace(i, final_quantity=by_id[i.id].final_quantity)
        if i.id in by_id and by_id[i.id].final_quantity is not None
        else i
        for i in snapshot.items
    )
    return replace(snapshot, items=items)
