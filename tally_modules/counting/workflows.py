"""
Counting Workflows.

The inventory stage state machine, declared once as a transition table.
Legality questions are answered by ``tally_engines.StageMachine`` from
this table; callers never compare status strings.
"""

from tally_kernel.domain.workflow import Guard, Transition, Workflow
from tally_kernel.logging_config import get_logger
from tally_engines.stage_machine import (
    GUARD_ALL_ITEMS_FINALIZED,
    GUARD_ALL_ITEMS_RESOLVED,
    GUARD_COUNT_DIVERGENCE,
    GUARD_STAGE_COUNTS_COMPLETE,
)
from tally_engines.types import InventoryStatus as S

logger = get_logger("modules.counting.workflows")


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

STAGE_COUNTS_COMPLETE = Guard(
    name=GUARD_STAGE_COUNTS_COMPLETE,
    description="every item requiring the open stage has a count",
)

ALL_ITEMS_RESOLVED = Guard(
    name=GUARD_ALL_ITEMS_RESOLVED,
    description="every item has a final quantity after stage 2",
)

COUNT_DIVERGENCE_PRESENT = Guard(
    name=GUARD_COUNT_DIVERGENCE,
    description="unresolved items all have count1 different from count2",
)

ALL_ITEMS_FINALIZED = Guard(
    name=GUARD_ALL_ITEMS_FINALIZED,
    description="every item has a final quantity",
)

logger.info(
    "counting_workflow_guards_defined",
    extra={
        "guards": [
            STAGE_COUNTS_COMPLETE.name,
            ALL_ITEMS_RESOLVED.name,
            COUNT_DIVERGENCE_PRESENT.name,
            ALL_ITEMS_FINALIZED.name,
        ],
    },
)


# -----------------------------------------------------------------------------
# Counting Workflow
# -----------------------------------------------------------------------------

_TERMINAL = (S.CLOSED.value, S.CANCELLED.value)

_STAGE_TRANSITIONS = (
    Transition(S.PLANNING.value, S.OPEN.value, action="open"),
    Transition(S.OPEN.value, S.COUNT1_OPEN.value, action="start_count"),
    Transition(S.COUNT1_OPEN.value, S.COUNT1_CLOSED.value, action="close_count", guard=STAGE_COUNTS_COMPLETE),
    Transition(S.COUNT1_CLOSED.value, S.COUNT2_OPEN.value, action="start_count"),
    Transition(S.COUNT2_OPEN.value, S.COUNT2_CLOSED.value, action="close_count", guard=STAGE_COUNTS_COMPLETE),
    # Branch evaluated in order: completion first, stage 3 otherwise.
    Transition(S.COUNT2_CLOSED.value, S.COUNT2_COMPLETED.value, action="complete_count2", guard=ALL_ITEMS_RESOLVED, automatic=True),
    Transition(S.COUNT2_CLOSED.value, S.COUNT3_REQUIRED.value, action="require_count3", guard=COUNT_DIVERGENCE_PRESENT, automatic=True),
    Transition(S.COUNT3_REQUIRED.value, S.COUNT3_OPEN.value, action="start_count"),
    Transition(S.COUNT3_OPEN.value, S.COUNT3_CLOSED.value, action="close_count", guard=STAGE_COUNTS_COMPLETE),
    Transition(S.COUNT3_CLOSED.value, S.AUDIT_MODE.value, action="enter_audit", automatic=True),
    Transition(S.COUNT2_COMPLETED.value, S.AUDIT_MODE.value, action="enter_audit"),
    Transition(S.AUDIT_MODE.value, S.CLOSED.value, action="close", guard=ALL_ITEMS_FINALIZED, commits_stock=True),
)

_CANCEL_TRANSITIONS = tuple(
    Transition(status.value, S.CANCELLED.value, action="cancel")
    for status in S
    if status.value not in _TERMINAL
)

COUNTING_WORKFLOW = Workflow(
    name="inventory_count",
    description="Physical inventory counting stages",
    initial_state=S.PLANNING.value,
    states=tuple(status.value for status in S),
    transitions=_STAGE_TRANSITIONS + _CANCEL_TRANSITIONS,
    terminal_states=_TERMINAL,
)

logger.info(
    "counting_workflow_registered",
    extra={
        "workflow_name": COUNTING_WORKFLOW.name,
        "state_count": len(COUNTING_WORKFLOW.states),
        "transition_count": len(COUNTING_WORKFLOW.transitions),
        "initial_state": COUNTING_WORKFLOW.initial_state,
    },
)
