"""
Canonical workflow types (``tally_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for state machines.  The inventory stage machine is
declared once as a ``Workflow`` and every legality question (may this
action fire from this status? what are the terminal states?) is answered
from the declared table, never from string comparisons in callers.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Contract: frozen, descriptive only.
    Non-goals: does not evaluate the condition -- the stage engine does.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow.

    ``automatic=True`` marks transitions the machine takes on its own right
    after the preceding one (no caller action).  ``commits_stock=True``
    marks the transition that hands final quantities to the stock
    collaborator.
    """
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    automatic: bool = False
    commits_stock: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    ``terminal_states`` are states with no outgoing transitions.
    """
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"initial_state '{self.initial_state}' is not a state of {self.name}"
            )
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"Transition {t.from_state}->{t.to_state} references an unknown state"
                )
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Terminal state '{t.from_state}' cannot have outgoing transitions"
                )

    def transitions_from(self, state: str) -> tuple[Transition, ...]:
        """All transitions leaving ``state``."""
        return tuple(t for t in self.transitions if t.from_state == state)

    def find(self, state: str, action: str) -> tuple[Transition, ...]:
        """Transitions leaving ``state`` for ``action`` (several when guarded branches exist)."""
        return tuple(
            t for t in self.transitions
            if t.from_state == state and t.action == action
        )

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states
