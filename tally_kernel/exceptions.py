"""
Typed Exception Hierarchy for the Tally counting core.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Counting campaigns are driven by many handheld devices and a control desk.
Callers must react to failures precisely: a closed stage means "wait for
the next stage", a concurrent modification means "retry", an unknown serial
means "fix the asset registry".  Parsing message strings for that is fragile.

Every error therefore has:
  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA as instance attributes (not just a message string)

Example - WRONG way to handle errors:
    try:
        service.record_count(item_id, stage, qty, counter_id)
    except Exception as e:
        if "closed" in str(e):  # FRAGILE - message might change
            ...

Example - RIGHT way (what this module enables):
    try:
        service.record_count(item_id, stage, qty, counter_id)
    except StageClosedError as e:
        api_response(code=e.code, stage=e.stage, status=e.inventory_status)
    except ConcurrentModificationError:
        retry()

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from TallyError:

    TallyError (base)
    |
    +-- InventoryNotFoundError
    +-- DiscrepancyNotFoundError
    |
    +-- StageError
    |   +-- StagePreconditionError
    |   +-- StageClosedError
    |   +-- InvalidStageTransitionError
    |   +-- InventoryClosedError
    |
    +-- CountError
    |   +-- InventoryItemNotFoundError
    |   +-- CountAlreadyRecordedError
    |   +-- InvalidQuantityError
    |   +-- ImmutabilityViolationError
    |
    +-- SerialError
    |   +-- UnknownSerialError
    |   +-- OutOfScopeReadError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentModificationError
    |
    +-- MigrationError
    |   +-- AlreadyMigratedError
    |
    +-- AuthorizationError
        +-- InsufficientRoleError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Lookup          | INVENTORY_NOT_FOUND         | Inventory ID doesn't exist
                | DISCREPANCY_NOT_FOUND       | Discrepancy record ID doesn't exist
----------------|-----------------------------|-----------------------------------------
Stage           | STAGE_PRECONDITION_FAILED   | Transition guard unmet (lists items)
                | STAGE_CLOSED                | Count outside the item's open stage
                | INVALID_STAGE_TRANSITION    | Action not legal from current status
                | INVENTORY_CLOSED            | Mutation of closed/cancelled inventory
----------------|-----------------------------|-----------------------------------------
Count           | INVENTORY_ITEM_NOT_FOUND    | Item ID doesn't exist
                | COUNT_ALREADY_RECORDED      | Overwrite without explicit correction
                | INVALID_QUANTITY            | Negative, non-finite or non-numeric count
                | IMMUTABILITY_VIOLATION      | Update / delete of a count correction
----------------|-----------------------------|-----------------------------------------
Serial          | UNKNOWN_SERIAL              | Serial not in snapshot nor registry
                | OUT_OF_SCOPE_READ           | Read at a location outside scope
----------------|-----------------------------|-----------------------------------------
Concurrency     | CONCURRENT_MODIFICATION     | Row changed by another transaction
----------------|-----------------------------|-----------------------------------------
Migration       | ALREADY_MIGRATED            | Stock commit / ERP export repeated
----------------|-----------------------------|-----------------------------------------
Authorization   | INSUFFICIENT_ROLE           | Audit count / review without role

===============================================================================
HANDLING PATTERNS
===============================================================================

1. PRECONDITION VIOLATIONS are caller errors, rejected before any mutation:

    except StagePreconditionError as e:
        show_pending(e.unresolved_item_ids)

2. CONCURRENCY ERRORS are retryable (``retryable`` class attribute):

    except TallyError as e:
        if e.retryable:
            schedule_retry()

3. UNKNOWN SERIALS are NOT "missing" assets -- they need registry correction.

4. IRREVERSIBILITY GUARDS (AlreadyMigratedError, InventoryClosedError) are
   rejected outright and never silently ignored.

===============================================================================
"""


class TallyError(Exception):
    """
    Base exception for all counting core errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "TALLY_ERROR"
    retryable: bool = False


class InventoryNotFoundError(TallyError):
    """Inventory with given ID was not found."""

    code: str = "INVENTORY_NOT_FOUND"

    def __init__(self, inventory_id: str):
        self.inventory_id = inventory_id
        super().__init__(f"Inventory not found: {inventory_id}")


class DiscrepancyNotFoundError(TallyError):
    """Serial discrepancy record with given ID was not found."""

    code: str = "DISCREPANCY_NOT_FOUND"

    def __init__(self, discrepancy_id: str):
        self.discrepancy_id = discrepancy_id
        super().__init__(f"Serial discrepancy not found: {discrepancy_id}")


# Stage-related exceptions


class StageError(TallyError):
    """Base exception for stage state machine errors."""

    code: str = "STAGE_ERROR"


class StagePreconditionError(StageError):
    """
    A transition guard is not satisfied.

    Carries the ids of the items that block the transition so callers can
    direct counters to them.
    """

    code: str = "STAGE_PRECONDITION_FAILED"

    def __init__(
        self,
        inventory_id: str,
        action: str,
        reason: str,
        unresolved_item_ids: tuple[str, ...] = (),
    ):
        self.inventory_id = inventory_id
        self.action = action
        self.reason = reason
        self.unresolved_item_ids = tuple(unresolved_item_ids)
        suffix = ""
        if self.unresolved_item_ids:
            shown = ", ".join(self.unresolved_item_ids[:10])
            more = len(self.unresolved_item_ids) - 10
            suffix = f" (unresolved items: {shown}{f' and {more} more' if more > 0 else ''})"
        super().__init__(
            f"Cannot {action} inventory {inventory_id}: {reason}{suffix}"
        )


class StageClosedError(StageError):
    """A count or serial read was submitted for a stage that is not open for the item."""

    code: str = "STAGE_CLOSED"

    def __init__(
        self,
        inventory_id: str,
        stage: int,
        inventory_status: str,
        item_id: str | None = None,
    ):
        self.inventory_id = inventory_id
        self.stage = stage
        self.inventory_status = inventory_status
        self.item_id = item_id
        target = f"item {item_id}" if item_id else f"inventory {inventory_id}"
        super().__init__(
            f"Stage count{stage} is not open for {target} "
            f"(inventory status: {inventory_status})"
        )


class InvalidStageTransitionError(StageError):
    """The requested action has no transition from the current status."""

    code: str = "INVALID_STAGE_TRANSITION"

    def __init__(self, inventory_id: str, from_status: str, action: str):
        self.inventory_id = inventory_id
        self.from_status = from_status
        self.action = action
        super().__init__(
            f"Action '{action}' is not permitted for inventory {inventory_id} "
            f"in status '{from_status}'"
        )


class InventoryClosedError(StageError):
    """
    The inventory is closed or cancelled.

    Closed and cancelled inventories are immutable; in-flight count and
    serial submissions against them fail with this error.
    """

    code: str = "INVENTORY_CLOSED"

    def __init__(self, inventory_id: str, status: str):
        self.inventory_id = inventory_id
        self.status = status
        super().__init__(
            f"Inventory {inventory_id} is {status} and can no longer be modified"
        )


# Count-related exceptions


class CountError(TallyError):
    """Base exception for count recording errors."""

    code: str = "COUNT_ERROR"


class InventoryItemNotFoundError(CountError):
    """Inventory item with given ID was not found."""

    code: str = "INVENTORY_ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Inventory item not found: {item_id}")


class CountAlreadyRecordedError(CountError):
    """
    A count for this stage already exists and the write is not a correction.

    Blind counting forbids silently replacing another counter's value.
    """

    code: str = "COUNT_ALREADY_RECORDED"

    def __init__(
        self,
        item_id: str,
        stage: int,
        recorded_by: str | None,
    ):
        self.item_id = item_id
        self.stage = stage
        self.recorded_by = recorded_by
        super().__init__(
            f"count{stage} for item {item_id} was already recorded"
            f"{f' by {recorded_by}' if recorded_by else ''}; "
            "submit an explicit correction to change it"
        )


class InvalidQuantityError(CountError):
    """Count quantity is negative, infinite or not a number."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, item_id: str, quantity: str):
        self.item_id = item_id
        self.quantity = quantity
        super().__init__(
            f"Invalid count quantity {quantity!r} for item {item_id}: "
            "must be a finite number >= 0"
        )


class ImmutabilityViolationError(CountError):
    """Attempted to modify or delete an append-only count correction record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Serial-related exceptions


class SerialError(TallyError):
    """Base exception for serial reconciliation errors."""

    code: str = "SERIAL_ERROR"


class UnknownSerialError(SerialError):
    """
    Serial number is neither in the inventory snapshot nor the asset registry.

    This is NOT a missing asset.  The registry must be corrected before the
    read can be registered; no row is created.
    """

    code: str = "UNKNOWN_SERIAL"

    def __init__(self, inventory_id: str, serial_number: str):
        self.inventory_id = inventory_id
        self.serial_number = serial_number
        super().__init__(
            f"Serial {serial_number} is unknown to inventory {inventory_id} "
            "and to the asset registry"
        )


class OutOfScopeReadError(SerialError):
    """Serial was read at a location outside the inventory's selected scope."""

    code: str = "OUT_OF_SCOPE_READ"

    def __init__(self, inventory_id: str, serial_number: str, location_id: str):
        self.inventory_id = inventory_id
        self.serial_number = serial_number
        self.location_id = location_id
        super().__init__(
            f"Serial {serial_number} read at location {location_id}, "
            f"which is outside the scope of inventory {inventory_id}"
        )


# Concurrency-related exceptions


class ConcurrencyError(TallyError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    retryable: bool = True


class ConcurrentModificationError(ConcurrencyError):
    """Row was modified by another transaction; the operation may be retried."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}: "
            "entity was modified by another transaction, retry the operation"
        )


# Migration-related exceptions


class MigrationError(TallyError):
    """Base exception for stock commit / ERP migration errors."""

    code: str = "MIGRATION_ERROR"


class AlreadyMigratedError(MigrationError):
    """Final quantities were already applied; re-invocation is rejected."""

    code: str = "ALREADY_MIGRATED"

    def __init__(self, inventory_id: str, target: str, applied_at: str):
        self.inventory_id = inventory_id
        self.target = target
        self.applied_at = applied_at
        super().__init__(
            f"Inventory {inventory_id} was already applied to {target} at {applied_at}"
        )


# Authorization-related exceptions


class AuthorizationError(TallyError):
    """Base exception for role checks."""

    code: str = "AUTHORIZATION_ERROR"


class InsufficientRoleError(AuthorizationError):
    """Actor lacks the role required for an elevated operation."""

    code: str = "INSUFFICIENT_ROLE"

    def __init__(self, actor_id: str, operation: str, required_roles: tuple[str, ...]):
        self.actor_id = actor_id
        self.operation = operation
        self.required_roles = tuple(required_roles)
        super().__init__(
            f"Actor {actor_id} may not {operation}; "
            f"requires one of: {', '.join(self.required_roles)}"
        )
