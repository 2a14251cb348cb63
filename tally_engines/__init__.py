"""
Module: tally_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    counting engines.  This is the canonical import surface for higher
    layers (tally_modules, tally_services).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import tally_kernel (exceptions, logging, workflow types) and
    sibling engine modules.  MUST NOT import tally_modules or tally_services.

Invariants enforced:
    - Purity: engines never read a clock.  Report timestamps come from the
      snapshot, stage timestamps from the calling service.
    - Decimal-only quantities.
    - Determinism: identical snapshots produce identical outputs.

Audit relevance:
    Engine invocations are traced via ``@traced_engine`` (see
    ``tally_engines.tracer``), emitting TALLY_ENGINE_TRACE log records.

Usage:
    from tally_engines import StageMachine, DiscrepancyResolver
    from tally_engines.serial_reconciliation import SerialReconciliationEngine
    from tally_engines.reporting import ReportBuilder
"""

from tally_kernel.logging_config import get_logger

logger = get_logger("engines")

from tally_engines.reporting import ReportBuilder
from tally_engines.resolver import DiscrepancyResolver
from tally_engines.serial_reconciliation import (
    SerialReadAction,
    SerialReadDecision,
    SerialReconciliationEngine,
)
from tally_engines.stage_machine import (
    GUARD_ALL_ITEMS_FINALIZED,
    GUARD_ALL_ITEMS_RESOLVED,
    GUARD_COUNT_DIVERGENCE,
    GUARD_STAGE_COUNTS_COMPLETE,
    StageMachine,
    TransitionPlan,
)
from tally_engines.types import (
    CountStage,
    Discrepancy,
    DiscrepancyType,
    Inventory,
    InventoryItem,
    InventoryScope,
    InventorySerialItem,
    InventorySnapshot,
    InventoryStatus,
    ItemResolution,
    ItemStatus,
    ProductDetail,
    ReconciliationReport,
    ReconciliationSummary,
    RegisteredAsset,
    SerialDiscrepancyFinding,
    SerialDiscrepancyKind,
    SerialDiscrepancyStatus,
    SerialStatus,
    SerialTally,
    Severity,
    ValidationReport,
)

__all__ = [
    # Stage machine
    "StageMachine",
    "TransitionPlan",
    "GUARD_STAGE_COUNTS_COMPLETE",
    "GUARD_ALL_ITEMS_RESOLVED",
    "GUARD_COUNT_DIVERGENCE",
    "GUARD_ALL_ITEMS_FINALIZED",
    # Serial reconciliation
    "SerialReconciliationEngine",
    "SerialReadAction",
    "SerialReadDecision",
    # Resolver
    "DiscrepancyResolver",
    # Reporting
    "ReportBuilder",
    # Types
    "CountStage",
    "Discrepancy",
    "DiscrepancyType",
    "Inventory",
    "InventoryItem",
    "InventoryScope",
    "InventorySerialItem",
    "InventorySnapshot",
    "InventoryStatus",
    "ItemResolution",
    "ItemStatus",
    "ProductDetail",
    "ReconciliationReport",
    "ReconciliationSummary",
    "RegisteredAsset",
    "SerialDiscrepancyFinding",
    "SerialDiscrepancyKind",
    "SerialDiscrepancyStatus",
    "SerialStatus",
    "SerialTally",
    "Severity",
    "ValidationReport",
]
