"""
Counting Module (``tally_modules.counting``).

Responsibility
--------------
Thin glue for physical inventory counting: campaign creation, stock
snapshot materialization, blind manual counts per stage, serial reads,
audit review, stock commit and ERP migration.  Stage rules, reconciliation
and final-quantity resolution are delegated to ``tally_engines``.

Architecture
------------
Layer: **Modules** -- declarative workflow, config schema, DTOs, ORM and a
thin orchestration service.  It imports from ``tally_engines`` and
``tally_kernel`` but never the reverse, and never from ``tally_services``.

Invariants
----------
- Each service method owns its transaction boundary (commit / rollback).
- Inventory status moves only along ``COUNTING_WORKFLOW``.
- Counts are blind: no counter-facing result exposes expected quantities
  or other stages' counts.

Failure Modes
-------------
- Typed ``TallyError`` subclasses from ``tally_kernel.exceptions``.
- Any exception triggers a session rollback before re-raising.
"""

from tally_modules.counting.config import CountingConfig
from tally_modules.counting.models import (
    CountCorrection,
    CountReceipt,
    CountSheetLine,
    ItemReview,
    SerialDiscrepancyRecord,
    SerialDiscrepancySummary,
    SerialReadResult,
    StageCount,
    StockCommitLine,
    StockPosition,
)
from tally_modules.counting.ports import (
    AssetRegistry,
    ErpExporter,
    InMemoryAssetRegistry,
    InMemoryStockSnapshot,
    RecordingStockCommitter,
    RoleProvider,
    StaticRoleProvider,
    StockCommitter,
    StockSnapshotProvider,
)
from tally_modules.counting.service import InventoryCountService, load_snapshot
from tally_modules.counting.workflows import COUNTING_WORKFLOW

__all__ = [
    "AssetRegistry",
    "COUNTING_WORKFLOW",
    "CountCorrection",
    "CountReceipt",
    "CountSheetLine",
    "CountingConfig",
    "ErpExporter",
    "InMemoryAssetRegistry",
    "InMemoryStockSnapshot",
    "InventoryCountService",
    "ItemReview",
    "RecordingStockCommitter",
    "RoleProvider",
    "SerialDiscrepancyRecord",
    "SerialDiscrepancySummary",
    "SerialReadResult",
    "StageCount",
    "StaticRoleProvider",
    "StockCommitLine",
    "StockCommitter",
    "StockPosition",
    "StockSnapshotProvider",
    "load_snapshot",
]
