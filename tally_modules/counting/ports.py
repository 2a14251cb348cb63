"""
Counting collaborator ports (``tally_modules.counting.ports``).

Responsibility
--------------
Structural protocols for the collaborators the counting core consumes:
stock snapshot, asset registry, stock commit, ERP export and actor roles.
In-memory implementations ship alongside for tests and embedding.

Architecture
------------
Layer: **Modules**.  The service depends on these protocols only; real
adapters (WMS, asset database, ERP client, directory service) live in
the calling application.  Collaborators own their timeout / retry policy.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from typing import Protocol, runtime_checkable
from uuid import UUID

from tally_kernel.logging_config import get_logger
from tally_engines.types import InventoryScope, RegisteredAsset
from tally_modules.counting.models import StockCommitLine, StockPosition

logger = get_logger("modules.counting.ports")


@runtime_checkable
class StockSnapshotProvider(Protocol):
    """Current system stock.  Read once, at ``open``."""

    def list_positions(self, scope: InventoryScope) -> Iterable[StockPosition]:
        ...

    def get_stock_level(self, product_id: UUID, location_id: UUID) -> Decimal:
        ...


@runtime_checkable
class AssetRegistry(Protocol):
    """Live registry of serialized assets."""

    def lookup_serial(self, serial_number: str) -> RegisteredAsset | None:
        ...

    def list_assets(self, product_id: UUID, location_id: UUID) -> Iterable[RegisteredAsset]:
        ...


@runtime_checkable
class StockCommitter(Protocol):
    """Applies final quantities to live stock.  Invoked once, on close."""

    def commit(self, inventory_id: UUID, lines: tuple[StockCommitLine, ...]) -> None:
        ...


@runtime_checkable
class ErpExporter(Protocol):
    """One-shot export of a closed inventory to the ERP."""

    def export(self, inventory_id: UUID, lines: tuple[StockCommitLine, ...]) -> None:
        ...


@runtime_checkable
class RoleProvider(Protocol):
    def get_actor_roles(self, actor_id: UUID) -> tuple[str, ...]:
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryStockSnapshot:
    """StockSnapshotProvider over a list of positions."""

    def __init__(self, positions: Iterable[StockPosition] = ()) -> None:
        self._positions: list[StockPosition] = list(positions)
        self.reads: int = 0

    def add(self, position: StockPosition) -> None:
        self._positions.append(position)

    def list_positions(self, scope: InventoryScope) -> Iterable[StockPosition]:
        self.reads += 1
        return [
            p for p in self._positions
            if scope.includes_location(p.location_id)
            and scope.includes_category(p.category_id)
        ]

    def get_stock_level(self, product_id: UUID, location_id: UUID) -> Decimal:
        self.reads += 1
        return sum(
            (p.quantity for p in self._positions
             if p.product_id == product_id and p.location_id == location_id),
            Decimal("0"),
        )


class InMemoryAssetRegistry:
    """AssetRegistry backed by a dict keyed by serial number."""

    def __init__(self, assets: Iterable[RegisteredAsset] = ()) -> None:
        self._assets: dict[str, RegisteredAsset] = {a.serial_number: a for a in assets}

    def register(self, asset: RegisteredAsset) -> None:
        self._assets[asset.serial_number] = asset

    def lookup_serial(self, serial_number: str) -> RegisteredAsset | None:
        return self._assets.get(serial_number)

    def list_assets(self, product_id: UUID, location_id: UUID) -> Iterable[RegisteredAsset]:
        return sorted(
            (a for a in self._assets.values()
             if a.product_id == product_id and a.location_id == location_id),
            key=lambda a: a.serial_number,
        )


class RecordingStockCommitter:
    """StockCommitter / ErpExporter that records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[UUID, tuple[StockCommitLine, ...]]] = []

    def commit(self, inventory_id: UUID, lines: tuple[StockCommitLine, ...]) -> None:
        self.calls.append((inventory_id, tuple(lines)))
        logger.info(
            "stock_commit_recorded",
            extra={"inventory_id": str(inventory_id), "line_count": len(lines)},
        )

    def export(self, inventory_id: UUID, lines: tuple[StockCommitLine, ...]) -> None:
        self.commit(inventory_id, lines)


class StaticRoleProvider:
    """RoleProvider backed by a simple dict.

    Can be replaced with a database-backed or directory-backed implementation.
    """

    def __init__(self, role_map: dict[UUID, tuple[str, ...]] | None = None) -> None:
        self._role_map: dict[UUID, tuple[str, ...]] = role_map or {}

    def get_actor_roles(self, actor_id: UUID) -> tuple[str, ...]:
        return self._role_map.get(actor_id, ())

