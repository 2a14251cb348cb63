"""
SerialDiscrepancyService -- Persistent register of serial-level discrepancies.

Responsibility:
    Derive LOCATION_MISMATCH, NOT_FOUND and UNEXPECTED_FOUND findings from
    an inventory's serial rows (``SerialReconciliationEngine``), keep them
    in the ``serial_discrepancies`` table, and track their resolution.

Architecture position:
    Services -- imperative shell over the serial reconciliation engine and
    the counting module's ORM.

Invariants enforced:
    - One record per (inventory, serial, kind).
    - ``process()`` never reopens a RESOLVED or MIGRATED_TO_ERP record;
      PENDING records whose finding has disappeared are removed.
    - Migrated records are frozen: resolving one raises AlreadyMigratedError.

Failure modes:
    - InventoryNotFoundError / DiscrepancyNotFoundError on unknown ids.
    - ConcurrentModificationError (retryable) on a lost optimistic-lock race.
"""

from __future__ import annotations

from collections import Counter
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tally_kernel.domain.clock import Clock, SystemClock
from tally_kernel.exceptions import (
    AlreadyMigratedError,
    ConcurrentModificationError,
    DiscrepancyNotFoundError,
)
from tally_kernel.logging_config import LogContext, get_logger
from tally_engines.serial_reconciliation import SerialReconciliationEngine
from tally_engines.types import SerialDiscrepancyKind, SerialDiscrepancyStatus
from tally_modules.counting.models import (
    SerialDiscrepancyRecord,
    SerialDiscrepancySummary,
)
from tally_modules.counting.orm import SerialDiscrepancyModel
from tally_modules.counting.service import load_snapshot

logger = get_logger("services.serial_discrepancy")


class SerialDiscrepancyService:
    """Serial discrepancy register for inventories.

    Contract:
        - ``process()`` upserts the register from the current serial rows.
        - ``list_discrepancies()`` / ``summary()`` are read-only.
        - ``resolve()`` marks one record RESOLVED with actor and notes.
        - Migration to MIGRATED_TO_ERP is done by
          ``InventoryCountService.migrate_to_erp``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        engine: SerialReconciliationEngine | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._engine = engine or SerialReconciliationEngine()

    def process(self, inventory_id: UUID, actor_id: UUID) -> tuple[SerialDiscrepancyRecord, ...]:
        """Bring the register in line with the inventory's serial rows.

        Returns:
            All records of the inventory, ordered by serial number and kind.
        """
        with LogContext.operation(
            "process_serial_discrepancies", inventory_id=inventory_id, actor_id=actor_id,
        ):
            try:
                snapshot = load_snapshot(self._session, inventory_id)
                findings = self._engine.classify_findings(snapshot=snapshot)
                existing = {
                    (r.serial_number, r.kind): r
                    for r in self._records(inventory_id)
                }

                created = updated = removed = 0
                current: set[tuple[str, str]] = set()
                for finding in findings:
                    key = (finding.serial_number, finding.kind.value)
                    current.add(key)
                    record = existing.get(key)
                    if record is None:
                        self._session.add(SerialDiscrepancyModel(
                            inventory_id=inventory_id,
                            serial_number=finding.serial_number,
                            product_id=finding.product_id,
                            kind=finding.kind.value,
                            expected_location_id=finding.expected_location_id,
                            found_location_id=finding.found_location_id,
                            status=SerialDiscrepancyStatus.PENDING.value,
                            created_by_id=actor_id,
                        ))
                        created += 1
                    elif (
                        record.status == SerialDiscrepancyStatus.PENDING.value
                        and record.found_location_id != finding.found_location_id
                    ):
                        record.found_location_id = finding.found_location_id
                        updated += 1

                for key, record in existing.items():
                    if key not in current and record.status == SerialDiscrepancyStatus.PENDING.value:
                        self._session.delete(record)
                        removed += 1

                self._session.flush()
                result = tuple(r.to_dto() for r in self._records(inventory_id))
                self._session.commit()
            except (StaleDataError, IntegrityError) as exc:
                self._session.rollback()
                raise ConcurrentModificationError("serial_discrepancy", str(inventory_id)) from exc
            except Exception:
                self._session.rollback()
                raise

            logger.info(
                "serial_discrepancies_processed",
                extra={
                    "records_created": created,
                    "records_updated": updated,
                    "records_removed": removed,
                },
            )
        return result

    def list_discrepancies(
        self,
        inventory_id: UUID,
        kind: SerialDiscrepancyKind | None = None,
        status: SerialDiscrepancyStatus | None = None,
    ) -> tuple[SerialDiscrepancyRecord, ...]:
        records = self._records(inventory_id)
        if kind is not None:
            records = [r for r in records if r.kind == SerialDiscrepancyKind(kind).value]
        if status is not None:
            records = [r for r in records if r.status == SerialDiscrepancyStatus(status).value]
        return tuple(r.to_dto() for r in records)

    def summary(self, inventory_id: UUID) -> SerialDiscrepancySummary:
        records = self._records(inventory_id)
        return SerialDiscrepancySummary(
            inventory_id=inventory_id,
            total=len(records),
            by_kind=dict(sorted(Counter(r.kind for r in records).items())),
            by_status=dict(sorted(Counter(r.status for r in records).items())),
        )

    def resolve(
        self,
        discrepancy_id: UUID,
        actor_id: UUID,
        notes: str | None = None,
    ) -> SerialDiscrepancyRecord:
        """Mark one record RESOLVED.  Resolving twice returns the record unchanged.

        Raises:
            DiscrepancyNotFoundError: unknown id.
            AlreadyMigratedError: the record was already migrated to the ERP.
        """
        with LogContext.operation("resolve_serial_discrepancy", actor_id=actor_id):
            try:
                record = self._session.get(SerialDiscrepancyModel, discrepancy_id)
                if record is None:
                    raise DiscrepancyNotFoundError(str(discrepancy_id))
                if record.status == SerialDiscrepancyStatus.MIGRATED_TO_ERP.value:
                    raise AlreadyMigratedError(
                        str(record.inventory_id), "erp",
                        record.updated_at.isoformat() if record.updated_at else "unknown",
                    )
                if record.status == SerialDiscrepancyStatus.PENDING.value:
                    record.status = SerialDiscrepancyStatus.RESOLVED.value
                    record.resolved_by = actor_id
                    record.resolved_at = self._clock.now()
                    record.resolution_notes = notes
                    self._session.flush()
                    logger.info(
                        "serial_discrepancy_resolved",
                        extra={
                            "discrepancy_id": str(discrepancy_id),
                            "inventory_id": str(record.inventory_id),
                            "serial_number": record.serial_number,
                        },
                    )
                dto = record.to_dto()
                self._session.commit()
            except StaleDataError as exc:
                self._session.rollback()
                raise ConcurrentModificationError("serial_discrepancy", str(discrepancy_id)) from exc
            except Exception:
                self._session.rollback()
                raise
        return dto

    def _records(self, inventory_id: UUID) -> list[SerialDiscrepancyModel]:
        return list(self._session.execute(
            select(SerialDiscrepancyModel)
            .where(SerialDiscrepancyModel.inventory_id == inventory_id)
            .order_by(SerialDiscrepancyModel.serial_number, SerialDiscrepancyModel.kind)
        ).scalars())
