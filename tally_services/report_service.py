"""
InventoryReportService -- Read-only integrity and reconciliation reports.

Composes ``ReportBuilder`` (pure engine) with snapshot loading from the
counting module's persistence.

Architecture: tally_services -- imperative shell.
    Loads the ``InventorySnapshot`` and delegates every calculation to the
    engine.  Never flushes, never commits: report generation does not
    mutate inventories, items or serial rows.

Invariants enforced:
    - Report purity: the timestamp is the inventory's ``last_activity_at``,
      so repeated calls with no intervening write return byte-identical
      ``to_json()`` output.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from tally_kernel.logging_config import LogContext, get_logger
from tally_engines.reporting import ReportBuilder
from tally_engines.resolver import DiscrepancyResolver
from tally_engines.types import ReconciliationReport, ValidationReport
from tally_modules.counting.config import CountingConfig
from tally_modules.counting.service import load_snapshot

logger = get_logger("services.report")


class InventoryReportService:
    """Builds reports for one inventory at a time.

    Contract:
        - ``validate_integrity()`` returns a ValidationReport (pass/fail + issues).
        - ``reconciliation_report()`` returns totals, per-item detail, serial
          findings and advisory recommendations.

    Non-goals:
        - Does NOT render reports (PDF, HTML) -- callers own presentation.
        - Does NOT modify any data (read-only).
    """

    def __init__(
        self,
        session: Session,
        config: CountingConfig | None = None,
        builder: ReportBuilder | None = None,
    ) -> None:
        self._session = session
        self._config = config or CountingConfig.with_defaults()
        self._builder = builder or ReportBuilder(
            resolver=DiscrepancyResolver(
                low_max=self._config.severity_low_max,
                medium_max=self._config.severity_medium_max,
            ),
            accuracy_threshold_percent=self._config.accuracy_threshold_percent,
            divergence_threshold_percent=self._config.divergence_threshold_percent,
        )

    def validate_integrity(self, inventory_id: UUID) -> ValidationReport:
        """Integrity validation usable at any stage.

        Raises:
            InventoryNotFoundError: no such inventory.
        """
        with LogContext.operation("validate_integrity", inventory_id=inventory_id):
            snapshot = load_snapshot(self._session, inventory_id)
            report = self._builder.validation_report(snapshot=snapshot)
            logger.info(
                "integrity_validated",
                extra={"is_valid": report.is_valid, "issue_count": len(report.issues)},
            )
        return report

    def reconciliation_report(self, inventory_id: UUID) -> ReconciliationReport:
        """Reconciliation summary, per-item detail and recommendations.

        Raises:
            InventoryNotFoundError: no such inventory.
        """
        with LogContext.operation("reconciliation_report", inventory_id=inventory_id):
            snapshot = load_snapshot(self._session, inventory_id)
            report = self._builder.reconciliation_report(snapshot=snapshot)
            logger.info(
                "reconciliation_report_generated",
                extra={
                    "total_items": report.summary.total_items,
                    "accuracy_percent": str(report.summary.accuracy_percent),
                    "recommendation_count": len(report.recommendations),
                },
            )
        return report
