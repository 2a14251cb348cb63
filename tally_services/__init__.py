"""
tally_services -- Package init and public API.

Responsibility:
    Read-side and register services that compose pure engines
    (tally_engines/) with the counting module's persistence.

Architecture position:
    Services -- imperative shell over engines + counting ORM.

    Dependency direction:
        tally_services/ -> tally_modules/  (allowed)
        tally_services/ -> tally_engines/  (allowed)
        tally_modules/  -> tally_services/ (FORBIDDEN)
        tally_engines/  -> tally_services/ (FORBIDDEN)

Invariants enforced:
    - InventoryReportService never writes.
    - SerialDiscrepancyService owns its transaction boundary.

Failure modes:
    - ImportError at startup if a service's dependency graph is broken.
"""

from tally_kernel.logging_config import get_logger

logger = get_logger("services")

from tally_services.report_service import InventoryReportService
from tally_services.serial_discrepancy_service import SerialDiscrepancyService

__all__ = [
    "InventoryReportService",
    "SerialDiscrepancyService",
]
