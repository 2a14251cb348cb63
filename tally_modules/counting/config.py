"""
Counting Configuration Schema.

Defines the structure and defaults for physical-count settings.  Values
are loaded from YAML at runtime (see ``tally_config``).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Self

from tally_kernel.logging_config import get_logger

logger = get_logger("modules.counting.config")


DEFAULT_ELEVATED_ROLES = ("supervisor", "manager", "admin")

_DECIMAL_FIELDS = (
    "severity_low_max",
    "severity_medium_max",
    "accuracy_threshold_percent",
    "divergence_threshold_percent",
)


@dataclass
class CountingConfig:
    """
    Configuration schema for the counting module.

    Override at instantiation with site-specific values:

        config = CountingConfig(
            accuracy_threshold_percent=Decimal("95"),
            allow_extra_item_creation=False,
        )
    """

    # Discrepancy severity: |observed - expected| <= low_max is low,
    # <= medium_max is medium, above is high.
    severity_low_max: Decimal = Decimal("1")
    severity_medium_max: Decimal = Decimal("5")

    # Report recommendation thresholds
    accuracy_threshold_percent: Decimal = Decimal("90")
    divergence_threshold_percent: Decimal = Decimal("10")

    # Audit (count4) and the elevated read path
    require_supervisor_for_audit: bool = True
    elevated_roles: tuple[str, ...] = field(default=DEFAULT_ELEVATED_ROLES)

    # Serial reads
    allow_extra_item_creation: bool = True

    def __post_init__(self):
        for name in _DECIMAL_FIELDS:
            setattr(self, name, Decimal(str(getattr(self, name))))
        self.elevated_roles = tuple(self.elevated_roles)

        if self.severity_low_max < 0:
            raise ValueError("severity_low_max cannot be negative")
        if self.severity_medium_max < self.severity_low_max:
            raise ValueError(
                f"severity_medium_max ({self.severity_medium_max}) cannot be below "
                f"severity_low_max ({self.severity_low_max})"
            )
        for name in ("accuracy_threshold_percent", "divergence_threshold_percent"):
            value = getattr(self, name)
            if value < 0 or value > Decimal("100"):
                raise ValueError(f"{name} must be between 0 and 100, got {value}")
        if self.require_supervisor_for_audit and not self.elevated_roles:
            raise ValueError(
                "elevated_roles cannot be empty when require_supervisor_for_audit is set"
            )

        logger.info(
            "counting_config_initialized",
            extra={
                "severity_low_max": str(self.severity_low_max),
                "severity_medium_max": str(self.severity_medium_max),
                "accuracy_threshold_percent": str(self.accuracy_threshold_percent),
                "divergence_threshold_percent": str(self.divergence_threshold_percent),
                "require_supervisor_for_audit": self.require_supervisor_for_audit,
                "allow_extra_item_creation": self.allow_extra_item_creation,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the standard defaults."""
        logger.info("counting_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from dictionary (e.g., the ``counting:`` YAML section)."""
        logger.info(
            "counting_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        return cls(**data)
