"""
Ledger Configuration

Every tunable constant of the fuel ledger lives here instead of inside business logic.
Values default to the Jet A-1 operating figures and can be overridden per deployment
through FUEL_LEDGER_* environment variables.
"""

import os
from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any, Dict


ALLOCATION_POLICIES = ("merge", "unique")
CORRECTION_DIRECTIONS = ("tank_to_ledger", "ledger_to_tank")


def _env(name: str, default: Any) -> Any:
    return os.getenv(f"FUEL_LEDGER_{name.upper()}", default)


@dataclass
class LedgerConfig:
    """Configuration for the ledger core services"""
    # Equality tolerance for liters/kg comparisons
    epsilon: Decimal = Decimal("0.001")
    quantity_places: int = 3
    density_places: int = 4

    # Capacity sanitization
    min_capacity_liters: Decimal = Decimal("1")
    max_capacity_liters: Decimal = Decimal("1000000")
    fallback_capacity_liters: Decimal = Decimal("24500")

    # Jet A-1 density band (kg/L)
    default_density: Decimal = Decimal("0.8")
    density_min: Decimal = Decimal("0.775")
    density_max: Decimal = Decimal("0.84")
    density_tolerance: Decimal = Decimal("0.005")

    # Reconciliation
    minor_drift_ratio: Decimal = Decimal("0.01")
    correction_direction: str = "tank_to_ledger"
    status_staleness_seconds: int = 300
    reconcile_max_workers: int = 4
    concurrent_retry_limit: int = 3

    # MRN ledger
    allocation_policy: str = "merge"
    depletion_threshold_kg: Decimal = Decimal("0.001")

    # Timeouts
    lock_timeout_seconds: float = 10.0
    statement_timeout_ms: int = 15000
    tank_check_timeout_seconds: float = 60.0

    def __post_init__(self):
        if self.allocation_policy not in ALLOCATION_POLICIES:
            raise ValueError(
                f"allocation_policy must be one of {ALLOCATION_POLICIES}, got {self.allocation_policy!r}"
            )
        if self.correction_direction not in CORRECTION_DIRECTIONS:
            raise ValueError(
                f"correction_direction must be one of {CORRECTION_DIRECTIONS}, got {self.correction_direction!r}"
            )
        if self.min_capacity_liters > self.max_capacity_liters:
            raise ValueError("min_capacity_liters cannot exceed max_capacity_liters")
        if self.reconcile_max_workers < 1:
            raise ValueError("reconcile_max_workers must be at least 1")

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Build a config, taking overrides from FUEL_LEDGER_* environment variables."""
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = _env(f.name, None)
            if raw is None:
                continue
            if f.type in (Decimal, "Decimal"):
                values[f.name] = Decimal(raw)
            elif f.type in (int, "int"):
                values[f.name] = int(raw)
            elif f.type in (float, "float"):
                values[f.name] = float(raw)
            else:
                values[f.name] = raw
        return cls(**values)

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.quantity_places)

    @property
    def density_quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.density_places)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: str(getattr(self, f.name)) for f in fields(self)}
