"""
Consistency Query Service

Read-side projection over reconciliation results. Never touches ledger balances or
tank levels; the only thing it may write is a fresh reconciliation record when the
cached one is stale.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

import pandas as pd
from sqlalchemy.orm import Session

import ledger_models
from fuel_operations import FuelingOperationLookup
from ledger_config import LedgerConfig
from mrn_ledger import MrnLedger
from quantity import calculate_density, weighted_average_density
from reconciliation_engine import ReconciliationEngine
from tank_state import TankLockRegistry, TankStateManager
from transaction_journal import TransactionJournal

logger = logging.getLogger(__name__)

HISTORY_COLUMNS = [
    "record_id", "checked_at", "classification", "drift_liters", "drift_kg",
    "relative_drift", "resolved", "drift_liters_rolling",
]


@dataclass
class ConsistencyStatus:
    tank_id: int
    classification: str
    drift_liters: Decimal
    drift_kg: Decimal
    relative_drift: Decimal
    expected_liters: Decimal
    actual_liters: Decimal
    checked_at: datetime
    record_id: int
    resolved: bool
    from_cache: bool

    @classmethod
    def from_record(cls, record: ledger_models.ReconciliationRecord, from_cache: bool) -> "ConsistencyStatus":
        return cls(
            tank_id=record.tank_id,
            classification=record.classification,
            drift_liters=record.drift_liters,
            drift_kg=record.drift_kg,
            relative_drift=record.relative_drift,
            expected_liters=record.expected_liters,
            actual_liters=record.actual_liters,
            checked_at=record.checked_at,
            record_id=record.id,
            resolved=record.is_resolved,
            from_cache=from_cache,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConsistencyQueryService:
    """Latest classification per tank, with a staleness window in front of the engine."""

    def __init__(
        self,
        db: Session,
        config: Optional[LedgerConfig] = None,
        operations: Optional[FuelingOperationLookup] = None,
        locks: Optional[TankLockRegistry] = None
    ):
        self.db = db
        self.config = config or LedgerConfig.from_env()
        self.journal = TransactionJournal(db, operations, self.config)
        self.engine = ReconciliationEngine(db, self.config, locks, journal=self.journal)
        self.ledger = MrnLedger(db, self.config)
        self.tanks = TankStateManager(db, self.config)

    def latest_record(self, tank_id: int) -> Optional[ledger_models.ReconciliationRecord]:
        return self.db.query(ledger_models.ReconciliationRecord).filter(
            ledger_models.ReconciliationRecord.tank_id == tank_id
        ).order_by(
            ledger_models.ReconciliationRecord.checked_at.desc(),
            ledger_models.ReconciliationRecord.id.desc()
        ).first()

    def is_fresh(self, record: ledger_models.ReconciliationRecord, now: Optional[datetime] = None) -> bool:
        """Younger than the staleness window and no leg recorded on the tank since."""
        now = now or datetime.utcnow()
        if now - record.checked_at > timedelta(seconds=self.config.status_staleness_seconds):
            return False
        newer_leg = self.db.query(ledger_models.TransactionLeg.id).filter(
            ledger_models.TransactionLeg.tank_id == record.tank_id,
            ledger_models.TransactionLeg.recorded_at > record.checked_at
        ).first()
        return newer_leg is None

    def status_for_tank(self, tank_id: int) -> ConsistencyStatus:
        """Latest status; recomputed (and recorded) only when the cached record is stale."""
        self.tanks.get_tank(tank_id)
        record = self.latest_record(tank_id)
        if record is not None and self.is_fresh(record):
            return ConsistencyStatus.from_record(record, from_cache=True)

        logger.debug(f"No fresh reconciliation record for tank {tank_id}, recomputing")
        record = self.engine.reconcile_tank(tank_id, triggered_by="consistency-query")
        return ConsistencyStatus.from_record(record, from_cache=False)

    def force_recheck(self, tank_id: int, triggered_by: str = "force-recheck") -> ConsistencyStatus:
        record = self.engine.reconcile_tank(tank_id, triggered_by=triggered_by)
        return ConsistencyStatus.from_record(record, from_cache=False)

    def discrepancy_detail(self, tank_id: int) -> Dict[str, Any]:
        """
        Everything an operator needs before deciding on a correction.

        Per-MRN balances with journal replay, the weighted average density of what the
        ledger holds, legs pointing at missing operations, and the current drift.
        """
        assessment = self.engine.compute(tank_id)
        tank = self.tanks.get_tank(tank_id)

        entries = []
        replay_mismatches = []
        held = []
        for entry in self.ledger.query_balances_for_tank(tank_id):
            replay_liters, replay_kg = self.journal.replay_entry_balance(entry.id)
            matches = (
                abs(replay_liters - entry.remaining_liters) <= self.config.epsilon
                and abs(replay_kg - entry.remaining_kg) <= self.config.epsilon
            )
            row = {
                "ledger_entry_id": entry.id,
                "mrn": entry.mrn,
                "allocated_at": entry.allocated_at,
                "remaining_liters": entry.remaining_liters,
                "remaining_kg": entry.remaining_kg,
                "density": calculate_density(entry.remaining_kg, entry.remaining_liters, self.config),
                "replayed_liters": replay_liters,
                "replayed_kg": replay_kg,
                "replay_matches": matches,
                "closed": entry.closure is not None,
            }
            entries.append(row)
            if not matches:
                replay_mismatches.append(entry.id)
            if entry.remaining_liters > 0 or entry.remaining_kg > 0:
                held.append((entry.remaining_liters, entry.remaining_kg))

        dangling = self.journal.find_dangling_references(self.journal.legs_for_tank(tank_id))
        latest = self.latest_record(tank_id)

        if replay_mismatches:
            logger.warning(f"Tank {tank_id}: ledger entries {replay_mismatches} differ from their journal replay")

        return {
            "tank_id": tank_id,
            "tank_name": tank.name,
            "classification": assessment.classification.value,
            "expected_liters": assessment.expected_liters,
            "expected_kg": assessment.expected_kg,
            "actual_liters": assessment.actual_liters,
            "actual_kg": assessment.actual_kg,
            "drift_liters": assessment.drift_liters,
            "drift_kg": assessment.drift_kg,
            "relative_drift": assessment.relative_drift,
            "effective_capacity_liters": assessment.effective_capacity_liters,
            "weighted_average_density": weighted_average_density(held, self.config),
            "entries": entries,
            "replay_mismatches": replay_mismatches,
            "dangling_references": [
                {"leg_id": leg.id, "related_transaction_id": leg.related_transaction_id}
                for leg in dangling
            ],
            "last_record_id": latest.id if latest else None,
            "last_checked_at": latest.checked_at if latest else None,
        }

    def drift_history(self, tank_id: int, window: int = 5) -> pd.DataFrame:
        """Past reconciliation records of a tank, oldest first, with a rolling mean of liter drift."""
        records = self.db.query(ledger_models.ReconciliationRecord).filter(
            ledger_models.ReconciliationRecord.tank_id == tank_id
        ).order_by(
            ledger_models.ReconciliationRecord.checked_at.asc(),
            ledger_models.ReconciliationRecord.id.asc()
        ).all()

        if not records:
            return pd.DataFrame(columns=HISTORY_COLUMNS)

        df = pd.DataFrame([{
            "record_id": r.id,
            "checked_at": r.checked_at,
            "classification": r.classification,
            "drift_liters": float(r.drift_liters),
            "drift_kg": float(r.drift_kg),
            "relative_drift": float(r.relative_drift),
            "resolved": r.is_resolved,
        } for r in records])
        df["drift_liters_rolling"] = df["drift_liters"].rolling(window=window, min_periods=1).mean()
        return df
