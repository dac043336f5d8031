"""
Reconciliation Engine

Compares a tank's recorded level (actual) with the sum of its MRN ledger balances
(expected), classifies the drift and, only on an operator's explicit request, writes
a correction.

Per tank:  Idle -> Computing -> Classified -> (Resolved | Idle)

Batch runs fan out over a bounded worker pool with one session per tank check, so a
slow, locked or corrupted tank only affects its own result.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.orm import Session

import audit_service
import ledger_models
from database import unit_of_work
from ledger_config import LedgerConfig
from ledger_errors import (
    ConcurrentModification, FuelLedgerError, InsufficientBalance, InvalidRequest,
    NoDriftToCorrect, OperationTimedOut, ReconciliationCancelled
)
from ledger_models import DriftClassification, TransactionType
from mrn_ledger import MrnLedger
from quantity import ZERO, quantize, to_decimal, weighted_average_density
from tank_state import TankLockRegistry, TankStateManager, tank_locks
from transaction_journal import LegDraft, TransactionJournal

logger = logging.getLogger(__name__)

RELATIVE_DRIFT_PLACES = 6


def correction_mrn(tank_id: int) -> str:
    """MRN of the holding entry that absorbs corrections for a tank."""
    return f"CORR-TANK-{tank_id}"


@dataclass
class DriftAssessment:
    """Expected vs actual for one tank, at one consistent snapshot."""
    tank_id: int
    expected_liters: Decimal
    expected_kg: Decimal
    actual_liters: Decimal
    actual_kg: Decimal
    effective_capacity_liters: Decimal
    ledger_density: Decimal
    tank_version: int
    classification: DriftClassification = DriftClassification.CONSISTENT
    relative_drift: Decimal = ZERO
    entry_count: int = 0

    @property
    def drift_liters(self) -> Decimal:
        return self.actual_liters - self.expected_liters

    @property
    def drift_kg(self) -> Decimal:
        return self.actual_kg - self.expected_kg


@dataclass
class CorrectionResult:
    record: ledger_models.ReconciliationRecord
    leg: ledger_models.TransactionLeg


def classify_drift(
    drift_liters: Decimal,
    drift_kg: Decimal,
    capacity_liters: Decimal,
    density: Decimal,
    config: LedgerConfig
) -> Tuple[DriftClassification, Decimal]:
    """
    Classify drift against the tank's capacity in liters.

    |drift| <= epsilon on both axes -> CONSISTENT
    |drift_liters| / capacity < minor_drift_ratio -> MINOR, otherwise MAJOR

    A kg-only drift (liters within epsilon) is converted to liters at `density`,
    the weighted average density of the fuel the ledger holds.
    """
    eps = config.epsilon
    if abs(drift_liters) <= eps and abs(drift_kg) <= eps:
        return DriftClassification.CONSISTENT, ZERO

    if abs(drift_liters) > eps:
        drift = abs(drift_liters)
    else:
        drift = abs(drift_kg) / (density if density > 0 else config.default_density)
    relative = drift / capacity_liters if capacity_liters > 0 else Decimal(1)

    if relative < config.minor_drift_ratio:
        return DriftClassification.MINOR, relative
    return DriftClassification.MAJOR, relative


class ReconciliationEngine:
    """Per-tank reconciliation state machine."""

    def __init__(
        self,
        db: Session,
        config: Optional[LedgerConfig] = None,
        locks: Optional[TankLockRegistry] = None,
        journal: Optional[TransactionJournal] = None
    ):
        self.db = db
        self.config = config or LedgerConfig.from_env()
        self.locks = locks or tank_locks
        self.ledger = MrnLedger(db, self.config)
        self.tanks = TankStateManager(db, self.config)
        self.journal = journal or TransactionJournal(db, config=self.config)

    # ═══════════════════════════════════════════════════════════════════════════
    # COMPUTING -> CLASSIFIED
    # ═══════════════════════════════════════════════════════════════════════════

    def _snapshot(self, tank_id: int) -> DriftAssessment:
        # Drop cached rows so the read reflects what is committed (plus our own flushed work)
        self.db.flush()
        self.db.expire_all()

        tank = self.tanks.get_tank(tank_id)
        version = tank.version

        expected_liters = ZERO
        expected_kg = ZERO
        count = 0
        for entry in self.ledger.query_balances_for_tank(tank_id):
            remaining_liters = to_decimal(entry.remaining_liters, "remaining_liters")
            remaining_kg = to_decimal(entry.remaining_kg, "remaining_kg")
            logger.debug(
                f"Tank {tank_id} MRN {entry.mrn} (entry {entry.id}): "
                f"{remaining_liters} L / {remaining_kg} kg"
            )
            expected_liters += remaining_liters
            expected_kg += remaining_kg
            count += 1

        capacity = self.tanks.effective_capacity(tank)
        density = weighted_average_density([(expected_liters, expected_kg)], self.config)

        assessment = DriftAssessment(
            tank_id=tank_id,
            expected_liters=expected_liters,
            expected_kg=expected_kg,
            actual_liters=to_decimal(tank.current_liters, "current_liters"),
            actual_kg=to_decimal(tank.current_kg, "current_kg"),
            effective_capacity_liters=capacity,
            ledger_density=density,
            tank_version=version,
            entry_count=count,
        )
        assessment.classification, assessment.relative_drift = classify_drift(
            assessment.drift_liters,
            assessment.drift_kg,
            assessment.effective_capacity_liters,
            assessment.ledger_density,
            self.config
        )
        return assessment

    def _current_version(self, tank_id: int) -> Optional[int]:
        return self.db.query(ledger_models.Tank.version).filter(
            ledger_models.Tank.id == tank_id
        ).scalar()

    def _assess(self, tank_id: int) -> DriftAssessment:
        """Take a snapshot, retrying while a concurrent writer moves the tank underneath."""
        limit = self.config.concurrent_retry_limit
        for attempt in range(1, limit + 1):
            assessment = self._snapshot(tank_id)
            if self._current_version(tank_id) == assessment.tank_version:
                return assessment
            logger.info(f"Tank {tank_id} changed during reconciliation read, retrying ({attempt}/{limit})")

        raise ConcurrentModification(
            f"Tank {tank_id} kept changing during reconciliation; retry later",
            tank_id=tank_id,
            attempts=limit
        )

    def compute(self, tank_id: int) -> DriftAssessment:
        """Classify a tank without persisting anything."""
        with self.locks.hold(tank_id, self.config.lock_timeout_seconds):
            return self._assess(tank_id)

    # ═══════════════════════════════════════════════════════════════════════════
    # PERSIST
    # ═══════════════════════════════════════════════════════════════════════════

    def _record(
        self,
        assessment: DriftAssessment,
        triggered_by: Optional[str],
        resolved_by: Optional[str] = None,
        resolution_reason: Optional[str] = None,
        correction_leg: Optional[ledger_models.TransactionLeg] = None
    ) -> ledger_models.ReconciliationRecord:
        places = self.config.quantity_places
        record = ledger_models.ReconciliationRecord(
            tank_id=assessment.tank_id,
            checked_at=datetime.utcnow(),
            expected_liters=quantize(assessment.expected_liters, places),
            expected_kg=quantize(assessment.expected_kg, places),
            actual_liters=quantize(assessment.actual_liters, places),
            actual_kg=quantize(assessment.actual_kg, places),
            drift_liters=quantize(assessment.drift_liters, places),
            drift_kg=quantize(assessment.drift_kg, places),
            relative_drift=quantize(assessment.relative_drift, RELATIVE_DRIFT_PLACES),
            effective_capacity_liters=quantize(assessment.effective_capacity_liters, places),
            classification=assessment.classification.value,
            triggered_by=triggered_by,
            resolved_by=resolved_by,
            resolution_reason=resolution_reason,
            correction_leg_id=correction_leg.id if correction_leg is not None else None,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def _check_cancelled(self, cancel_event: Optional[threading.Event], tank_id: int):
        if cancel_event is not None and cancel_event.is_set():
            raise ReconciliationCancelled(f"Reconciliation of tank {tank_id} was cancelled", tank_id=tank_id)

    def reconcile_tank(
        self,
        tank_id: int,
        triggered_by: Optional[str] = "system",
        cancel_event: Optional[threading.Event] = None
    ) -> ledger_models.ReconciliationRecord:
        """
        Run Idle -> Computing -> Classified -> Idle for one tank and persist the record.

        Cancellation is honoured up to the commit itself (a before_commit hook on the
        session); a cancelled run leaves nothing behind.
        """
        def guard_commit(session):
            self._check_cancelled(cancel_event, tank_id)

        with self.locks.hold(tank_id, self.config.lock_timeout_seconds):
            if cancel_event is not None:
                event.listen(self.db, "before_commit", guard_commit)
            try:
                with unit_of_work(self.db, f"reconcile tank {tank_id}"):
                    self._check_cancelled(cancel_event, tank_id)
                    assessment = self._assess(tank_id)
                    self._check_cancelled(cancel_event, tank_id)
                    record = self._record(assessment, triggered_by)
                    record_id = record.id
            finally:
                if cancel_event is not None:
                    event.remove(self.db, "before_commit", guard_commit)

        message = (
            f"Tank {tank_id} reconciled: {assessment.classification.value}, drift "
            f"{quantize(assessment.drift_liters)} L / {quantize(assessment.drift_kg)} kg "
            f"(record {record_id})"
        )
        if assessment.classification == DriftClassification.CONSISTENT:
            logger.info(message)
        else:
            logger.warning(message)
        return record

    # ═══════════════════════════════════════════════════════════════════════════
    # CLASSIFIED -> RESOLVED
    # ═══════════════════════════════════════════════════════════════════════════

    def _correction_entry(self, tank: ledger_models.Tank) -> ledger_models.MrnLedgerEntry:
        mrn = correction_mrn(tank.id)
        entry = self.ledger.find_entry(tank.id, mrn, for_update=True)
        if entry is None:
            entry = self.ledger.allocate(tank.id, mrn, ZERO, ZERO)
        return entry

    def _covering_entry(
        self,
        tank: ledger_models.Tank,
        need_liters: Decimal,
        need_kg: Decimal
    ) -> Optional[ledger_models.MrnLedgerEntry]:
        eps = self.config.epsilon

        def covers(entry):
            return entry.remaining_liters + eps >= need_liters and entry.remaining_kg + eps >= need_kg

        holding = self.ledger.find_entry(tank.id, correction_mrn(tank.id), for_update=True)
        if holding is not None and covers(holding):
            return holding

        newest_first = self.db.query(ledger_models.MrnLedgerEntry).filter(
            ledger_models.MrnLedgerEntry.tank_id == tank.id
        ).order_by(
            ledger_models.MrnLedgerEntry.allocated_at.desc(),
            ledger_models.MrnLedgerEntry.id.desc()
        )
        for entry in newest_first:
            if covers(entry):
                return entry
        return None

    def resolve(self, tank_id: int, operator_id: str, reason: str) -> CorrectionResult:
        """
        Correct a MINOR or MAJOR drift on an operator's explicit request.

        With correction_direction `tank_to_ledger` the tank level is moved to the ledger
        total; with `ledger_to_tank` the ledger absorbs the drift. Either way one
        RECONCILIATION_CORRECTION leg and one resolved record are written.

        Raises:
            InvalidRequest: Missing operator or reason
            NoDriftToCorrect: The tank is consistent
        """
        if not operator_id or not str(operator_id).strip():
            raise InvalidRequest("Operator identity is required for a correction", field="operator_id")
        if not reason or not str(reason).strip():
            raise InvalidRequest("A reason is required for a correction", field="reason")
        reason = str(reason).strip()
        direction = self.config.correction_direction

        with self.locks.hold(tank_id, self.config.lock_timeout_seconds):
            with unit_of_work(self.db, f"correct tank {tank_id}"):
                assessment = self._assess(tank_id)
                if assessment.classification == DriftClassification.CONSISTENT:
                    raise NoDriftToCorrect(
                        f"Tank {tank_id} is consistent; nothing to correct",
                        tank_id=tank_id,
                        drift_liters=assessment.drift_liters,
                        drift_kg=assessment.drift_kg
                    )

                tank = self.tanks.get_tank(tank_id, for_update=True)
                places = self.config.quantity_places
                drift_liters = quantize(assessment.drift_liters, places)
                drift_kg = quantize(assessment.drift_kg, places)

                if direction == "tank_to_ledger":
                    anchor = self.ledger.latest_entry(tank.id) or self._correction_entry(tank)
                    delta_liters, delta_kg = -drift_liters, -drift_kg
                    target = "tank"
                else:
                    need_liters = max(ZERO, -drift_liters)
                    need_kg = max(ZERO, -drift_kg)
                    if need_liters > 0 or need_kg > 0:
                        anchor = self._covering_entry(tank, need_liters, need_kg)
                        if anchor is None:
                            raise InsufficientBalance(
                                f"No ledger entry in tank {tank_id} can absorb a correction of "
                                f"{drift_liters} L / {drift_kg} kg",
                                scope="mrn",
                                tank_id=tank_id,
                                requested_liters=need_liters,
                                requested_kg=need_kg
                            )
                    else:
                        anchor = self._correction_entry(tank)
                    delta_liters, delta_kg = drift_liters, drift_kg
                    target = "ledger"

                leg = self.journal.record(LegDraft.for_entry(
                    tank, anchor, TransactionType.RECONCILIATION_CORRECTION, delta_liters, delta_kg,
                    operator_id=operator_id,
                    note=reason,
                    correction_target=target
                ))

                if target == "tank":
                    self.tanks.apply_movement(tank, delta_liters, delta_kg, leg)
                else:
                    self.ledger.adjust(anchor, delta_liters, delta_kg)

                record = self._record(
                    assessment,
                    triggered_by=operator_id,
                    resolved_by=operator_id,
                    resolution_reason=reason,
                    correction_leg=leg
                )
                audit_service.log_correction(self.db, operator_id, record, leg, reason)
                record_id, leg_id = record.id, leg.id

        logger.info(
            f"Tank {tank_id} corrected by {operator_id} ({direction}): {delta_liters} L / {delta_kg} kg "
            f"on MRN {anchor.mrn} (leg {leg_id}, record {record_id}), reason: {reason}"
        )
        return CorrectionResult(record=record, leg=leg)


# ═══════════════════════════════════════════════════════════════════════════════
# BATCH
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class TankReconciliationOutcome:
    """
    Per-tank line of a batch result. status: classified | failed | timed_out | cancelled

    timed_out means the batch stopped waiting and cancelled the check. A check whose
    commit was already past its before_commit hook when the timeout fired still
    lands its record; status_for_tank shows the tank's latest committed record.
    """
    tank_id: int
    status: str
    classification: Optional[str] = None
    record_id: Optional[int] = None
    drift_liters: Optional[Decimal] = None
    drift_kg: Optional[Decimal] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == "classified"


class BatchReconciliation:
    """
    Reconciles many tanks in parallel with bounded concurrency.

    Each tank runs in its own session and unit of work; any tank can be cancelled
    while others continue.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: Optional[LedgerConfig] = None,
        tank_ids: Optional[List[int]] = None,
        triggered_by: str = "batch",
        locks: Optional[TankLockRegistry] = None
    ):
        self.session_factory = session_factory
        self.config = config or LedgerConfig.from_env()
        self.triggered_by = triggered_by
        self.locks = locks or tank_locks
        self.tank_ids = list(tank_ids) if tank_ids is not None else self._all_tank_ids()
        self._cancel_events: Dict[int, threading.Event] = {
            tank_id: threading.Event() for tank_id in self.tank_ids
        }

    def _all_tank_ids(self) -> List[int]:
        db = self.session_factory()
        try:
            return [row[0] for row in db.query(ledger_models.Tank.id).order_by(ledger_models.Tank.id)]
        finally:
            db.close()

    def cancel(self, tank_id: int):
        """Abort one tank's check. Other tanks are unaffected."""
        event = self._cancel_events.get(tank_id)
        if event is not None:
            event.set()

    def cancel_all(self):
        for event in self._cancel_events.values():
            event.set()

    def _check_one(self, tank_id: int) -> TankReconciliationOutcome:
        db = self.session_factory()
        try:
            engine = ReconciliationEngine(db, self.config, self.locks)
            record = engine.reconcile_tank(tank_id, self.triggered_by, self._cancel_events[tank_id])
            return TankReconciliationOutcome(
                tank_id=tank_id,
                status="classified",
                classification=record.classification,
                record_id=record.id,
                drift_liters=record.drift_liters,
                drift_kg=record.drift_kg,
            )
        except ReconciliationCancelled as e:
            logger.info(f"Reconciliation of tank {tank_id} cancelled")
            return TankReconciliationOutcome(tank_id=tank_id, status="cancelled", error=e.to_dict())
        except OperationTimedOut as e:
            logger.warning(f"Reconciliation of tank {tank_id} timed out: {e}")
            return TankReconciliationOutcome(tank_id=tank_id, status="timed_out", error=e.to_dict())
        except FuelLedgerError as e:
            logger.warning(f"Reconciliation of tank {tank_id} failed: {e}")
            return TankReconciliationOutcome(tank_id=tank_id, status="failed", error=e.to_dict())
        except Exception as e:
            # Unreadable ledger data and driver errors are reported per tank, never fatal to the batch
            logger.warning(f"Reconciliation of tank {tank_id} failed: {type(e).__name__}: {e}")
            return TankReconciliationOutcome(
                tank_id=tank_id,
                status="failed",
                error={"error": type(e).__name__, "message": str(e), "retryable": False, "details": {}},
            )
        finally:
            db.close()

    def run(self) -> List[TankReconciliationOutcome]:
        """Reconcile every tank; results come back in tank order."""
        if not self.tank_ids:
            return []

        workers = min(self.config.reconcile_max_workers, len(self.tank_ids))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile")
        outcomes: List[TankReconciliationOutcome] = []
        try:
            futures = [(tank_id, executor.submit(self._check_one, tank_id)) for tank_id in self.tank_ids]
            for tank_id, future in futures:
                try:
                    outcomes.append(future.result(timeout=self.config.tank_check_timeout_seconds))
                except FutureTimeout:
                    # Abort the stuck check; its unit of work rolls back when it reaches a checkpoint
                    self.cancel(tank_id)
                    logger.warning(
                        f"Reconciliation of tank {tank_id} exceeded {self.config.tank_check_timeout_seconds}s"
                    )
                    outcomes.append(TankReconciliationOutcome(
                        tank_id=tank_id,
                        status="timed_out",
                        error=OperationTimedOut(
                            f"Reconciliation of tank {tank_id} exceeded "
                            f"{self.config.tank_check_timeout_seconds}s",
                            tank_id=tank_id
                        ).to_dict(),
                    ))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        failed = [o.tank_id for o in outcomes if not o.ok]
        logger.info(
            f"Batch reconciliation: {len(outcomes) - len(failed)}/{len(outcomes)} tanks classified"
            + (f", not classified: {failed}" if failed else "")
        )
        return outcomes


def reconcile_all(
    session_factory: Callable[[], Session],
    config: Optional[LedgerConfig] = None,
    tank_ids: Optional[List[int]] = None,
    triggered_by: str = "batch"
) -> List[TankReconciliationOutcome]:
    """Reconcile all tanks (or the given ones) and report per tank."""
    return BatchReconciliation(session_factory, config, tank_ids, triggered_by).run()
