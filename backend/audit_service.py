"""
Ledger Audit Logging Service
Records who moved which fuel, and who corrected which tank.

Rows are added to the caller's session only; they commit or roll back together with
the movement they describe.
"""

from sqlalchemy.orm import Session
from datetime import datetime
from decimal import Decimal
import ledger_models
from typing import Optional, Dict, Any, List


def _plain(changes: Dict[str, Any]) -> Dict[str, Any]:
    # JSON column: Decimals are stored as strings to keep their exact value
    return {k: str(v) if isinstance(v, Decimal) else v for k, v in changes.items()}


def _add(
    db: Session,
    user: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[int],
    changes: Dict[str, Any]
) -> ledger_models.AuditLog:
    log = ledger_models.AuditLog(
        timestamp=datetime.utcnow(),
        user=user or "system",
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        changes=_plain(changes)
    )
    db.add(log)
    return log


def log_movement(
    db: Session,
    user: Optional[str],
    leg: ledger_models.TransactionLeg,
    tank: ledger_models.Tank
):
    """Log a single-leg movement (refill, fueling, drain)"""
    return _add(db, user, "Movement", "Tank", tank.id, {
        "leg_id": leg.id,
        "transaction_type": leg.transaction_type,
        "mrn": leg.mrn,
        "liters": leg.liters_transacted,
        "kg": leg.kg_transacted,
        "related_transaction_id": leg.related_transaction_id,
        "tank_liters_after": tank.current_liters,
        "tank_kg_after": tank.current_kg,
    })


def log_withdrawal(
    db: Session,
    user: Optional[str],
    tank: ledger_models.Tank,
    legs: List[ledger_models.TransactionLeg],
    requested_kg: Decimal
):
    """Log a FIFO withdrawal spanning one or more MRNs"""
    return _add(db, user, "Withdrawal", "Tank", tank.id, {
        "requested_kg": requested_kg,
        "leg_ids": [leg.id for leg in legs],
        "mrns": [leg.mrn for leg in legs],
        "tank_liters_after": tank.current_liters,
        "tank_kg_after": tank.current_kg,
    })


def log_transfer(
    db: Session,
    user: Optional[str],
    out_leg: ledger_models.TransactionLeg,
    in_leg: ledger_models.TransactionLeg
):
    """Log a tank-to-tank transfer (both legs)"""
    return _add(db, user, "Transfer", "Tank", out_leg.tank_id, {
        "mrn": out_leg.mrn,
        "source_tank_id": out_leg.tank_id,
        "destination_tank_id": in_leg.tank_id,
        "out_leg_id": out_leg.id,
        "in_leg_id": in_leg.id,
        "liters": in_leg.liters_transacted,
        "kg": in_leg.kg_transacted,
    })


def log_correction(
    db: Session,
    user: str,
    record: ledger_models.ReconciliationRecord,
    leg: ledger_models.TransactionLeg,
    reason: str
):
    """Log an operator-approved reconciliation correction"""
    return _add(db, user, "Correction", "ReconciliationRecord", record.id, {
        "tank_id": record.tank_id,
        "correction_leg_id": leg.id,
        "liters": leg.liters_transacted,
        "kg": leg.kg_transacted,
        "classification": record.classification,
        "reason": reason,
    })


def get_audit_trail(
    db: Session,
    resource_type: Optional[str] = None,
    resource_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
):
    """Retrieve audit trail with filters"""
    query = db.query(ledger_models.AuditLog)

    if resource_type:
        query = query.filter(ledger_models.AuditLog.resource_type == resource_type)
    if resource_id:
        query = query.filter(ledger_models.AuditLog.resource_id == resource_id)
    if action:
        query = query.filter(ledger_models.AuditLog.action == action)

    return query.order_by(ledger_models.AuditLog.timestamp.desc(), ledger_models.AuditLog.id.desc()).limit(limit).all()


def log_drain_return(
    db: Session,
    user: Optional[str],
    tank: ledger_models.Tank,
    legs: List[ledger_models.TransactionLeg]
):
    """Log drained fuel returned to a tank"""
    return _add(db, user, "DrainReturn", "Tank", tank.id, {
        "leg_ids": [leg.id for leg in legs],
        "drain_leg_ids": [leg.counterpart_leg_id for leg in legs],
        "mrns": [leg.mrn for leg in legs],
        "tank_liters_after": tank.current_liters,
        "tank_kg_after": tank.current_kg,
    })
