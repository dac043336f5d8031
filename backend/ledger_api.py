"""
Fuel Ledger API

Movements, balances, journal legs, consistency checks and operator corrections.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session, sessionmaker
from typing import List, Dict, Any, Optional
from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal

from database import get_db, SessionLocal
from consistency_service import ConsistencyQueryService
from ledger_errors import FuelLedgerError, error_status_code
from movement_service import MovementService
from mrn_ledger import MrnLedger
from reconciliation_engine import BatchReconciliation, ReconciliationEngine
from tank_state import TankStateManager
from transaction_journal import TransactionJournal


# ═══════════════════════════════════════════════════════════════════════════════
# ROUTER
# ═══════════════════════════════════════════════════════════════════════════════

router = APIRouter(tags=["fuel-ledger"])


def get_session_factory() -> sessionmaker:
    """Session factory for batch work that needs one session per worker thread."""
    return SessionLocal


def _http_error(error: FuelLedgerError) -> HTTPException:
    return HTTPException(status_code=error_status_code(error), detail=error.to_dict())


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST SCHEMAS
# ═══════════════════════════════════════════════════════════════════════════════

class MovementRequest(BaseModel):
    mrn: str
    liters: Decimal
    kg: Decimal
    transaction_type: str
    density: Optional[Decimal] = None
    related_transaction_id: Optional[str] = None
    operator_id: Optional[str] = None
    note: Optional[str] = None


class WithdrawalRequest(BaseModel):
    kg: Decimal
    transaction_type: str = "FUELING"
    related_transaction_id: Optional[str] = None
    operator_id: Optional[str] = None


class TransferRequest(BaseModel):
    source_tank_id: int
    destination_tank_id: int
    mrn: str
    liters: Decimal
    kg: Decimal
    density: Optional[Decimal] = None
    related_transaction_id: Optional[str] = None
    operator_id: Optional[str] = None


class DrainReturnRequest(BaseModel):
    drain_leg_ids: List[int]
    liters: Decimal
    operator_id: Optional[str] = None
    note: Optional[str] = None


class CorrectionRequest(BaseModel):
    operator_id: str
    reason: str


class BatchReconcileRequest(BaseModel):
    tank_ids: Optional[List[int]] = None
    triggered_by: str = "api"


# ═══════════════════════════════════════════════════════════════════════════════
# RESPONSE SCHEMAS
# ═══════════════════════════════════════════════════════════════════════════════

class LegResponse(BaseModel):
    id: int
    tank_id: int
    ledger_entry_id: int
    transaction_type: str
    mrn: str
    liters_transacted: Decimal
    kg_transacted: Decimal
    density_used: Optional[Decimal] = None
    related_transaction_id: Optional[str] = None
    counterpart_leg_id: Optional[int] = None
    operator_id: Optional[str] = None
    note: Optional[str] = None
    correction_target: Optional[str] = None
    recorded_at: datetime

    class Config:
        from_attributes = True


class TransferResponse(BaseModel):
    out_leg: LegResponse
    in_leg: LegResponse


class LedgerBalanceResponse(BaseModel):
    id: int
    tank_id: int
    mrn: str
    quantity_liters: Decimal
    quantity_kg: Decimal
    remaining_liters: Decimal
    remaining_kg: Decimal
    density_at_intake: Optional[Decimal] = None
    allocated_at: datetime

    class Config:
        from_attributes = True


class ConsistencyResponse(BaseModel):
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


class ReconciliationRecordResponse(BaseModel):
    id: int
    tank_id: int
    checked_at: datetime
    expected_liters: Decimal
    expected_kg: Decimal
    actual_liters: Decimal
    actual_kg: Decimal
    drift_liters: Decimal
    drift_kg: Decimal
    relative_drift: Decimal
    effective_capacity_liters: Decimal
    classification: str
    triggered_by: Optional[str] = None
    resolved_by: Optional[str] = None
    resolution_reason: Optional[str] = None
    correction_leg_id: Optional[int] = None

    class Config:
        from_attributes = True


class TankOutcomeResponse(BaseModel):
    tank_id: int
    status: str
    classification: Optional[str] = None
    record_id: Optional[int] = None
    drift_liters: Optional[Decimal] = None
    drift_kg: Optional[Decimal] = None
    error: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class CorrectionResponse(BaseModel):
    record: ReconciliationRecordResponse
    leg: LegResponse


# ═══════════════════════════════════════════════════════════════════════════════
# MOVEMENTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/tanks/{tank_id}/movements", response_model=LegResponse, status_code=201)
def post_movement(tank_id: int, request: MovementRequest, db: Session = Depends(get_db)):
    """Post a refill, fueling or drain against one MRN."""
    try:
        leg = MovementService(db).post_movement(
            tank_id,
            request.mrn,
            request.liters,
            request.kg,
            request.transaction_type,
            density=request.density,
            related_transaction_id=request.related_transaction_id,
            operator_id=request.operator_id,
            note=request.note
        )
    except FuelLedgerError as e:
        raise _http_error(e) from e
    return LegResponse.model_validate(leg)


@router.post("/tanks/{tank_id}/withdrawals", response_model=List[LegResponse], status_code=201)
def post_withdrawal(tank_id: int, request: WithdrawalRequest, db: Session = Depends(get_db)):
    """Withdraw kg from a tank, oldest MRN first."""
    try:
        legs = MovementService(db).withdraw_fifo(
            tank_id,
            request.kg,
            request.transaction_type,
            related_transaction_id=request.related_transaction_id,
            operator_id=request.operator_id
        )
    except FuelLedgerError as e:
        raise _http_error(e) from e
    return [LegResponse.model_validate(leg) for leg in legs]


@router.post("/transfers", response_model=TransferResponse, status_code=201)
def post_transfer(request: TransferRequest, db: Session = Depends(get_db)):
    try:
        out_leg, in_leg = MovementService(db).transfer(
            request.source_tank_id,
            request.destination_tank_id,
            request.mrn,
            request.liters,
            request.kg,
            density=request.density,
            related_transaction_id=request.related_transaction_id,
            operator_id=request.operator_id
        )
    except FuelLedgerError as e:
        raise _http_error(e) from e
    return TransferResponse(out_leg=LegResponse.model_validate(out_leg), in_leg=LegResponse.model_validate(in_leg))


@router.post("/tanks/{tank_id}/drain-returns", response_model=List[LegResponse], status_code=201)
def post_drain_return(tank_id: int, request: DrainReturnRequest, db: Session = Depends(get_db)):
    """Return drained fuel to a tank under the MRNs it was drained from."""
    try:
        legs = MovementService(db).reverse_drain(
            request.drain_leg_ids,
            tank_id,
            request.liters,
            operator_id=request.operator_id,
            note=request.note
        )
    except FuelLedgerError as e:
        raise _http_error(e) from e
    return [LegResponse.model_validate(leg) for leg in legs]


# ═══════════════════════════════════════════════════════════════════════════════
# BALANCES & JOURNAL
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/tanks/{tank_id}/ledger-balances", response_model=List[LedgerBalanceResponse])
def get_ledger_balances(tank_id: int, active_only: bool = True, db: Session = Depends(get_db)):
    """MRN balances of a tank, oldest allocation first."""
    try:
        TankStateManager(db).get_tank(tank_id)
    except FuelLedgerError as e:
        raise _http_error(e) from e
    entries = MrnLedger(db).query_balances_for_tank(tank_id, active_only=active_only)
    return [LedgerBalanceResponse.model_validate(e) for e in entries]


@router.get("/tanks/{tank_id}/legs", response_model=List[LegResponse])
def get_tank_legs(
    tank_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db)
):
    try:
        TankStateManager(db).get_tank(tank_id)
    except FuelLedgerError as e:
        raise _http_error(e) from e
    legs = TransactionJournal(db).legs_for_tank(tank_id, start, end)
    return [LegResponse.model_validate(leg) for leg in legs]


@router.get("/mrn/{mrn}/legs", response_model=List[LegResponse])
def get_mrn_legs(mrn: str, db: Session = Depends(get_db)):
    return [LegResponse.model_validate(leg) for leg in TransactionJournal(db).legs_for_mrn(mrn)]


# ═══════════════════════════════════════════════════════════════════════════════
# CONSISTENCY & RECONCILIATION
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/tanks/{tank_id}/consistency", response_model=ConsistencyResponse)
def get_consistency(tank_id: int, force: bool = False, db: Session = Depends(get_db)):
    """Latest classification and drift; pass force=true to recompute regardless of cache."""
    service = ConsistencyQueryService(db)
    try:
        status = service.force_recheck(tank_id, triggered_by="api") if force else service.status_for_tank(tank_id)
    except FuelLedgerError as e:
        raise _http_error(e) from e
    return ConsistencyResponse(**status.to_dict())


@router.get("/tanks/{tank_id}/discrepancies")
def get_discrepancies(tank_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        return ConsistencyQueryService(db).discrepancy_detail(tank_id)
    except FuelLedgerError as e:
        raise _http_error(e) from e


@router.post("/tanks/{tank_id}/reconcile", response_model=ReconciliationRecordResponse)
def reconcile_tank(tank_id: int, triggered_by: str = "api", db: Session = Depends(get_db)):
    try:
        record = ReconciliationEngine(db).reconcile_tank(tank_id, triggered_by=triggered_by)
    except FuelLedgerError as e:
        raise _http_error(e) from e
    return ReconciliationRecordResponse.model_validate(record)


@router.post("/reconcile", response_model=List[TankOutcomeResponse])
def reconcile_all_tanks(
    request: Optional[BatchReconcileRequest] = None,
    session_factory: sessionmaker = Depends(get_session_factory)
):
    """Reconcile every tank (or the listed ones). Per-tank failures are reported, not raised."""
    request = request or BatchReconcileRequest()
    batch = BatchReconciliation(session_factory, tank_ids=request.tank_ids, triggered_by=request.triggered_by)
    return [TankOutcomeResponse.model_validate(outcome) for outcome in batch.run()]


@router.post("/tanks/{tank_id}/corrections", response_model=CorrectionResponse, status_code=201)
def post_correction(tank_id: int, request: CorrectionRequest, db: Session = Depends(get_db)):
    """Resolve a MINOR/MAJOR drift. Requires the operator's identity and a reason."""
    try:
        result = ReconciliationEngine(db).resolve(tank_id, request.operator_id, request.reason)
    except FuelLedgerError as e:
        raise _http_error(e) from e
    return CorrectionResponse(
        record=ReconciliationRecordResponse.model_validate(result.record),
        leg=LegResponse.model_validate(result.leg)
    )
