"""
Fuel Ledger Errors

Typed error taxonomy for the ledger core. Every error carries enough structured
detail (quantities, thresholds, tank id) for an operator to decide on a correction.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class FuelLedgerError(Exception):
    """Base class for all ledger core errors"""
    code = "ledger_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": _jsonable(self.details),
        }


class InvalidRequest(FuelLedgerError):
    """Raised when a request has the wrong shape (e.g. missing MRN) before any unit of work starts"""
    code = "invalid_request"


class InvalidQuantity(InvalidRequest):
    """Raised for negative quantities, non-positive densities or kg/liters that disagree with density"""
    code = "invalid_quantity"


class TankNotFound(FuelLedgerError):
    code = "tank_not_found"

    def __init__(self, tank_id: int):
        super().__init__(f"Tank {tank_id} not found", tank_id=tank_id)
        self.tank_id = tank_id


class LedgerEntryNotFound(FuelLedgerError):
    code = "ledger_entry_not_found"


class DuplicateAllocation(FuelLedgerError):
    """Raised when the unique allocation policy finds an active entry for the same (tank, MRN)"""
    code = "duplicate_allocation"


class InsufficientBalance(FuelLedgerError):
    """Raised when a withdrawal exceeds the remaining MRN (or tank) balance"""
    code = "insufficient_balance"


class CapacityExceeded(FuelLedgerError):
    """Raised when a movement would push a tank above its effective capacity"""
    code = "capacity_exceeded"

    def __init__(self, message: str, excess_liters: Decimal, **details: Any):
        super().__init__(message, excess_liters=excess_liters, **details)
        self.excess_liters = excess_liters


class PreexistingInconsistency(FuelLedgerError):
    """Raised when the tank level already exceeded capacity before the current request"""
    code = "preexisting_inconsistency"


class DanglingOperationReference(FuelLedgerError):
    """Raised when a leg references a business operation that does not exist"""
    code = "dangling_operation_reference"


class OperationTimedOut(FuelLedgerError):
    """Raised when a lock or statement timeout bounds an operation. Safe to retry."""
    code = "operation_timed_out"
    retryable = True


class ConcurrentModification(FuelLedgerError):
    """Raised when a concurrent writer changed the tank under us. Safe to retry."""
    code = "concurrent_modification"
    retryable = True


class NoDriftToCorrect(FuelLedgerError):
    code = "no_drift_to_correct"


class ReconciliationCancelled(FuelLedgerError):
    code = "reconciliation_cancelled"


class OperationNotFound(FuelLedgerError):
    """Raised by the fueling operation lookup when an id does not resolve"""
    code = "operation_not_found"

    def __init__(self, operation_id: str):
        super().__init__(f"Fueling operation {operation_id} not found", operation_id=operation_id)
        self.operation_id = operation_id


class LegNotFound(FuelLedgerError):
    code = "leg_not_found"


class ReturnExceedsDrain(FuelLedgerError):
    """Raised when returning more drained fuel than the drains still hold"""
    code = "return_exceeds_drain"


def error_status_code(error: FuelLedgerError) -> int:
    """HTTP status code for an error, used by the API layer."""
    if isinstance(error, (TankNotFound, LedgerEntryNotFound, LegNotFound, OperationNotFound)):
        return 404
    if isinstance(error, InvalidRequest):
        return 422
    if isinstance(error, OperationTimedOut):
        return 503
    return 409
