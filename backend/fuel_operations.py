"""
Fueling Operation Lookup

Interface to the fueling-operations collaborator. The ledger core only ever reads
operations to validate `related_transaction_id` on journal legs.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Optional

from sqlalchemy.orm import Session

import ledger_models
from ledger_errors import OperationNotFound


@dataclass(frozen=True)
class OperationSummary:
    """What the ledger needs to know about a fueling operation."""
    id: str
    aircraft_registration: str
    date_time: datetime
    quantity_liters: Decimal
    quantity_kg: Decimal


class FuelingOperationLookup:
    """
    Base lookup. Implementations must provide get_operations; get_operation derives from it.
    """

    def get_operations(self, operation_ids: Iterable[str]) -> Dict[str, OperationSummary]:
        """Resolve many ids in one call. Unknown ids are simply absent from the result."""
        raise NotImplementedError

    def get_operation(self, operation_id: str) -> OperationSummary:
        """
        Raises:
            OperationNotFound: If the id does not resolve
        """
        found = self.get_operations([operation_id])
        if operation_id not in found:
            raise OperationNotFound(operation_id)
        return found[operation_id]

    def exists(self, operation_id: str) -> bool:
        return operation_id in self.get_operations([operation_id])


class SqlFuelingOperationLookup(FuelingOperationLookup):
    """Reads the fueling_operations table through the caller's session."""

    def __init__(self, db: Session):
        self.db = db

    def get_operations(self, operation_ids: Iterable[str]) -> Dict[str, OperationSummary]:
        ids = sorted({str(i) for i in operation_ids if i is not None})
        if not ids:
            return {}

        rows = self.db.query(ledger_models.FuelingOperation).filter(
            ledger_models.FuelingOperation.id.in_(ids)
        ).all()

        return {
            row.id: OperationSummary(
                id=row.id,
                aircraft_registration=row.aircraft_registration,
                date_time=row.date_time,
                quantity_liters=row.quantity_liters,
                quantity_kg=row.quantity_kg,
            )
            for row in rows
        }


class InMemoryFuelingOperationLookup(FuelingOperationLookup):
    """Dictionary-backed lookup for wiring the core without the fueling module."""

    def __init__(self, operations: Optional[Dict[str, OperationSummary]] = None):
        self.operations: Dict[str, OperationSummary] = dict(operations or {})
        self.calls = 0

    def add(self, operation: OperationSummary):
        self.operations[operation.id] = operation

    def get_operations(self, operation_ids: Iterable[str]) -> Dict[str, OperationSummary]:
        self.calls += 1
        return {
            str(i): self.operations[str(i)]
            for i in operation_ids
            if i is not None and str(i) in self.operations
        }
