"""
Transaction Leg Journal

Append-only record of every quantity movement. Each leg references exactly one MRN
ledger entry (the fixed-tank or the mobile-tank variant, never both) and, optionally,
the business operation that caused it.

Ordering is by timestamp, then by insertion sequence (the leg id), so audit replay is
deterministic even when legs share a timestamp.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

import ledger_models
from fuel_operations import FuelingOperationLookup, SqlFuelingOperationLookup
from ledger_config import LedgerConfig
from ledger_errors import (
    DanglingOperationReference, InvalidQuantity, InvalidRequest, LedgerEntryNotFound, TankNotFound
)
from ledger_models import TransactionType
from quantity import ZERO, is_density_consistent, normalize_density, quantize, to_decimal

logger = logging.getLogger(__name__)

CORRECTION_TARGETS = ("tank", "ledger")


@dataclass
class LegDraft:
    """A leg about to be appended. Quantities are signed: + into the tank, - out of it."""
    tank_id: int
    transaction_type: TransactionType
    liters: Decimal
    kg: Decimal
    mrn: str
    fixed_entry_id: Optional[int] = None
    mobile_entry_id: Optional[int] = None
    density: Optional[Decimal] = None
    related_transaction_id: Optional[str] = None
    counterpart_leg_id: Optional[int] = None
    operator_id: Optional[str] = None
    note: Optional[str] = None
    correction_target: Optional[str] = None
    recorded_at: Optional[datetime] = None

    @classmethod
    def for_entry(
        cls,
        tank: ledger_models.Tank,
        entry: ledger_models.MrnLedgerEntry,
        transaction_type: TransactionType,
        liters: Decimal,
        kg: Decimal,
        **kwargs: Any
    ) -> "LegDraft":
        """Draft a leg against an entry, filling the reference that matches the tank kind."""
        ref = {"mobile_entry_id": entry.id} if tank.is_mobile else {"fixed_entry_id": entry.id}
        return cls(
            tank_id=tank.id,
            transaction_type=transaction_type,
            liters=liters,
            kg=kg,
            mrn=entry.mrn,
            **ref,
            **kwargs
        )


class TransactionJournal:
    """Appends legs and serves ordered, restartable leg sequences."""

    def __init__(
        self,
        db: Session,
        operations: Optional[FuelingOperationLookup] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.db = db
        self.operations = operations or SqlFuelingOperationLookup(db)
        self.config = config or LedgerConfig.from_env()

    # ═══════════════════════════════════════════════════════════════════════════
    # APPEND
    # ═══════════════════════════════════════════════════════════════════════════

    def record(self, draft: LegDraft) -> ledger_models.TransactionLeg:
        """
        Append one leg. Never touches existing legs.

        Raises:
            InvalidRequest: Both or neither ledger references set, or reference of the wrong tank kind
            InvalidQuantity: Sign does not match the type, or kg disagrees with liters x density
            DanglingOperationReference: related_transaction_id does not resolve
        """
        try:
            tx_type = TransactionType(draft.transaction_type)
        except ValueError:
            raise InvalidRequest(
                f"Unknown transaction type {draft.transaction_type!r}",
                field="transaction_type", value=str(draft.transaction_type)
            )

        is_correction = tx_type == TransactionType.RECONCILIATION_CORRECTION
        if is_correction and draft.correction_target not in CORRECTION_TARGETS:
            raise InvalidRequest(
                f"A correction leg must target one of {CORRECTION_TARGETS}",
                field="correction_target", value=draft.correction_target
            )
        if not is_correction and draft.correction_target is not None:
            raise InvalidRequest(
                "Only correction legs carry a correction target",
                field="correction_target", value=draft.correction_target
            )

        liters = quantize(to_decimal(draft.liters, "liters"), self.config.quantity_places)
        kg = quantize(to_decimal(draft.kg, "kg"), self.config.quantity_places)
        self._check_sign(tx_type, liters, kg)

        entry = self._resolve_entry(draft)

        density = None
        if not is_correction:
            density = normalize_density(
                draft.density if draft.density is not None else entry.density_at_intake,
                self.config
            )
            if not is_density_consistent(liters, kg, density, self.config):
                raise InvalidQuantity(
                    f"{abs(kg)} kg does not match {abs(liters)} L at density {density} kg/L",
                    tank_id=draft.tank_id,
                    liters=liters,
                    kg=kg,
                    density=density,
                    tolerance=self.config.density_tolerance
                )
            density = quantize(density, self.config.density_places)

        if draft.related_transaction_id is not None:
            related_id = str(draft.related_transaction_id)
            if not self.operations.exists(related_id):
                raise DanglingOperationReference(
                    f"Related operation {related_id} does not exist",
                    related_transaction_id=related_id,
                    tank_id=draft.tank_id,
                    mrn=draft.mrn
                )

        leg = ledger_models.TransactionLeg(
            tank_id=draft.tank_id,
            fixed_entry_id=draft.fixed_entry_id,
            mobile_entry_id=draft.mobile_entry_id,
            transaction_type=tx_type.value,
            mrn=entry.mrn,
            liters_transacted=liters,
            kg_transacted=kg,
            density_used=density,
            related_transaction_id=(
                str(draft.related_transaction_id) if draft.related_transaction_id is not None else None
            ),
            counterpart_leg_id=draft.counterpart_leg_id,
            operator_id=draft.operator_id,
            note=draft.note,
            correction_target=draft.correction_target,
            recorded_at=draft.recorded_at or datetime.utcnow(),
        )
        self.db.add(leg)
        self.db.flush()
        return leg

    def _check_sign(self, tx_type: TransactionType, liters: Decimal, kg: Decimal):
        if tx_type == TransactionType.RECONCILIATION_CORRECTION:
            return
        if liters == 0 and kg == 0:
            raise InvalidQuantity(f"{tx_type.value} leg moves no fuel", transaction_type=tx_type.value)
        if tx_type.is_inbound and (liters < 0 or kg < 0):
            raise InvalidQuantity(
                f"{tx_type.value} leg must be positive, got {liters} L / {kg} kg",
                transaction_type=tx_type.value, liters=liters, kg=kg
            )
        if tx_type.is_outbound and (liters > 0 or kg > 0):
            raise InvalidQuantity(
                f"{tx_type.value} leg must be negative, got {liters} L / {kg} kg",
                transaction_type=tx_type.value, liters=liters, kg=kg
            )

    def _resolve_entry(self, draft: LegDraft) -> ledger_models.MrnLedgerEntry:
        if (draft.fixed_entry_id is None) == (draft.mobile_entry_id is None):
            raise InvalidRequest(
                "A leg must reference exactly one ledger entry (fixed-tank or mobile-tank)",
                fixed_entry_id=draft.fixed_entry_id,
                mobile_entry_id=draft.mobile_entry_id
            )

        tank = self.db.get(ledger_models.Tank, draft.tank_id)
        if tank is None:
            raise TankNotFound(draft.tank_id)

        entry_id = draft.fixed_entry_id if draft.fixed_entry_id is not None else draft.mobile_entry_id
        entry = self.db.get(ledger_models.MrnLedgerEntry, entry_id)
        if entry is None:
            raise LedgerEntryNotFound(f"Ledger entry {entry_id} not found", ledger_entry_id=entry_id)

        if entry.tank_id != tank.id:
            raise InvalidRequest(
                f"Ledger entry {entry.id} belongs to tank {entry.tank_id}, not tank {tank.id}",
                ledger_entry_id=entry.id, tank_id=tank.id
            )
        if tank.is_mobile != (draft.mobile_entry_id is not None):
            raise InvalidRequest(
                f"Tank {tank.id} is a {tank.tank_kind} tank; the leg references the wrong ledger variant",
                tank_id=tank.id, tank_kind=tank.tank_kind
            )
        return entry

    # ═══════════════════════════════════════════════════════════════════════════
    # READ
    # ═══════════════════════════════════════════════════════════════════════════

    def _ordered(self, query: Query) -> Query:
        return query.order_by(
            ledger_models.TransactionLeg.recorded_at.asc(),
            ledger_models.TransactionLeg.id.asc()
        )

    def legs_for_mrn(self, mrn: str) -> Query:
        """Every leg touching an MRN, across all tanks, in replay order."""
        return self._ordered(self.db.query(ledger_models.TransactionLeg).filter(
            ledger_models.TransactionLeg.mrn == mrn
        ))

    def legs_for_tank(
        self,
        tank_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Query:
        """Legs of a tank within [start, end), in replay order."""
        query = self.db.query(ledger_models.TransactionLeg).filter(
            ledger_models.TransactionLeg.tank_id == tank_id
        )
        if start is not None:
            query = query.filter(ledger_models.TransactionLeg.recorded_at >= start)
        if end is not None:
            query = query.filter(ledger_models.TransactionLeg.recorded_at < end)
        return self._ordered(query)

    def legs_for_entry(self, entry_id: int) -> Query:
        return self._ordered(self.db.query(ledger_models.TransactionLeg).filter(or_(
            ledger_models.TransactionLeg.fixed_entry_id == entry_id,
            ledger_models.TransactionLeg.mobile_entry_id == entry_id
        )))

    def replay_entry_balance(self, entry_id: int) -> Tuple[Decimal, Decimal]:
        """
        Balance of an entry rebuilt from its legs alone: (liters, kg).

        Corrections that moved the tank level rather than the entry are skipped.
        """
        liters = ZERO
        kg = ZERO
        for leg in self.legs_for_entry(entry_id):
            if leg.correction_target == "tank":
                continue
            liters += leg.liters_transacted
            kg += leg.kg_transacted
        return liters, kg

    def find_dangling_references(self, legs: Iterable[ledger_models.TransactionLeg]) -> List[ledger_models.TransactionLeg]:
        """
        Legs whose related_transaction_id does not resolve.

        All referenced ids are resolved with a single collaborator call.
        """
        referencing = [leg for leg in legs if leg.related_transaction_id is not None]
        if not referencing:
            return []

        found = self.operations.get_operations({leg.related_transaction_id for leg in referencing})
        dangling = [leg for leg in referencing if leg.related_transaction_id not in found]

        if dangling:
            logger.warning(
                f"{len(dangling)} leg(s) reference missing operations: "
                f"{sorted({leg.related_transaction_id for leg in dangling})}"
            )
        return dangling
