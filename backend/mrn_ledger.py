"""
MRN Ledger

Per-(tank, customs declaration) remaining balances: the source of truth for how much
of MRN X is still physically present in tank Y.

The ledger never commits. Every call runs inside the caller's unit of work so a balance
change lands together with its journal leg and tank update, or not at all.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

import ledger_models
from ledger_config import LedgerConfig
from ledger_errors import (
    DuplicateAllocation, InsufficientBalance, InvalidQuantity, InvalidRequest,
    LedgerEntryNotFound, TankNotFound
)
from quantity import ZERO, quantize, to_decimal

logger = logging.getLogger(__name__)


def validate_mrn(mrn: Any) -> str:
    if not isinstance(mrn, str) or not mrn.strip():
        raise InvalidRequest("MRN (customs declaration number) is required", field="mrn", value=mrn)
    return mrn.strip()


class MrnLedger:
    """Allocates, consumes and queries MRN balances."""

    def __init__(self, db: Session, config: Optional[LedgerConfig] = None):
        self.db = db
        self.config = config or LedgerConfig.from_env()

    def _q(self, value: Decimal) -> Decimal:
        return quantize(value, self.config.quantity_places)

    def _non_negative(self, value: Any, field: str) -> Decimal:
        amount = to_decimal(value, field)
        if amount < 0:
            raise InvalidQuantity(f"{field} cannot be negative: {amount}", field=field, value=amount)
        return amount

    # ═══════════════════════════════════════════════════════════════════════════
    # LOOKUPS
    # ═══════════════════════════════════════════════════════════════════════════

    def get_entry(self, entry_id: int, for_update: bool = False) -> ledger_models.MrnLedgerEntry:
        query = self.db.query(ledger_models.MrnLedgerEntry).filter(
            ledger_models.MrnLedgerEntry.id == entry_id
        )
        if for_update:
            query = query.with_for_update()
        entry = query.first()
        if not entry:
            raise LedgerEntryNotFound(f"Ledger entry {entry_id} not found", ledger_entry_id=entry_id)
        return entry

    def find_entry(self, tank_id: int, mrn: str, for_update: bool = False) -> Optional[ledger_models.MrnLedgerEntry]:
        query = self.db.query(ledger_models.MrnLedgerEntry).filter(
            ledger_models.MrnLedgerEntry.tank_id == tank_id,
            ledger_models.MrnLedgerEntry.mrn == mrn
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def require_entry(self, tank_id: int, mrn: str, for_update: bool = False) -> ledger_models.MrnLedgerEntry:
        entry = self.find_entry(tank_id, validate_mrn(mrn), for_update=for_update)
        if not entry:
            raise LedgerEntryNotFound(
                f"No ledger entry for MRN {mrn} in tank {tank_id}",
                tank_id=tank_id, mrn=mrn
            )
        return entry

    def is_active(self, entry: ledger_models.MrnLedgerEntry) -> bool:
        eps = self.config.epsilon
        return (entry.remaining_liters or ZERO) > eps or (entry.remaining_kg or ZERO) > eps

    # ═══════════════════════════════════════════════════════════════════════════
    # MUTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    def allocate(
        self,
        tank_id: int,
        mrn: str,
        liters: Any,
        kg: Any,
        density: Any = None,
        allocated_at: Optional[datetime] = None
    ) -> ledger_models.MrnLedgerEntry:
        """
        Put fuel tied to an MRN into a tank.

        Creates the (tank, MRN) entry on first allocation. For an existing entry the
        configured policy applies: `merge` adds to the balance; `unique` rejects the
        allocation while the entry still holds fuel and tops up a depleted one.

        Raises:
            InvalidRequest: Missing MRN
            InvalidQuantity: Negative liters or kg
            TankNotFound: Unknown tank
            DuplicateAllocation: Unique policy and an active entry exists
        """
        mrn = validate_mrn(mrn)
        liters_d = self._q(self._non_negative(liters, "liters"))
        kg_d = self._q(self._non_negative(kg, "kg"))

        if self.db.get(ledger_models.Tank, tank_id) is None:
            raise TankNotFound(tank_id)

        entry = self.find_entry(tank_id, mrn, for_update=True)

        if entry is None:
            entry = ledger_models.MrnLedgerEntry(
                tank_id=tank_id,
                mrn=mrn,
                quantity_liters=liters_d,
                quantity_kg=kg_d,
                remaining_liters=liters_d,
                remaining_kg=kg_d,
                density_at_intake=(
                    quantize(to_decimal(density, "density"), self.config.density_places)
                    if density is not None else None
                ),
                allocated_at=allocated_at or datetime.utcnow(),
            )
            self.db.add(entry)
            self.db.flush()
            logger.info(f"Allocated new MRN {mrn} in tank {tank_id}: {liters_d} L / {kg_d} kg (entry {entry.id})")
            return entry

        if self.config.allocation_policy == "unique" and self.is_active(entry):
            raise DuplicateAllocation(
                f"MRN {mrn} already has an active balance in tank {tank_id}",
                tank_id=tank_id,
                mrn=mrn,
                ledger_entry_id=entry.id,
                remaining_liters=entry.remaining_liters,
                remaining_kg=entry.remaining_kg
            )

        entry.quantity_liters = self._q(entry.quantity_liters + liters_d)
        entry.quantity_kg = self._q(entry.quantity_kg + kg_d)
        entry.remaining_liters = self._q(entry.remaining_liters + liters_d)
        entry.remaining_kg = self._q(entry.remaining_kg + kg_d)
        if entry.density_at_intake is None and density is not None:
            entry.density_at_intake = quantize(to_decimal(density, "density"), self.config.density_places)
        self.db.flush()

        logger.info(
            f"Added {liters_d} L / {kg_d} kg to MRN {mrn} in tank {tank_id} "
            f"(entry {entry.id}, remaining {entry.remaining_liters} L / {entry.remaining_kg} kg)"
        )
        return entry

    def consume(self, entry_id: int, liters: Any, kg: Any) -> ledger_models.MrnLedgerEntry:
        """
        Decrement an entry's balance.

        An overdraw beyond epsilon fails and leaves the entry untouched; an overdraw within
        epsilon is rounding dust and settles the balance at exactly zero.

        Raises:
            InvalidQuantity: Negative liters or kg
            LedgerEntryNotFound: Unknown entry
            InsufficientBalance: Request exceeds the remaining balance
        """
        liters_d = self._q(self._non_negative(liters, "liters"))
        kg_d = self._q(self._non_negative(kg, "kg"))
        entry = self.get_entry(entry_id, for_update=True)
        eps = self.config.epsilon

        if liters_d > entry.remaining_liters + eps or kg_d > entry.remaining_kg + eps:
            raise InsufficientBalance(
                f"MRN {entry.mrn} in tank {entry.tank_id} holds {entry.remaining_liters} L / "
                f"{entry.remaining_kg} kg, requested {liters_d} L / {kg_d} kg",
                scope="mrn",
                tank_id=entry.tank_id,
                mrn=entry.mrn,
                ledger_entry_id=entry.id,
                available_liters=entry.remaining_liters,
                available_kg=entry.remaining_kg,
                requested_liters=liters_d,
                requested_kg=kg_d
            )

        entry.remaining_liters = max(ZERO, self._q(entry.remaining_liters - liters_d))
        entry.remaining_kg = max(ZERO, self._q(entry.remaining_kg - kg_d))
        self.db.flush()

        logger.debug(
            f"Consumed {liters_d} L / {kg_d} kg from MRN {entry.mrn} (entry {entry.id}), "
            f"remaining {entry.remaining_liters} L / {entry.remaining_kg} kg"
        )
        self.close_if_depleted(entry)
        return entry

    def adjust(self, entry: ledger_models.MrnLedgerEntry, delta_liters: Any, delta_kg: Any) -> ledger_models.MrnLedgerEntry:
        """
        Apply a signed correction to an entry's balance.

        Positive parts also raise the entry's total quantity; negative parts follow the same
        overdraw rule as consume.
        """
        dl = self._q(to_decimal(delta_liters, "delta_liters"))
        dk = self._q(to_decimal(delta_kg, "delta_kg"))
        eps = self.config.epsilon

        new_liters = entry.remaining_liters + dl
        new_kg = entry.remaining_kg + dk
        if new_liters < -eps or new_kg < -eps:
            raise InsufficientBalance(
                f"Correction of {dl} L / {dk} kg would overdraw MRN {entry.mrn} in tank {entry.tank_id} "
                f"({entry.remaining_liters} L / {entry.remaining_kg} kg)",
                scope="mrn",
                tank_id=entry.tank_id,
                mrn=entry.mrn,
                ledger_entry_id=entry.id,
                available_liters=entry.remaining_liters,
                available_kg=entry.remaining_kg,
                requested_liters=-dl,
                requested_kg=-dk
            )

        entry.remaining_liters = max(ZERO, self._q(new_liters))
        entry.remaining_kg = max(ZERO, self._q(new_kg))
        if dl > 0:
            entry.quantity_liters = self._q(entry.quantity_liters + dl)
        if dk > 0:
            entry.quantity_kg = self._q(entry.quantity_kg + dk)
        self.db.flush()

        if dk < 0:
            self.close_if_depleted(entry)
        return entry

    def close_if_depleted(self, entry: ledger_models.MrnLedgerEntry) -> Optional[ledger_models.MrnClosure]:
        """
        Write the closure record for an entry whose kg balance is used up.

        The residual liters (density drift over the MRN's life) are recorded as the
        net liter variance. Idempotent: an entry is closed at most once.
        """
        if entry.remaining_kg > self.config.depletion_threshold_kg:
            return None

        existing = self.db.query(ledger_models.MrnClosure).filter(
            ledger_models.MrnClosure.ledger_entry_id == entry.id
        ).first()
        if existing:
            logger.info(f"MRN {entry.mrn} (entry {entry.id}) already closed, skipping")
            return existing

        closure = ledger_models.MrnClosure(
            ledger_entry_id=entry.id,
            mrn=entry.mrn,
            total_kg_processed=entry.quantity_kg,
            net_liter_variance=entry.remaining_liters,
        )
        self.db.add(closure)
        self.db.flush()
        logger.info(
            f"MRN {entry.mrn} (entry {entry.id}) depleted: {entry.quantity_kg} kg processed, "
            f"liter variance {entry.remaining_liters} L"
        )
        return closure

    # ═══════════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════════

    def query_balances_for_tank(self, tank_id: int, active_only: bool = False) -> Query:
        """
        Ledger entries for a tank, oldest allocation first.

        Returns a Query: lazily fetched, finite, and re-executed on every iteration.
        """
        query = self.db.query(ledger_models.MrnLedgerEntry).filter(
            ledger_models.MrnLedgerEntry.tank_id == tank_id
        )
        if active_only:
            query = query.filter(or_(
                ledger_models.MrnLedgerEntry.remaining_liters > 0,
                ledger_models.MrnLedgerEntry.remaining_kg > 0
            ))
        return query.order_by(
            ledger_models.MrnLedgerEntry.allocated_at.asc(),
            ledger_models.MrnLedgerEntry.id.asc()
        ).yield_per(200)

    def latest_entry(self, tank_id: int) -> Optional[ledger_models.MrnLedgerEntry]:
        return self.db.query(ledger_models.MrnLedgerEntry).filter(
            ledger_models.MrnLedgerEntry.tank_id == tank_id
        ).order_by(
            ledger_models.MrnLedgerEntry.allocated_at.desc(),
            ledger_models.MrnLedgerEntry.id.desc()
        ).first()

    def sum_balances(self, tank_id: int) -> Tuple[Decimal, Decimal]:
        """(liters, kg) summed over every entry of the tank, in Decimal."""
        total_liters = ZERO
        total_kg = ZERO
        for entry in self.query_balances_for_tank(tank_id):
            total_liters += to_decimal(entry.remaining_liters, "remaining_liters")
            total_kg += to_decimal(entry.remaining_kg, "remaining_kg")
        return total_liters, total_kg
