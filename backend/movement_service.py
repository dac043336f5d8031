"""
Fuel Movement Service

Every change to a tank level goes through here. One movement is one atomic unit:
the MRN ledger update, the journal leg(s), the tank level and the audit row are
committed together or rolled back together, under the tank's lock.
"""

import logging
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from sqlalchemy.orm import Session

import audit_service
import ledger_models
from database import unit_of_work
from fuel_operations import FuelingOperationLookup
from ledger_config import LedgerConfig
from ledger_errors import InsufficientBalance, InvalidQuantity, InvalidRequest, LegNotFound, ReturnExceedsDrain
from ledger_models import TransactionType
from mrn_ledger import MrnLedger, validate_mrn
from quantity import ZERO, calculate_density, normalize_density, quantize, to_decimal
from tank_state import TankLockRegistry, TankStateManager, tank_locks
from transaction_journal import LegDraft, TransactionJournal

logger = logging.getLogger(__name__)

MOVEMENT_TYPES = (TransactionType.REFILL, TransactionType.FUELING, TransactionType.DRAIN)


class MovementService:
    """Posts movements, FIFO withdrawals, tank-to-tank transfers and drain returns."""

    def __init__(
        self,
        db: Session,
        config: Optional[LedgerConfig] = None,
        operations: Optional[FuelingOperationLookup] = None,
        locks: Optional[TankLockRegistry] = None
    ):
        self.db = db
        self.config = config or LedgerConfig.from_env()
        self.locks = locks or tank_locks
        self.ledger = MrnLedger(db, self.config)
        self.journal = TransactionJournal(db, operations, self.config)
        self.tanks = TankStateManager(db, self.config)

    # ═══════════════════════════════════════════════════════════════════════════
    # INPUT VALIDATION (before any unit of work starts)
    # ═══════════════════════════════════════════════════════════════════════════

    def _positive(self, value: Any, field: str) -> Decimal:
        amount = quantize(to_decimal(value, field), self.config.quantity_places)
        if amount <= 0:
            raise InvalidQuantity(f"{field} must be positive, got {amount}", field=field, value=amount)
        return amount

    def _movement_type(self, transaction_type: Any) -> TransactionType:
        try:
            tx_type = TransactionType(transaction_type)
        except ValueError:
            raise InvalidRequest(
                f"Unknown transaction type {transaction_type!r}",
                field="transaction_type", value=str(transaction_type)
            )
        if tx_type not in MOVEMENT_TYPES:
            raise InvalidRequest(
                f"{tx_type.value} cannot be posted as a single movement",
                field="transaction_type",
                value=tx_type.value,
                allowed=[t.value for t in MOVEMENT_TYPES]
            )
        return tx_type

    def _density(self, density: Any, liters: Decimal, kg: Decimal) -> Decimal:
        """Operational density: the supplied reading, else derived from the movement itself."""
        if density is not None:
            d = to_decimal(density, "density")
            if d <= 0:
                raise InvalidQuantity(f"Density must be positive, got {d}", field="density", value=d)
            return normalize_density(d, self.config)
        return calculate_density(kg, liters, self.config)

    # ═══════════════════════════════════════════════════════════════════════════
    # SINGLE MOVEMENT
    # ═══════════════════════════════════════════════════════════════════════════

    def post_movement(
        self,
        tank_id: int,
        mrn: str,
        liters: Any,
        kg: Any,
        transaction_type: Any,
        density: Any = None,
        related_transaction_id: Optional[str] = None,
        operator_id: Optional[str] = None,
        note: Optional[str] = None
    ) -> ledger_models.TransactionLeg:
        """
        Move fuel tied to one MRN into (REFILL) or out of (FUELING, DRAIN) a tank.

        Returns:
            The journal leg that was appended

        Raises:
            InvalidRequest / InvalidQuantity: Bad input, nothing touched
            CapacityExceeded / PreexistingInconsistency: Refill does not fit
            InsufficientBalance: MRN or tank cannot cover the withdrawal
            DuplicateAllocation: Unique allocation policy and an active MRN entry
            DanglingOperationReference: related_transaction_id does not resolve
            OperationTimedOut / ConcurrentModification: Retryable
        """
        mrn = validate_mrn(mrn)
        tx_type = self._movement_type(transaction_type)
        liters_d = self._positive(liters, "liters")
        kg_d = self._positive(kg, "kg")
        density_d = self._density(density, liters_d, kg_d)

        with self.locks.hold(tank_id, self.config.lock_timeout_seconds):
            with unit_of_work(self.db, f"{tx_type.value} on tank {tank_id}"):
                tank = self.tanks.get_tank(tank_id, for_update=True)

                if tx_type.is_inbound:
                    self.tanks.check_movement(tank, liters_d, kg_d)
                    entry = self.ledger.allocate(tank.id, mrn, liters_d, kg_d, density=density_d)
                    delta_liters, delta_kg = liters_d, kg_d
                else:
                    entry = self.ledger.require_entry(tank.id, mrn, for_update=True)
                    self.ledger.consume(entry.id, liters_d, kg_d)
                    delta_liters, delta_kg = -liters_d, -kg_d

                leg = self.journal.record(LegDraft.for_entry(
                    tank, entry, tx_type, delta_liters, delta_kg,
                    density=density_d,
                    related_transaction_id=related_transaction_id,
                    operator_id=operator_id,
                    note=note
                ))
                self.tanks.apply_movement(tank, delta_liters, delta_kg, leg)
                audit_service.log_movement(self.db, operator_id, leg, tank)
                leg_id = leg.id

        logger.info(
            f"{tx_type.value} tank {tank_id} MRN {mrn}: {delta_liters} L / {delta_kg} kg (leg {leg_id})"
        )
        return leg

    # ═══════════════════════════════════════════════════════════════════════════
    # FIFO WITHDRAWAL
    # ═══════════════════════════════════════════════════════════════════════════

    def withdraw_fifo(
        self,
        tank_id: int,
        kg: Any,
        transaction_type: Any = TransactionType.FUELING,
        related_transaction_id: Optional[str] = None,
        operator_id: Optional[str] = None
    ) -> List[ledger_models.TransactionLeg]:
        """
        Remove a kg quantity from a tank, draining MRN entries oldest first.

        Liters come off each entry in proportion to its remaining kg/liter ratio.
        One leg per touched entry, one tank update, one atomic unit.

        Raises:
            InsufficientBalance: The tank's MRN balances cannot cover the request (nothing applied)
        """
        tx_type = self._movement_type(transaction_type)
        if not tx_type.is_outbound:
            raise InvalidRequest(
                f"{tx_type.value} cannot be used for a withdrawal",
                field="transaction_type", value=tx_type.value
            )
        kg_d = self._positive(kg, "kg")
        places = self.config.quantity_places

        with self.locks.hold(tank_id, self.config.lock_timeout_seconds):
            with unit_of_work(self.db, f"FIFO {tx_type.value} on tank {tank_id}"):
                tank = self.tanks.get_tank(tank_id, for_update=True)
                entries = []
                for entry in self.ledger.query_balances_for_tank(tank.id, active_only=True):
                    if entry.remaining_liters <= self.config.epsilon:
                        # kg left with no liters behind it; reconciliation settles it
                        logger.warning(
                            f"FIFO tank {tank.id}: skipping MRN {entry.mrn} (entry {entry.id}) holding "
                            f"{entry.remaining_kg} kg with no liters"
                        )
                        continue
                    entries.append(entry)

                available_kg = sum((e.remaining_kg for e in entries), ZERO)
                if kg_d > available_kg + self.config.epsilon:
                    raise InsufficientBalance(
                        f"Tank {tank.id} holds {available_kg} kg backed by MRNs, requested {kg_d} kg",
                        scope="mrn",
                        tank_id=tank.id,
                        available_kg=available_kg,
                        requested_kg=kg_d,
                        mrns=[e.mrn for e in entries]
                    )

                legs = []
                left_kg = kg_d
                total_liters = ZERO
                total_kg = ZERO
                for entry in entries:
                    if left_kg <= 0:
                        break
                    if entry.remaining_kg <= 0:
                        continue

                    take_kg = min(entry.remaining_kg, left_kg)
                    if take_kg == entry.remaining_kg:
                        take_liters = entry.remaining_liters
                    else:
                        take_liters = quantize(entry.remaining_liters * take_kg / entry.remaining_kg, places)

                    self.ledger.consume(entry.id, take_liters, take_kg)
                    leg = self.journal.record(LegDraft.for_entry(
                        tank, entry, tx_type, -take_liters, -take_kg,
                        density=take_kg / take_liters if take_liters > 0 else None,
                        related_transaction_id=related_transaction_id,
                        operator_id=operator_id
                    ))
                    legs.append(leg)

                    logger.debug(f"FIFO tank {tank.id}: {take_kg} kg / {take_liters} L from MRN {entry.mrn}")
                    total_liters += take_liters
                    total_kg += take_kg
                    left_kg -= take_kg

                self.tanks.apply_movement(tank, -total_liters, -total_kg, legs[-1] if legs else None)
                audit_service.log_withdrawal(self.db, operator_id, tank, legs, kg_d)
                leg_ids = [leg.id for leg in legs]

        logger.info(
            f"FIFO {tx_type.value} tank {tank_id}: {total_kg} kg / {total_liters} L "
            f"across {len(leg_ids)} MRN(s) (legs {leg_ids})"
        )
        return legs

    # ═══════════════════════════════════════════════════════════════════════════
    # TANK-TO-TANK TRANSFER
    # ═══════════════════════════════════════════════════════════════════════════

    def transfer(
        self,
        source_tank_id: int,
        destination_tank_id: int,
        mrn: str,
        liters: Any,
        kg: Any,
        density: Any = None,
        related_transaction_id: Optional[str] = None,
        operator_id: Optional[str] = None
    ) -> Tuple[ledger_models.TransactionLeg, ledger_models.TransactionLeg]:
        """
        Move MRN-tied fuel between two tanks.

        Writes a TRANSFER_OUT leg on the source and a TRANSFER_IN leg on the destination;
        the IN leg points at the OUT leg through counterpart_leg_id.
        """
        if source_tank_id == destination_tank_id:
            raise InvalidRequest(
                "Source and destination tank must differ",
                source_tank_id=source_tank_id, destination_tank_id=destination_tank_id
            )
        mrn = validate_mrn(mrn)
        liters_d = self._positive(liters, "liters")
        kg_d = self._positive(kg, "kg")
        density_d = self._density(density, liters_d, kg_d)

        with self.locks.hold_many([source_tank_id, destination_tank_id], self.config.lock_timeout_seconds):
            with unit_of_work(self.db, f"transfer {source_tank_id} -> {destination_tank_id}"):
                # Row locks in the same ascending order as the process locks
                tanks = {
                    tank_id: self.tanks.get_tank(tank_id, for_update=True)
                    for tank_id in sorted((source_tank_id, destination_tank_id))
                }
                source = tanks[source_tank_id]
                destination = tanks[destination_tank_id]

                self.tanks.check_movement(destination, liters_d, kg_d)

                source_entry = self.ledger.require_entry(source.id, mrn, for_update=True)
                self.ledger.consume(source_entry.id, liters_d, kg_d)
                out_leg = self.journal.record(LegDraft.for_entry(
                    source, source_entry, TransactionType.TRANSFER_OUT, -liters_d, -kg_d,
                    density=density_d,
                    related_transaction_id=related_transaction_id,
                    operator_id=operator_id
                ))

                destination_entry = self.ledger.allocate(
                    destination.id, mrn, liters_d, kg_d,
                    density=source_entry.density_at_intake or density_d
                )
                in_leg = self.journal.record(LegDraft.for_entry(
                    destination, destination_entry, TransactionType.TRANSFER_IN, liters_d, kg_d,
                    density=density_d,
                    related_transaction_id=related_transaction_id,
                    counterpart_leg_id=out_leg.id,
                    operator_id=operator_id
                ))

                self.tanks.apply_movement(source, -liters_d, -kg_d, out_leg)
                self.tanks.apply_movement(destination, liters_d, kg_d, in_leg)
                audit_service.log_transfer(self.db, operator_id, out_leg, in_leg)
                leg_ids = (out_leg.id, in_leg.id)

        logger.info(
            f"Transferred MRN {mrn} {liters_d} L / {kg_d} kg from tank {source_tank_id} "
            f"to tank {destination_tank_id} (legs {leg_ids[0]}, {leg_ids[1]})"
        )
        return out_leg, in_leg

    # ═══════════════════════════════════════════════════════════════════════════
    # DRAIN RETURN
    # ═══════════════════════════════════════════════════════════════════════════

    def _returnable(self, drains: List[ledger_models.TransactionLeg]) -> List[Tuple[ledger_models.TransactionLeg, Decimal]]:
        """(drain leg, liters it can still give back) after earlier returns."""
        returns = self.db.query(ledger_models.TransactionLeg).filter(
            ledger_models.TransactionLeg.counterpart_leg_id.in_([d.id for d in drains]),
            ledger_models.TransactionLeg.transaction_type == TransactionType.REFILL.value
        )
        returned = {}
        for leg in returns:
            returned[leg.counterpart_leg_id] = returned.get(leg.counterpart_leg_id, ZERO) + to_decimal(leg.liters_transacted)
        return [
            (d, max(ZERO, -to_decimal(d.liters_transacted) - returned.get(d.id, ZERO)))
            for d in drains
        ]

    def reverse_drain(
        self,
        drain_leg_ids: List[int],
        destination_tank_id: int,
        liters: Any,
        operator_id: Optional[str] = None,
        note: Optional[str] = None
    ) -> List[ledger_models.TransactionLeg]:
        """
        Return drained (filtered) fuel to a fixed or mobile tank.

        The liters are shared over the drain legs in proportion to what each can still
        give back, so every MRN regains its part at the density it was drained at. One
        REFILL leg per drain leg, each pointing at its drain through counterpart_leg_id.

        Raises:
            InvalidRequest: No drain legs, or a referenced leg is not a DRAIN
            LegNotFound: Unknown leg id
            ReturnExceedsDrain: More than the drains minus earlier returns
            CapacityExceeded / PreexistingInconsistency: Destination cannot take the fuel
        """
        ids = sorted(set(drain_leg_ids or []))
        if not ids:
            raise InvalidRequest("At least one drain leg is required", field="drain_leg_ids")
        liters_d = self._positive(liters, "liters")
        places = self.config.quantity_places
        eps = self.config.epsilon

        drains = self.db.query(ledger_models.TransactionLeg).filter(
            ledger_models.TransactionLeg.id.in_(ids)
        ).order_by(ledger_models.TransactionLeg.id).all()
        missing = sorted(set(ids) - {d.id for d in drains})
        if missing:
            raise LegNotFound(f"Transaction leg(s) {missing} not found", leg_ids=missing)
        not_drains = [d.id for d in drains if d.transaction_type != TransactionType.DRAIN.value]
        if not_drains:
            raise InvalidRequest(
                f"Leg(s) {not_drains} are not drains",
                field="drain_leg_ids", leg_ids=not_drains
            )

        # Drained tanks are locked too so two returns of one drain serialize
        tank_ids = {destination_tank_id} | {d.tank_id for d in drains}
        with self.locks.hold_many(tank_ids, self.config.lock_timeout_seconds):
            with unit_of_work(self.db, f"drain return to tank {destination_tank_id}"):
                destination = self.tanks.get_tank(destination_tank_id, for_update=True)

                returnable = [(d, room) for d, room in self._returnable(drains) if room > 0]
                total_room = sum((room for _, room in returnable), ZERO)
                if total_room <= 0 or liters_d > total_room + eps:
                    raise ReturnExceedsDrain(
                        f"Cannot return {liters_d} L; drain leg(s) {ids} have {total_room} L left to return",
                        drain_leg_ids=ids,
                        drained_liters=sum((-to_decimal(d.liters_transacted) for d in drains), ZERO),
                        returnable_liters=total_room,
                        requested_liters=liters_d
                    )
                liters_d = min(liters_d, total_room)

                shares = []
                left = liters_d
                for i, (drain, room) in enumerate(returnable):
                    if i == len(returnable) - 1:
                        share = left
                    else:
                        share = min(room, quantize(liters_d * room / total_room, places))
                    left -= share
                    if share <= 0:
                        continue
                    density = to_decimal(drain.kg_transacted) / to_decimal(drain.liters_transacted)
                    shares.append((drain, share, quantize(share * density, places), density))

                total_kg = sum((kg for _, _, kg, _ in shares), ZERO)
                self.tanks.check_movement(destination, liters_d, total_kg)

                legs = []
                for drain, share_liters, share_kg, density in shares:
                    entry = self.ledger.find_entry(destination.id, drain.mrn, for_update=True)
                    if entry is None:
                        entry = self.ledger.allocate(destination.id, drain.mrn, share_liters, share_kg, density=density)
                    else:
                        # Returned fuel is the MRN's own; it rejoins the entry under any allocation policy
                        self.ledger.adjust(entry, share_liters, share_kg)
                    legs.append(self.journal.record(LegDraft.for_entry(
                        destination, entry, TransactionType.REFILL, share_liters, share_kg,
                        density=density,
                        counterpart_leg_id=drain.id,
                        operator_id=operator_id,
                        note=note or f"Return of drained fuel (leg {drain.id})"
                    )))
                    logger.debug(f"Drain return tank {destination.id}: {share_liters} L / {share_kg} kg to MRN {drain.mrn}")

                self.tanks.apply_movement(destination, liters_d, total_kg, legs[-1])
                audit_service.log_drain_return(self.db, operator_id, destination, legs)
                leg_ids = [leg.id for leg in legs]

        logger.info(
            f"Returned {liters_d} L / {total_kg} kg of drained fuel to tank {destination_tank_id} "
            f"from drain leg(s) {ids} (legs {leg_ids})"
        )
        return legs
