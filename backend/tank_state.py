"""
Tank State Manager

The single mutation point for tank levels, plus the per-tank lock registry that
serializes movements on one tank while leaving other tanks free to proceed.
"""

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, Iterable, Iterator, Optional

from sqlalchemy.orm import Session

import ledger_models
from ledger_config import LedgerConfig
from ledger_errors import (
    CapacityExceeded, InsufficientBalance, OperationTimedOut, PreexistingInconsistency, TankNotFound
)
from quantity import ZERO, quantize, to_decimal

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# PER-TANK LOCKS
# ═══════════════════════════════════════════════════════════════════════════════

class TankLockRegistry:
    """
    One lock per tank id, kept only while some caller holds or waits for it.

    Every acquire is bounded by a timeout; a lock that cannot be taken in time surfaces
    as OperationTimedOut instead of blocking the caller.
    """

    def __init__(self):
        # tank id -> [lock, number of callers holding or waiting]
        self._locks: Dict[int, list] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, tank_id: int) -> threading.Lock:
        with self._registry_lock:
            slot = self._locks.get(tank_id)
            if slot is None:
                slot = [threading.Lock(), 0]
                self._locks[tank_id] = slot
            slot[1] += 1
            return slot[0]

    def _checkin(self, tank_id: int):
        with self._registry_lock:
            slot = self._locks[tank_id]
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[tank_id]

    def is_locked(self, tank_id: int) -> bool:
        with self._registry_lock:
            slot = self._locks.get(tank_id)
            return slot is not None and slot[0].locked()

    def _acquire(self, tank_id: int, timeout: float) -> threading.Lock:
        lock = self._checkout(tank_id)
        if not lock.acquire(timeout=timeout):
            self._checkin(tank_id)
            logger.warning(f"Could not lock tank {tank_id} within {timeout}s")
            raise OperationTimedOut(
                f"Tank {tank_id} is busy; could not acquire its lock within {timeout}s",
                tank_id=tank_id,
                timeout_seconds=timeout
            )
        return lock

    def _release(self, tank_id: int, lock: threading.Lock):
        lock.release()
        self._checkin(tank_id)

    @contextmanager
    def hold(self, tank_id: int, timeout: float) -> Iterator[None]:
        lock = self._acquire(tank_id, timeout)
        try:
            yield
        finally:
            self._release(tank_id, lock)

    @contextmanager
    def hold_many(self, tank_ids: Iterable[int], timeout: float) -> Iterator[None]:
        """Lock several tanks in ascending id order so two transfers can never deadlock."""
        acquired = []
        try:
            for tank_id in sorted(set(tank_ids)):
                acquired.append((tank_id, self._acquire(tank_id, timeout)))
            yield
        finally:
            for tank_id, lock in reversed(acquired):
                self._release(tank_id, lock)


# Process-wide registry shared by every service in this process
tank_locks = TankLockRegistry()


# ═══════════════════════════════════════════════════════════════════════════════
# TANK STATE
# ═══════════════════════════════════════════════════════════════════════════════

class TankStateManager:
    """Reads tank levels and applies validated movements to them."""

    def __init__(self, db: Session, config: Optional[LedgerConfig] = None):
        self.db = db
        self.config = config or LedgerConfig.from_env()

    def get_tank(self, tank_id: int, for_update: bool = False) -> ledger_models.Tank:
        query = self.db.query(ledger_models.Tank).filter(ledger_models.Tank.id == tank_id)
        if for_update:
            query = query.with_for_update()
        tank = query.first()
        if not tank:
            raise TankNotFound(tank_id)
        return tank

    def effective_capacity(self, tank: ledger_models.Tank) -> Decimal:
        """
        Declared capacity if it lies within the configured bounds, else the fallback.

        An out-of-bounds capacity is a data-quality problem in provisioning, not a reason
        to reject the movement, so it only logs a warning.
        """
        capacity = tank.capacity_liters
        if capacity is not None:
            capacity = to_decimal(capacity, "capacity_liters")
            if self.config.min_capacity_liters <= capacity <= self.config.max_capacity_liters:
                return capacity

        logger.warning(
            f"Tank {tank.id} has invalid capacity {tank.capacity_liters!r} "
            f"(valid range {self.config.min_capacity_liters}-{self.config.max_capacity_liters} L), "
            f"using fallback {self.config.fallback_capacity_liters} L"
        )
        return self.config.fallback_capacity_liters

    def headroom(self, tank: ledger_models.Tank) -> Decimal:
        return self.effective_capacity(tank) - to_decimal(tank.current_liters, "current_liters")

    def check_movement(self, tank: ledger_models.Tank, delta_liters: Decimal, delta_kg: Decimal):
        """
        Validate a movement against the tank without applying it.

        Raises:
            PreexistingInconsistency: Fuel added while the level already exceeds capacity
            CapacityExceeded: Resulting level above capacity (carries the excess)
            InsufficientBalance: Resulting level below zero
        """
        eps = self.config.epsilon
        capacity = self.effective_capacity(tank)
        current_liters = to_decimal(tank.current_liters, "current_liters")
        current_kg = to_decimal(tank.current_kg, "current_kg")
        new_liters = current_liters + delta_liters
        new_kg = current_kg + delta_kg

        if delta_liters > 0:
            if current_liters > capacity + eps:
                raise PreexistingInconsistency(
                    f"Tank {tank.id} already holds {current_liters} L, above its capacity of "
                    f"{capacity} L; fix the recorded level before adding fuel",
                    tank_id=tank.id,
                    current_liters=current_liters,
                    capacity_liters=capacity,
                    requested_liters=delta_liters
                )
            if new_liters > capacity + eps:
                excess = quantize(new_liters - capacity, self.config.quantity_places)
                raise CapacityExceeded(
                    f"Adding {delta_liters} L to tank {tank.id} ({current_liters} L of {capacity} L) "
                    f"exceeds capacity by {excess} L",
                    excess_liters=excess,
                    tank_id=tank.id,
                    current_liters=current_liters,
                    capacity_liters=capacity,
                    requested_liters=delta_liters,
                    available_liters=max(ZERO, capacity - current_liters)
                )

        if new_liters < -eps or new_kg < -eps:
            raise InsufficientBalance(
                f"Tank {tank.id} holds {current_liters} L / {current_kg} kg, "
                f"cannot remove {-delta_liters} L / {-delta_kg} kg",
                scope="tank",
                tank_id=tank.id,
                available_liters=current_liters,
                available_kg=current_kg,
                requested_liters=-delta_liters,
                requested_kg=-delta_kg
            )

    def apply_movement(
        self,
        tank: ledger_models.Tank,
        delta_liters,
        delta_kg,
        leg: Optional[ledger_models.TransactionLeg] = None
    ) -> ledger_models.Tank:
        """
        Apply a signed movement to a tank level.

        Runs inside the caller's unit of work; the flush bumps the tank version so a
        concurrent writer fails with a stale-data conflict instead of overwriting us.
        """
        delta_liters = to_decimal(delta_liters, "delta_liters")
        delta_kg = to_decimal(delta_kg, "delta_kg")
        self.check_movement(tank, delta_liters, delta_kg)

        places = self.config.quantity_places
        tank.current_liters = max(ZERO, quantize(to_decimal(tank.current_liters) + delta_liters, places))
        tank.current_kg = max(ZERO, quantize(to_decimal(tank.current_kg) + delta_kg, places))
        self.db.flush()

        self._warn_on_density_drift(tank)
        logger.debug(
            f"Tank {tank.id} moved {delta_liters} L / {delta_kg} kg"
            f"{f' (leg {leg.id})' if leg is not None else ''}, "
            f"now {tank.current_liters} L / {tank.current_kg} kg"
        )
        return tank

    def _warn_on_density_drift(self, tank: ledger_models.Tank):
        liters = to_decimal(tank.current_liters)
        if liters <= self.config.epsilon:
            return
        density = to_decimal(tank.current_kg) / liters
        if density < self.config.density_min or density > self.config.density_max:
            logger.warning(
                f"Tank {tank.id} density {density:.4f} kg/L outside operating band "
                f"[{self.config.density_min}-{self.config.density_max}]"
            )
