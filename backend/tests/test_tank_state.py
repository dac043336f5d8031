"""
Tank State Manager Tests
Capacity sanitization, capacity/negative-level checks and bounded per-tank locking.
"""

import pytest
import threading
from decimal import Decimal

import ledger_models
from ledger_errors import (
    CapacityExceeded, InsufficientBalance, OperationTimedOut, PreexistingInconsistency, TankNotFound
)
from tank_state import TankLockRegistry, TankStateManager


pytestmark = pytest.mark.unit


@pytest.fixture
def tanks(db_session, config):
    return TankStateManager(db_session, config)


def _tank(db_session, capacity, liters="0", kg="0"):
    tank = ledger_models.FixedTank(
        name="T",
        capacity_liters=Decimal(capacity) if capacity is not None else None,
        current_liters=Decimal(liters),
        current_kg=Decimal(kg),
    )
    db_session.add(tank)
    db_session.commit()
    return tank


class TestEffectiveCapacity:

    def test_valid_capacity_is_used(self, tanks, db_session):
        assert tanks.effective_capacity(_tank(db_session, "30000")) == Decimal("30000")

    @pytest.mark.parametrize("capacity", ["0", "0.5", "1000001", "-10", None])
    def test_invalid_capacity_falls_back_with_warning(self, tanks, db_session, caplog, capacity):
        tank = _tank(db_session, capacity)
        assert tanks.effective_capacity(tank) == Decimal("24500")
        assert "using fallback" in caplog.text

    def test_bounds_are_inclusive(self, tanks, db_session):
        assert tanks.effective_capacity(_tank(db_session, "1")) == Decimal("1")
        assert tanks.effective_capacity(_tank(db_session, "1000000")) == Decimal("1000000")


class TestApplyMovement:

    def test_movement_updates_level(self, tanks, db_session):
        tank = _tank(db_session, "24500", "20000", "16000")
        tanks.apply_movement(tank, Decimal("-3000"), Decimal("-2400"))

        assert tank.current_liters == Decimal("17000")
        assert tank.current_kg == Decimal("13600")

    def test_capacity_exceeded_carries_excess(self, tanks, db_session):
        tank = _tank(db_session, "24500", "23000", "18400")

        with pytest.raises(CapacityExceeded) as exc:
            tanks.apply_movement(tank, Decimal("2000"), Decimal("1600"))

        assert exc.value.excess_liters == Decimal("500")
        assert exc.value.details["capacity_liters"] == Decimal("24500")
        assert tank.current_liters == Decimal("23000")

    def test_filling_to_exact_capacity_is_allowed(self, tanks, db_session):
        tank = _tank(db_session, "24500", "23000", "18400")
        tanks.apply_movement(tank, Decimal("1500"), Decimal("1200"))
        assert tank.current_liters == Decimal("24500")

    def test_fallback_capacity_is_used_for_the_check(self, tanks, db_session):
        tank = _tank(db_session, "5000000", "24000", "19200")

        with pytest.raises(CapacityExceeded) as exc:
            tanks.apply_movement(tank, Decimal("1000"), Decimal("800"))

        assert exc.value.excess_liters == Decimal("500")

    def test_preexisting_overfill_is_reported_distinctly(self, tanks, db_session):
        tank = _tank(db_session, "24500", "25000", "20000")

        with pytest.raises(PreexistingInconsistency) as exc:
            tanks.apply_movement(tank, Decimal("10"), Decimal("8"))

        assert not isinstance(exc.value, CapacityExceeded)
        assert exc.value.details["current_liters"] == Decimal("25000")

    def test_overfilled_tank_can_still_be_drained(self, tanks, db_session):
        tank = _tank(db_session, "24500", "25000", "20000")
        tanks.apply_movement(tank, Decimal("-1000"), Decimal("-800"))
        assert tank.current_liters == Decimal("24000")

    def test_level_cannot_go_negative(self, tanks, db_session):
        tank = _tank(db_session, "24500", "100", "80")

        with pytest.raises(InsufficientBalance) as exc:
            tanks.apply_movement(tank, Decimal("-101"), Decimal("-80.8"))

        assert exc.value.details["scope"] == "tank"

    def test_underflow_within_epsilon_snaps_to_zero(self, tanks, db_session):
        tank = _tank(db_session, "24500", "100", "80")
        tanks.apply_movement(tank, Decimal("-100.001"), Decimal("-80"))
        assert tank.current_liters == Decimal("0")

    def test_movement_bumps_version(self, tanks, db_session):
        tank = _tank(db_session, "24500")
        version = tank.version
        tanks.apply_movement(tank, Decimal("100"), Decimal("80"))
        assert tank.version == version + 1

    def test_density_drift_is_logged(self, tanks, db_session, caplog):
        tank = _tank(db_session, "24500")
        tanks.apply_movement(tank, Decimal("1000"), Decimal("950"))
        assert "outside operating band" in caplog.text

    def test_unknown_tank(self, tanks):
        with pytest.raises(TankNotFound):
            tanks.get_tank(12345)


@pytest.mark.concurrency
class TestTankLocks:

    def test_busy_tank_times_out(self):
        locks = TankLockRegistry()
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(1, timeout=1):
                acquired.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        acquired.wait(5)
        try:
            with pytest.raises(OperationTimedOut) as exc:
                with locks.hold(1, timeout=0.05):
                    pass
            assert exc.value.retryable
        finally:
            release.set()
            t.join()

    def test_other_tanks_are_not_blocked(self):
        locks = TankLockRegistry()
        with locks.hold(1, timeout=1):
            with locks.hold(2, timeout=0.05):
                assert locks.is_locked(1)
                assert locks.is_locked(2)
        assert not locks.is_locked(1)

    def test_hold_many_releases_everything_on_timeout(self):
        locks = TankLockRegistry()
        with locks.hold(3, timeout=1):
            with pytest.raises(OperationTimedOut):
                with locks.hold_many([3, 1, 2], timeout=0.05):
                    pass
            # 1 and 2 were taken before 3 and must have been released
            assert not locks.is_locked(1)
            assert not locks.is_locked(2)

    def test_registry_forgets_tanks_nobody_holds(self):
        locks = TankLockRegistry()
        with locks.hold(1, timeout=1):
            with locks.hold_many([2, 3], timeout=1):
                assert len(locks) == 3
        assert len(locks) == 0

        with locks.hold(4, timeout=1):
            with pytest.raises(OperationTimedOut):
                with locks.hold(4, timeout=0.05):
                    pass
            assert len(locks) == 1
        assert len(locks) == 0

    def test_waiter_shares_the_holders_lock(self):
        locks = TankLockRegistry()
        acquired = threading.Event()
        release = threading.Event()
        order = []

        def holder():
            with locks.hold(7, timeout=1):
                acquired.set()
                release.wait(5)
                order.append("holder")

        t = threading.Thread(target=holder)
        t.start()
        acquired.wait(5)
        timer = threading.Timer(0.1, release.set)
        timer.start()
        with locks.hold(7, timeout=5):
            order.append("waiter")
        t.join()
        timer.join()

        assert order == ["holder", "waiter"]
        assert len(locks) == 0
