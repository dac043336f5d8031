"""
MRN Ledger Tests
Balances per (tank, MRN): allocation policy, overdraw protection, closure, ordering.
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

import ledger_models
from ledger_config import LedgerConfig
from ledger_errors import (
    DuplicateAllocation, InsufficientBalance, InvalidQuantity, InvalidRequest,
    LedgerEntryNotFound, TankNotFound
)
from mrn_ledger import MrnLedger


pytestmark = pytest.mark.unit


@pytest.fixture
def ledger(db_session, config):
    return MrnLedger(db_session, config)


class TestAllocate:

    def test_first_allocation_creates_entry(self, ledger, fixed_tank):
        entry = ledger.allocate(fixed_tank.id, "BA1111111111111111", Decimal("3000"), Decimal("2400"))

        assert entry.id is not None
        assert entry.mrn == "BA1111111111111111"
        assert entry.quantity_liters == Decimal("3000")
        assert entry.remaining_liters == Decimal("3000")
        assert entry.remaining_kg == Decimal("2400")

    def test_merge_policy_adds_to_existing_entry(self, ledger, fixed_tank, db_session):
        first = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("1000"), Decimal("800"))
        second = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("500"), Decimal("400"))

        assert first.id == second.id
        assert second.remaining_liters == Decimal("1500")
        assert second.quantity_kg == Decimal("1200")
        assert db_session.query(ledger_models.MrnLedgerEntry).count() == 1

    def test_unique_policy_rejects_active_duplicate(self, db_session, fixed_tank):
        ledger = MrnLedger(db_session, LedgerConfig(allocation_policy="unique"))
        ledger.allocate(fixed_tank.id, "MRN-A", Decimal("1000"), Decimal("800"))

        with pytest.raises(DuplicateAllocation) as exc:
            ledger.allocate(fixed_tank.id, "MRN-A", Decimal("10"), Decimal("8"))

        assert exc.value.details["tank_id"] == fixed_tank.id
        assert exc.value.details["remaining_liters"] == Decimal("1000")

    def test_unique_policy_tops_up_depleted_entry(self, db_session, fixed_tank):
        ledger = MrnLedger(db_session, LedgerConfig(allocation_policy="unique"))
        entry = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("100"), Decimal("80"))
        ledger.consume(entry.id, Decimal("100"), Decimal("80"))

        topped = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("50"), Decimal("40"))

        assert topped.id == entry.id
        assert topped.remaining_liters == Decimal("50")

    def test_same_mrn_in_two_tanks_is_two_entries(self, ledger, fixed_tank, mobile_tank):
        a = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("100"), Decimal("80"))
        b = ledger.allocate(mobile_tank.id, "MRN-A", Decimal("100"), Decimal("80"))
        assert a.id != b.id

    @pytest.mark.parametrize("mrn", ["", "   ", None])
    def test_missing_mrn_is_rejected(self, ledger, fixed_tank, mrn):
        with pytest.raises(InvalidRequest):
            ledger.allocate(fixed_tank.id, mrn, Decimal("100"), Decimal("80"))

    def test_negative_quantity_is_rejected(self, ledger, fixed_tank):
        with pytest.raises(InvalidQuantity):
            ledger.allocate(fixed_tank.id, "MRN-A", Decimal("-100"), Decimal("80"))

    def test_unknown_tank(self, ledger):
        with pytest.raises(TankNotFound):
            ledger.allocate(9999, "MRN-A", Decimal("100"), Decimal("80"))


class TestConsume:

    def test_consume_decrements_balance(self, ledger, fixed_tank):
        entry = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("1000"), Decimal("800"))
        ledger.consume(entry.id, Decimal("250"), Decimal("200"))

        assert entry.remaining_liters == Decimal("750")
        assert entry.remaining_kg == Decimal("600")
        # Initial quantity is history, not balance
        assert entry.quantity_liters == Decimal("1000")

    def test_overdraw_fails_and_leaves_state_unchanged(self, ledger, fixed_tank):
        entry = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("1000"), Decimal("800"))

        with pytest.raises(InsufficientBalance) as exc:
            ledger.consume(entry.id, Decimal("1000.5"), Decimal("800.4"))

        assert exc.value.details["scope"] == "mrn"
        assert exc.value.details["available_liters"] == Decimal("1000")
        assert entry.remaining_liters == Decimal("1000")
        assert entry.remaining_kg == Decimal("800")

    def test_underflow_within_epsilon_snaps_to_zero(self, ledger, fixed_tank):
        entry = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("1000"), Decimal("800"))
        ledger.consume(entry.id, Decimal("1000.001"), Decimal("800.001"))

        assert entry.remaining_liters == Decimal("0")
        assert entry.remaining_kg == Decimal("0")

    def test_consume_unknown_entry(self, ledger):
        with pytest.raises(LedgerEntryNotFound):
            ledger.consume(424242, Decimal("1"), Decimal("0.8"))

    def test_depletion_writes_closure_once(self, ledger, fixed_tank, db_session):
        entry = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("1000"), Decimal("800"))
        # kg runs out first; the liters left over are the variance
        ledger.consume(entry.id, Decimal("995"), Decimal("800"))

        closure = entry.closure
        assert closure is not None
        assert closure.total_kg_processed == Decimal("800")
        assert closure.net_liter_variance == Decimal("5")

        again = ledger.close_if_depleted(entry)
        assert again.id == closure.id
        assert db_session.query(ledger_models.MrnClosure).count() == 1

    def test_partially_used_entry_is_not_closed(self, ledger, fixed_tank):
        entry = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("1000"), Decimal("800"))
        ledger.consume(entry.id, Decimal("10"), Decimal("8"))
        assert ledger.close_if_depleted(entry) is None


class TestAdjust:

    def test_positive_adjustment_grows_balance_and_quantity(self, ledger, fixed_tank):
        entry = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("1000"), Decimal("800"))
        ledger.adjust(entry, Decimal("12.5"), Decimal("10"))

        assert entry.remaining_liters == Decimal("1012.5")
        assert entry.quantity_kg == Decimal("810")

    def test_negative_adjustment_cannot_overdraw(self, ledger, fixed_tank):
        entry = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("10"), Decimal("8"))
        with pytest.raises(InsufficientBalance):
            ledger.adjust(entry, Decimal("-11"), Decimal("0"))
        assert entry.remaining_liters == Decimal("10")


class TestQueries:

    def test_balances_are_ordered_by_allocation_date(self, ledger, fixed_tank):
        base = datetime(2025, 1, 1)
        ledger.allocate(fixed_tank.id, "MRN-C", Decimal("1"), Decimal("0.8"), allocated_at=base + timedelta(days=2))
        ledger.allocate(fixed_tank.id, "MRN-A", Decimal("1"), Decimal("0.8"), allocated_at=base)
        ledger.allocate(fixed_tank.id, "MRN-B", Decimal("1"), Decimal("0.8"), allocated_at=base + timedelta(days=1))

        assert [e.mrn for e in ledger.query_balances_for_tank(fixed_tank.id)] == ["MRN-A", "MRN-B", "MRN-C"]

    def test_balance_sequence_is_restartable(self, ledger, fixed_tank):
        ledger.allocate(fixed_tank.id, "MRN-A", Decimal("1"), Decimal("0.8"))
        ledger.allocate(fixed_tank.id, "MRN-B", Decimal("1"), Decimal("0.8"))

        balances = ledger.query_balances_for_tank(fixed_tank.id)
        first = [e.id for e in balances]
        second = [e.id for e in balances]
        assert first == second
        assert len(first) == 2

    def test_active_only_skips_depleted_entries(self, ledger, fixed_tank):
        a = ledger.allocate(fixed_tank.id, "MRN-A", Decimal("100"), Decimal("80"))
        ledger.allocate(fixed_tank.id, "MRN-B", Decimal("100"), Decimal("80"))
        ledger.consume(a.id, Decimal("100"), Decimal("80"))

        assert [e.mrn for e in ledger.query_balances_for_tank(fixed_tank.id, active_only=True)] == ["MRN-B"]
        assert len(list(ledger.query_balances_for_tank(fixed_tank.id))) == 2

    def test_sum_balances(self, ledger, fixed_tank):
        ledger.allocate(fixed_tank.id, "MRN-A", Decimal("100.125"), Decimal("80.1"))
        ledger.allocate(fixed_tank.id, "MRN-B", Decimal("200.250"), Decimal("160.2"))

        assert ledger.sum_balances(fixed_tank.id) == (Decimal("300.375"), Decimal("240.3"))

    def test_latest_entry(self, ledger, fixed_tank):
        base = datetime(2025, 1, 1)
        ledger.allocate(fixed_tank.id, "MRN-OLD", Decimal("1"), Decimal("0.8"), allocated_at=base)
        ledger.allocate(fixed_tank.id, "MRN-NEW", Decimal("1"), Decimal("0.8"), allocated_at=base + timedelta(days=3))

        assert ledger.latest_entry(fixed_tank.id).mrn == "MRN-NEW"
