"""
Fuel Ledger Models

Persistent records for tanks, per-MRN ledger balances, the transaction-leg journal,
reconciliation records and MRN closures.
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, JSON, Text,
    CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
import datetime
import enum


Base = declarative_base()

# Quantities: liters / kg to 3 places, densities to 4
Quantity = Numeric(14, 3, asdecimal=True)
Density = Numeric(8, 4, asdecimal=True)


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class TankKind(str, enum.Enum):
    FIXED = "fixed"
    MOBILE = "mobile"


class TransactionType(str, enum.Enum):
    """Kinds of quantity movement recorded in the journal."""
    REFILL = "REFILL"
    FUELING = "FUELING"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    DRAIN = "DRAIN"
    RECONCILIATION_CORRECTION = "RECONCILIATION_CORRECTION"

    @property
    def is_inbound(self) -> bool:
        return self in (TransactionType.REFILL, TransactionType.TRANSFER_IN)

    @property
    def is_outbound(self) -> bool:
        return self in (TransactionType.FUELING, TransactionType.TRANSFER_OUT, TransactionType.DRAIN)


class DriftClassification(str, enum.Enum):
    CONSISTENT = "CONSISTENT"
    MINOR = "MINOR"
    MAJOR = "MAJOR"


# ═══════════════════════════════════════════════════════════════════════════════
# TANKS
# ═══════════════════════════════════════════════════════════════════════════════

class Tank(Base):
    """
    A fuel-holding tank with a capacity.

    Fixed storage tanks and mobile tankers share one table; `tank_kind` selects the subclass.
    `version` is bumped on every update and guards against lost updates from concurrent writers.
    """
    __tablename__ = "tanks"

    id = Column(Integer, primary_key=True, index=True)
    tank_kind = Column(String(10), nullable=False)
    name = Column(String(100), nullable=False)
    capacity_liters = Column(Quantity, nullable=True)
    current_liters = Column(Quantity, nullable=False, default=0)
    current_kg = Column(Quantity, nullable=False, default=0)
    density_reference = Column(Density, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    ledger_entries = relationship(
        "MrnLedgerEntry",
        back_populates="tank",
        order_by="MrnLedgerEntry.allocated_at"
    )

    __mapper_args__ = {
        "polymorphic_on": tank_kind,
        "version_id_col": version,
    }

    __table_args__ = (
        CheckConstraint("tank_kind IN ('fixed', 'mobile')", name="ck_tank_kind"),
    )

    @property
    def is_mobile(self) -> bool:
        return self.tank_kind == TankKind.MOBILE.value


class FixedTank(Tank):
    location = Column(String(100), nullable=True)

    __mapper_args__ = {"polymorphic_identity": TankKind.FIXED.value}


class MobileTank(Tank):
    registration = Column(String(50), nullable=True)

    __mapper_args__ = {"polymorphic_identity": TankKind.MOBILE.value}


# ═══════════════════════════════════════════════════════════════════════════════
# MRN LEDGER
# ═══════════════════════════════════════════════════════════════════════════════

class MrnLedgerEntry(Base):
    """
    Remaining balance of one customs declaration (MRN) held in one tank.

    Entries are never deleted; a depleted entry stays at zero for the audit trail.
    """
    __tablename__ = "mrn_ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    tank_id = Column(Integer, ForeignKey("tanks.id"), nullable=False, index=True)
    mrn = Column(String(64), nullable=False, index=True)

    quantity_liters = Column(Quantity, nullable=False, default=0)
    quantity_kg = Column(Quantity, nullable=False, default=0)
    remaining_liters = Column(Quantity, nullable=False, default=0)
    remaining_kg = Column(Quantity, nullable=False, default=0)
    density_at_intake = Column(Density, nullable=True)

    allocated_at = Column(DateTime, default=datetime.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    tank = relationship("Tank", back_populates="ledger_entries")
    closure = relationship("MrnClosure", back_populates="ledger_entry", uselist=False)

    __table_args__ = (
        UniqueConstraint("tank_id", "mrn", name="uq_ledger_tank_mrn"),
        CheckConstraint("remaining_liters >= 0", name="ck_ledger_remaining_liters"),
        CheckConstraint("remaining_kg >= 0", name="ck_ledger_remaining_kg"),
        Index("ix_ledger_tank_allocated", "tank_id", "allocated_at"),
    )


class MrnClosure(Base):
    """Written once when an MRN entry's kg balance is depleted."""
    __tablename__ = "mrn_closures"

    id = Column(Integer, primary_key=True, index=True)
    ledger_entry_id = Column(Integer, ForeignKey("mrn_ledger_entries.id"), nullable=False, unique=True)
    mrn = Column(String(64), nullable=False, index=True)
    total_kg_processed = Column(Quantity, nullable=False)
    net_liter_variance = Column(Quantity, nullable=False, default=0)
    closed_at = Column(DateTime, default=datetime.datetime.utcnow)

    ledger_entry = relationship("MrnLedgerEntry", back_populates="closure")


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSACTION LEG JOURNAL
# ═══════════════════════════════════════════════════════════════════════════════

class TransactionLeg(Base):
    """
    Immutable journal row for one quantity movement against one ledger entry.

    Quantities are signed: positive into the tank, negative out of it.
    The autoincrement id doubles as the insertion sequence number.
    """
    __tablename__ = "transaction_legs"

    id = Column(Integer, primary_key=True, index=True)
    tank_id = Column(Integer, ForeignKey("tanks.id"), nullable=False, index=True)
    fixed_entry_id = Column(Integer, ForeignKey("mrn_ledger_entries.id"), nullable=True, index=True)
    mobile_entry_id = Column(Integer, ForeignKey("mrn_ledger_entries.id"), nullable=True, index=True)

    transaction_type = Column(String(32), nullable=False)
    mrn = Column(String(64), nullable=False, index=True)
    liters_transacted = Column(Quantity, nullable=False)
    kg_transacted = Column(Quantity, nullable=False)
    density_used = Column(Density, nullable=True)

    related_transaction_id = Column(String(64), nullable=True, index=True)
    counterpart_leg_id = Column(Integer, ForeignKey("transaction_legs.id"), nullable=True)
    operator_id = Column(String(100), nullable=True)
    note = Column(Text, nullable=True)
    # Correction legs only: "tank" (level moved to the ledger) or "ledger" (entry moved to the tank)
    correction_target = Column(String(10), nullable=True)

    recorded_at = Column(DateTime, default=datetime.datetime.utcnow, nullable=False)

    fixed_entry = relationship("MrnLedgerEntry", foreign_keys=[fixed_entry_id])
    mobile_entry = relationship("MrnLedgerEntry", foreign_keys=[mobile_entry_id])

    __table_args__ = (
        CheckConstraint(
            "(fixed_entry_id IS NULL) <> (mobile_entry_id IS NULL)",
            name="ck_leg_single_ledger_entry"
        ),
        CheckConstraint(
            "transaction_type IN ('REFILL', 'FUELING', 'TRANSFER_IN', 'TRANSFER_OUT', "
            "'DRAIN', 'RECONCILIATION_CORRECTION')",
            name="ck_leg_transaction_type"
        ),
        CheckConstraint(
            "correction_target IS NULL OR correction_target IN ('tank', 'ledger')",
            name="ck_leg_correction_target"
        ),
        Index("ix_leg_tank_recorded", "tank_id", "recorded_at", "id"),
    )

    @property
    def sequence_no(self) -> int:
        return self.id

    @property
    def ledger_entry_id(self) -> int:
        return self.fixed_entry_id if self.fixed_entry_id is not None else self.mobile_entry_id


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILIATION
# ═══════════════════════════════════════════════════════════════════════════════

class ReconciliationRecord(Base):
    """
    Outcome of one reconciliation check of a tank.

    Written once per run; a correction produces a new record referencing the correction leg.
    """
    __tablename__ = "reconciliation_records"

    id = Column(Integer, primary_key=True, index=True)
    tank_id = Column(Integer, ForeignKey("tanks.id"), nullable=False, index=True)
    checked_at = Column(DateTime, default=datetime.datetime.utcnow, nullable=False)

    expected_liters = Column(Quantity, nullable=False)
    expected_kg = Column(Quantity, nullable=False)
    actual_liters = Column(Quantity, nullable=False)
    actual_kg = Column(Quantity, nullable=False)
    drift_liters = Column(Quantity, nullable=False)
    drift_kg = Column(Quantity, nullable=False)
    relative_drift = Column(Numeric(12, 6, asdecimal=True), nullable=False)
    effective_capacity_liters = Column(Quantity, nullable=False)

    classification = Column(String(20), nullable=False)
    triggered_by = Column(String(100), nullable=True)

    resolved_by = Column(String(100), nullable=True)
    resolution_reason = Column(Text, nullable=True)
    correction_leg_id = Column(Integer, ForeignKey("transaction_legs.id"), nullable=True)

    correction_leg = relationship("TransactionLeg")

    __table_args__ = (
        CheckConstraint(
            "classification IN ('CONSISTENT', 'MINOR', 'MAJOR')",
            name="ck_reconciliation_classification"
        ),
        Index("ix_reconciliation_tank_checked", "tank_id", "checked_at"),
    )

    @property
    def is_resolved(self) -> bool:
        return self.correction_leg_id is not None


# ═══════════════════════════════════════════════════════════════════════════════
# COLLABORATOR RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

class FuelingOperation(Base):
    """Aircraft fueling operation, owned by the fueling module; read-only for the ledger core."""
    __tablename__ = "fueling_operations"

    id = Column(String(64), primary_key=True)
    aircraft_registration = Column(String(20), nullable=False)
    date_time = Column(DateTime, nullable=False)
    quantity_liters = Column(Quantity, nullable=False)
    quantity_kg = Column(Quantity, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=datetime.datetime.utcnow)
    user = Column(String)
    action = Column(String)  # Movement, Transfer, Withdrawal, Correction
    resource_type = Column(String)  # Tank, MrnLedgerEntry, ReconciliationRecord
    resource_id = Column(Integer, nullable=True)
    changes = Column(JSON, nullable=True)
