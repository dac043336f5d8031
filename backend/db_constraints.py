"""
Database Constraints for the Immutable Journal

Enforces journal immutability at database level (triggers), so transaction legs and
reconciliation records cannot be rewritten even if application checks are bypassed.
"""

from sqlalchemy import DDL, text
from sqlalchemy.engine import Engine
from typing import Dict


IMMUTABLE_TABLES = ("transaction_legs", "reconciliation_records")


def create_journal_immutability_constraints(engine: Engine):
    """
    Create database-level triggers that reject UPDATE and DELETE on journal tables.

    Corrections are forward-only: a new leg, never an edit of an old one.
    """
    if engine.dialect.name == "sqlite":
        statements = []
        for table in IMMUTABLE_TABLES:
            statements.append(f"""
            CREATE TRIGGER IF NOT EXISTS prevent_{table}_update
            BEFORE UPDATE ON {table}
            FOR EACH ROW
            BEGIN
                SELECT RAISE(ABORT, 'Cannot update {table}. Journal rows are immutable once written.');
            END;
            """)
            statements.append(f"""
            CREATE TRIGGER IF NOT EXISTS prevent_{table}_delete
            BEFORE DELETE ON {table}
            FOR EACH ROW
            BEGIN
                SELECT RAISE(ABORT, 'Cannot delete from {table}. Journal rows are immutable once written.');
            END;
            """)

        with engine.connect() as conn:
            for sql in statements:
                conn.execute(DDL(sql))
            conn.commit()

    elif engine.dialect.name == "postgresql":
        function_sql = """
        CREATE OR REPLACE FUNCTION reject_journal_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'Cannot % %. Journal rows are immutable once written.', TG_OP, TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql;
        """
        with engine.connect() as conn:
            conn.execute(DDL(function_sql))
            for table in IMMUTABLE_TABLES:
                conn.execute(DDL(f"DROP TRIGGER IF EXISTS prevent_{table}_mutation ON {table}"))
                conn.execute(DDL(f"""
                CREATE TRIGGER prevent_{table}_mutation
                BEFORE UPDATE OR DELETE ON {table}
                FOR EACH ROW EXECUTE FUNCTION reject_journal_mutation();
                """))
            conn.commit()


def verify_constraints(engine: Engine) -> Dict[str, bool]:
    """Report which immutability triggers are installed (SQLite only; other dialects report False)."""
    status = {}
    if engine.dialect.name != "sqlite":
        return {table: False for table in IMMUTABLE_TABLES}

    with engine.connect() as conn:
        names = {
            row[0] for row in conn.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'trigger'")
            )
        }
    for table in IMMUTABLE_TABLES:
        status[table] = f"prevent_{table}_update" in names and f"prevent_{table}_delete" in names
    return status
