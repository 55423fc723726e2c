"""
Database compatibility helpers for SQLite and PostgreSQL.
"""
from sqlalchemy.dialects import postgresql, sqlite
from subsidy_crm.database import is_sqlite


def insert_for_dialect(table):
    """INSERT construct supporting ON CONFLICT on both backends."""
    if is_sqlite:
        return sqlite.insert(table)
    return postgresql.insert(table)


def upsert_increment(table, key_column: str, key, counter_column: str):
    """
    Single-statement "insert 1 or add 1" returning the new value.

    Both SQLite (3.35+) and PostgreSQL execute this atomically, so two
    concurrent callers can never receive the same number.
    """
    stmt = insert_for_dialect(table).values({key_column: key, counter_column: 1})
    stmt = stmt.on_conflict_do_update(
        index_elements=[key_column],
        set_={counter_column: table.c[counter_column] + 1},
    )
    return stmt.returning(table.c[counter_column])
