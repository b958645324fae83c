"""SQLite helpers shared by the layers."""

import os
import sqlite3
from typing import Dict, Iterable, Sequence, Tuple

import pandas as pd


def connect(db_file: str, must_exist: bool = False) -> sqlite3.Connection:
    """
    Open a SQLite database.

    sqlite3.connect silently creates missing files; ``must_exist`` turns
    that into a FileNotFoundError for databases that are read, not built.
    """
    if must_exist and not os.path.exists(db_file):
        raise FileNotFoundError(f"Database not found: {db_file}")
    directory = os.path.dirname(os.path.abspath(db_file))
    os.makedirs(directory, exist_ok=True)
    return sqlite3.connect(db_file)


def create_table(cursor, table: str, columns: Sequence[Tuple[str, str]]) -> None:
    column_sql = ",\n            ".join(f"{name} {sql_type}" for name, sql_type in columns)
    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS {table} (
            {column_sql}
        )
    """)


def read_table(conn: sqlite3.Connection, table: str, schema: str = "main") -> pd.DataFrame:
    """Read a whole table in insertion (rowid) order."""
    return pd.read_sql(f"SELECT * FROM {schema}.{table} ORDER BY rowid", conn)


def write_table(conn: sqlite3.Connection, table: str, frame: pd.DataFrame,
                columns: Sequence[str]) -> int:
    """
    Replace the rows of an existing ``table`` with ``frame``.

    The typed table comes from ``create_table``; pandas only appends into it,
    so the declared column types and primary keys stay in force.
    """
    conn.execute(f"DELETE FROM {table}")
    frame.loc[:, list(columns)].to_sql(table, conn, if_exists="append", index=False)
    return len(frame)


def table_counts(db_file: str, tables: Iterable[str]) -> Dict[str, int]:
    """Row count per table; -1 for a table or database that does not exist."""
    counts = {}
    if not os.path.exists(db_file):
        return {table: -1 for table in tables}
    conn = sqlite3.connect(db_file)
    try:
        for table in tables:
            try:
                counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            except sqlite3.OperationalError:
                counts[table] = -1
    finally:
        conn.close()
    return counts
