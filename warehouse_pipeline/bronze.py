import csv
import logging
import os
import sqlite3
from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Optional, Tuple

from warehouse_pipeline.stages import StageError, SOURCE_UNAVAILABLE, LOAD_FAILED, run_tasks
from warehouse_pipeline.storage import connect, create_table

logger = logging.getLogger("warehouse.bronze")


@dataclass(frozen=True)
class BronzeSource:
    """One raw CSV extract and the bronze table it lands in."""

    name: str
    csv_path: str  # relative to the source directory
    columns: Tuple[Tuple[str, str], ...]  # (column, SQLite type)

    @property
    def table(self) -> str:
        return f"bronze_{self.name}"

    @property
    def column_names(self) -> List[str]:
        return [column for column, _ in self.columns]


BRONZE_SOURCES: Tuple[BronzeSource, ...] = (
    BronzeSource("crm_cust_info", os.path.join("source_crm", "cust_info.csv"), (
        ("cst_id", "INTEGER"),
        ("cst_key", "TEXT"),
        ("cst_firstname", "TEXT"),
        ("cst_lastname", "TEXT"),
        ("cst_marital_status", "TEXT"),
        ("cst_gndr", "TEXT"),
        ("cst_create_date", "DATE"),
    )),
    BronzeSource("crm_prd_info", os.path.join("source_crm", "prd_info.csv"), (
        ("prd_id", "INTEGER"),
        ("prd_key", "TEXT"),
        ("prd_nm", "TEXT"),
        ("prd_cost", "INTEGER"),
        ("prd_line", "TEXT"),
        ("prd_start_dt", "DATETIME"),
        ("prd_end_dt", "DATETIME"),
    )),
    BronzeSource("crm_sales_details", os.path.join("source_crm", "sales_details.csv"), (
        ("sls_ord_num", "TEXT"),
        ("sls_prd_key", "TEXT"),
        ("sls_cust_id", "INTEGER"),
        ("sls_order_dt", "INTEGER"),
        ("sls_ship_dt", "INTEGER"),
        ("sls_due_dt", "INTEGER"),
        ("sls_sales", "INTEGER"),
        ("sls_quantity", "INTEGER"),
        ("sls_price", "INTEGER"),
    )),
    BronzeSource("erp_cust_az12", os.path.join("source_erp", "CUST_AZ12.csv"), (
        ("cid", "TEXT"),
        ("bdate", "DATE"),
        ("gen", "TEXT"),
    )),
    BronzeSource("erp_loc_a101", os.path.join("source_erp", "LOC_A101.csv"), (
        ("cid", "TEXT"),
        ("cntry", "TEXT"),
    )),
    BronzeSource("erp_px_cat_g1v2", os.path.join("source_erp", "PX_CAT_G1V2.csv"), (
        ("id", "TEXT"),
        ("cat", "TEXT"),
        ("subcat", "TEXT"),
        ("maintenance", "TEXT"),
    )),
)

SOURCES_BY_NAME: Dict[str, BronzeSource] = {source.name: source for source in BRONZE_SOURCES}


def create_bronze_tables(cursor) -> None:
    """
    Create the six bronze tables if they don't already exist.

    Column types only give SQLite an affinity; values that do not convert
    (e.g. a non-numeric id) are stored as text and dealt with in silver.
    """
    for source in BRONZE_SOURCES:
        create_table(cursor, source.table, source.columns)


def _normalize_header(name: str) -> str:
    return name.strip().lower()


def validate_csv_structure(csv_file: str, required_columns: list) -> bool:
    """
    Validate the header row of a CSV file.

    Header names are compared case-insensitively after trimming, so the ERP
    extracts' upper-case headers (ID, CAT, ...) are accepted.

    Args:
        csv_file: Path to the CSV file
        required_columns: List of required column names

    Returns:
        True if the CSV structure is valid, False otherwise
    """
    try:
        with open(csv_file, newline='', encoding='utf-8-sig') as f:
            reader = csv.reader(f)
            header = next(reader, None)
            if not header:
                logger.error(f"CSV file {csv_file} is empty or has no headers.")
                return False
            csv_columns = {_normalize_header(col) for col in header}
            missing_columns = [col for col in required_columns if col not in csv_columns]
            if missing_columns:
                logger.error(f"CSV file {csv_file} is missing required columns: {missing_columns}")
                return False
        return True
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        logger.error(f"Error validating CSV structure of {csv_file}: {e}")
        return False


def _read_rows(csv_file: str, source: BronzeSource) -> List[tuple]:
    rows = []
    with open(csv_file, newline='', encoding='utf-8-sig') as f:
        reader = csv.DictReader(f)
        reader.fieldnames = [_normalize_header(col) for col in reader.fieldnames or []]
        for line_number, row in enumerate(reader, start=2):
            if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
                logger.debug(f"{source.name}: skipping blank line {line_number}")
                continue
            # Raw values are kept as-is; only empty fields become NULL
            rows.append(tuple(
                row.get(column) if row.get(column) not in ("", None) else None
                for column in source.column_names
            ))
    return rows


def read_source(source: BronzeSource, csv_file: str) -> List[tuple]:
    """
    Validate one CSV extract and read its rows without touching the database.

    Raises:
        StageError: SOURCE_UNAVAILABLE if the file is missing, has a bad
            header or cannot be read
    """
    if not os.path.exists(csv_file):
        raise StageError("bronze", f"CSV file not found: {csv_file}", SOURCE_UNAVAILABLE, source.name)
    if not validate_csv_structure(csv_file, source.column_names):
        raise StageError("bronze", f"CSV structure validation failed for {csv_file}",
                         SOURCE_UNAVAILABLE, source.name)
    try:
        rows = _read_rows(csv_file, source)
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise StageError("bronze", f"Error reading {csv_file}: {e}", SOURCE_UNAVAILABLE, source.name) from e
    logger.debug(f"Read {len(rows)} rows from {csv_file}")
    return rows


def _replace_rows(conn: sqlite3.Connection, source: BronzeSource, rows: List[tuple]) -> None:
    placeholders = ", ".join("?" for _ in source.columns)
    conn.execute(f"DELETE FROM {source.table}")
    conn.executemany(
        f"INSERT INTO {source.table} ({', '.join(source.column_names)}) VALUES ({placeholders})",
        rows,
    )


def ingest_source(conn: sqlite3.Connection, source: BronzeSource, csv_file: str) -> int:
    """
    Truncate one bronze table and reload it from its CSV extract.

    The delete and the inserts share a transaction, so a failed load leaves the
    previous bronze rows in place.

    Returns:
        Number of rows loaded
    """
    rows = read_source(source, csv_file)
    try:
        with conn:
            _replace_rows(conn, source, rows)
    except sqlite3.Error as e:
        raise StageError("bronze", f"Error loading {source.table}: {e}", LOAD_FAILED, source.name) from e

    logger.info(f"Loaded {len(rows)} records into {source.table} from {csv_file}")
    return len(rows)


def ingest_all(source_dir: str, bronze_db: str, stage_timeout: Optional[float] = None) -> Dict[str, int]:
    """
    Load all six CSV extracts into the bronze database.

    Every extract is read and validated before bronze is touched; the six
    reloads then share one transaction. A missing extract, a write error or
    a timeout leaves every bronze table as it was.

    Args:
        source_dir: Directory holding source_crm/ and source_erp/
        bronze_db: Path to the SQLite database file
        stage_timeout: Seconds allowed for reading the extracts, None for no limit

    Returns:
        Rows loaded per source
    """
    extracts = run_tasks("bronze", [
        (source.name, partial(read_source, source, os.path.join(source_dir, source.csv_path)))
        for source in BRONZE_SOURCES
    ], timeout=stage_timeout)

    conn = connect(bronze_db)
    current = None
    try:
        create_bronze_tables(conn.cursor())
        conn.commit()
        with conn:
            for source in BRONZE_SOURCES:
                current = source.name
                _replace_rows(conn, source, extracts[source.name])
    except sqlite3.Error as e:
        raise StageError("bronze", f"Error loading bronze layer: {e}", LOAD_FAILED, current) from e
    finally:
        conn.close()

    counts = {name: len(rows) for name, rows in extracts.items()}
    for source in BRONZE_SOURCES:
        logger.info(f"Loaded {counts[source.name]} records into {source.table}")
    logger.info(f"Bronze layer loaded: {sum(counts.values())} records across {len(counts)} tables")
    return counts
