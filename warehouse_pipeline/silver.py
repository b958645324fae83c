import logging
import sqlite3
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from warehouse_pipeline.cleansing import (
    clean_text,
    is_missing,
    map_country,
    map_crm_gender,
    map_erp_gender,
    map_marital_status,
    map_product_line,
    normalize_category_id,
    parse_date,
    parse_yyyymmdd,
    remove_dashes,
    strip_nas_prefix,
    to_integer_id,
    to_iso,
    to_number,
)
from warehouse_pipeline.stages import (
    StageError,
    LOAD_FAILED,
    SOURCE_UNAVAILABLE,
    run_tasks,
)
from warehouse_pipeline.storage import connect, create_table, read_table, write_table

logger = logging.getLogger("warehouse.silver")

SOURCE_ROW = "_source_row"
LOAD_TIMESTAMP = "dwh_create_date"

SILVER_COLUMNS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "crm_cust_info": (
        ("cst_id", "INTEGER"),
        ("cst_key", "TEXT"),
        ("cst_firstname", "TEXT"),
        ("cst_lastname", "TEXT"),
        ("cst_marital_status", "TEXT"),
        ("cst_gndr", "TEXT"),
        ("cst_create_date", "DATE"),
    ),
    "crm_prd_info": (
        ("prd_id", "INTEGER"),
        ("cat_id", "TEXT"),
        ("prd_key", "TEXT"),
        ("prd_nm", "TEXT"),
        ("prd_cost", "REAL"),
        ("prd_line", "TEXT"),
        ("prd_start_dt", "DATE"),
        ("prd_end_dt", "DATE"),
    ),
    "crm_sales_details": (
        ("sls_ord_num", "TEXT"),
        ("sls_prd_key", "TEXT"),
        ("sls_cust_id", "INTEGER"),
        ("sls_order_dt", "DATE"),
        ("sls_ship_dt", "DATE"),
        ("sls_due_dt", "DATE"),
        ("sls_sales", "REAL"),
        ("sls_quantity", "INTEGER"),
        ("sls_price", "REAL"),
    ),
    "erp_cust_az12": (
        ("cid", "TEXT"),
        ("bdate", "DATE"),
        ("gen", "TEXT"),
    ),
    "erp_loc_a101": (
        ("cid", "TEXT"),
        ("cntry", "TEXT"),
    ),
    "erp_px_cat_g1v2": (
        ("id", "TEXT"),
        ("cat", "TEXT"),
        ("subcat", "TEXT"),
        ("maintenance", "TEXT"),
    ),
}


def silver_table(source: str) -> str:
    return f"silver_{source}"


def _prepare(df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    """Copy with a positional source-row column and every expected column present."""
    frame = df.reset_index(drop=True).copy()
    if SOURCE_ROW not in frame.columns:
        frame[SOURCE_ROW] = range(len(frame))
    for column in columns:
        if column not in frame.columns:
            frame[column] = None
    return frame


def _passthrough(series: pd.Series) -> pd.Series:
    return series.astype(object).where(series.notna(), None)


def _drop_unparseable_ids(frame: pd.DataFrame, column: str, drop_missing: bool) -> pd.DataFrame:
    """
    Parse an integer id column, dropping rows whose id fails to parse.

    A present-but-malformed id is always a hard parse failure. Missing ids are
    dropped only when ``drop_missing`` is set.
    """
    ids = frame[column].map(to_integer_id)
    present = frame[column].map(lambda value: not is_missing(value)).astype(bool)
    keep = ids.notna() | (~present & (not drop_missing))
    rejected = int((~keep).sum())
    if rejected:
        logger.warning(f"Dropping {rejected} rows with unusable {column} values")
    frame = frame.loc[keep].copy()
    frame[column] = ids[keep].astype("Int64")
    return frame


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()


# ---------------------------------------------------------------------------
# Conformance, one function per source entity
# ---------------------------------------------------------------------------

def conform_crm_customers(df: pd.DataFrame) -> pd.DataFrame:
    """
    Cleanse CRM customers and keep one record per customer id.

    The surviving record is the one with the latest creation date. Ties (and
    missing dates, which rank last) go to the row seen first in bronze order.
    """
    columns = [c for c, _ in SILVER_COLUMNS["crm_cust_info"]]
    frame = _prepare(df, columns)
    frame = _drop_unparseable_ids(frame, "cst_id", drop_missing=True)

    created = frame["cst_create_date"].map(parse_date)
    # ISO text sorts chronologically and has no timestamp range limit
    frame["_created"] = created.map(to_iso)
    frame = frame.sort_values(
        ["_created", SOURCE_ROW], ascending=[False, True], na_position="last", kind="mergesort"
    )
    frame = frame.drop_duplicates(subset="cst_id", keep="first").sort_values(SOURCE_ROW)

    out = pd.DataFrame({
        "cst_id": frame["cst_id"],
        "cst_key": frame["cst_key"].map(clean_text),
        "cst_firstname": frame["cst_firstname"].map(clean_text),
        "cst_lastname": frame["cst_lastname"].map(clean_text),
        "cst_marital_status": frame["cst_marital_status"].map(map_marital_status),
        "cst_gndr": frame["cst_gndr"].map(map_crm_gender),
        "cst_create_date": created.loc[frame.index].map(to_iso),
    })
    return out.reset_index(drop=True)


def stitch_end_dates(keys: List[Any], starts: List[Optional[date]]) -> List[Optional[date]]:
    """
    Close each version's validity interval one day before the next version starts.

    Versions are grouped by key and ordered by start date (missing first),
    then by position. The last version of a key stays open (None).
    """
    history: Dict[Any, List[Tuple[Optional[date], int]]] = defaultdict(list)
    for position, (key, start) in enumerate(zip(keys, starts)):
        history[key].append((start, position))

    end_dates: List[Optional[date]] = [None] * len(keys)
    for versions in history.values():
        versions.sort(key=lambda v: (v[0] is not None, v[0] or date.min, v[1]))
        for (_, position), (next_start, _) in zip(versions, versions[1:]):
            if next_start is not None:
                end_dates[position] = next_start - timedelta(days=1)
    return end_dates


def conform_crm_products(df: pd.DataFrame) -> pd.DataFrame:
    """
    Split the compound product key and rebuild each version's end date.

    ``CO-RF-FR-R92B-58`` becomes category id ``CO-RF`` and product key
    ``FR-R92B-58``. The sourced end date is ignored; it is derived from the
    next version of the same compound key.
    """
    columns = ["prd_id", "prd_key", "prd_nm", "prd_cost", "prd_line", "prd_start_dt"]
    frame = _prepare(df, columns)
    frame = _drop_unparseable_ids(frame, "prd_id", drop_missing=False)

    compound_keys = frame["prd_key"].map(clean_text)
    starts = frame["prd_start_dt"].map(parse_date)
    end_dates = stitch_end_dates(list(compound_keys), list(starts))

    out = pd.DataFrame({
        "prd_id": frame["prd_id"],
        "cat_id": compound_keys.map(lambda k: None if k is None else normalize_category_id(k[:5])),
        "prd_key": compound_keys.map(lambda k: None if k is None else k[6:]),
        "prd_nm": _passthrough(frame["prd_nm"]),
        "prd_cost": frame["prd_cost"].map(to_number).astype(float).fillna(0.0),
        "prd_line": frame["prd_line"].map(map_product_line),
        "prd_start_dt": starts.map(to_iso),
        "prd_end_dt": pd.Series([to_iso(end) for end in end_dates], index=frame.index, dtype=object),
    })
    return out.reset_index(drop=True)


def repair_sales_figures(sales: pd.Series, quantity: pd.Series,
                         price: pd.Series) -> Tuple[pd.Series, pd.Series]:
    """
    Make sales amount, quantity and unit price consistent.

    The amount is repaired first, from the source quantity and price: it is
    replaced by ``quantity * |price|`` when missing, non-positive, or different
    from that product. A comparison against a missing product is not a
    difference. The price is repaired second, from the repaired amount:
    ``amount / quantity`` when the source price is missing or non-positive.
    A zero or missing quantity, or a non-positive result, leaves the price
    absent.

    Returns:
        (amount, price) as float series
    """
    sales = sales.astype(float)
    quantity = quantity.astype(float)
    price = price.astype(float)

    expected = quantity * price.abs()
    bad_amount = sales.isna() | (sales <= 0) | (expected.notna() & (sales != expected))
    amount = sales.where(~bad_amount, expected)

    derived = amount / quantity.where(quantity != 0)
    derived = derived.where(derived > 0)
    bad_price = price.isna() | (price <= 0)
    price = price.where(~bad_price, derived)
    return amount, price


def conform_crm_sales(df: pd.DataFrame) -> pd.DataFrame:
    """Parse integer dates and repair amount/price on CRM sales lines."""
    columns = [c for c, _ in SILVER_COLUMNS["crm_sales_details"]]
    frame = _prepare(df, columns)
    frame = _drop_unparseable_ids(frame, "sls_cust_id", drop_missing=False)

    quantity = frame["sls_quantity"].map(to_integer_id)
    amount, price = repair_sales_figures(
        frame["sls_sales"].map(to_number),
        quantity,
        frame["sls_price"].map(to_number),
    )

    out = pd.DataFrame({
        "sls_ord_num": frame["sls_ord_num"].map(clean_text),
        "sls_prd_key": frame["sls_prd_key"].map(clean_text),
        "sls_cust_id": frame["sls_cust_id"],
        "sls_order_dt": frame["sls_order_dt"].map(parse_yyyymmdd).map(to_iso),
        "sls_ship_dt": frame["sls_ship_dt"].map(parse_yyyymmdd).map(to_iso),
        "sls_due_dt": frame["sls_due_dt"].map(parse_yyyymmdd).map(to_iso),
        "sls_sales": amount,
        "sls_quantity": quantity.astype("Int64"),
        "sls_price": price,
    })
    return out.reset_index(drop=True)


def conform_erp_customers(df: pd.DataFrame, processing_time: Any) -> pd.DataFrame:
    """Strip the NAS id prefix, drop future birth dates, normalize gender."""
    frame = _prepare(df, ["cid", "bdate", "gen"])
    cutoff = _as_date(processing_time)

    birth_dates = frame["bdate"].map(parse_date)
    birth_dates = birth_dates.map(lambda d: None if d is None or d > cutoff else d)

    out = pd.DataFrame({
        "cid": frame["cid"].map(strip_nas_prefix),
        "bdate": birth_dates.map(to_iso),
        "gen": frame["gen"].map(map_erp_gender),
    })
    return out.reset_index(drop=True)


def conform_erp_locations(df: pd.DataFrame) -> pd.DataFrame:
    frame = _prepare(df, ["cid", "cntry"])
    out = pd.DataFrame({
        "cid": frame["cid"].map(remove_dashes),
        "cntry": frame["cntry"].map(map_country),
    })
    return out.reset_index(drop=True)


def conform_erp_categories(df: pd.DataFrame) -> pd.DataFrame:
    frame = _prepare(df, ["id", "cat", "subcat", "maintenance"])
    out = pd.DataFrame({
        "id": frame["id"].map(normalize_category_id),
        "cat": _passthrough(frame["cat"]),
        "subcat": _passthrough(frame["subcat"]),
        "maintenance": frame["maintenance"].map(clean_text),
    })
    return out.reset_index(drop=True)


@dataclass(frozen=True)
class SilverEntity:
    source: str
    conform: Callable[..., pd.DataFrame]
    needs_processing_time: bool = False

    @property
    def bronze_table(self) -> str:
        return f"bronze_{self.source}"

    @property
    def table(self) -> str:
        return silver_table(self.source)

    @property
    def columns(self) -> List[str]:
        return [column for column, _ in SILVER_COLUMNS[self.source]] + [LOAD_TIMESTAMP]


SILVER_ENTITIES: Tuple[SilverEntity, ...] = (
    SilverEntity("crm_cust_info", conform_crm_customers),
    SilverEntity("crm_prd_info", conform_crm_products),
    SilverEntity("crm_sales_details", conform_crm_sales),
    SilverEntity("erp_cust_az12", conform_erp_customers, needs_processing_time=True),
    SilverEntity("erp_loc_a101", conform_erp_locations),
    SilverEntity("erp_px_cat_g1v2", conform_erp_categories),
)


@dataclass
class EntityResult:
    source: str
    rows_in: int
    rows_out: int
    elapsed_seconds: float

    @property
    def dropped(self) -> int:
        return self.rows_in - self.rows_out


def create_silver_tables(cursor) -> None:
    """
    Create the six silver tables if they don't already exist.
    """
    for source, columns in SILVER_COLUMNS.items():
        create_table(cursor, silver_table(source), columns + ((LOAD_TIMESTAMP, "DATETIME"),))


def read_bronze_table(bronze_db: str, table: str) -> pd.DataFrame:
    """Read one bronze table on its own connection (safe from worker threads)."""
    try:
        conn = connect(bronze_db, must_exist=True)
    except FileNotFoundError as e:
        raise StageError("silver", str(e), SOURCE_UNAVAILABLE, table) from e
    try:
        return read_table(conn, table)
    except (sqlite3.Error, pd.errors.DatabaseError) as e:
        raise StageError("silver", f"Cannot read {table}: {e}", SOURCE_UNAVAILABLE, table) from e
    finally:
        conn.close()


def _conform_entity(entity: SilverEntity, bronze_db: str,
                    processing_time: datetime) -> Tuple[pd.DataFrame, EntityResult]:
    start_time = time.perf_counter()
    bronze_df = read_bronze_table(bronze_db, entity.bronze_table)
    if entity.needs_processing_time:
        silver_df = entity.conform(bronze_df, processing_time)
    else:
        silver_df = entity.conform(bronze_df)
    result = EntityResult(entity.source, len(bronze_df), len(silver_df),
                          time.perf_counter() - start_time)
    logger.info(
        f"Conformed {entity.bronze_table} -> {entity.table}: {result.rows_in} in, "
        f"{result.rows_out} out, {result.dropped} dropped ({result.elapsed_seconds:.2f}s)"
    )
    return silver_df, result


def transform_bronze_to_silver(
    bronze_db: str,
    silver_db: str,
    processing_time: Optional[datetime] = None,
    stage_timeout: Optional[float] = None,
    max_workers: int = 1,
) -> Dict[str, EntityResult]:
    """
    Rebuild every silver table from the bronze layer.

    All six entities are conformed before anything is written. silver_db is
    expected to be the fresh database of an unpublished snapshot; a failed
    write leaves it incomplete and the snapshot is discarded.

    Args:
        bronze_db: Path to the bronze SQLite database
        silver_db: Path to the silver SQLite database
        processing_time: Reference time for birth-date checks and the load
            timestamp column (default: now)
        stage_timeout: Seconds allowed for conformance, None for no limit
        max_workers: Entities conformed concurrently (1 = sequential)

    Returns:
        Per-entity row counts and durations

    Raises:
        StageError: on unreadable sources, transform errors, timeouts or
            write failures
    """
    processing_time = processing_time or datetime.now()
    logger.info(f"Starting silver layer from {bronze_db} (processing time {processing_time.isoformat()})")

    tasks = [
        (entity.source, partial(_conform_entity, entity, bronze_db, processing_time))
        for entity in SILVER_ENTITIES
    ]
    conformed = run_tasks("silver", tasks, timeout=stage_timeout, max_workers=max_workers)

    load_timestamp = processing_time.isoformat(sep=" ", timespec="seconds")
    conn = connect(silver_db)
    current = None
    try:
        create_silver_tables(conn.cursor())
        for entity in SILVER_ENTITIES:
            current = entity.source
            silver_df, _ = conformed[entity.source]
            silver_df = silver_df.assign(**{LOAD_TIMESTAMP: load_timestamp})
            write_table(conn, entity.table, silver_df, entity.columns)
    except (sqlite3.Error, pd.errors.DatabaseError) as e:
        raise StageError("silver", f"Error writing silver layer: {e}", LOAD_FAILED, current) from e
    finally:
        conn.close()

    results = {source: result for source, (_, result) in conformed.items()}
    logger.info(f"Silver layer complete: {sum(r.rows_out for r in results.values())} records "
                f"across {len(results)} tables")
    return results
