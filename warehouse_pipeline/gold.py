import logging
import os
import sqlite3
import time
from datetime import date, datetime
from functools import partial
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from warehouse_pipeline.cleansing import UNKNOWN, parse_date
from warehouse_pipeline.silver import silver_table
from warehouse_pipeline.stages import StageError, LOAD_FAILED, SOURCE_UNAVAILABLE, run_tasks
from warehouse_pipeline.storage import connect, create_table, read_table, write_table

logger = logging.getLogger("warehouse.gold")

GOLD_COLUMNS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "gold_dim_customers": (
        ("customer_key", "INTEGER PRIMARY KEY"),
        ("customer_id", "INTEGER"),
        ("customer_number", "TEXT"),
        ("first_name", "TEXT"),
        ("last_name", "TEXT"),
        ("country", "TEXT"),
        ("marital_status", "TEXT"),
        ("gender", "TEXT"),
        ("birth_date", "DATE"),
        ("create_date", "DATE"),
    ),
    "gold_dim_products": (
        ("product_key", "INTEGER PRIMARY KEY"),
        ("product_id", "INTEGER"),
        ("product_number", "TEXT"),
        ("product_name", "TEXT"),
        ("category_id", "TEXT"),
        ("category", "TEXT"),
        ("subcategory", "TEXT"),
        ("maintenance", "TEXT"),
        ("cost", "REAL"),
        ("product_line", "TEXT"),
        ("start_date", "DATE"),
    ),
    "gold_fact_sales": (
        ("order_number", "TEXT"),
        ("product_key", "INTEGER"),
        ("customer_key", "INTEGER"),
        ("order_date", "DATE"),
        ("shipping_date", "DATE"),
        ("due_date", "DATE"),
        ("sales_amount", "REAL"),
        ("quantity", "INTEGER"),
        ("price", "REAL"),
    ),
    "gold_customer_report": (
        ("customer_key", "INTEGER"),
        ("customer_number", "TEXT"),
        ("customer_name", "TEXT"),
        ("age", "INTEGER"),
        ("age_group", "TEXT"),
        ("customer_segment", "TEXT"),
        ("total_orders", "INTEGER"),
        ("total_sales", "REAL"),
        ("total_quantity", "INTEGER"),
        ("total_products", "INTEGER"),
        ("lifespan", "INTEGER"),
        ("first_order_date", "DATE"),
        ("last_order_date", "DATE"),
        ("recency", "INTEGER"),
        ("avg_order_value", "REAL"),
        ("avg_monthly_spend", "REAL"),
    ),
}

GOLD_TABLES = tuple(GOLD_COLUMNS)

# (exclusive upper age, label); anything older is OLDEST_AGE_GROUP
AGE_BANDS = ((20, "below 20"), (30, "20-29"), (40, "30-39"), (50, "40-49"))
OLDEST_AGE_GROUP = "50 and above"
SEGMENT_MIN_LIFESPAN = 12
VIP_MIN_SALES = 5000

SILVER_INPUTS = (
    "crm_cust_info",
    "crm_prd_info",
    "crm_sales_details",
    "erp_cust_az12",
    "erp_loc_a101",
    "erp_px_cat_g1v2",
)


def create_gold_tables(cursor) -> None:
    """
    Create the gold dimension and fact tables if they don't already exist.
    """
    for table, columns in GOLD_COLUMNS.items():
        create_table(cursor, table, columns)


def _first_per_key(df: pd.DataFrame, key: str) -> pd.DataFrame:
    """One row per non-null key; a missing key never joins to anything."""
    return df[df[key].notna()].drop_duplicates(subset=key, keep="first")


def _surrogate_keys(n: int) -> np.ndarray:
    return np.arange(1, n + 1, dtype="int64")


def build_dim_customers(customers: pd.DataFrame, erp_customers: pd.DataFrame,
                        erp_locations: pd.DataFrame) -> pd.DataFrame:
    """
    Customer dimension: CRM customers enriched with ERP birth date and country.

    CRM is the master for gender; the ERP value is only used when CRM has
    N/A. Surrogate keys follow ascending customer id.
    """
    erp_cust = _first_per_key(erp_customers[["cid", "bdate", "gen"]], "cid")
    erp_loc = _first_per_key(erp_locations[["cid", "cntry"]], "cid").rename(columns={"cid": "loc_cid"})

    merged = (
        customers
        .merge(erp_cust, how="left", left_on="cst_key", right_on="cid")
        .merge(erp_loc, how="left", left_on="cst_key", right_on="loc_cid")
    )
    merged = merged.sort_values("cst_id", kind="mergesort").reset_index(drop=True)

    erp_gender = merged["gen"].where(merged["gen"].notna(), UNKNOWN)
    gender = np.where(merged["cst_gndr"].notna() & (merged["cst_gndr"] != UNKNOWN),
                      merged["cst_gndr"], erp_gender)

    return pd.DataFrame({
        "customer_key": _surrogate_keys(len(merged)),
        "customer_id": merged["cst_id"].astype("Int64"),
        "customer_number": merged["cst_key"],
        "first_name": merged["cst_firstname"],
        "last_name": merged["cst_lastname"],
        "country": merged["cntry"],
        "marital_status": merged["cst_marital_status"],
        "gender": pd.Series(gender, dtype=object),
        "birth_date": merged["bdate"],
        "create_date": merged["cst_create_date"],
    })


def build_dim_products(products: pd.DataFrame, categories: pd.DataFrame) -> pd.DataFrame:
    """
    Product dimension: current product versions with ERP category attributes.

    Superseded versions (those with an end date) are excluded. Surrogate keys
    follow ascending (start date, product key), missing values first.
    """
    current = products[products["prd_end_dt"].isna()]
    cats = _first_per_key(categories[["id", "cat", "subcat", "maintenance"]], "id")

    merged = current.merge(cats, how="left", left_on="cat_id", right_on="id")
    merged = merged.sort_values(
        ["prd_start_dt", "prd_key"], na_position="first", kind="mergesort"
    ).reset_index(drop=True)

    return pd.DataFrame({
        "product_key": _surrogate_keys(len(merged)),
        "product_id": merged["prd_id"].astype("Int64"),
        "product_number": merged["prd_key"],
        "product_name": merged["prd_nm"],
        "category_id": merged["cat_id"],
        "category": merged["cat"],
        "subcategory": merged["subcat"],
        "maintenance": merged["maintenance"],
        "cost": merged["prd_cost"].astype(float),
        "product_line": merged["prd_line"],
        "start_date": merged["prd_start_dt"],
    })


def build_fact_sales(sales: pd.DataFrame, dim_customers: pd.DataFrame,
                     dim_products: pd.DataFrame) -> pd.DataFrame:
    """
    Sales fact: every silver sales line with its dimension surrogate keys.

    Lines whose customer or product is not in the dimension keep a null key.
    If a product number appears more than once, the lowest key wins.
    """
    customer_lookup = _first_per_key(dim_customers[["customer_id", "customer_key"]], "customer_id")
    customer_lookup = customer_lookup.assign(customer_id=customer_lookup["customer_id"].astype("Int64"))
    product_lookup = _first_per_key(
        dim_products[["product_number", "product_key"]].sort_values("product_key"), "product_number"
    )

    lines = sales.assign(sls_cust_id=pd.to_numeric(sales["sls_cust_id"]).astype("Int64"))
    fact = (
        lines
        .merge(product_lookup, how="left", left_on="sls_prd_key", right_on="product_number")
        .merge(customer_lookup, how="left", left_on="sls_cust_id", right_on="customer_id")
    )

    return pd.DataFrame({
        "order_number": fact["sls_ord_num"],
        "product_key": fact["product_key"].astype("Int64"),
        "customer_key": fact["customer_key"].astype("Int64"),
        "order_date": fact["sls_order_dt"],
        "shipping_date": fact["sls_ship_dt"],
        "due_date": fact["sls_due_dt"],
        "sales_amount": fact["sls_sales"].astype(float),
        "quantity": pd.to_numeric(fact["sls_quantity"]).astype("Int64"),
        "price": fact["sls_price"].astype(float),
    })


def months_between(start: date, end: date) -> int:
    """Calendar-month boundaries crossed from ``start`` to ``end``."""
    return (end.year - start.year) * 12 + (end.month - start.month)


def age_group(age: Optional[int]) -> str:
    if age is None or pd.isna(age):
        return UNKNOWN
    for upper, label in AGE_BANDS:
        if age < upper:
            return label
    return OLDEST_AGE_GROUP


def customer_segment(lifespan: int, total_sales: Optional[float]) -> str:
    """
    vip: at least SEGMENT_MIN_LIFESPAN months of orders and VIP_MIN_SALES spent.
    regular: the same history with less spent. new: everyone else.
    """
    if lifespan < SEGMENT_MIN_LIFESPAN or total_sales is None or pd.isna(total_sales):
        return "new"
    return "vip" if total_sales >= VIP_MIN_SALES else "regular"


def _full_name(first: Any, last: Any) -> Optional[str]:
    parts = [part for part in (first, last) if isinstance(part, str) and part]
    return " ".join(parts) or None


def build_customer_report(fact: pd.DataFrame, dim_customers: pd.DataFrame,
                          processing_time: Any) -> pd.DataFrame:
    """
    One row per customer with dated sales: order totals, age group, segment
    and recency.

    Age is the difference in calendar years between the birth date and the
    processing date; lifespan and recency count calendar months. Sales lines
    without a customer key or an order date are left out.
    """
    as_of = processing_time.date() if isinstance(processing_time, datetime) else processing_time
    columns = [c for c, _ in GOLD_COLUMNS["gold_customer_report"]]

    lines = fact[fact["customer_key"].notna() & fact["order_date"].notna()]
    if lines.empty:
        return pd.DataFrame({column: pd.Series([], dtype=object) for column in columns})

    per_customer = (
        lines.assign(customer_key=lines["customer_key"].astype("int64"))
        .groupby("customer_key", sort=True)
        .agg(
            total_orders=("order_number", "nunique"),
            total_sales=("sales_amount", lambda s: s.sum(min_count=1)),
            total_quantity=("quantity", "sum"),
            total_products=("product_key", "nunique"),
            first_order_date=("order_date", "min"),
            last_order_date=("order_date", "max"),
        )
        .reset_index()
    )
    customers = dim_customers[["customer_key", "customer_number", "first_name", "last_name", "birth_date"]]
    report = per_customer.merge(
        customers.assign(customer_key=customers["customer_key"].astype("int64")),
        how="left", on="customer_key",
    )

    first_orders = report["first_order_date"].map(parse_date)
    last_orders = report["last_order_date"].map(parse_date)
    lifespan = pd.Series([months_between(f, l) for f, l in zip(first_orders, last_orders)], dtype="int64")
    births = report["birth_date"].map(parse_date)
    ages = pd.Series([None if b is None else as_of.year - b.year for b in births], dtype="Int64")
    total_sales = report["total_sales"].astype(float)

    return pd.DataFrame({
        "customer_key": report["customer_key"],
        "customer_number": report["customer_number"],
        "customer_name": [_full_name(f, l) for f, l in zip(report["first_name"], report["last_name"])],
        "age": ages,
        "age_group": [age_group(a) for a in ages],
        "customer_segment": [customer_segment(n, s) for n, s in zip(lifespan, total_sales)],
        "total_orders": report["total_orders"],
        "total_sales": total_sales,
        "total_quantity": pd.to_numeric(report["total_quantity"]).astype("Int64"),
        "total_products": report["total_products"],
        "lifespan": lifespan,
        "first_order_date": report["first_order_date"],
        "last_order_date": report["last_order_date"],
        "recency": [months_between(d, as_of) for d in last_orders],
        "avg_order_value": total_sales / report["total_orders"],
        "avg_monthly_spend": np.where(lifespan == 0, total_sales, total_sales / lifespan.replace(0, 1)),
    })


def _remaining(deadline: Optional[float]) -> Optional[float]:
    return None if deadline is None else max(0.0, deadline - time.monotonic())


def read_silver_tables(conn: sqlite3.Connection, schema: str = "main") -> Dict[str, pd.DataFrame]:
    frames = {}
    for source in SILVER_INPUTS:
        table = silver_table(source)
        try:
            frames[source] = read_table(conn, table, schema=schema)
        except (sqlite3.Error, pd.errors.DatabaseError) as e:
            raise StageError("gold", f"Cannot read {table}: {e}", SOURCE_UNAVAILABLE, table) from e
    return frames


def aggregate_silver_to_gold(silver_db: str, gold_db: str,
                             stage_timeout: Optional[float] = None,
                             processing_time: Optional[datetime] = None) -> Dict[str, int]:
    """
    Build the gold dimensions, sales fact and customer report from the silver layer.

    Args:
        silver_db: Path to a completed silver database
        gold_db: Path to the gold SQLite database
        stage_timeout: Seconds allowed for assembly, None for no limit
        processing_time: Reference time for customer ages and recency (default: now)

    Returns:
        Rows written per gold table
    """
    if not os.path.exists(silver_db):
        raise StageError("gold", f"Silver database not found: {silver_db}", SOURCE_UNAVAILABLE)

    processing_time = processing_time or datetime.now()
    deadline = None if stage_timeout is None else time.monotonic() + stage_timeout
    gold_conn = connect(gold_db)
    current = None
    try:
        cursor = gold_conn.cursor()
        create_gold_tables(cursor)
        gold_conn.commit()

        gold_conn.execute("ATTACH DATABASE ? AS silver_db", (silver_db,))
        silver = read_silver_tables(gold_conn, schema="silver_db")
        logger.info(f"Read {sum(len(df) for df in silver.values())} silver records for gold assembly")

        dims = run_tasks("gold", [
            ("gold_dim_customers", partial(build_dim_customers, silver["crm_cust_info"],
                                           silver["erp_cust_az12"], silver["erp_loc_a101"])),
            ("gold_dim_products", partial(build_dim_products, silver["crm_prd_info"],
                                          silver["erp_px_cat_g1v2"])),
        ], timeout=_remaining(deadline))
        fact = run_tasks("gold", [
            ("gold_fact_sales", partial(build_fact_sales, silver["crm_sales_details"],
                                        dims["gold_dim_customers"], dims["gold_dim_products"])),
        ], timeout=_remaining(deadline))
        report = run_tasks("gold", [
            ("gold_customer_report", partial(build_customer_report, fact["gold_fact_sales"],
                                             dims["gold_dim_customers"], processing_time)),
        ], timeout=_remaining(deadline))

        projections = {**dims, **fact, **report}
        for table, columns in GOLD_COLUMNS.items():
            current = table
            write_table(gold_conn, table, projections[table], [c for c, _ in columns])
    except (sqlite3.Error, pd.errors.DatabaseError) as e:
        raise StageError("gold", f"Error writing gold layer: {e}", LOAD_FAILED, current) from e
    finally:
        gold_conn.close()

    counts = {table: len(frame) for table, frame in projections.items()}
    for table, count in counts.items():
        logger.info(f"Assembled {count} records into {table}")
    unmatched = projections["gold_fact_sales"][["product_key", "customer_key"]].isna().any(axis=1).sum()
    if unmatched:
        logger.warning(f"{unmatched} sales lines have no matching customer or product dimension row")
    return counts
