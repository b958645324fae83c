"""
Post-load data-quality checks.

These queries look for the problems silver is supposed to have fixed
(duplicate ids, stray whitespace, inconsistent sales figures, out-of-
vocabulary labels) and for integration gaps that are legitimate but worth
watching (ERP ids with no CRM customer, fact rows with no dimension match).
Findings are reported, never fatal.
"""

import logging
import os
import sqlite3
from dataclasses import dataclass
from typing import Callable, List, Optional

import pandas as pd

from warehouse_pipeline.cleansing import GENDERS, MARITAL_STATUSES, PRODUCT_LINES

logger = logging.getLogger("warehouse.quality")


@dataclass
class QualityIssue:
    check: str
    table: str
    count: int
    detail: str = ""
    sample: Optional[pd.DataFrame] = None

    def __str__(self) -> str:
        return f"{self.check} on {self.table}: {self.count} rows {self.detail}".rstrip()


def _query(conn: sqlite3.Connection, sql: str) -> pd.DataFrame:
    return pd.read_sql(sql, conn)


def _issue(check: str, table: str, rows: pd.DataFrame, detail: str = "") -> Optional[QualityIssue]:
    if rows.empty:
        return None
    return QualityIssue(check, table, len(rows), detail, rows.head(10))


def check_duplicate_keys(conn: sqlite3.Connection) -> Optional[QualityIssue]:
    rows = _query(conn, """
        SELECT cst_id, COUNT(*) AS occurrences
        FROM silver.silver_crm_cust_info
        GROUP BY cst_id
        HAVING COUNT(*) > 1 OR cst_id IS NULL
    """)
    return _issue("duplicate_keys", "silver_crm_cust_info", rows, "(duplicate or NULL cst_id)")


def check_unwanted_spaces(conn: sqlite3.Connection) -> Optional[QualityIssue]:
    rows = _query(conn, """
        SELECT cst_id, cst_key, cst_firstname, cst_lastname
        FROM silver.silver_crm_cust_info
        WHERE cst_firstname != TRIM(cst_firstname)
           OR cst_lastname != TRIM(cst_lastname)
           OR cst_key != TRIM(cst_key)
    """)
    return _issue("unwanted_spaces", "silver_crm_cust_info", rows)


def check_invalid_date_order(conn: sqlite3.Connection) -> Optional[QualityIssue]:
    rows = _query(conn, """
        SELECT sls_ord_num, sls_order_dt, sls_ship_dt, sls_due_dt
        FROM silver.silver_crm_sales_details
        WHERE sls_order_dt > sls_ship_dt OR sls_order_dt > sls_due_dt
    """)
    return _issue("invalid_date_order", "silver_crm_sales_details", rows,
                  "(order date after ship or due date)")


def check_sales_consistency(conn: sqlite3.Connection) -> Optional[QualityIssue]:
    rows = _query(conn, """
        SELECT sls_ord_num, sls_sales, sls_quantity, sls_price
        FROM silver.silver_crm_sales_details
        WHERE sls_price IS NOT NULL
          AND sls_quantity IS NOT NULL
          AND ABS(sls_sales - sls_quantity * ABS(sls_price)) > 1e-6
    """)
    return _issue("sales_consistency", "silver_crm_sales_details", rows,
                  "(sales != quantity * |price|)")


def check_vocabulary(conn: sqlite3.Connection) -> Optional[QualityIssue]:
    customers = _query(conn, "SELECT cst_id, cst_marital_status, cst_gndr FROM silver.silver_crm_cust_info")
    erp = _query(conn, "SELECT cid, gen FROM silver.silver_erp_cust_az12")
    products = _query(conn, "SELECT prd_id, prd_line FROM silver.silver_crm_prd_info")
    bad = pd.concat([
        customers.loc[~customers["cst_marital_status"].isin(MARITAL_STATUSES), ["cst_marital_status"]]
        .rename(columns={"cst_marital_status": "value"}).assign(field="cst_marital_status"),
        customers.loc[~customers["cst_gndr"].isin(GENDERS), ["cst_gndr"]]
        .rename(columns={"cst_gndr": "value"}).assign(field="cst_gndr"),
        erp.loc[~erp["gen"].isin(GENDERS), ["gen"]]
        .rename(columns={"gen": "value"}).assign(field="gen"),
        products.loc[~products["prd_line"].isin(PRODUCT_LINES), ["prd_line"]]
        .rename(columns={"prd_line": "value"}).assign(field="prd_line"),
    ], ignore_index=True)
    return _issue("vocabulary", "silver", bad, "(label outside its canonical set)")


def check_orphan_erp_customers(conn: sqlite3.Connection) -> Optional[QualityIssue]:
    rows = _query(conn, """
        SELECT 'erp_cust_az12' AS source, cid
        FROM silver.silver_erp_cust_az12
        WHERE cid NOT IN (SELECT cst_key FROM silver.silver_crm_cust_info WHERE cst_key IS NOT NULL)
        UNION ALL
        SELECT 'erp_loc_a101' AS source, cid
        FROM silver.silver_erp_loc_a101
        WHERE cid NOT IN (SELECT cst_key FROM silver.silver_crm_cust_info WHERE cst_key IS NOT NULL)
    """)
    return _issue("orphan_erp_customers", "silver_erp_*", rows, "(no matching CRM customer key)")


def check_fact_referential_misses(conn: sqlite3.Connection) -> Optional[QualityIssue]:
    rows = _query(conn, """
        SELECT order_number, product_key, customer_key
        FROM gold.gold_fact_sales
        WHERE product_key IS NULL OR customer_key IS NULL
    """)
    return _issue("fact_referential_misses", "gold_fact_sales", rows, "(null dimension key)")


QUALITY_CHECKS: List[Callable[[sqlite3.Connection], Optional[QualityIssue]]] = [
    check_duplicate_keys,
    check_unwanted_spaces,
    check_invalid_date_order,
    check_sales_consistency,
    check_vocabulary,
    check_orphan_erp_customers,
    check_fact_referential_misses,
]


def run_quality_checks(silver_db: str, gold_db: str) -> List[QualityIssue]:
    """
    Run every check against one silver/gold snapshot.

    Returns:
        Issues found (empty when everything passes)
    """
    for db_file in (silver_db, gold_db):
        if not os.path.exists(db_file):
            raise FileNotFoundError(f"Database not found: {db_file}")
    conn = sqlite3.connect(":memory:")
    issues = []
    try:
        conn.execute("ATTACH DATABASE ? AS silver", (silver_db,))
        conn.execute("ATTACH DATABASE ? AS gold", (gold_db,))
        for check in QUALITY_CHECKS:
            issue = check(conn)
            if issue is not None:
                logger.warning(f"Data quality: {issue}")
                issues.append(issue)
    finally:
        conn.close()
    logger.info(f"Data quality checks finished: {len(issues)} of {len(QUALITY_CHECKS)} checks reported issues")
    return issues
