#!/usr/bin/env python3
"""
CRM/ERP Source Data Generator

Generates the six CSV extracts the warehouse pipeline ingests, laid out as

    <output-dir>/source_crm/cust_info.csv
    <output-dir>/source_crm/prd_info.csv
    <output-dir>/source_crm/sales_details.csv
    <output-dir>/source_erp/CUST_AZ12.csv
    <output-dir>/source_erp/LOC_A101.csv
    <output-dir>/source_erp/PX_CAT_G1V2.csv

The data is deliberately dirty in the ways real extracts are: repeated
customer versions, padded names, lower-case codes, NAS-prefixed and dashed
ids, stray CR/LF, zero or malformed integer dates, and sales lines whose
amount and price disagree.
"""

import argparse
import csv
import logging
import os
import random
from datetime import date, timedelta
from typing import Dict, List, Optional

from utils.logger import setup_logger
from warehouse_pipeline.bronze import SOURCES_BY_NAME

logger = logging.getLogger("warehouse.generator")

# Define constants
DEFAULT_OUTPUT_DIR = "data/source"
DEFAULT_NUM_CUSTOMERS = 500
DEFAULT_NUM_PRODUCTS = 60
DEFAULT_NUM_SALES = 5000
FIRST_CUSTOMER_ID = 11000
FIRST_ORDER_NUMBER = 43697

# ERP category id, category, subcategory, maintenance
CATEGORIES = [
    ("AC_BR", "Accessories", "Bike Racks", "Yes"),
    ("AC_HE", "Accessories", "Helmets", "No"),
    ("BI_MB", "Bikes", "Mountain Bikes", "Yes"),
    ("BI_RB", "Bikes", "Road Bikes", "Yes"),
    ("BI_TB", "Bikes", "Touring Bikes", "Yes"),
    ("CL_JE", "Clothing", "Jerseys", "No"),
    ("CL_SH", "Clothing", "Shorts", "No"),
    ("CO_HB", "Components", "Handlebars", "Yes"),
]

FIRST_NAMES = ["Jon", "Eugene", "Ruben", "Christy", "Elizabeth", "Julio", "Janet", "Marco", "Rob", "Shannon"]
LAST_NAMES = ["Yang", "Huang", "Torres", "Zhu", "Johnson", "Ruiz", "Alvarez", "Mehta", "Verhoff", "Carlson"]

# Weighted dirty variants of each coded field
MARITAL_VALUES = ["S", "M", "s", " M ", None]
MARITAL_WEIGHTS = [0.45, 0.45, 0.03, 0.03, 0.04]
CRM_GENDER_VALUES = ["M", "F", "f ", None, ""]
CRM_GENDER_WEIGHTS = [0.4, 0.4, 0.05, 0.1, 0.05]
ERP_GENDER_VALUES = ["Male", "Female", "M", "F", " Female\r\n", "", None]
ERP_GENDER_WEIGHTS = [0.35, 0.35, 0.1, 0.1, 0.04, 0.03, 0.03]
COUNTRY_VALUES = ["DE", "US", "USA", "Germany", "United States", "Australia", "Canada", " France\r\n", "", None]
COUNTRY_WEIGHTS = [0.1, 0.1, 0.1, 0.1, 0.15, 0.15, 0.1, 0.1, 0.05, 0.05]
PRODUCT_LINE_VALUES = ["M", "R", "S", "T", " r ", None]
PRODUCT_LINE_WEIGHTS = [0.25, 0.25, 0.15, 0.2, 0.05, 0.1]


def _write_csv(output_dir: str, source_name: str, rows: List[Dict[str, object]]) -> str:
    source = SOURCES_BY_NAME[source_name]
    output_file = os.path.join(output_dir, source.csv_path)
    os.makedirs(os.path.dirname(output_file), exist_ok=True)
    with open(output_file, "w", newline="", encoding="utf-8") as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=source.column_names)
        writer.writeheader()
        writer.writerows(rows)
    logger.info(f"Wrote {len(rows)} rows to {output_file}")
    return output_file


def _random_date(rng: random.Random, start: date, end: date) -> date:
    return start + timedelta(days=rng.randint(0, (end - start).days))


def _pad(rng: random.Random, text: str) -> str:
    """Occasionally surround a value with stray spaces."""
    return f"  {text} " if rng.random() < 0.1 else text


def generate_customers(rng: random.Random, num_customers: int) -> Dict[str, List[Dict[str, object]]]:
    """CRM customers plus the matching ERP demographics and locations."""
    crm, erp, locations = [], [], []
    for i in range(num_customers):
        cst_id = FIRST_CUSTOMER_ID + i
        cst_key = f"AW{cst_id:08d}"
        created = _random_date(rng, date(2025, 10, 1), date(2026, 1, 31))
        row = {
            "cst_id": cst_id,
            "cst_key": cst_key,
            "cst_firstname": _pad(rng, rng.choice(FIRST_NAMES)),
            "cst_lastname": _pad(rng, rng.choice(LAST_NAMES)),
            "cst_marital_status": rng.choices(MARITAL_VALUES, MARITAL_WEIGHTS)[0],
            "cst_gndr": rng.choices(CRM_GENDER_VALUES, CRM_GENDER_WEIGHTS)[0],
            "cst_create_date": created.isoformat(),
        }
        crm.append(row)
        if rng.random() < 0.05:
            # an older version of the same customer, sometimes without a date
            older = created - timedelta(days=rng.randint(1, 60))
            crm.append(dict(row, cst_firstname=rng.choice(FIRST_NAMES),
                            cst_create_date=older.isoformat() if rng.random() < 0.7 else None))

        birth = _random_date(rng, date(1940, 1, 1), date(2005, 12, 31))
        if rng.random() < 0.02:
            birth = _random_date(rng, date(2030, 1, 1), date(2090, 12, 31))
        erp.append({
            "cid": f"NAS{cst_key}" if rng.random() < 0.5 else cst_key,
            "bdate": birth.isoformat(),
            "gen": rng.choices(ERP_GENDER_VALUES, ERP_GENDER_WEIGHTS)[0],
        })
        locations.append({
            "cid": f"{cst_key[:2]}-{cst_key[2:]}",
            "cntry": rng.choices(COUNTRY_VALUES, COUNTRY_WEIGHTS)[0],
        })

    # a few rows without a usable customer id
    for _ in range(max(1, num_customers // 200)):
        crm.append({"cst_id": None, "cst_key": "PO25", "cst_firstname": None, "cst_lastname": None,
                    "cst_marital_status": None, "cst_gndr": None, "cst_create_date": None})
    rng.shuffle(crm)
    return {"crm_cust_info": crm, "erp_cust_az12": erp, "erp_loc_a101": locations}


def generate_products(rng: random.Random, num_products: int) -> List[Dict[str, object]]:
    """Product versions; each product key has one to three versions."""
    rows = []
    prd_id = 200
    for n in range(num_products):
        cat_id = rng.choice(CATEGORIES)[0]
        prd_key = f"{cat_id.replace('_', '-')}-{cat_id[:2]}-{n:04d}-{rng.choice([38, 42, 46, 50])}"
        cost = rng.randint(2, 1200)
        start = _random_date(rng, date(2023, 1, 1), date(2024, 6, 30))
        for version in range(rng.randint(1, 3)):
            prd_id += 1
            rows.append({
                "prd_id": prd_id,
                "prd_key": prd_key,
                "prd_nm": f"Product {n:04d} v{version + 1}",
                "prd_cost": (cost + version * 10) if rng.random() > 0.05 else None,
                "prd_line": rng.choices(PRODUCT_LINE_VALUES, PRODUCT_LINE_WEIGHTS)[0],
                "prd_start_dt": start.isoformat(),
                # sourced end dates are unreliable, sometimes before the start
                "prd_end_dt": (start - timedelta(days=rng.randint(1, 400))).isoformat()
                if rng.random() < 0.5 else None,
            })
            start = start + timedelta(days=rng.randint(90, 365))
    return rows


def _dirty_int_date(rng: random.Random, value: date) -> int:
    encoded = int(value.strftime("%Y%m%d"))
    roll = rng.random()
    if roll < 0.01:
        return 0
    if roll < 0.02:
        return encoded // 10  # seven digits
    return encoded


def generate_sales(rng: random.Random, num_sales: int, products: List[Dict[str, object]],
                   num_customers: int) -> List[Dict[str, object]]:
    """Sales lines against product keys and customer ids, with broken figures."""
    product_keys = sorted({str(p["prd_key"])[6:] for p in products})
    unit_prices = {key: rng.randint(3, 3500) for key in product_keys}
    rows = []
    for i in range(num_sales):
        prd_key = rng.choice(product_keys)
        quantity = rng.choice([1, 1, 1, 2, 3])
        price = unit_prices[prd_key]
        sales: Optional[int] = quantity * price
        roll = rng.random()
        if roll < 0.03:
            sales = None
        elif roll < 0.06:
            sales = -sales
        elif roll < 0.09:
            sales = sales + rng.randint(1, 50)
        roll = rng.random()
        if roll < 0.03:
            price = None
        elif roll < 0.05:
            price = -price
        ordered = _random_date(rng, date(2024, 1, 1), date(2026, 9, 30))
        rows.append({
            "sls_ord_num": f"SO{FIRST_ORDER_NUMBER + i}",
            "sls_prd_key": prd_key,
            "sls_cust_id": FIRST_CUSTOMER_ID + rng.randrange(num_customers + 5),
            "sls_order_dt": _dirty_int_date(rng, ordered),
            "sls_ship_dt": int((ordered + timedelta(days=7)).strftime("%Y%m%d")),
            "sls_due_dt": int((ordered + timedelta(days=12)).strftime("%Y%m%d")),
            "sls_sales": sales,
            "sls_quantity": quantity,
            "sls_price": price,
        })
    return rows


def generate_source_files(
    output_dir: str = DEFAULT_OUTPUT_DIR,
    num_customers: int = DEFAULT_NUM_CUSTOMERS,
    num_products: int = DEFAULT_NUM_PRODUCTS,
    num_sales: int = DEFAULT_NUM_SALES,
    seed: Optional[int] = None,
) -> Dict[str, str]:
    """
    Write all six source extracts.

    Args:
        output_dir: Directory that receives source_crm/ and source_erp/
        num_customers: Distinct CRM customers
        num_products: Distinct product keys
        num_sales: Sales lines
        seed: Random seed for reproducible output

    Returns:
        Path of the CSV written for each source
    """
    rng = random.Random(seed)
    customers = generate_customers(rng, num_customers)
    products = generate_products(rng, num_products)
    tables = {
        **customers,
        "crm_prd_info": products,
        "crm_sales_details": generate_sales(rng, num_sales, products, num_customers),
        "erp_px_cat_g1v2": [
            {"id": cat_id, "cat": cat, "subcat": subcat, "maintenance": maintenance}
            for cat_id, cat, subcat, maintenance in CATEGORIES
        ],
    }
    written = {name: _write_csv(output_dir, name, rows) for name, rows in tables.items()}
    logger.info(f"Generated {len(written)} source files in {output_dir}")
    return written


def main():
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(description="Generate synthetic CRM/ERP source extracts")
    parser.add_argument("--output-dir", type=str, default=DEFAULT_OUTPUT_DIR,
                        help=f"Output directory (default: {DEFAULT_OUTPUT_DIR})")
    parser.add_argument("--customers", type=int, default=DEFAULT_NUM_CUSTOMERS,
                        help=f"Number of customers (default: {DEFAULT_NUM_CUSTOMERS})")
    parser.add_argument("--products", type=int, default=DEFAULT_NUM_PRODUCTS,
                        help=f"Number of product keys (default: {DEFAULT_NUM_PRODUCTS})")
    parser.add_argument("--sales", type=int, default=DEFAULT_NUM_SALES,
                        help=f"Number of sales lines (default: {DEFAULT_NUM_SALES})")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    args = parser.parse_args()

    setup_logger("warehouse", log_file="data_generator.log")
    written = generate_source_files(args.output_dir, args.customers, args.products, args.sales, args.seed)
    print(f"Data generation complete. {len(written)} files saved under: {args.output_dir}")


if __name__ == "__main__":
    main()
