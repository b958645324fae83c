"""
Shared fixtures: a small hand-written set of dirty source extracts whose
conformed output is known row by row, plus pipeline configs pointing at
temporary directories.
"""

import csv
import logging
import os
from datetime import datetime

import pandas as pd
import pytest

from warehouse_pipeline.bronze import SOURCES_BY_NAME
from warehouse_pipeline.config import PipelineConfig

PROCESSING_TIME = datetime(2026, 1, 1, 2, 0, 0)

SOURCE_ROWS = {
    "crm_cust_info": [
        ["11000", "AW00011000", " Jon ", "Yang  ", "M", "M", "2025-10-06"],
        ["11001", "AW00011001", "Eugene", "Huang", "S", "", "2025-10-06"],
        ["11001", "AW00011001", "Eugenio", "Huang", "S", "F", "2025-10-01"],
        ["11002", "AW00011002", "Ruben", "Torres", "m", "f ", "2025-10-06"],
        ["", "PO25", "", "", "", "", ""],
        ["abc", "AW00000099", "Bad", "Id", "S", "M", "2025-10-01"],
    ],
    "crm_prd_info": [
        ["210", "CO-RF-FR-R92B-58", "HL Road Frame - Black- 58", "", "R ", "2023-07-01", ""],
        ["211", "AC-HE-HL-U509-R", "Sport-100 Helmet- Red", "12", "S", "2023-07-01", "2023-12-30"],
        ["212", "AC-HE-HL-U509-R", "Sport-100 Helmet- Red", "14", "S", "2024-07-01", ""],
        ["213", "AC-HE-HL-U509-R", "Sport-100 Helmet- Red", "13", "S", "2024-01-01", "2023-06-30"],
    ],
    "crm_sales_details": [
        ["SO43697", "FR-R92B-58", "11000", "20101229", "20110105", "20110110", "3578", "1", "3578"],
        ["SO43698", "HL-U509-R", "11001", "0", "20110105", "20110110", "", "2", "35"],
        ["SO43699", "HL-U509-R", "11002", "20101229", "20110105", "20110110", "100", "2", "-35"],
        ["SO43700", "BK-M68B-42", "11003", "2010122", "20110105", "20110110", "50", "1", "50"],
        ["SO43701", "HL-U509-R", "11000", "20240230", "20240305", "20240310", "0", "5", "0"],
    ],
    "erp_cust_az12": [
        ["NASAW00011000", "1971-10-06", "Male"],
        ["AW00011001", "1976-05-10", " Female\r\n"],
        ["NASAW00011002", "2099-01-01", ""],
        ["AW00099999", "1980-01-01", "F"],
    ],
    "erp_loc_a101": [
        ["AW-00011000", "DE"],
        ["AW-00011001", "USA"],
        ["AW-00011002", " France\r\n"],
        ["AW-00011002", "US"],
    ],
    "erp_px_cat_g1v2": [
        ["AC_HE", "Accessories", "Helmets", "Yes"],
        ["CO_RF", "Components", "Road Frames", "Yes "],
        ["CO_RF", "Components", "Duplicate", "No"],
    ],
}


def write_source_files(source_dir, rows_by_source=None):
    """Write one CSV per source under ``source_dir`` in the extract layout."""
    rows_by_source = rows_by_source or SOURCE_ROWS
    for name, rows in rows_by_source.items():
        source = SOURCES_BY_NAME[name]
        path = os.path.join(str(source_dir), source.csv_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(source.column_names)
            writer.writerows(rows)
    return str(source_dir)


def bronze_frame(name, rows=None):
    """Bronze-shaped DataFrame for one source, empty strings as None."""
    rows = SOURCE_ROWS[name] if rows is None else rows
    columns = SOURCES_BY_NAME[name].column_names
    return pd.DataFrame(
        [[value if value != "" else None for value in row] for row in rows],
        columns=columns,
    )


@pytest.fixture(autouse=True)
def no_log_files(monkeypatch):
    monkeypatch.setenv("LOG_TO_FILE", "0")
    yield
    # the CLI attaches handlers bound to the captured streams of one test
    logger = logging.getLogger("warehouse")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


@pytest.fixture
def processing_time():
    return PROCESSING_TIME


@pytest.fixture
def source_dir(tmp_path):
    return write_source_files(tmp_path / "source")


@pytest.fixture
def config(tmp_path, source_dir):
    return PipelineConfig(
        source_dir=source_dir,
        data_dir=str(tmp_path / "warehouse"),
        export_dir=str(tmp_path / "export"),
        stage_timeout=60,
        max_workers=1,
        keep_snapshots=3,
    )
