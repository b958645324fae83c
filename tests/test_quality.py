"""
Tests for the post-load data-quality checks.
"""

import sqlite3

import pytest

from conftest import PROCESSING_TIME
from warehouse_pipeline.bronze import ingest_all
from warehouse_pipeline.gold import aggregate_silver_to_gold
from warehouse_pipeline.quality import QUALITY_CHECKS, run_quality_checks
from warehouse_pipeline.silver import transform_bronze_to_silver


@pytest.fixture
def snapshot_dbs(source_dir, tmp_path):
    bronze_db = str(tmp_path / "bronze.db")
    silver_db = str(tmp_path / "silver.db")
    gold_db = str(tmp_path / "gold.db")
    ingest_all(source_dir, bronze_db)
    transform_bronze_to_silver(bronze_db, silver_db, processing_time=PROCESSING_TIME)
    aggregate_silver_to_gold(silver_db, gold_db)
    return silver_db, gold_db


def _by_check(issues):
    return {issue.check: issue for issue in issues}


class TestQualityChecks:
    def test_conformed_data_passes_cleansing_checks(self, snapshot_dbs):
        issues = _by_check(run_quality_checks(*snapshot_dbs))
        for check in ("duplicate_keys", "unwanted_spaces", "sales_consistency", "vocabulary"):
            assert check not in issues

    def test_integration_gaps_reported(self, snapshot_dbs):
        issues = _by_check(run_quality_checks(*snapshot_dbs))
        # AW00099999 exists only in the ERP extract
        assert issues["orphan_erp_customers"].count == 1
        # SO43700 references an unknown product and customer
        assert issues["fact_referential_misses"].count == 1
        assert list(issues["fact_referential_misses"].sample["order_number"]) == ["SO43700"]

    def test_detects_injected_problems(self, snapshot_dbs):
        silver_db, gold_db = snapshot_dbs
        conn = sqlite3.connect(silver_db)
        with conn:
            conn.execute("UPDATE silver_crm_cust_info SET cst_firstname = ' Jon' WHERE cst_id = 11000")
            conn.execute("UPDATE silver_crm_cust_info SET cst_gndr = 'X' WHERE cst_id = 11001")
            conn.execute("UPDATE silver_crm_sales_details SET sls_sales = 1 WHERE sls_ord_num = 'SO43697'")
            conn.execute("UPDATE silver_crm_sales_details SET sls_ship_dt = '2000-01-01' "
                         "WHERE sls_ord_num = 'SO43699'")
        conn.close()

        issues = _by_check(run_quality_checks(silver_db, gold_db))
        assert issues["unwanted_spaces"].count == 1
        assert issues["vocabulary"].count == 1
        assert issues["sales_consistency"].count == 1
        assert issues["invalid_date_order"].count == 1

    def test_missing_database(self, snapshot_dbs, tmp_path):
        silver_db, _ = snapshot_dbs
        with pytest.raises(FileNotFoundError):
            run_quality_checks(silver_db, str(tmp_path / "missing.db"))

    def test_every_check_registered(self):
        names = {check.__name__ for check in QUALITY_CHECKS}
        assert "check_fact_referential_misses" in names
        assert len(names) == 7
