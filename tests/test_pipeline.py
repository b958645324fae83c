"""
End-to-end tests for the pipeline runner.
"""

import os
import time
from unittest.mock import MagicMock, call

import pandas as pd
import pytest

from conftest import PROCESSING_TIME, write_source_files
from data_generator import generate_source_files
from warehouse_pipeline import run_pipeline, silver
from warehouse_pipeline.gold import GOLD_TABLES
from warehouse_pipeline.run_pipeline import SILVER_TABLES, WarehousePipeline, main
from warehouse_pipeline.stages import SOURCE_UNAVAILABLE, STAGE_TIMEOUT, TRANSFORM_FAILED


def _snapshot_tables(pipeline):
    tables = {}
    for table in SILVER_TABLES:
        tables[table] = pipeline.read_table("silver", table)
    for table in GOLD_TABLES:
        tables[table] = pipeline.read_table("gold", table)
    return tables


class TestRun:
    def test_successful_run(self, config):
        pipeline = WarehousePipeline(config)
        report = pipeline.run(processing_time=PROCESSING_TIME)

        assert report.succeeded, report.error
        assert report.failed_stage is None
        assert list(report.stages) == ["bronze", "silver", "gold"]
        assert report.gold_counts == {
            "gold_dim_customers": 3, "gold_dim_products": 2, "gold_fact_sales": 5, "gold_customer_report": 2,
        }
        assert report.silver_counts["silver_crm_cust_info"] == 3
        assert report.finished_at >= report.started_at
        assert pipeline.snapshots.current_run_id() == report.run_id

    def test_idempotent(self, config):
        pipeline = WarehousePipeline(config)
        first = pipeline.run(processing_time=PROCESSING_TIME)
        before = _snapshot_tables(pipeline)
        second = pipeline.run(processing_time=PROCESSING_TIME)
        after = _snapshot_tables(pipeline)

        assert first.succeeded and second.succeeded
        assert first.run_id != second.run_id
        for table in before:
            pd.testing.assert_frame_equal(before[table], after[table])

    def test_skip_bronze_reuses_loaded_data(self, config):
        pipeline = WarehousePipeline(config)
        pipeline.load_bronze()
        report = pipeline.run(processing_time=PROCESSING_TIME, load_bronze=False)
        assert report.succeeded
        assert "bronze" not in report.stages

    def test_skip_bronze_without_database_fails(self, config):
        report = WarehousePipeline(config).run(processing_time=PROCESSING_TIME, load_bronze=False)
        assert report.status == "failed"
        assert report.failed_stage == "bronze"

    def test_failure_keeps_previous_snapshot(self, config, monkeypatch):
        pipeline = WarehousePipeline(config)
        good = pipeline.run(processing_time=PROCESSING_TIME)
        before = pipeline.read_table("gold", "gold_fact_sales")

        def broken(df):
            raise KeyError("cntry")

        entities = tuple(
            silver.SilverEntity(e.source, broken) if e.source == "erp_loc_a101" else e
            for e in silver.SILVER_ENTITIES
        )
        monkeypatch.setattr(silver, "SILVER_ENTITIES", entities)
        failed = pipeline.run(processing_time=PROCESSING_TIME)

        assert failed.status == "failed"
        assert failed.failed_stage == "silver"
        assert failed.error["code"] == TRANSFORM_FAILED
        assert failed.error["state"] == "erp_loc_a101"
        assert failed.gold_counts == {}
        assert pipeline.snapshots.current_run_id() == good.run_id
        assert not os.path.exists(os.path.join(pipeline.snapshots.root, failed.run_id))
        pd.testing.assert_frame_equal(pipeline.read_table("gold", "gold_fact_sales"), before)

    def test_failed_bronze_load_keeps_bronze(self, config):
        pipeline = WarehousePipeline(config)
        good = pipeline.run(processing_time=PROCESSING_TIME)
        bronze_before = pipeline.read_table("bronze", "bronze_crm_cust_info")

        write_source_files(config.source_dir, {"crm_cust_info": [
            ["11005", "AW00011005", "Julio", "Ruiz", "S", "M", "2025-11-01"],
        ]})
        os.remove(os.path.join(config.source_dir, "source_erp", "LOC_A101.csv"))
        failed = pipeline.run(processing_time=PROCESSING_TIME)

        assert failed.failed_stage == "bronze"
        assert failed.error["code"] == SOURCE_UNAVAILABLE
        pd.testing.assert_frame_equal(pipeline.read_table("bronze", "bronze_crm_cust_info"), bronze_before)
        assert pipeline.snapshots.current_run_id() == good.run_id

        rerun = pipeline.run(processing_time=PROCESSING_TIME, load_bronze=False)
        assert rerun.succeeded
        assert rerun.gold_counts == good.gold_counts

    def test_stage_timeout(self, config, monkeypatch):
        def slow(df):
            time.sleep(3)
            return df

        entities = tuple(
            silver.SilverEntity(e.source, slow) if e.source == "crm_prd_info" else e
            for e in silver.SILVER_ENTITIES
        )
        pipeline = WarehousePipeline(config.with_overrides(stage_timeout=1.0))
        pipeline.load_bronze()
        monkeypatch.setattr(silver, "SILVER_ENTITIES", entities)
        report = pipeline.run(processing_time=PROCESSING_TIME, load_bronze=False)

        assert report.status == "failed"
        assert report.failed_stage == "silver"
        assert report.error["code"] == STAGE_TIMEOUT
        assert report.error["state"] == "crm_prd_info"
        assert pipeline.snapshots.current() is None

    def test_old_snapshots_pruned(self, config):
        pipeline = WarehousePipeline(config.with_overrides(keep_snapshots=2))
        reports = [pipeline.run(processing_time=PROCESSING_TIME) for _ in range(3)]
        remaining = [s.run_id for s in pipeline.snapshots.list_snapshots()]
        assert remaining == [reports[1].run_id, reports[2].run_id]

    def test_generated_sources(self, tmp_path, config):
        source_dir = str(tmp_path / "generated")
        generate_source_files(source_dir, num_customers=40, num_products=10, num_sales=200, seed=7)
        pipeline = WarehousePipeline(config.with_overrides(source_dir=source_dir, max_workers=3))
        report = pipeline.run(processing_time=PROCESSING_TIME)

        assert report.succeeded, report.error
        assert report.gold_counts["gold_dim_customers"] == 40
        assert report.gold_counts["gold_fact_sales"] == 200
        customers = pipeline.read_table("silver", "silver_crm_cust_info")
        assert customers["cst_id"].is_unique


class TestLayerAccess:
    def test_stats_before_any_run(self, config):
        stats = WarehousePipeline(config).get_layer_stats()
        assert set(stats) == {"bronze", "silver", "gold"}
        assert set(stats["gold"].values()) == {-1}

    def test_stats_after_run(self, config):
        pipeline = WarehousePipeline(config)
        pipeline.run(processing_time=PROCESSING_TIME)
        stats = pipeline.get_layer_stats()
        assert stats["bronze"]["bronze_crm_cust_info"] == 6
        assert stats["silver"]["silver_crm_cust_info"] == 3
        assert stats["gold"]["gold_fact_sales"] == 5

    def test_read_without_snapshot(self, config):
        with pytest.raises(FileNotFoundError):
            WarehousePipeline(config).read_table("gold", "gold_fact_sales")

    def test_export_snapshot(self, config, tmp_path):
        pipeline = WarehousePipeline(config)
        report = pipeline.run(processing_time=PROCESSING_TIME)
        exported = pipeline.export_snapshot(str(tmp_path / "out"))

        assert len(exported["silver"]) == len(SILVER_TABLES)
        assert len(exported["gold"]) == len(GOLD_TABLES)
        fact_file = os.path.join(str(tmp_path / "out"), f"{report.run_id}_gold_fact_sales.parquet")
        assert fact_file in exported["gold"]
        assert len(pd.read_parquet(fact_file)) == 5

    def test_upload_exports(self, config):
        publisher = MagicMock()
        publisher.upload_file.return_value = True
        exported = {"silver": ["a.parquet"], "gold": ["b.parquet", "c.parquet"]}

        assert WarehousePipeline(config).upload_exports(exported, publisher)
        assert publisher.upload_file.call_args_list == [
            call("a.parquet", "silver"), call("b.parquet", "gold"), call("c.parquet", "gold"),
        ]

        publisher.upload_file.side_effect = [True, False, True]
        assert not WarehousePipeline(config).upload_exports(exported, publisher)


class TestCli:
    def test_run_and_stats(self, config, capsys, monkeypatch):
        monkeypatch.setattr(run_pipeline.PipelineConfig, "from_env", classmethod(lambda cls: config))
        exit_code = main(["--processing-time", "2026-01-01T02:00:00", "--workers", "2"])
        out = capsys.readouterr().out
        assert exit_code == 0
        assert '"status": "succeeded"' in out
        assert "gold_fact_sales" in out

    def test_failed_run_exits_non_zero(self, config, capsys, monkeypatch, tmp_path):
        monkeypatch.setattr(run_pipeline.PipelineConfig, "from_env", classmethod(lambda cls: config))
        exit_code = main(["--source-dir", str(tmp_path / "missing")])
        assert exit_code == 1
        assert '"failed_stage": "bronze"' in capsys.readouterr().out

    def test_stats_only(self, config, capsys, monkeypatch):
        monkeypatch.setattr(run_pipeline.PipelineConfig, "from_env", classmethod(lambda cls: config))
        assert main(["--stats-only"]) == 0
        assert "Layer statistics" in capsys.readouterr().out
