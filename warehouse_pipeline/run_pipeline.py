#!/usr/bin/env python3
"""
Medallion warehouse pipeline runner.

Loads the CRM and ERP extracts into bronze, conforms them into silver and
assembles the gold star schema. Silver and gold for a run are written into a
fresh snapshot directory and only become visible when the run succeeds.

Usage:
    python -m warehouse_pipeline.run_pipeline --source-dir data/source
    python -m warehouse_pipeline.run_pipeline --skip-bronze --processing-time 2024-01-01T02:00:00
    python -m warehouse_pipeline.run_pipeline --stats-only
"""

import argparse
import json
import logging
import os
import sqlite3
import sys
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from utils.logger import setup_logger
from warehouse_pipeline.bronze import BRONZE_SOURCES, ingest_all
from warehouse_pipeline.config import PipelineConfig
from warehouse_pipeline.exporter import S3Publisher, export_table_to_parquet
from warehouse_pipeline.gold import GOLD_TABLES, aggregate_silver_to_gold
from warehouse_pipeline.quality import run_quality_checks
from warehouse_pipeline.silver import SILVER_ENTITIES, transform_bronze_to_silver
from warehouse_pipeline.snapshots import Snapshot, SnapshotStore
from warehouse_pipeline.stages import SOURCE_UNAVAILABLE, StageError, StageTiming
from warehouse_pipeline.storage import connect, read_table, table_counts

logger = logging.getLogger("warehouse.pipeline")

RUN_ID_FORMAT = "%Y%m%dT%H%M%S%f"
SILVER_TABLES = tuple(entity.table for entity in SILVER_ENTITIES)
BRONZE_TABLES = tuple(source.table for source in BRONZE_SOURCES)


@dataclass
class RunReport:
    """Outcome of one pipeline run."""

    run_id: str
    status: str = "running"
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0
    stages: Dict[str, StageTiming] = field(default_factory=dict)
    silver_counts: Dict[str, int] = field(default_factory=dict)
    gold_counts: Dict[str, int] = field(default_factory=dict)
    error: Optional[Dict[str, Optional[str]]] = None
    failed_stage: Optional[str] = None
    quality_issues: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "stages": {name: timing.to_dict() for name, timing in self.stages.items()},
            "silver_counts": dict(self.silver_counts),
            "gold_counts": dict(self.gold_counts),
            "error": self.error,
            "failed_stage": self.failed_stage,
            "quality_issues": list(self.quality_issues),
        }


class WarehousePipeline:
    """Runs bronze -> silver -> gold and manages the published snapshots."""

    def __init__(self, config: Optional[PipelineConfig] = None):
        """
        Args:
            config: Pipeline settings (default: read from the environment)
        """
        self.config = config or PipelineConfig.from_env()
        self.snapshots = SnapshotStore(self.config.snapshot_root)

    def _new_run_id(self) -> str:
        base = datetime.now().strftime(RUN_ID_FORMAT)
        run_id, n = base, 0
        while os.path.exists(os.path.join(self.snapshots.root, run_id)):
            n += 1
            run_id = f"{base}_{n}"
        return run_id

    def load_bronze(self, source_dir: Optional[str] = None) -> Dict[str, int]:
        """
        Load the six CSV extracts into the bronze database.

        Returns:
            Rows loaded per source
        """
        source_dir = source_dir or self.config.source_dir
        return ingest_all(source_dir, self.config.bronze_db, stage_timeout=self.config.stage_timeout)

    def _run_stages(self, report: RunReport, snapshot: Snapshot,
                    processing_time: datetime, load_bronze: bool) -> None:
        if load_bronze:
            timing = StageTiming("bronze")
            report.stages["bronze"] = timing
            timing.finish(self.load_bronze())
        elif not os.path.exists(self.config.bronze_db):
            raise StageError("bronze", f"Bronze database not found: {self.config.bronze_db}",
                             SOURCE_UNAVAILABLE)

        timing = StageTiming("silver")
        report.stages["silver"] = timing
        results = transform_bronze_to_silver(
            self.config.bronze_db,
            snapshot.silver_db,
            processing_time=processing_time,
            stage_timeout=self.config.stage_timeout,
            max_workers=self.config.max_workers,
        )
        report.silver_counts = {f"silver_{source}": r.rows_out for source, r in results.items()}
        timing.finish(report.silver_counts)

        timing = StageTiming("gold")
        report.stages["gold"] = timing
        report.gold_counts = aggregate_silver_to_gold(
            snapshot.silver_db, snapshot.gold_db,
            stage_timeout=self.config.stage_timeout,
            processing_time=processing_time,
        )
        timing.finish(report.gold_counts)

    def run(self, processing_time: Optional[datetime] = None, load_bronze: bool = True) -> RunReport:
        """
        Run the full pipeline into a new snapshot and publish it.

        Args:
            processing_time: Reference time for the run. Two runs over the
                same bronze data with the same processing time produce
                identical silver and gold tables. Default: now.
            load_bronze: Reload bronze from the CSV extracts first

        Returns:
            RunReport; on failure status is "failed" and the previously
            published snapshot stays current
        """
        processing_time = processing_time or datetime.now()
        report = RunReport(run_id=self._new_run_id())
        clock = time.perf_counter()
        logger.info(f"Starting pipeline run {report.run_id} (processing time {processing_time.isoformat()})")

        snapshot = self.snapshots.begin(report.run_id)
        try:
            self._run_stages(report, snapshot, processing_time, load_bronze)
            self.snapshots.publish(snapshot)
        except StageError as e:
            logger.error(f"Pipeline run {report.run_id} failed: {e}")
            report.status = "failed"
            report.error = e.to_dict()
            report.failed_stage = e.stage
            self.snapshots.discard(snapshot)
        else:
            report.status = "succeeded"
            removed = self.snapshots.prune(self.config.keep_snapshots)
            logger.debug(f"Pruned snapshots: {removed}")
            report.quality_issues = self._check_quality(snapshot)

        report.finished_at = datetime.now()
        report.elapsed_seconds = time.perf_counter() - clock
        logger.info(f"Pipeline run {report.run_id} {report.status} in {report.elapsed_seconds:.2f}s")
        return report

    def _check_quality(self, snapshot: Snapshot) -> List[str]:
        try:
            issues = run_quality_checks(snapshot.silver_db, snapshot.gold_db)
        except (sqlite3.Error, pd.errors.DatabaseError) as e:
            logger.error(f"Data quality checks could not run on {snapshot.run_id}: {e}")
            return []
        return [str(issue) for issue in issues]

    def _db_for(self, layer: str) -> str:
        if layer == "bronze":
            return self.config.bronze_db
        snapshot = self.snapshots.current()
        if snapshot is None:
            raise FileNotFoundError(f"No published snapshot under {self.snapshots.root}")
        return snapshot.db_for(layer)

    def read_table(self, layer: str, table: str) -> pd.DataFrame:
        """Read a table from bronze or from the currently published snapshot."""
        conn = connect(self._db_for(layer), must_exist=True)
        try:
            return read_table(conn, table)
        finally:
            conn.close()

    def get_layer_stats(self) -> Dict[str, Dict[str, int]]:
        """
        Get record counts for each table of each layer.

        Returns:
            {layer: {table: count}}, -1 where a table does not exist yet
        """
        stats = {"bronze": table_counts(self.config.bronze_db, BRONZE_TABLES)}
        snapshot = self.snapshots.current()
        if snapshot is None:
            stats["silver"] = {table: -1 for table in SILVER_TABLES}
            stats["gold"] = {table: -1 for table in GOLD_TABLES}
        else:
            stats["silver"] = table_counts(snapshot.silver_db, SILVER_TABLES)
            stats["gold"] = table_counts(snapshot.gold_db, GOLD_TABLES)
        return stats

    def export_snapshot(self, output_dir: Optional[str] = None) -> Dict[str, List[str]]:
        """
        Export every silver and gold table of the current snapshot to Parquet.

        Returns:
            {layer: [exported file paths]}; empty tables are skipped
        """
        output_dir = output_dir or self.config.export_dir
        snapshot = self.snapshots.current()
        if snapshot is None:
            raise FileNotFoundError(f"No published snapshot under {self.snapshots.root}")
        os.makedirs(output_dir, exist_ok=True)

        exported: Dict[str, List[str]] = {"silver": [], "gold": []}
        for layer, tables in (("silver", SILVER_TABLES), ("gold", GOLD_TABLES)):
            for table in tables:
                output_file = os.path.join(output_dir, f"{snapshot.run_id}_{table}.parquet")
                if export_table_to_parquet(snapshot.db_for(layer), table, output_file):
                    exported[layer].append(output_file)
        logger.info(f"Exported {sum(len(f) for f in exported.values())} tables from snapshot "
                    f"{snapshot.run_id} to {output_dir}")
        return exported

    def upload_exports(self, exported: Dict[str, List[str]],
                       publisher: Optional[S3Publisher] = None) -> bool:
        """Upload exported files to their layer buckets. Returns True if all succeeded."""
        publisher = publisher or S3Publisher(self.config.bucket_prefix, self.config.aws_region)
        results = [publisher.upload_file(path, layer)
                   for layer, paths in exported.items() for path in paths]
        return all(results)


def _parse_processing_time(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 timestamp: {value!r}")


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point for the pipeline."""
    parser = argparse.ArgumentParser(description="Run the CRM/ERP medallion warehouse pipeline")
    parser.add_argument("--source-dir", type=str, help="Directory holding source_crm/ and source_erp/")
    parser.add_argument("--data-dir", type=str, help="Directory for bronze.db and snapshots")
    parser.add_argument("--skip-bronze", action="store_true", help="Reuse the existing bronze database")
    parser.add_argument("--processing-time", type=_parse_processing_time,
                        help="Reference time for the run (ISO 8601, default: now)")
    parser.add_argument("--timeout", type=float, help="Per-stage timeout in seconds (0 disables)")
    parser.add_argument("--workers", type=int, help="Silver entities conformed concurrently")
    parser.add_argument("--export", action="store_true", help="Export the published snapshot to Parquet")
    parser.add_argument("--upload", action="store_true", help="Upload the exported files to S3")
    parser.add_argument("--stats-only", action="store_true", help="Only print layer statistics")
    args = parser.parse_args(argv)

    setup_logger("warehouse", log_file="warehouse_pipeline.log")

    config = PipelineConfig.from_env().with_overrides(
        source_dir=args.source_dir,
        data_dir=args.data_dir,
        max_workers=args.workers,
    )
    if args.timeout is not None:
        # with_overrides skips None, so a disabled limit is set directly
        config = replace(config, stage_timeout=args.timeout if args.timeout > 0 else None)
    pipeline = WarehousePipeline(config)

    exit_code = 0
    if not args.stats_only:
        report = pipeline.run(processing_time=args.processing_time, load_bronze=not args.skip_bronze)
        print(json.dumps(report.to_dict(), indent=2))
        if not report.succeeded:
            exit_code = 1
        elif args.export or args.upload:
            exported = pipeline.export_snapshot()
            if args.upload and not pipeline.upload_exports(exported):
                exit_code = 1

    stats = pipeline.get_layer_stats()
    print("\nLayer statistics:")
    for layer, counts in stats.items():
        for table, count in counts.items():
            print(f"{layer:<7} {table:<32} {count}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
