"""
CRM/ERP medallion data warehouse built on SQLite and pandas.

Modules:
    bronze: raw CSV extracts loaded as-is
    cleansing: field-level validation and normalization rules
    silver: one conformed table per source entity
    gold: customer and product dimensions plus the sales fact
    snapshots: versioned silver/gold output with atomic publication
    quality: post-load data-quality checks
    exporter: Parquet export and S3 upload
    run_pipeline: orchestrator and command-line entry point
"""

__version__ = "0.1.0"
