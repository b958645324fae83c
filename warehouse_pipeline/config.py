"""
Pipeline configuration.

Settings come from environment variables (optionally a ``.env`` file in the
working directory) with defaults suited to a local run.
"""

import os
from dataclasses import dataclass, replace
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_SOURCE_DIR = "data/source"
DEFAULT_DATA_DIR = "data/warehouse"
DEFAULT_EXPORT_DIR = "data/export"
DEFAULT_STAGE_TIMEOUT = 300.0  # seconds
DEFAULT_MAX_WORKERS = 1
DEFAULT_KEEP_SNAPSHOTS = 5
DEFAULT_BUCKET_PREFIX = "data-warehouse"
DEFAULT_REGION = "us-east-1"


def _optional_timeout(raw: Optional[str]) -> Optional[float]:
    if raw is None or raw.strip() == "":
        return DEFAULT_STAGE_TIMEOUT
    value = float(raw)
    # zero or negative disables the timeout
    return value if value > 0 else None


@dataclass(frozen=True)
class PipelineConfig:
    """Runtime settings for one pipeline process."""

    source_dir: str = DEFAULT_SOURCE_DIR
    data_dir: str = DEFAULT_DATA_DIR
    export_dir: str = DEFAULT_EXPORT_DIR
    stage_timeout: Optional[float] = DEFAULT_STAGE_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS
    keep_snapshots: int = DEFAULT_KEEP_SNAPSHOTS
    bucket_prefix: str = DEFAULT_BUCKET_PREFIX
    aws_region: str = DEFAULT_REGION

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            source_dir=os.environ.get("DWH_SOURCE_DIR", DEFAULT_SOURCE_DIR),
            data_dir=os.environ.get("DWH_DATA_DIR", DEFAULT_DATA_DIR),
            export_dir=os.environ.get("DWH_EXPORT_DIR", DEFAULT_EXPORT_DIR),
            stage_timeout=_optional_timeout(os.environ.get("DWH_STAGE_TIMEOUT")),
            max_workers=int(os.environ.get("DWH_MAX_WORKERS", DEFAULT_MAX_WORKERS)),
            keep_snapshots=int(os.environ.get("DWH_KEEP_SNAPSHOTS", DEFAULT_KEEP_SNAPSHOTS)),
            bucket_prefix=os.environ.get("DWH_BUCKET_PREFIX", DEFAULT_BUCKET_PREFIX),
            aws_region=os.environ.get("AWS_REGION", DEFAULT_REGION),
        )

    def with_overrides(self, **changes) -> "PipelineConfig":
        """Return a copy with the non-None ``changes`` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def bronze_db(self) -> str:
        return os.path.join(self.data_dir, "bronze.db")

    @property
    def snapshot_root(self) -> str:
        return os.path.join(self.data_dir, "snapshots")
