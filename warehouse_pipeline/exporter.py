"""
Export snapshot tables to Parquet and publish them to S3.

Each layer goes to its own bucket, ``<bucket_prefix>-<layer>``.
"""

import logging
import os
import sqlite3
import time
from typing import Optional

import boto3
import pandas as pd
from botocore.exceptions import ClientError, EndpointConnectionError

from warehouse_pipeline.config import DEFAULT_BUCKET_PREFIX, DEFAULT_REGION

logger = logging.getLogger("warehouse.export")

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2  # seconds


def export_table_to_parquet(db_file: str, table_name: str, output_file: str) -> int:
    """
    Write one SQLite table to a Parquet file.

    Returns:
        Number of rows exported (0 means nothing was written)
    """
    conn = sqlite3.connect(db_file)
    try:
        df = pd.read_sql(f"SELECT * FROM {table_name} ORDER BY rowid", conn)
    finally:
        conn.close()
    if df.empty:
        logger.warning(f"Table '{table_name}' in {db_file} is empty. No data to export.")
        return 0
    os.makedirs(os.path.dirname(os.path.abspath(output_file)), exist_ok=True)
    df.to_parquet(output_file, index=False, engine="pyarrow")
    logger.info(f"Exported {len(df)} records from table '{table_name}' to {output_file}")
    return len(df)


class S3Publisher:
    """Uploads exported files to per-layer S3 buckets."""

    def __init__(
        self,
        bucket_prefix: str = DEFAULT_BUCKET_PREFIX,
        region: str = DEFAULT_REGION,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        client=None,
    ):
        """
        Args:
            bucket_prefix: Prefix for S3 bucket names
            region: AWS region to use
            retry_attempts: Number of upload attempts per file
            retry_delay: Base delay between attempts in seconds (doubles each retry)
            client: Pre-built S3 client; one is created from the default
                credential chain when omitted
        """
        self.bucket_prefix = bucket_prefix
        self.region = region
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.s3_client = client or boto3.client("s3", region_name=region)

    def bucket_for(self, layer: str) -> str:
        return f"{self.bucket_prefix}-{layer}"

    def upload_file(self, local_file: str, layer: str, object_key: Optional[str] = None) -> bool:
        """
        Upload a file to the layer's bucket, retrying with exponential backoff.

        Returns:
            True if the upload succeeded, False after the last failed attempt
        """
        bucket = self.bucket_for(layer)
        object_key = object_key or os.path.basename(local_file)
        for attempt in range(1, self.retry_attempts + 1):
            try:
                self.s3_client.upload_file(local_file, bucket, object_key)
                logger.info(f"Uploaded {local_file} to s3://{bucket}/{object_key}")
                return True
            except (ClientError, EndpointConnectionError) as e:
                logger.warning(f"Upload attempt {attempt} of {local_file} failed: {e}")
                if attempt < self.retry_attempts:
                    sleep_time = self.retry_delay * (2 ** (attempt - 1))
                    logger.info(f"Retrying in {sleep_time} seconds...")
                    time.sleep(sleep_time)
        logger.error(f"Failed to upload {local_file} to s3://{bucket}/{object_key} "
                     f"after {self.retry_attempts} attempts")
        return False
