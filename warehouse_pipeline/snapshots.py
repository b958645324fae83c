"""
Versioned silver/gold snapshots.

Each pipeline run writes into its own directory under the snapshot root:

    snapshots/
        CURRENT                  <- run id of the latest published snapshot
        20240101T020000000000/
            silver.db
            gold.db
        20240102T020000000000/
            ...

A run is only visible to readers once ``publish`` swaps the CURRENT pointer,
which is a single os.replace of a small file. A run that fails before then
is discarded and readers keep seeing the previous snapshot.
"""

import logging
import os
import shutil
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger("warehouse.snapshots")

POINTER_FILE = "CURRENT"
SILVER_DB = "silver.db"
GOLD_DB = "gold.db"


@dataclass(frozen=True)
class Snapshot:
    run_id: str
    path: str

    @property
    def silver_db(self) -> str:
        return os.path.join(self.path, SILVER_DB)

    @property
    def gold_db(self) -> str:
        return os.path.join(self.path, GOLD_DB)

    def db_for(self, layer: str) -> str:
        if layer == "silver":
            return self.silver_db
        if layer == "gold":
            return self.gold_db
        raise ValueError(f"Snapshots hold silver and gold only, not {layer!r}")


class SnapshotStore:
    """Directory of run snapshots plus an atomically swapped pointer."""

    def __init__(self, root: str):
        self.root = root
        os.makedirs(self.root, exist_ok=True)

    @property
    def pointer_path(self) -> str:
        return os.path.join(self.root, POINTER_FILE)

    def _snapshot(self, run_id: str) -> Snapshot:
        return Snapshot(run_id=run_id, path=os.path.join(self.root, run_id))

    def begin(self, run_id: str) -> Snapshot:
        """Create an empty directory for a new run."""
        if run_id == self.current_run_id():
            raise ValueError(f"Run {run_id} is the published snapshot and cannot be rebuilt in place")
        snapshot = self._snapshot(run_id)
        if os.path.exists(snapshot.path):
            logger.warning(f"Removing leftover snapshot directory {snapshot.path}")
            shutil.rmtree(snapshot.path)
        os.makedirs(snapshot.path)
        return snapshot

    def publish(self, snapshot: Snapshot) -> None:
        """Point CURRENT at ``snapshot``. Readers see either the old or the new run."""
        if not os.path.isdir(snapshot.path):
            raise FileNotFoundError(f"Snapshot directory missing: {snapshot.path}")
        tmp_path = f"{self.pointer_path}.{snapshot.run_id}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(snapshot.run_id)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.pointer_path)
        logger.info(f"Published snapshot {snapshot.run_id}")

    def discard(self, snapshot: Snapshot) -> None:
        """Delete an unpublished snapshot."""
        if snapshot.run_id == self.current_run_id():
            raise ValueError(f"Refusing to discard the published snapshot {snapshot.run_id}")
        if os.path.exists(snapshot.path):
            shutil.rmtree(snapshot.path)
            logger.info(f"Discarded snapshot {snapshot.run_id}")

    def current_run_id(self) -> Optional[str]:
        try:
            with open(self.pointer_path, encoding="utf-8") as f:
                run_id = f.read().strip()
        except FileNotFoundError:
            return None
        return run_id or None

    def current(self) -> Optional[Snapshot]:
        """The published snapshot, re-read from disk on every call."""
        run_id = self.current_run_id()
        return None if run_id is None else self._snapshot(run_id)

    def list_snapshots(self) -> List[Snapshot]:
        """Snapshot directories, oldest first (run ids sort chronologically)."""
        names = sorted(
            name for name in os.listdir(self.root)
            if os.path.isdir(os.path.join(self.root, name))
        )
        return [self._snapshot(name) for name in names]

    def prune(self, keep: int) -> List[str]:
        """
        Delete the oldest snapshots so at most ``keep`` remain.

        The published snapshot is never removed.

        Returns:
            Run ids that were deleted
        """
        current = self.current_run_id()
        removable = [s for s in self.list_snapshots() if s.run_id != current]
        excess = len(removable) + (1 if current else 0) - max(keep, 1)
        removed = []
        for snapshot in removable[:max(excess, 0)]:
            shutil.rmtree(snapshot.path)
            removed.append(snapshot.run_id)
        if removed:
            logger.info(f"Pruned {len(removed)} old snapshots: {removed}")
        return removed
