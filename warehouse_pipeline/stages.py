"""
Stage bookkeeping shared by the bronze, silver and gold layers.

StageError is the only exception a layer lets escape: it carries the stage,
a short error code and the entity being processed so the orchestrator can
report the failure without parsing messages.
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
TRANSFORM_FAILED = "TRANSFORM_FAILED"
LOAD_FAILED = "LOAD_FAILED"
STAGE_TIMEOUT = "STAGE_TIMEOUT"


class StageError(Exception):
    """A fatal error that aborts the current pipeline run."""

    def __init__(self, stage: str, message: str, code: str, state: Optional[str] = None):
        super().__init__(message)
        self.stage = stage
        self.message = message
        self.code = code
        self.state = state

    def __str__(self) -> str:
        where = f"{self.stage}/{self.state}" if self.state else self.stage
        return f"[{self.code}] {where}: {self.message}"

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "stage": self.stage,
            "message": self.message,
            "code": self.code,
            "state": self.state,
        }


@dataclass
class StageTiming:
    """Start/end timestamps and row counts for one stage."""

    name: str
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    rows: Dict[str, int] = field(default_factory=dict)
    _clock: float = field(default_factory=time.perf_counter, repr=False)
    elapsed_seconds: float = 0.0

    def finish(self, rows: Optional[Dict[str, int]] = None) -> "StageTiming":
        self.finished_at = datetime.now()
        self.elapsed_seconds = time.perf_counter() - self._clock
        if rows:
            self.rows.update(rows)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "rows": dict(self.rows),
        }


def run_tasks(
    stage: str,
    tasks: List[Tuple[str, Callable[[], Any]]],
    timeout: Optional[float] = None,
    max_workers: int = 1,
) -> Dict[str, Any]:
    """
    Run named callables and collect their results, bounded by one deadline.

    With ``max_workers=1`` tasks execute one after another in list order.
    A task that raises StageError propagates unchanged; any other exception
    is wrapped as TRANSFORM_FAILED. Exceeding ``timeout`` (seconds, shared by
    all tasks) raises STAGE_TIMEOUT naming the task still pending.

    Returns:
        Mapping of task name to result, in task order
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    executor = ThreadPoolExecutor(max_workers=max(1, max_workers),
                                  thread_name_prefix=f"{stage}-stage")
    results: Dict[str, Any] = {}
    try:
        futures = [(name, executor.submit(task)) for name, task in tasks]
        for name, future in futures:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                results[name] = future.result(timeout=remaining)
            except FutureTimeout:
                raise StageError(stage, f"stage exceeded its {timeout}s time budget",
                                 STAGE_TIMEOUT, name)
            except StageError:
                raise
            except Exception as e:
                raise StageError(stage, f"{type(e).__name__}: {e}", TRANSFORM_FAILED, name) from e
    finally:
        # Pending work is abandoned; a running thread finishes in the background
        executor.shutdown(wait=False, cancel_futures=True)
    return results
