"""Retention Sweeper: periodic deletion of expired terminal runs.

Pipeline runs and task runs have independent TTLs and are swept
independently; one sweep failing does not stop the other.  Only rows in a
terminal status with a ``finished_at`` older than the cutoff are eligible,
so a run that is still pending or running is never deleted however old it
is.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from pipewright import metrics

if TYPE_CHECKING:
    from pipewright.registry import RunRepository

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    pipeline_runs_deleted: int = 0
    task_runs_deleted: int = 0
    errors: int = 0


class RetentionSweeper:
    """Timer-driven cleanup task."""

    def __init__(
        self,
        repository: RunRepository,
        *,
        interval_seconds: int = 6 * 3600,
        pipeline_run_ttl_hours: int = 168,
        task_run_ttl_hours: int = 24,
    ):
        self.repository = repository
        self.interval = interval_seconds
        self.pipeline_run_ttl = timedelta(hours=pipeline_run_ttl_hours)
        self.task_run_ttl = timedelta(hours=task_run_ttl_hours)
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="retention-sweeper")
        logger.info("Retention sweeper started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Retention sweeper stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Retention sweep error")

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """Run one retention pass."""
        now = now or datetime.now(timezone.utc)
        result = SweepResult()

        try:
            result.pipeline_runs_deleted = await self.repository.delete_expired_runs(
                now - self.pipeline_run_ttl
            )
            metrics.sweep_deleted_total.labels(kind="pipeline_run").inc(
                result.pipeline_runs_deleted
            )
        except Exception:
            result.errors += 1
            logger.exception("Pipeline run retention sweep failed")

        try:
            result.task_runs_deleted = await self.repository.delete_expired_task_runs(
                now - self.task_run_ttl
            )
            metrics.sweep_deleted_total.labels(kind="task_run").inc(result.task_runs_deleted)
        except Exception:
            result.errors += 1
            logger.exception("Task run retention sweep failed")

        if result.pipeline_runs_deleted or result.task_runs_deleted:
            logger.info(
                "Retention sweep deleted %d pipeline runs, %d task runs",
                result.pipeline_runs_deleted,
                result.task_runs_deleted,
            )
        return result
