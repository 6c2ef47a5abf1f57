"""Tests for RetentionSweeper."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from pipewright.models import PipelineRun, RunStatus, TaskRun, TaskRunStatus
from pipewright.sweeper import RetentionSweeper

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


async def _run(repository, run_id: str, status: RunStatus, finished_hours_ago: float | None, number: int):
    finished = NOW - timedelta(hours=finished_hours_ago) if finished_hours_ago is not None else None
    await repository.insert_run(
        PipelineRun(
            id=run_id,
            pipeline_id="build",
            run_number=number,
            status=status,
            created_at=NOW - timedelta(days=30),
            finished_at=finished,
        )
    )


class TestSweep:
    async def test_deletes_only_expired_terminal_runs(self, repository):
        await _run(repository, "old-success", RunStatus.SUCCEEDED, 200, 1)
        await _run(repository, "old-failed", RunStatus.FAILED, 169, 2)
        await _run(repository, "recent", RunStatus.SUCCEEDED, 10, 3)
        await _run(repository, "ancient-running", RunStatus.RUNNING, None, 4)
        await _run(repository, "ancient-pending", RunStatus.PENDING, None, 5)

        sweeper = RetentionSweeper(repository, pipeline_run_ttl_hours=168, task_run_ttl_hours=24)
        result = await sweeper.sweep(now=NOW)

        assert result.pipeline_runs_deleted == 2
        assert result.errors == 0
        assert await repository.get_run("old-success") is None
        assert await repository.get_run("old-failed") is None
        for survivor in ("recent", "ancient-running", "ancient-pending"):
            assert await repository.get_run(survivor) is not None

    async def test_task_runs_have_their_own_ttl(self, repository):
        await _run(repository, "run", RunStatus.SUCCEEDED, 48, 1)
        await repository.insert_task_runs(
            [
                TaskRun(
                    id="t1",
                    pipeline_run_id="run",
                    task_id="compile",
                    name="compile",
                    status=TaskRunStatus.SUCCEEDED,
                    finished_at=NOW - timedelta(hours=48),
                ),
                TaskRun(
                    id="t2",
                    pipeline_run_id="run",
                    task_id="test",
                    name="test",
                    status=TaskRunStatus.SKIPPED,
                    finished_at=NOW - timedelta(hours=1),
                ),
            ]
        )

        sweeper = RetentionSweeper(repository, pipeline_run_ttl_hours=168, task_run_ttl_hours=24)
        result = await sweeper.sweep(now=NOW)

        assert result.pipeline_runs_deleted == 0
        assert result.task_runs_deleted == 1
        remaining = await repository.get_task_runs("run")
        assert [t.name for t in remaining] == ["test"]

    async def test_one_failing_delete_does_not_stop_the_other(self):
        repository = AsyncMock()
        repository.delete_expired_runs.side_effect = RuntimeError("database is locked")
        repository.delete_expired_task_runs.return_value = 7

        result = await RetentionSweeper(repository).sweep(now=NOW)

        assert result.errors == 1
        assert result.pipeline_runs_deleted == 0
        assert result.task_runs_deleted == 7
        repository.delete_expired_task_runs.assert_awaited_once_with(NOW - timedelta(hours=24))

    async def test_cutoffs_follow_configured_ttls(self):
        repository = AsyncMock()
        repository.delete_expired_runs.return_value = 0
        repository.delete_expired_task_runs.return_value = 0

        await RetentionSweeper(repository, pipeline_run_ttl_hours=2, task_run_ttl_hours=1).sweep(now=NOW)

        repository.delete_expired_runs.assert_awaited_once_with(NOW - timedelta(hours=2))
        repository.delete_expired_task_runs.assert_awaited_once_with(NOW - timedelta(hours=1))


class TestLoop:
    async def test_loop_sweeps_on_interval_and_survives_errors(self):
        repository = AsyncMock()
        repository.delete_expired_runs.side_effect = RuntimeError("boom")
        repository.delete_expired_task_runs.return_value = 0
        sweeper = RetentionSweeper(repository, interval_seconds=0)

        await sweeper.start()
        for _ in range(50):
            if repository.delete_expired_runs.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert repository.delete_expired_runs.await_count >= 2
