"""Tests for ReconciliationWatcher and condition mapping."""

from __future__ import annotations

import asyncio
import uuid
import zlib
from datetime import datetime, timezone

import pytest

from pipewright.backend.base import (
    RUN_ID_LABEL,
    BackendEvent,
    Condition,
    EventType,
    RunSnapshot,
    TaskSnapshot,
)
from pipewright.errors import BackendUnavailable, WatchExpired
from pipewright.models import PipelineRun, RunStatus, TaskRunStatus
from pipewright.watcher import (
    DELETED_MESSAGE,
    ORPHANED_MESSAGE,
    ReconciliationWatcher,
    extract_run_id,
    map_condition,
)


def _snapshot(run_id: str | None, condition: Condition | None = None, **kwargs) -> RunSnapshot:
    labels = {RUN_ID_LABEL: run_id} if run_id is not None else {}
    return RunSnapshot(name=f"run-{(run_id or 'x')[:8]}-1", labels=labels, condition=condition, **kwargs)


def _event(run_id, status: str | None = None, reason: str = "", message: str = "", kind=EventType.MODIFIED, **kwargs):
    condition = Condition(status=status, reason=reason, message=message) if status else None
    return BackendEvent(type=kind, snapshot=_snapshot(run_id, condition, **kwargs))


def _make_watcher(backend, manager, **overrides) -> ReconciliationWatcher:
    defaults: dict = dict(workers=4, queue_size=16, backoff_initial=0.01, backoff_max=0.05)
    defaults.update(overrides)
    return ReconciliationWatcher(backend, manager, **defaults)


async def _running_run(manager) -> PipelineRun:
    run = await manager.create("build")
    await manager.drain()
    return await manager.get_by_id(run.id)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ── Condition Mapping ────────────────────────────────────────────────────────


class TestMapCondition:
    @pytest.mark.parametrize(
        ("status", "reason", "expected"),
        [
            ("True", "Succeeded", RunStatus.SUCCEEDED),
            ("True", "Completed", RunStatus.SUCCEEDED),
            ("False", "Failed", RunStatus.FAILED),
            ("False", "PipelineRunTimeout", RunStatus.TIMEOUT),
            ("False", "Cancelled", RunStatus.CANCELLED),
            ("False", "StoppedRunFinally", RunStatus.CANCELLED),
            ("Unknown", "Running", RunStatus.RUNNING),
            ("Unknown", "PipelineRunPending", None),
        ],
    )
    def test_mapping(self, status, reason, expected):
        assert map_condition(Condition(status=status, reason=reason)) == expected

    def test_no_condition(self):
        assert map_condition(None) is None


class TestExtractRunId:
    def test_valid_label(self):
        run_id = str(uuid.uuid4())
        assert extract_run_id(_snapshot(run_id)) == run_id

    def test_missing_label(self):
        assert extract_run_id(_snapshot(None)) is None

    def test_malformed_label(self):
        assert extract_run_id(_snapshot("not-a-uuid")) is None


# ── Apply ────────────────────────────────────────────────────────────────────


class TestApply:
    async def test_first_event_marks_pending_run_running(self, manager, backend):
        backend.submit_gate = asyncio.Event()  # keep the run pending
        run = await manager.create("build")
        watcher = _make_watcher(backend, manager)

        await watcher.apply(run.id, _event(run.id, "Unknown", "Running"))
        assert (await manager.get_by_id(run.id)).status == RunStatus.RUNNING
        backend.submit_gate.set()
        await manager.drain()

    async def test_timeout_condition(self, manager, backend):
        run = await _running_run(manager)
        watcher = _make_watcher(backend, manager)

        await watcher.apply(
            run.id, _event(run.id, "False", "PipelineRunTimeout", "PipelineRun timed out after 1h")
        )
        stored = await manager.get_by_id(run.id)
        assert stored.status == RunStatus.TIMEOUT
        assert stored.finished_at is not None
        assert stored.duration is not None
        assert stored.error_message == "PipelineRun timed out after 1h"

    async def test_duplicate_succeeded_events_apply_once(self, manager, backend, admission):
        run = await _running_run(manager)
        watcher = _make_watcher(backend, manager)

        await watcher.apply(run.id, _event(run.id, "True", "Succeeded"))
        first = await manager.get_by_id(run.id)
        await watcher.apply(run.id, _event(run.id, "True", "Succeeded"))
        second = await manager.get_by_id(run.id)

        assert second.status == RunStatus.SUCCEEDED
        assert second.finished_at == first.finished_at
        assert second.duration == first.duration
        assert second.updated_at == first.updated_at
        assert not admission.holds(run.id)

    async def test_stale_event_after_terminal_is_ignored(self, manager, backend):
        run = await _running_run(manager)
        await manager.cancel(run.id)
        watcher = _make_watcher(backend, manager)

        await watcher.apply(run.id, _event(run.id, "False", "Failed", "step exited 1"))
        assert (await manager.get_by_id(run.id)).status == RunStatus.CANCELLED

    async def test_deleted_before_completion_fails_run(self, manager, backend):
        run = await _running_run(manager)
        watcher = _make_watcher(backend, manager)

        await watcher.apply(run.id, _event(run.id, "Unknown", "Running", kind=EventType.DELETED))
        stored = await manager.get_by_id(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.error_message == DELETED_MESSAGE

    async def test_deleted_after_completion_keeps_status(self, manager, backend):
        run = await _running_run(manager)
        watcher = _make_watcher(backend, manager)

        await watcher.apply(run.id, _event(run.id, "True", "Succeeded", kind=EventType.DELETED))
        assert (await manager.get_by_id(run.id)).status == RunStatus.SUCCEEDED

    async def test_task_statuses_are_reconciled(self, manager, backend):
        run = await _running_run(manager)
        watcher = _make_watcher(backend, manager)
        started = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)
        finished = datetime(2026, 1, 1, 10, 5, tzinfo=timezone.utc)

        await watcher.apply(
            run.id,
            _event(
                run.id,
                "Unknown",
                "Running",
                tasks=[
                    TaskSnapshot(
                        name="compile",
                        condition=Condition(status="True", reason="Succeeded"),
                        started_at=started,
                        finished_at=finished,
                        exit_code=0,
                    ),
                    TaskSnapshot(name="test", started_at=finished),
                ],
            ),
        )
        by_name = {t.name: t for t in await manager.get_task_runs(run.id)}
        assert by_name["compile"].status == TaskRunStatus.SUCCEEDED
        assert by_name["compile"].finished_at == finished
        assert by_name["compile"].exit_code == 0
        assert by_name["test"].status == TaskRunStatus.RUNNING


# ── Dispatch / Ordering ──────────────────────────────────────────────────────


class RecordingLifecycle:
    """Lifecycle stand-in that records updates and slows down RUNNING ones."""

    def __init__(self):
        self.calls: list[tuple[str, RunStatus]] = []

    async def get_by_id(self, run_id: str) -> PipelineRun:
        return PipelineRun(id=run_id, pipeline_id="build", run_number=1)

    async def update_task_status(self, *args, **kwargs) -> bool:
        return True

    async def update_status(self, run_id, status, message=None):
        if status == RunStatus.RUNNING:
            await asyncio.sleep(0.05)
        self.calls.append((run_id, status))

    async def active_runs(self) -> list[PipelineRun]:
        return []


def _ids_on_distinct_shards(workers: int) -> tuple[str, str]:
    first = str(uuid.uuid4())
    while True:
        second = str(uuid.uuid4())
        if zlib.crc32(first.encode()) % workers != zlib.crc32(second.encode()) % workers:
            return first, second


class TestDispatch:
    async def test_same_run_applied_in_order_other_runs_concurrently(self, backend):
        lifecycle = RecordingLifecycle()
        watcher = _make_watcher(backend, lifecycle, workers=2)
        await watcher.start()
        try:
            slow, fast = _ids_on_distinct_shards(2)
            await watcher.dispatch(_event(slow, "Unknown", "Running"))
            await watcher.dispatch(_event(slow, "True", "Succeeded"))
            await watcher.dispatch(_event(fast, "True", "Succeeded"))
            await watcher.drain()
        finally:
            await watcher.stop()

        slow_calls = [s for rid, s in lifecycle.calls if rid == slow]
        assert slow_calls == [RunStatus.RUNNING, RunStatus.SUCCEEDED]
        # The other run's update didn't wait behind the slow one
        assert lifecycle.calls[0] == (fast, RunStatus.SUCCEEDED)

    async def test_unlabelled_and_malformed_events_are_dropped(self, backend):
        lifecycle = RecordingLifecycle()
        watcher = _make_watcher(backend, lifecycle)
        await watcher.dispatch(_event(None, "True", "Succeeded"))
        await watcher.dispatch(_event("garbage", "True", "Succeeded"))
        assert all(q.empty() for q in watcher._queues)

    async def test_unknown_run_does_not_kill_worker(self, manager, backend):
        watcher = _make_watcher(backend, manager, workers=1)
        await watcher.start()
        try:
            run = await _running_run(manager)
            await watcher.dispatch(_event(str(uuid.uuid4()), "True", "Succeeded"))
            await watcher.dispatch(_event(run.id, "True", "Succeeded"))
            await watcher.drain()
        finally:
            await watcher.stop()
        assert (await manager.get_by_id(run.id)).status == RunStatus.SUCCEEDED


# ── Resync / Orphans ─────────────────────────────────────────────────────────


class TestResync:
    async def test_relist_applies_missed_transitions(self, manager, backend):
        run = await _running_run(manager)
        backend.snapshots = [_snapshot(run.id, Condition(status="True", reason="Succeeded"))]
        watcher = _make_watcher(backend, manager)
        await watcher.start()
        try:
            async def succeeded():
                return (await manager.get_by_id(run.id)).status == RunStatus.SUCCEEDED

            await _wait_for(succeeded)
        finally:
            await watcher.stop()

    async def test_orphaned_running_run_is_failed(self, manager, backend):
        orphan = await _running_run(manager)
        present = await _running_run(manager)
        backend.snapshots = [_snapshot(present.id, Condition(status="Unknown", reason="Running"))]
        watcher = _make_watcher(backend, manager, orphan_grace_seconds=0)

        await watcher.resync()

        stored = await manager.get_by_id(orphan.id)
        assert stored.status == RunStatus.FAILED
        assert stored.error_message == ORPHANED_MESSAGE
        assert (await manager.get_by_id(present.id)).status == RunStatus.RUNNING

    async def test_recent_runs_get_grace_period(self, manager, backend):
        run = await _running_run(manager)
        watcher = _make_watcher(backend, manager, orphan_grace_seconds=300)
        await watcher.resync()
        assert (await manager.get_by_id(run.id)).status == RunStatus.RUNNING

    async def test_reconnects_and_resyncs_after_transport_failure(self, manager, backend):
        run = await _running_run(manager)
        backend.list_results = [BackendUnavailable("connection refused")]
        backend.streams = [
            WatchExpired("too old"),
            BackendUnavailable("stream reset"),
        ]
        backend.snapshots = [_snapshot(run.id, Condition(status="False", reason="Failed", message="boom"))]
        watcher = _make_watcher(backend, manager)
        await watcher.start()
        try:
            async def failed():
                return (await manager.get_by_id(run.id)).status == RunStatus.FAILED

            await _wait_for(failed)

            async def relisted_after_each_failure():
                return backend.list_calls >= 4

            await _wait_for(relisted_after_each_failure)
        finally:
            await watcher.stop()
        assert (await manager.get_by_id(run.id)).error_message == "boom"

    async def test_stream_events_are_applied(self, manager, backend):
        run = await _running_run(manager)
        backend.snapshots = [_snapshot(run.id, Condition(status="Unknown", reason="Running"))]
        backend.streams = [[_event(run.id, "True", "Succeeded")]]
        watcher = _make_watcher(backend, manager)
        await watcher.start()
        try:
            async def succeeded():
                return (await manager.get_by_id(run.id)).status == RunStatus.SUCCEEDED

            await _wait_for(succeeded)
        finally:
            await watcher.stop()
