"""Reconciliation Watcher: feeds backend change events into run state.

On every (re)connect the watcher relists all backend runs, replays them as
events, and fails any running run the backend no longer knows about.  It
then follows the backend's watch stream from the relist's resource
version until the stream ends or breaks, and starts over.

Events are sharded by run id across a fixed set of bounded queues, each
drained by one worker: events for one run apply in arrival order, while
different runs proceed concurrently.  A full queue blocks the stream
reader rather than growing without bound.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import zlib
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from pipewright import metrics
from pipewright.backend.base import BackendEvent, Condition, EventType, RunSnapshot, TaskSnapshot
from pipewright.errors import BackendError, PipewrightError, WatchExpired
from pipewright.models import RunStatus, TaskRunStatus

if TYPE_CHECKING:
    from pipewright.backend.base import ExecutionBackend
    from pipewright.lifecycle import RunLifecycleManager

logger = logging.getLogger(__name__)

ORPHANED_MESSAGE = "execution backend has no record of this run"
DELETED_MESSAGE = "execution backend object deleted before completion"

TIMEOUT_REASONS = frozenset({"PipelineRunTimeout", "TaskRunTimeout"})
CANCELLED_REASONS = frozenset(
    {
        "Cancelled",
        "PipelineRunCancelled",
        "TaskRunCancelled",
        "StoppedRunFinally",
        "CancelledRunFinally",
    }
)
PENDING_REASONS = frozenset({"PipelineRunPending"})


# ── Condition Mapping ────────────────────────────────────────────────────────


def map_condition(condition: Condition | None) -> RunStatus | None:
    """Translate a ``Succeeded`` condition into a run status.

    Returns None when the backend has not reported anything yet.
    """
    if condition is None:
        return None
    if condition.status == "True":
        return RunStatus.SUCCEEDED
    if condition.status == "False":
        if condition.reason in TIMEOUT_REASONS:
            return RunStatus.TIMEOUT
        if condition.reason in CANCELLED_REASONS:
            return RunStatus.CANCELLED
        return RunStatus.FAILED
    if condition.reason in PENDING_REASONS:
        return None
    return RunStatus.RUNNING


def map_task_condition(task: TaskSnapshot) -> TaskRunStatus | None:
    status = map_condition(task.condition)
    if status is None:
        return TaskRunStatus.RUNNING if task.started_at else None
    return TaskRunStatus(status.value)


def condition_message(condition: Condition | None) -> str | None:
    if condition is None:
        return None
    return condition.message or condition.reason or None


# ── Watcher ──────────────────────────────────────────────────────────────────


class ReconciliationWatcher:
    """Long-running subscription to the backend's change stream."""

    def __init__(
        self,
        backend: ExecutionBackend,
        lifecycle: RunLifecycleManager,
        *,
        workers: int = 8,
        queue_size: int = 256,
        backoff_initial: float = 1.0,
        backoff_max: float = 60.0,
        orphan_grace_seconds: int = 300,
    ):
        self.backend = backend
        self.lifecycle = lifecycle
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.orphan_grace = timedelta(seconds=orphan_grace_seconds)

        self._queues: list[asyncio.Queue[tuple[str, BackendEvent]]] = [
            asyncio.Queue(maxsize=queue_size) for _ in range(workers)
        ]
        self._workers: list[asyncio.Task] = []
        self._task: asyncio.Task | None = None
        self._running = False

        self.connected = False
        self.last_resync_at: datetime | None = None

    async def start(self) -> None:
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(q), name=f"watch-worker-{i}")
            for i, q in enumerate(self._queues)
        ]
        self._task = asyncio.create_task(self._loop(), name="reconciliation-watcher")
        logger.info("Reconciliation watcher started (%d workers)", len(self._queues))

    async def stop(self) -> None:
        self._running = False
        tasks = [t for t in [self._task, *self._workers] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._workers = []
        self.connected = False
        logger.info("Reconciliation watcher stopped")

    async def drain(self) -> None:
        """Wait until every dispatched event has been applied."""
        for queue in self._queues:
            await queue.join()

    async def _loop(self) -> None:
        backoff = self.backoff_initial
        while self._running:
            try:
                resource_version = await self.resync()
                self.connected = True
                backoff = self.backoff_initial
                received = 0
                async for event in self.backend.watch_events(resource_version):
                    received += 1
                    await self.dispatch(event)
                self.connected = False
                logger.info("Watch stream closed after %d events; relisting", received)
                if not received:
                    await asyncio.sleep(self.backoff_initial)
            except asyncio.CancelledError:
                break
            except WatchExpired:
                self.connected = False
                logger.info("Watch resource version expired; relisting")
            except Exception as exc:
                self.connected = False
                if isinstance(exc, BackendError):
                    logger.warning("Watch failed: %s; reconnecting in %.1fs", exc, backoff)
                else:
                    logger.exception("Watch loop error; reconnecting in %.1fs", backoff)
                try:
                    await asyncio.sleep(backoff)
                except asyncio.CancelledError:
                    break
                backoff = min(backoff * 2, self.backoff_max)

    # ── Resync ───────────────────────────────────────────────────────────

    async def resync(self) -> str | None:
        """Relist the backend, replay every object, and reap orphans.

        Returns the resource version to resume watching from.
        """
        listing = await self.backend.list_runs()
        metrics.watch_resyncs_total.inc()
        seen: set[str] = set()
        for snapshot in listing.snapshots:
            run_id = extract_run_id(snapshot)
            if run_id is None:
                continue
            seen.add(run_id)
            await self._enqueue(run_id, BackendEvent(type=EventType.MODIFIED, snapshot=snapshot))

        reaped = await self.reap_orphans(seen)
        self.last_resync_at = datetime.now(timezone.utc)
        logger.info(
            "Resync complete: %d backend runs, %d orphans failed", len(listing.snapshots), reaped
        )
        return listing.resource_version

    async def reap_orphans(self, seen: set[str]) -> int:
        """Fail running runs that are missing from the backend listing.

        Pending runs are left to the submission workers, which either get
        them onto the backend or fail them.
        """
        cutoff = datetime.now(timezone.utc) - self.orphan_grace
        reaped = 0
        for run in await self.lifecycle.active_runs():
            if run.status != RunStatus.RUNNING or run.id in seen:
                continue
            if run.started_at is None or run.started_at > cutoff:
                continue
            try:
                await self.lifecycle.update_status(run.id, RunStatus.FAILED, ORPHANED_MESSAGE)
            except PipewrightError as exc:
                logger.info("Could not reap run %s: %s", run.id, exc)
                continue
            metrics.orphaned_runs_total.inc()
            logger.warning("Run %s missing from backend; marked failed", run.id)
            reaped += 1
        return reaped

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def dispatch(self, event: BackendEvent) -> None:
        run_id = extract_run_id(event.snapshot)
        if run_id is None:
            metrics.watch_events_total.labels(outcome="dropped").inc()
            return
        await self._enqueue(run_id, event)

    async def _enqueue(self, run_id: str, event: BackendEvent) -> None:
        shard = zlib.crc32(run_id.encode()) % len(self._queues)
        await self._queues[shard].put((run_id, event))

    async def _worker(self, queue: asyncio.Queue[tuple[str, BackendEvent]]) -> None:
        while self._running:
            try:
                run_id, event = await queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self.apply(run_id, event)
                metrics.watch_events_total.labels(outcome="applied").inc()
            except asyncio.CancelledError:
                raise
            except PipewrightError as exc:
                metrics.watch_events_total.labels(outcome="rejected").inc()
                logger.info("Ignoring %s event for run %s: %s", event.type.value, run_id, exc)
            except Exception:
                metrics.watch_events_total.labels(outcome="error").inc()
                logger.exception("Error applying %s event for run %s", event.type.value, run_id)
            finally:
                queue.task_done()

    async def apply(self, run_id: str, event: BackendEvent) -> None:
        """Reconcile one event into the run and its task runs."""
        snapshot = event.snapshot
        run = await self.lifecycle.get_by_id(run_id)

        for task in snapshot.tasks:
            task_status = map_task_condition(task)
            if task_status is not None:
                await self.lifecycle.update_task_status(
                    run_id,
                    task.name,
                    task_status,
                    started_at=task.started_at,
                    finished_at=task.finished_at,
                    exit_code=task.exit_code,
                )

        status = map_condition(snapshot.condition)
        message = None
        if event.type == EventType.DELETED and (status is None or not status.is_terminal):
            status, message = RunStatus.FAILED, DELETED_MESSAGE
        elif status in (RunStatus.FAILED, RunStatus.TIMEOUT, RunStatus.CANCELLED):
            message = condition_message(snapshot.condition)

        if status is None or status == run.status:
            return
        if run.is_terminal:
            logger.debug(
                "Run %s already %s; ignoring backend status %s",
                run_id,
                run.status.value,
                status.value,
            )
            return
        await self.lifecycle.update_status(run_id, status, message)


def extract_run_id(snapshot: RunSnapshot) -> str | None:
    """The run id label, or None (logged) when absent or malformed."""
    value = snapshot.run_id
    if not value:
        logger.warning("Dropping event for %r: no run-id label", snapshot.name)
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        logger.warning("Dropping event for %r: malformed run-id label %r", snapshot.name, value)
        return None
