"""Run Lifecycle Manager: creation, submission, and every status transition.

State machine::

    pending ──► running ──► succeeded | failed | cancelled | timeout
       └───────────────────►┘

Terminal statuses are final.  ``update_status`` is the only way a run
changes status; the watcher, the submission workers, and ``cancel`` all go
through it, and applying the status a run already has is a no-op.

``create`` never talks to the backend.  It persists a pending run and
queues it; a small pool of workers submits queued runs and feeds any
failure back onto the row.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pipewright import metrics
from pipewright.backend.base import SubmissionRequest
from pipewright.errors import (
    BackendError,
    InvalidStateTransition,
    PipelineInactive,
    PipelineNotFound,
    RunNotFound,
)
from pipewright.models import (
    ACTIVE_STATUSES,
    RETRYABLE_STATUSES,
    PipelineRun,
    RunFilter,
    RunStatistics,
    RunStatus,
    TaskRun,
    TaskRunStatus,
    TriggerType,
)
from pipewright.watcher import map_task_condition

if TYPE_CHECKING:
    from pipewright.admission import AdmissionController
    from pipewright.backend.base import ExecutionBackend
    from pipewright.catalog import PipelineCatalog
    from pipewright.registry import RunRepository

logger = logging.getLogger(__name__)

QUEUE_FULL_MESSAGE = "submission queue full; run was not submitted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_allowed_transition(current: RunStatus, target: RunStatus) -> bool:
    if current == RunStatus.PENDING:
        return target != RunStatus.PENDING
    if current == RunStatus.RUNNING:
        return target.is_terminal
    return False


class RunLifecycleManager:
    """Owns run state transitions and the submission worker pool."""

    def __init__(
        self,
        repository: RunRepository,
        admission: AdmissionController,
        backend: ExecutionBackend,
        catalog: PipelineCatalog,
        *,
        default_timeout: int = 3600,
        submission_workers: int = 4,
        queue_size: int = 1000,
    ):
        self.repository = repository
        self.admission = admission
        self.backend = backend
        self.catalog = catalog
        self.default_timeout = default_timeout
        self.submission_workers = submission_workers

        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task] = []
        self._submit_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._running = False

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Restore permits for active runs, requeue pending ones, start workers."""
        active = await self.repository.get_active_runs()
        self.admission.restore(active)
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(), name=f"submission-worker-{i}")
            for i in range(self.submission_workers)
        ]
        pending = [r for r in active if r.status == RunStatus.PENDING]
        for run in pending:
            await self._enqueue(run.id)
        logger.info(
            "Lifecycle manager started (%d workers, %d active runs, %d requeued)",
            self.submission_workers,
            len(active),
            len(pending),
        )

    async def stop(self) -> None:
        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Lifecycle manager stopped")

    async def drain(self) -> None:
        """Wait until every queued submission has been processed."""
        await self._queue.join()

    # ── Create / Retry ───────────────────────────────────────────────────

    async def create(
        self,
        pipeline_id: str,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        trigger_by: str | None = None,
        trigger_data: dict[str, Any] | None = None,
        parameters: dict[str, Any] | None = None,
        *,
        retried_from: str | None = None,
    ) -> PipelineRun:
        """Admit and persist a pending run, then queue it for submission.

        Raises:
            PipelineNotFound / PipelineInactive: nothing is persisted.
            AdmissionDenied: the pipeline is at its concurrency limit.
        """
        pipeline = await self.catalog.get_pipeline(pipeline_id)
        if pipeline is None:
            raise PipelineNotFound(pipeline_id)
        if not pipeline.active:
            raise PipelineInactive(pipeline_id)

        run_id = str(uuid.uuid4())
        try:
            async with self.repository.transaction():
                await self.admission.try_admit(
                    pipeline.id, run_id, pipeline.max_concurrent_runs
                )
                run = PipelineRun(
                    id=run_id,
                    pipeline_id=pipeline.id,
                    run_number=await self.repository.next_run_number(pipeline.id),
                    trigger_type=TriggerType(trigger_type),
                    trigger_by=trigger_by,
                    trigger_data=trigger_data or {},
                    parameters=parameters or {},
                    retried_from=retried_from,
                )
                await self.repository.insert_run(run)
        except BaseException:
            self.admission.release(run_id)
            raise

        logger.info(
            "Created run %s (pipeline=%s #%d, trigger=%s)",
            run.id,
            run.pipeline_id,
            run.run_number,
            run.trigger_type.value,
        )
        await self._enqueue(run.id)
        return run

    async def retry(self, run_id: str) -> PipelineRun:
        """Create a fresh manual run with the original's trigger data and parameters."""
        original = await self.get_by_id(run_id)
        if original.status not in RETRYABLE_STATUSES:
            raise InvalidStateTransition(run_id, original.status.value, "retry")
        run = await self.create(
            original.pipeline_id,
            TriggerType.MANUAL,
            original.trigger_by,
            original.trigger_data,
            original.parameters,
            retried_from=original.id,
        )
        logger.info("Retried run %s as %s (#%d)", original.id, run.id, run.run_number)
        return run

    # ── Transitions ──────────────────────────────────────────────────────

    async def update_status(
        self, run_id: str, status: RunStatus | str, message: str | None = None
    ) -> PipelineRun:
        """Move a run to ``status``.

        Re-applying the current status returns the run unchanged.  Any
        move away from a terminal status, or back to pending, raises
        InvalidStateTransition.
        """
        run, _ = await self._transition(run_id, RunStatus(status), message)
        return run

    async def cancel(self, run_id: str, reason: str | None = None) -> PipelineRun:
        """Cancel a pending or running run and tell the backend to stop it.

        Only the call that actually performs the transition contacts the
        backend, so duplicate cancels reach it once.
        """
        run = await self.get_by_id(run_id)
        if run.status not in ACTIVE_STATUSES:
            raise InvalidStateTransition(run_id, run.status.value, RunStatus.CANCELLED.value)

        run, changed = await self._transition(
            run_id, RunStatus.CANCELLED, reason or "cancelled by user"
        )
        if changed:
            await self._cancel_on_backend(run_id)
        return run

    async def _transition(
        self, run_id: str, target: RunStatus, message: str | None
    ) -> tuple[PipelineRun, bool]:
        async with self.repository.transaction():
            run = await self.repository.get_run(run_id)
            if run is None:
                raise RunNotFound(run_id)
            if run.status == target:
                return run, False
            if not is_allowed_transition(run.status, target):
                raise InvalidStateTransition(run_id, run.status.value, target.value)

            previous = run.status
            now = _utcnow()
            run.status = target
            if target == RunStatus.RUNNING:
                run.started_at = run.started_at or now
            if target.is_terminal:
                run.finished_at = now
                run.duration = (
                    max(0, int((now - run.started_at).total_seconds())) if run.started_at else 0
                )
                if message:
                    run.error_message = message

            if not await self.repository.compare_and_set_status(run, expected=previous):
                raise RuntimeError(f"run {run_id} changed inside its own transaction")
            if target.is_terminal:
                await self.repository.close_out_task_runs(run.id, target, now)

        metrics.status_transitions_total.labels(status=target.value).inc()
        if target.is_terminal:
            self.admission.release(run.id)
            metrics.run_duration_seconds.labels(status=target.value).observe(run.duration or 0)
        logger.info("Run %s: %s -> %s", run_id, previous.value, target.value)
        return run, True

    async def update_task_status(
        self,
        run_id: str,
        name: str,
        status: TaskRunStatus,
        *,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
        exit_code: int | None = None,
    ) -> bool:
        """Advance one task run. Terminal task runs are left alone."""
        if status.is_terminal and finished_at is None:
            finished_at = _utcnow()
        return await self.repository.update_task_run(
            run_id,
            name,
            status,
            started_at=started_at,
            finished_at=finished_at,
            exit_code=exit_code,
        )

    # ── Submission ───────────────────────────────────────────────────────

    async def _enqueue(self, run_id: str) -> None:
        try:
            self._queue.put_nowait(run_id)
        except asyncio.QueueFull:
            logger.error("Submission queue full; failing run %s", run_id)
            metrics.submission_failures_total.inc()
            await self.update_status(run_id, RunStatus.FAILED, QUEUE_FULL_MESSAGE)

    async def _worker(self) -> None:
        while self._running:
            try:
                run_id = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self.submit(run_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Submission of run %s crashed", run_id)
            finally:
                self._queue.task_done()

    def _submit_lock(self, run_id: str) -> asyncio.Lock:
        lock = self._submit_locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._submit_locks[run_id] = lock
        return lock

    async def submit(self, run_id: str) -> None:
        """Hand a pending run to the backend.

        Failures never propagate: the run is moved to ``failed`` with the
        error recorded on the row, which also releases its permit.
        """
        async with self._submit_lock(run_id):
            run = await self.repository.get_run(run_id)
            if run is None or run.status != RunStatus.PENDING:
                logger.debug("Skipping submission of run %s (no longer pending)", run_id)
                return

            pipeline = await self.catalog.get_pipeline(run.pipeline_id)
            if pipeline is None:
                await self._fail_submission(run_id, "pipeline definition no longer exists")
                return

            request = SubmissionRequest.for_run(run, pipeline, self.default_timeout)
            try:
                await self.backend.submit(request)
            except BackendError as exc:
                await self._fail_submission(run_id, str(exc))
                return

            await self.repository.insert_task_runs(
                TaskRun(
                    id=str(uuid.uuid4()),
                    pipeline_run_id=run.id,
                    task_id=task.id,
                    name=task.name,
                )
                for task in request.tasks
            )
            try:
                await self.update_status(run_id, RunStatus.RUNNING)
            except InvalidStateTransition as exc:
                await self._settle_raced_submission(run_id, RunStatus(exc.current))

    async def _settle_raced_submission(self, run_id: str, status: RunStatus) -> None:
        """Tidy up a run that went terminal while its submission was in flight.

        Only a cancelled run is stopped on the backend.  Any other terminal
        status came from the backend itself, so its task results are copied
        over before the leftovers are closed out.
        """
        if status == RunStatus.CANCELLED:
            logger.info("Run %s was cancelled during submission; stopping it", run_id)
            await self._cancel_on_backend(run_id)
        else:
            logger.info("Run %s finished as %s during submission", run_id, status.value)
            await self._sync_task_runs(run_id)
        await self.repository.close_out_task_runs(run_id, status, _utcnow())

    async def _sync_task_runs(self, run_id: str) -> None:
        try:
            snapshot = await self.backend.status(run_id)
        except BackendError as exc:
            logger.warning("Could not fetch task results for run %s: %s", run_id, exc)
            return
        for task in snapshot.tasks:
            task_status = map_task_condition(task)
            if task_status is not None:
                await self.update_task_status(
                    run_id,
                    task.name,
                    task_status,
                    started_at=task.started_at,
                    finished_at=task.finished_at,
                    exit_code=task.exit_code,
                )

    async def _fail_submission(self, run_id: str, reason: str) -> None:
        metrics.submission_failures_total.inc()
        logger.warning("Submission of run %s failed: %s", run_id, reason)
        try:
            await self.update_status(run_id, RunStatus.FAILED, reason)
        except InvalidStateTransition:
            logger.info("Run %s already terminal; submission failure not recorded", run_id)

    async def _cancel_on_backend(self, run_id: str) -> None:
        try:
            await self.backend.cancel(run_id)
        except BackendError as exc:
            logger.warning("Backend cancel for run %s failed: %s", run_id, exc)

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_by_id(self, run_id: str) -> PipelineRun:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def get_by_pipeline(self, pipeline_id: str, limit: int = 20) -> list[PipelineRun]:
        return await self.repository.get_runs_by_pipeline(pipeline_id, limit)

    async def list_runs(self, run_filter: RunFilter) -> tuple[list[PipelineRun], int]:
        return await self.repository.list_runs(run_filter)

    async def get_statistics(self, **kwargs: Any) -> RunStatistics:
        return await self.repository.get_statistics(**kwargs)

    async def get_task_runs(self, run_id: str) -> list[TaskRun]:
        await self.get_by_id(run_id)
        return await self.repository.get_task_runs(run_id)

    async def active_runs(self) -> list[PipelineRun]:
        return await self.repository.get_active_runs()
