"""Error taxonomy for run orchestration.

Validation and state errors are raised synchronously from the lifecycle
manager.  Backend errors raised inside the submission workers are written
back onto the run row instead of propagating.
"""

from __future__ import annotations


class PipewrightError(Exception):
    """Base class for all orchestration errors."""


class PipelineNotFound(PipewrightError):
    def __init__(self, pipeline_id: str):
        super().__init__(f"pipeline not found: {pipeline_id}")
        self.pipeline_id = pipeline_id


class PipelineInactive(PipewrightError):
    def __init__(self, pipeline_id: str):
        super().__init__(f"pipeline is not active: {pipeline_id}")
        self.pipeline_id = pipeline_id


class RunNotFound(PipewrightError):
    def __init__(self, run_id: str):
        super().__init__(f"pipeline run not found: {run_id}")
        self.run_id = run_id


class AdmissionDenied(PipewrightError):
    """The pipeline already has ``limit`` pending or running runs."""

    def __init__(self, pipeline_id: str, active: int, limit: int):
        super().__init__(
            f"concurrency limit reached for pipeline {pipeline_id} ({active}/{limit} active)"
        )
        self.pipeline_id = pipeline_id
        self.active = active
        self.limit = limit


class InvalidStateTransition(PipewrightError):
    def __init__(self, run_id: str, current: str, requested: str):
        super().__init__(f"run {run_id}: cannot move from {current} to {requested}")
        self.run_id = run_id
        self.current = current
        self.requested = requested


# ── Backend errors ───────────────────────────────────────────────────────────


class BackendError(PipewrightError):
    """The execution backend rejected or failed a request."""


class BackendUnavailable(BackendError):
    """The execution backend cannot be reached (or is not configured)."""


class BackendNotFound(BackendError):
    """The backend has no object for the requested run."""


class BackendSubmissionFailed(BackendError):
    def __init__(self, run_id: str, reason: str):
        super().__init__(f"submission of run {run_id} failed: {reason}")
        self.run_id = run_id
        self.reason = reason


class WatchExpired(BackendError):
    """The watch resourceVersion is too old; the caller must relist."""
