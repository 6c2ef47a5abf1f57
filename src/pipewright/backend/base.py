"""Execution backend capability interface and the value types it exchanges.

Backends report raw conditions (status/reason/message) exactly as the
runner exposes them.  Translating a condition into a :class:`RunStatus`
is the watcher's job, not the backend's.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from pipewright.models import PipelineDefinition, PipelineRun, TaskDefinition

RUN_ID_LABEL = "pipewright.io/run-id"
PIPELINE_ID_LABEL = "pipewright.io/pipeline-id"


# ── Submission ───────────────────────────────────────────────────────────────


@dataclass
class SubmissionRequest:
    """Everything a backend needs to start one run."""

    run: PipelineRun
    pipeline: PipelineDefinition
    tasks: list[TaskDefinition]  # dependency-ordered
    params: dict[str, str]
    timeout_seconds: int
    workspace: str
    service_account: str | None = None

    @classmethod
    def for_run(
        cls, run: PipelineRun, pipeline: PipelineDefinition, default_timeout: int
    ) -> SubmissionRequest:
        return cls(
            run=run,
            pipeline=pipeline,
            tasks=pipeline.ordered_tasks(),
            params=stringify_params(run.parameters),
            timeout_seconds=pipeline.timeout_seconds or default_timeout,
            workspace=pipeline.workspace,
            service_account=pipeline.service_account,
        )


def stringify_params(parameters: dict[str, Any]) -> dict[str, str]:
    """Backend params are string-typed; strings pass through untouched."""
    out: dict[str, str] = {}
    for key, value in parameters.items():
        if isinstance(value, str):
            out[key] = value
        elif isinstance(value, bool):
            out[key] = "true" if value else "false"
        else:
            out[key] = str(value)
    return out


# ── Observed State ───────────────────────────────────────────────────────────


@dataclass
class Condition:
    """The runner's ``Succeeded`` condition: status is True/False/Unknown."""

    status: str
    reason: str = ""
    message: str = ""


@dataclass
class TaskSnapshot:
    name: str
    condition: Condition | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None


@dataclass
class RunSnapshot:
    """Point-in-time view of one backend run object."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    condition: Condition | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    tasks: list[TaskSnapshot] = field(default_factory=list)

    @property
    def run_id(self) -> str | None:
        return self.labels.get(RUN_ID_LABEL)


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class BackendEvent:
    type: EventType
    snapshot: RunSnapshot


@dataclass
class RunListing:
    """Result of a full relist: current objects plus the version to watch from."""

    snapshots: list[RunSnapshot]
    resource_version: str | None = None


# ── Capability Interface ─────────────────────────────────────────────────────


@runtime_checkable
class ExecutionBackend(Protocol):
    """Boundary adapter to the external pipeline runner."""

    name: str

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def submit(self, request: SubmissionRequest) -> str:
        """Create the backend object for a run. Returns its backend name."""
        ...

    async def cancel(self, run_id: str) -> None:
        """Ask the backend to stop a run. Missing objects are not an error."""
        ...

    async def status(self, run_id: str) -> RunSnapshot:
        """Current snapshot of a run. Raises BackendNotFound if absent."""
        ...

    async def list_runs(self) -> RunListing: ...

    def watch_events(self, resource_version: str | None = None) -> AsyncIterator[BackendEvent]:
        """Change events after ``resource_version``.

        The iterator is not restartable and carries no gap-free guarantee;
        callers relist after it ends or raises.
        """
        ...

    async def health(self) -> None:
        """Raise BackendUnavailable if the backend can't be reached."""
        ...
