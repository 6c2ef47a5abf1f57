"""Pydantic models: pipeline definitions and run state.

Key exports:
    Definition models: PipelineDefinition, TaskDefinition
    Runtime state models: PipelineRun, TaskRun
    Query models: RunFilter, RunStatistics
    Enums: RunStatus, TaskRunStatus, TriggerType
"""

from __future__ import annotations

import heapq
import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class RunStatus(str, Enum):
    """Pipeline run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class TaskRunStatus(str, Enum):
    """Task run states. Same as RunStatus plus ``skipped``."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (TaskRunStatus.PENDING, TaskRunStatus.RUNNING)


class TriggerType(str, Enum):
    """What caused a run to be created."""

    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    API = "api"


TERMINAL_STATUSES = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.TIMEOUT}
)
ACTIVE_STATUSES = frozenset({RunStatus.PENDING, RunStatus.RUNNING})
RETRYABLE_STATUSES = frozenset({RunStatus.FAILED, RunStatus.CANCELLED})


# ── Definition Models ────────────────────────────────────────────────────────


class TaskDefinition(BaseModel):
    """One task of a pipeline, run as a single container step on the backend."""

    name: str
    id: str = ""  # template reference; defaults to name
    image: str
    command: list[str] = []
    args: list[str] = []
    working_dir: str | None = None
    env: dict[str, str] = {}
    depends_on: list[str] = []
    order: int = 0
    timeout: int | str = 1800

    @model_validator(mode="after")
    def _normalize(self) -> TaskDefinition:
        if not self.id:
            self.id = self.name
        _parse_timeout(self.timeout)
        return self

    @property
    def timeout_seconds(self) -> int:
        return _parse_timeout(self.timeout)


class PipelineDefinition(BaseModel):
    """A pipeline template as served by the catalog."""

    id: str
    name: str = ""
    active: bool = True
    max_concurrent_runs: int | None = None  # None = service default
    timeout: int | str = 3600
    workspace: str = "/workspace"
    service_account: str | None = None
    tasks: list[TaskDefinition] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_tasks(self) -> PipelineDefinition:
        _parse_timeout(self.timeout)
        names = [t.name for t in self.tasks]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            msg = f"Pipeline '{self.id}': duplicate task names {dupes}"
            raise ValueError(msg)
        known = set(names)
        for task in self.tasks:
            missing = [d for d in task.depends_on if d not in known]
            if missing:
                msg = f"Pipeline '{self.id}': task '{task.name}' depends on unknown tasks {missing}"
                raise ValueError(msg)
        # Raises on cycles
        self.ordered_tasks()
        return self

    @property
    def timeout_seconds(self) -> int:
        return _parse_timeout(self.timeout)

    def ordered_tasks(self) -> list[TaskDefinition]:
        """Tasks in dependency order, ties broken by (order, name)."""
        by_name = {t.name: t for t in self.tasks}
        indegree = {t.name: len(set(t.depends_on)) for t in self.tasks}
        dependents: dict[str, list[str]] = {t.name: [] for t in self.tasks}
        for task in self.tasks:
            for dep in set(task.depends_on):
                dependents[dep].append(task.name)

        ready = [(t.order, t.name) for t in self.tasks if indegree[t.name] == 0]
        heapq.heapify(ready)
        ordered: list[TaskDefinition] = []
        while ready:
            _, name = heapq.heappop(ready)
            ordered.append(by_name[name])
            for child in dependents[name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, (by_name[child].order, child))

        if len(ordered) != len(self.tasks):
            cyclic = sorted(n for n, d in indegree.items() if d > 0)
            msg = f"Pipeline '{self.id}': dependency cycle among tasks {cyclic}"
            raise ValueError(msg)
        return ordered


# ── Runtime State Models ─────────────────────────────────────────────────────


class PipelineRun(BaseModel):
    """One execution of a pipeline."""

    id: str
    pipeline_id: str
    run_number: int
    status: RunStatus = RunStatus.PENDING

    # Trigger context (trigger_data is carried verbatim into retries)
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_by: str | None = None
    trigger_data: dict[str, Any] = {}
    parameters: dict[str, Any] = {}
    retried_from: str | None = None

    # Timestamps
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration: int | None = None  # seconds, set once with finished_at

    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class TaskRun(BaseModel):
    """Execution state of a single task within a pipeline run."""

    id: str
    pipeline_run_id: str
    task_id: str
    name: str
    status: TaskRunStatus = TaskRunStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    retry_count: int = 0
    created_at: datetime | None = None


# ── Query Models ─────────────────────────────────────────────────────────────


SORTABLE_FIELDS = frozenset(
    {"created_at", "run_number", "started_at", "finished_at", "duration", "status"}
)
MAX_PAGE_SIZE = 100


class RunFilter(BaseModel):
    """Filter, sort, and pagination options for ``list_runs``."""

    pipeline_id: str | None = None
    status: RunStatus | None = None
    trigger_type: TriggerType | None = None
    trigger_by: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=MAX_PAGE_SIZE)
    sort_by: str = "created_at"
    sort_desc: bool = True

    @field_validator("sort_by")
    @classmethod
    def _validate_sort_by(cls, v: str) -> str:
        if v not in SORTABLE_FIELDS:
            msg = f"Cannot sort by '{v}'; expected one of {sorted(SORTABLE_FIELDS)}"
            raise ValueError(msg)
        return v


class GroupStatistics(BaseModel):
    """One bucket of a grouped statistics query."""

    total: int = 0
    status_counts: dict[str, int] = {}
    success_rate: float = 0.0
    average_duration: float | None = None  # succeeded runs only


class RunStatistics(BaseModel):
    """Aggregate counts and durations over a set of runs."""

    total_runs: int = 0
    status_counts: dict[str, int] = {}
    success_rate: float = 0.0  # percent of all runs
    average_duration: float | None = None  # succeeded runs only
    median_duration: float | None = None
    group_by: str | None = None
    groups: dict[str, GroupStatistics] = {}


def _parse_timeout(value: int | str) -> int:
    """Accept plain seconds or a duration string like '30s', '5m', '2h', '1d'."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+)\s*(s|m|h|d)?$", value.strip())
    if not match:
        msg = f"Invalid duration format: '{value}'. Expected <number>[s|m|h|d]"
        raise ValueError(msg)
    multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400, None: 1}
    return int(match.group(1)) * multipliers[match.group(2)]
