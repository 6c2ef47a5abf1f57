"""Shared fixtures: temp-file run repository, in-memory fake backend, catalog."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import pytest
import pytest_asyncio

from pipewright.admission import AdmissionController
from pipewright.backend.base import (
    BackendEvent,
    RunListing,
    RunSnapshot,
    SubmissionRequest,
)
from pipewright.backend.tekton import pipeline_run_name
from pipewright.catalog import ConfigPipelineCatalog
from pipewright.errors import BackendNotFound
from pipewright.lifecycle import RunLifecycleManager
from pipewright.models import PipelineDefinition, TaskDefinition
from pipewright.registry import RunRepository


class FakeBackend:
    """Scriptable stand-in for the Tekton backend.

    ``list_results`` and ``streams`` are consumed one entry per call; an
    Exception entry is raised instead of returned.  Once ``streams`` is
    exhausted, ``watch_events`` blocks until cancelled.
    """

    name = "fake"

    def __init__(self):
        self.submitted: list[SubmissionRequest] = []
        self.cancelled: list[str] = []
        self.submit_error: Exception | None = None
        self.submit_gate: asyncio.Event | None = None
        self.snapshots: list[RunSnapshot] = []
        self.list_results: list[RunListing | Exception] = []
        self.streams: list[list[BackendEvent] | Exception] = []
        self.list_calls = 0
        self.health_error: Exception | None = None

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def submit(self, request: SubmissionRequest) -> str:
        if self.submit_gate is not None:
            await self.submit_gate.wait()
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(request)
        return pipeline_run_name(request.run.id, request.run.run_number)

    async def cancel(self, run_id: str) -> None:
        self.cancelled.append(run_id)

    async def status(self, run_id: str) -> RunSnapshot:
        for snap in self.snapshots:
            if snap.run_id == run_id:
                return snap
        raise BackendNotFound(run_id)

    async def list_runs(self) -> RunListing:
        self.list_calls += 1
        if self.list_results:
            result = self.list_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return RunListing(snapshots=list(self.snapshots), resource_version="100")

    async def watch_events(self, resource_version: str | None = None) -> AsyncIterator[BackendEvent]:
        if not self.streams:
            await asyncio.Event().wait()
        stream = self.streams.pop(0)
        if isinstance(stream, Exception):
            raise stream
        for event in stream:
            yield event

    async def health(self) -> None:
        if self.health_error is not None:
            raise self.health_error


def make_pipeline(pipeline_id: str = "build", **overrides) -> PipelineDefinition:
    defaults: dict = dict(
        id=pipeline_id,
        name=pipeline_id.title(),
        tasks=[
            TaskDefinition(name="compile", image="golang:1.22", command=["go", "build"]),
            TaskDefinition(
                name="test", image="golang:1.22", command=["go", "test"], depends_on=["compile"]
            ),
        ],
    )
    defaults.update(overrides)
    return PipelineDefinition(**defaults)


@pytest_asyncio.fixture
async def repository(tmp_path):
    repo = RunRepository(str(tmp_path / "runs.db"))
    await repo.initialize()
    yield repo
    await repo.close()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def catalog() -> ConfigPipelineCatalog:
    return ConfigPipelineCatalog(
        [
            make_pipeline("build"),
            make_pipeline("single", max_concurrent_runs=1),
            make_pipeline("unlimited", max_concurrent_runs=0),
            make_pipeline("retired", active=False),
        ]
    )


@pytest.fixture
def admission(repository) -> AdmissionController:
    return AdmissionController(repository, default_limit=10)


@pytest_asyncio.fixture
async def manager(repository, admission, backend, catalog):
    mgr = RunLifecycleManager(
        repository, admission, backend, catalog, submission_workers=2, queue_size=50
    )
    await mgr.start()
    yield mgr
    await mgr.stop()
