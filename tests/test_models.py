"""Tests for Pipewright core data models."""

import pytest
from pydantic import ValidationError

from pipewright.catalog import ConfigPipelineCatalog, PipelineCatalog
from pipewright.models import (
    PipelineDefinition,
    PipelineRun,
    RunFilter,
    RunStatus,
    TaskDefinition,
    TaskRunStatus,
)


def _task(name: str, *deps: str, order: int = 0) -> TaskDefinition:
    return TaskDefinition(name=name, image="alpine", depends_on=list(deps), order=order)


class TestStatuses:
    @pytest.mark.parametrize("status", ["succeeded", "failed", "cancelled", "timeout"])
    def test_terminal(self, status):
        assert RunStatus(status).is_terminal

    @pytest.mark.parametrize("status", ["pending", "running"])
    def test_active(self, status):
        assert not RunStatus(status).is_terminal

    def test_skipped_task_is_terminal(self):
        assert TaskRunStatus.SKIPPED.is_terminal

    def test_run_is_terminal(self):
        run = PipelineRun(id="r", pipeline_id="p", run_number=1, status=RunStatus.TIMEOUT)
        assert run.is_terminal


class TestTaskDefinition:
    def test_id_defaults_to_name(self):
        assert _task("compile").id == "compile"

    @pytest.mark.parametrize(
        ("value", "seconds"),
        [(90, 90), ("90", 90), ("30s", 30), ("5m", 300), ("2h", 7200), ("1d", 86400)],
    )
    def test_timeout_formats(self, value, seconds):
        task = TaskDefinition(name="t", image="alpine", timeout=value)
        assert task.timeout_seconds == seconds

    def test_bad_timeout_rejected(self):
        with pytest.raises(ValidationError, match="Invalid duration"):
            TaskDefinition(name="t", image="alpine", timeout="soon")


class TestPipelineDefinition:
    def test_dependency_order(self):
        pipeline = PipelineDefinition(
            id="p",
            tasks=[_task("deploy", "test"), _task("test", "build"), _task("build")],
        )
        assert [t.name for t in pipeline.ordered_tasks()] == ["build", "test", "deploy"]

    def test_ties_broken_by_order_then_name(self):
        pipeline = PipelineDefinition(
            id="p",
            tasks=[
                _task("zeta"),
                _task("alpha", order=5),
                _task("beta"),
                _task("final", "zeta", "alpha", "beta"),
            ],
        )
        assert [t.name for t in pipeline.ordered_tasks()] == ["beta", "zeta", "alpha", "final"]

    def test_cycle_rejected(self):
        with pytest.raises(ValidationError, match="dependency cycle"):
            PipelineDefinition(id="p", tasks=[_task("a", "b"), _task("b", "a"), _task("c")])

    def test_unknown_dependency_rejected(self):
        with pytest.raises(ValidationError, match="unknown tasks"):
            PipelineDefinition(id="p", tasks=[_task("a", "ghost")])

    def test_duplicate_task_names_rejected(self):
        with pytest.raises(ValidationError, match="duplicate task names"):
            PipelineDefinition(id="p", tasks=[_task("a"), _task("a")])

    def test_needs_at_least_one_task(self):
        with pytest.raises(ValidationError):
            PipelineDefinition(id="p", tasks=[])


class TestRunFilter:
    def test_defaults(self):
        f = RunFilter()
        assert (f.page, f.limit, f.sort_by, f.sort_desc) == (1, 20, "created_at", True)

    def test_limit_capped(self):
        with pytest.raises(ValidationError):
            RunFilter(limit=101)

    def test_page_starts_at_one(self):
        with pytest.raises(ValidationError):
            RunFilter(page=0)

    def test_unknown_sort_field(self):
        with pytest.raises(ValidationError, match="Cannot sort by"):
            RunFilter(sort_by="error_message; DROP TABLE pipeline_runs")


class TestConfigCatalog:
    async def test_lookup(self):
        build = PipelineDefinition(id="build", tasks=[_task("compile")])
        catalog = ConfigPipelineCatalog([build])

        assert isinstance(catalog, PipelineCatalog)
        assert await catalog.get_pipeline("build") is build
        assert await catalog.get_pipeline("missing") is None
        assert catalog.list_pipelines() == [build]
