"""Pipeline catalog: lookup of pipeline templates for run creation.

Template CRUD lives outside this service.  The lifecycle manager only needs
to know whether a pipeline exists, whether it is active, and what its task
graph looks like, so it depends on the small :class:`PipelineCatalog`
protocol.  :class:`ConfigPipelineCatalog` serves the ``pipelines:`` section
of the YAML config.
"""

from __future__ import annotations

import logging
from typing import Iterable, Protocol, runtime_checkable

from pipewright.models import PipelineDefinition

logger = logging.getLogger(__name__)


@runtime_checkable
class PipelineCatalog(Protocol):
    """Read-only source of pipeline definitions."""

    async def get_pipeline(self, pipeline_id: str) -> PipelineDefinition | None:
        """Return the definition, or None if no such pipeline exists."""
        ...


class ConfigPipelineCatalog:
    """In-memory catalog built from config-declared pipelines."""

    def __init__(self, pipelines: Iterable[PipelineDefinition] = ()):
        self._pipelines: dict[str, PipelineDefinition] = {}
        for definition in pipelines:
            self.add_pipeline(definition)

    def add_pipeline(self, definition: PipelineDefinition) -> None:
        self._pipelines[definition.id] = definition
        logger.debug(
            "Registered pipeline %s (%d tasks, active=%s)",
            definition.id,
            len(definition.tasks),
            definition.active,
        )

    async def get_pipeline(self, pipeline_id: str) -> PipelineDefinition | None:
        return self._pipelines.get(pipeline_id)

    def list_pipelines(self) -> list[PipelineDefinition]:
        return list(self._pipelines.values())
