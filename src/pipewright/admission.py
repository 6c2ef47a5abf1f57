"""Admission Controller: per-pipeline concurrency gate.

The gate counts pending and running rows in the run repository.  Callers
must invoke :meth:`AdmissionController.try_admit` inside
``RunRepository.transaction()`` and insert the admitted row in that same
transaction; the repository's write lock is what makes count-then-insert
atomic.

Each admitted run holds a :class:`Permit` until it reaches a terminal
status.  Releasing is idempotent, so every terminal path can release
unconditionally.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

from pipewright import metrics
from pipewright.errors import AdmissionDenied

if TYPE_CHECKING:
    from pipewright.models import PipelineRun
    from pipewright.registry import RunRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Permit:
    """Capacity reserved for one run."""

    run_id: str
    pipeline_id: str
    granted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AdmissionController:
    def __init__(self, repository: RunRepository, default_limit: int = 10):
        self.repository = repository
        self.default_limit = default_limit
        self._permits: dict[str, Permit] = {}

    def limit_for(self, override: int | None) -> int:
        return self.default_limit if override is None else override

    async def try_admit(self, pipeline_id: str, run_id: str, limit: int | None = None) -> Permit:
        """Reserve a slot for ``run_id`` or raise :class:`AdmissionDenied`.

        A limit of zero or less means unlimited.
        """
        limit = self.limit_for(limit)
        if limit > 0:
            active = await self.repository.count_active(pipeline_id)
            if active >= limit:
                metrics.runs_denied_total.inc()
                logger.info(
                    "Admission denied for pipeline %s (%d/%d active)", pipeline_id, active, limit
                )
                raise AdmissionDenied(pipeline_id, active, limit)

        permit = Permit(run_id=run_id, pipeline_id=pipeline_id)
        self._permits[run_id] = permit
        metrics.runs_admitted_total.inc()
        metrics.active_runs.set(len(self._permits))
        return permit

    def release(self, run_id: str) -> bool:
        """Return a run's permit. Returns False if it held none."""
        permit = self._permits.pop(run_id, None)
        if permit is None:
            return False
        metrics.active_runs.set(len(self._permits))
        logger.debug("Released admission permit for run %s", run_id)
        return True

    def restore(self, runs: Iterable[PipelineRun]) -> int:
        """Re-issue permits for active runs found at startup."""
        for run in runs:
            self._permits.setdefault(run.id, Permit(run_id=run.id, pipeline_id=run.pipeline_id))
        metrics.active_runs.set(len(self._permits))
        return len(self._permits)

    def holds(self, run_id: str) -> bool:
        return run_id in self._permits

    @property
    def held_count(self) -> int:
        return len(self._permits)
