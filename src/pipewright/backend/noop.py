"""No-op backend for environments without a pipeline runner.

Every operation raises :class:`BackendUnavailable`.  Runs can still be
created; the submission worker then fails them with that error.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

from pipewright.backend.base import BackendEvent, RunListing, RunSnapshot, SubmissionRequest
from pipewright.errors import BackendUnavailable

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "execution backend unavailable"


class NoopBackend:
    name = "noop"

    async def start(self) -> None:
        logger.warning("No execution backend configured; runs will fail at submission")

    async def close(self) -> None:
        pass

    async def submit(self, request: SubmissionRequest) -> str:
        raise BackendUnavailable(UNAVAILABLE_MESSAGE)

    async def cancel(self, run_id: str) -> None:
        raise BackendUnavailable(UNAVAILABLE_MESSAGE)

    async def status(self, run_id: str) -> RunSnapshot:
        raise BackendUnavailable(UNAVAILABLE_MESSAGE)

    async def list_runs(self) -> RunListing:
        raise BackendUnavailable(UNAVAILABLE_MESSAGE)

    async def watch_events(self, resource_version: str | None = None) -> AsyncIterator[BackendEvent]:
        raise BackendUnavailable(UNAVAILABLE_MESSAGE)
        yield  # pragma: no cover (async generator marker)

    async def health(self) -> None:
        raise BackendUnavailable(UNAVAILABLE_MESSAGE)
