"""Execution backends.

Key exports:
    ExecutionBackend: capability protocol
    create_backend: build the backend selected by ``backend.type``
"""

from __future__ import annotations

from pipewright.backend.base import (
    PIPELINE_ID_LABEL,
    RUN_ID_LABEL,
    BackendEvent,
    Condition,
    EventType,
    ExecutionBackend,
    RunListing,
    RunSnapshot,
    SubmissionRequest,
    TaskSnapshot,
)
from pipewright.backend.noop import NoopBackend
from pipewright.backend.tekton import TektonBackend
from pipewright.config import BackendConfig

__all__ = [
    "PIPELINE_ID_LABEL",
    "RUN_ID_LABEL",
    "BackendEvent",
    "Condition",
    "EventType",
    "ExecutionBackend",
    "NoopBackend",
    "RunListing",
    "RunSnapshot",
    "SubmissionRequest",
    "TaskSnapshot",
    "TektonBackend",
    "create_backend",
]


def create_backend(config: BackendConfig) -> ExecutionBackend:
    if config.type == "noop":
        return NoopBackend()
    if config.type == "tekton":
        return TektonBackend(config)
    raise ValueError(f"Unknown backend type: {config.type!r}")
