"""Configuration loading for Pipewright.

Reads a single YAML file into a validated ``PipewrightConfig``.  Deployment
environments can override the most common settings with ``PIPEWRIGHT_*``
environment variables.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from pipewright.models import PipelineDefinition

logger = logging.getLogger(__name__)

IN_CLUSTER_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"
IN_CLUSTER_CA_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"


# ── Config Sections ──────────────────────────────────────────────────────────


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class DatabaseConfig(BaseModel):
    path: str = "pipewright.db"


class AdmissionConfig(BaseModel):
    """Service-wide concurrency default; pipelines may override it."""

    max_concurrent_runs: int = 10  # <= 0 means unlimited


class SubmissionConfig(BaseModel):
    """Bounded worker pool that hands pending runs to the backend."""

    workers: int = Field(default=4, ge=1)
    queue_size: int = Field(default=1000, ge=1)


class BackendConfig(BaseModel):
    """Execution backend selection and Tekton connection settings."""

    type: Literal["tekton", "noop"] = "tekton"
    api_url: str = "https://kubernetes.default.svc"
    namespace: str = "cicd"
    service_account: str = "cicd-service"
    default_timeout: int = 3600  # seconds, when a pipeline sets none
    token_env: str = "PIPEWRIGHT_K8S_TOKEN"
    token_path: str = IN_CLUSTER_TOKEN_PATH
    ca_path: str | None = None
    verify_tls: bool = True
    request_timeout: float = 30.0
    workspace_size: str = "1Gi"


class WatcherConfig(BaseModel):
    workers: int = Field(default=8, ge=1)
    queue_size: int = Field(default=256, ge=1)
    backoff_initial: float = 1.0
    backoff_max: float = 60.0
    orphan_grace_seconds: int = 300


class RetentionConfig(BaseModel):
    interval_seconds: int = 6 * 3600
    pipeline_run_ttl_hours: int = 168
    task_run_ttl_hours: int = 24


class PipewrightConfig(BaseModel):
    """Top-level configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    submission: SubmissionConfig = Field(default_factory=SubmissionConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    pipelines: list[PipelineDefinition] = []

    @field_validator("pipelines")
    @classmethod
    def _unique_pipeline_ids(cls, v: list[PipelineDefinition]) -> list[PipelineDefinition]:
        ids = [p.id for p in v]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            msg = f"Duplicate pipeline IDs: {dupes}"
            raise ValueError(msg)
        return v


# ── Loading ──────────────────────────────────────────────────────────────────


def load_config(config_path: Path | None = None) -> PipewrightConfig:
    """Load configuration from a YAML file, then apply environment overrides.

    Args:
        config_path: Path to ``pipewright.yaml``.  ``None`` uses defaults only.

    Returns:
        Validated PipewrightConfig.

    Raises:
        FileNotFoundError: If the given path doesn't exist.
        ValueError: If config validation fails.
    """
    raw: dict = {}
    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Pipewright config not found: {config_path}")
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    config = PipewrightConfig(**raw)
    _apply_env_overrides(config)

    logger.info(
        "Loaded Pipewright config: backend=%s namespace=%s pipelines=%d",
        config.backend.type,
        config.backend.namespace,
        len(config.pipelines),
    )
    return config


def _apply_env_overrides(config: PipewrightConfig) -> None:
    db_path = os.environ.get("PIPEWRIGHT_DB_PATH")
    if db_path:
        config.database.path = db_path

    host = os.environ.get("PIPEWRIGHT_HOST")
    if host:
        config.server.host = host

    port = os.environ.get("PIPEWRIGHT_PORT")
    if port:
        config.server.port = int(port)

    backend_type = os.environ.get("PIPEWRIGHT_BACKEND_TYPE")
    if backend_type:
        if backend_type not in ("tekton", "noop"):
            raise ValueError(f"PIPEWRIGHT_BACKEND_TYPE must be 'tekton' or 'noop', got {backend_type!r}")
        config.backend.type = backend_type  # type: ignore[assignment]

    backend_url = os.environ.get("PIPEWRIGHT_BACKEND_URL")
    if backend_url:
        config.backend.api_url = backend_url

    namespace = os.environ.get("PIPEWRIGHT_NAMESPACE")
    if namespace:
        config.backend.namespace = namespace

    max_runs = os.environ.get("PIPEWRIGHT_MAX_CONCURRENT_RUNS")
    if max_runs:
        config.admission.max_concurrent_runs = int(max_runs)
