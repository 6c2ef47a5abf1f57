"""Pipewright Server: FastAPI application that ties all components together.

Startup sequence:
1. Load config
2. Open the run repository (SQLite)
3. Start the execution backend client
4. Start the lifecycle manager (restores permits, requeues pending runs)
5. Start the reconciliation watcher
6. Start the retention sweeper

Shutdown runs the same steps in reverse.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from pipewright import __version__
from pipewright.admission import AdmissionController
from pipewright.api import configure as configure_api
from pipewright.api import router as api_router
from pipewright.backend import ExecutionBackend, create_backend
from pipewright.catalog import ConfigPipelineCatalog, PipelineCatalog
from pipewright.config import PipewrightConfig, load_config
from pipewright.errors import PipewrightError
from pipewright.lifecycle import RunLifecycleManager
from pipewright.models import RunStatus
from pipewright.registry import RunRepository
from pipewright.sweeper import RetentionSweeper
from pipewright.watcher import ReconciliationWatcher

logger = logging.getLogger(__name__)


class PipewrightServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        config: PipewrightConfig | None = None,
        *,
        config_path: Path | None = None,
        backend: ExecutionBackend | None = None,
        catalog: PipelineCatalog | None = None,
    ):
        self.config_path = config_path
        self.config = config
        self._backend_override = backend
        self._catalog_override = catalog

        # Components (initialized in start())
        self.repository: RunRepository | None = None
        self.backend: ExecutionBackend | None = None
        self.catalog: PipelineCatalog | None = None
        self.admission: AdmissionController | None = None
        self.lifecycle: RunLifecycleManager | None = None
        self.watcher: ReconciliationWatcher | None = None
        self.sweeper: RetentionSweeper | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        if self.config is None:
            self.config = load_config(self.config_path)
        config = self.config
        logger.info("Pipewright server starting (db=%s)", config.database.path)

        self.repository = RunRepository(config.database.path)
        await self.repository.initialize()

        self.backend = self._backend_override or create_backend(config.backend)
        await self.backend.start()

        self.catalog = self._catalog_override or ConfigPipelineCatalog(config.pipelines)
        self.admission = AdmissionController(
            self.repository, default_limit=config.admission.max_concurrent_runs
        )
        self.lifecycle = RunLifecycleManager(
            self.repository,
            self.admission,
            self.backend,
            self.catalog,
            default_timeout=config.backend.default_timeout,
            submission_workers=config.submission.workers,
            queue_size=config.submission.queue_size,
        )
        await self.lifecycle.start()

        self.watcher = ReconciliationWatcher(
            self.backend,
            self.lifecycle,
            workers=config.watcher.workers,
            queue_size=config.watcher.queue_size,
            backoff_initial=config.watcher.backoff_initial,
            backoff_max=config.watcher.backoff_max,
            orphan_grace_seconds=config.watcher.orphan_grace_seconds,
        )
        await self.watcher.start()

        self.sweeper = RetentionSweeper(
            self.repository,
            interval_seconds=config.retention.interval_seconds,
            pipeline_run_ttl_hours=config.retention.pipeline_run_ttl_hours,
            task_run_ttl_hours=config.retention.task_run_ttl_hours,
        )
        await self.sweeper.start()

        configure_api(self.lifecycle)
        logger.info("Pipewright server started (backend=%s)", self.backend.name)

    async def stop(self) -> None:
        """Graceful shutdown."""
        logger.info("Pipewright server shutting down")
        if self.sweeper:
            await self.sweeper.stop()
        if self.watcher:
            await self.watcher.stop()
        if self.lifecycle:
            await self.lifecycle.stop()
        if self.backend:
            await self.backend.close()
        if self.repository:
            await self.repository.close()
        logger.info("Pipewright server stopped")

    async def health(self) -> dict:
        """Database and backend reachability plus the pending backlog."""
        report: dict = {"status": "ok", "version": __version__}

        try:
            await self.repository.ping()
            report["database"] = {"status": "ok"}
            report["pending_runs"] = await self.repository.count_by_status(RunStatus.PENDING)
            report["active_permits"] = self.admission.held_count
        except Exception as e:
            logger.warning("Health check: database unavailable: %s", e)
            report["database"] = {"status": "error", "error": str(e)}
            report["status"] = "degraded"

        try:
            await self.backend.health()
            report["backend"] = {"status": "ok", "type": self.backend.name}
        except PipewrightError as e:
            report["backend"] = {"status": "unavailable", "type": self.backend.name, "error": str(e)}
            report["status"] = "degraded"

        report["watcher"] = {
            "connected": self.watcher.connected,
            "last_resync_at": (
                self.watcher.last_resync_at.isoformat() if self.watcher.last_resync_at else None
            ),
        }
        return report


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(
    config: PipewrightConfig | None = None,
    *,
    config_path: Path | None = None,
    backend: ExecutionBackend | None = None,
    catalog: PipelineCatalog | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    server = PipewrightServer(config, config_path=config_path, backend=backend, catalog=catalog)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start and stop the server with the app."""
        await server.start()
        yield
        await server.stop()

    app = FastAPI(
        title="Pipewright",
        version=__version__,
        description="Pipeline run orchestration engine for Tekton-backed CI/CD",
        lifespan=lifespan,
    )
    app.state.server = server

    app.include_router(api_router)

    @app.get("/health")
    async def health(response: Response):
        """Health check endpoint; 503 when any dependency is degraded."""
        report = await server.health()
        if report["status"] != "ok":
            response.status_code = 503
        return report

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
