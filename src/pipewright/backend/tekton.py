"""Tekton execution backend: PipelineRun objects via the Kubernetes REST API.

Each pipewright run becomes one ``tekton.dev/v1beta1`` PipelineRun with an
embedded pipeline spec: one Tekton task per pipeline task, each a single
``main`` step, with ``runAfter`` mirroring ``depends_on``.  Runs are found
again by their ``pipewright.io/run-id`` label.
"""

from __future__ import annotations

import json
import logging
import os
import ssl
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator

import httpx

from pipewright import __version__
from pipewright.backend.base import (
    PIPELINE_ID_LABEL,
    RUN_ID_LABEL,
    BackendEvent,
    Condition,
    EventType,
    RunListing,
    RunSnapshot,
    SubmissionRequest,
    TaskSnapshot,
)
from pipewright.config import IN_CLUSTER_CA_PATH, BackendConfig
from pipewright.errors import (
    BackendError,
    BackendNotFound,
    BackendSubmissionFailed,
    BackendUnavailable,
    WatchExpired,
)

logger = logging.getLogger(__name__)

TEKTON_API = "tekton.dev/v1beta1"
APP_LABELS = {
    "app.kubernetes.io/name": "pipewright",
    "app.kubernetes.io/component": "pipelinerun",
}
APP_SELECTOR = "app.kubernetes.io/name=pipewright"
PIPELINERUN_LABEL = "tekton.dev/pipelineRun"
PIPELINE_TASK_LABEL = "tekton.dev/pipelineTask"
SOURCE_WORKSPACE = "source"


class TektonBackend:
    """Async Tekton client scoped to one namespace."""

    name = "tekton"

    def __init__(self, config: BackendConfig, *, token: str | None = None):
        self.config = config
        self.namespace = config.namespace
        self._token = token
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        token = self._token or _load_token(self.config)
        headers = {
            "Accept": "application/json",
            "User-Agent": f"pipewright/{__version__}",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        verify: ssl.SSLContext | bool = self.config.verify_tls
        ca_path = _ca_path(self.config)
        if ca_path:
            verify = ssl.create_default_context(cafile=ca_path)
        self._client = httpx.AsyncClient(
            base_url=self.config.api_url,
            headers=headers,
            timeout=self.config.request_timeout,
            verify=verify,
        )
        logger.info(
            "Tekton backend started (api=%s, namespace=%s)", self.config.api_url, self.namespace
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Tekton backend not started; call start() first")
        return self._client

    def _runs_path(self, name: str | None = None) -> str:
        path = f"/apis/{TEKTON_API}/namespaces/{self.namespace}/pipelineruns"
        return f"{path}/{name}" if name else path

    def _task_runs_path(self) -> str:
        return f"/apis/{TEKTON_API}/namespaces/{self.namespace}/taskruns"

    async def _request(
        self, method: str, path: str, *, allow: tuple[int, ...] = (), **kwargs
    ) -> httpx.Response:
        """Issue a request, translating transport and HTTP errors.

        Status codes in ``allow`` are returned to the caller untouched.
        """
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise BackendUnavailable(f"{method} {path}: {exc}") from exc
        if resp.status_code in allow:
            return resp
        if resp.status_code == 404:
            raise BackendNotFound(f"{method} {path}: not found")
        if resp.is_error:
            raise BackendError(f"{method} {path} returned {resp.status_code}: {resp.text[:300]}")
        return resp

    # ── Capability ───────────────────────────────────────────────────────

    async def submit(self, request: SubmissionRequest) -> str:
        manifest = build_pipeline_run(
            request,
            namespace=self.namespace,
            default_service_account=self.config.service_account,
            workspace_size=self.config.workspace_size,
        )
        name = manifest["metadata"]["name"]
        try:
            resp = await self._request("POST", self._runs_path(), json=manifest, allow=(409,))
        except BackendUnavailable:
            raise
        except BackendError as exc:
            raise BackendSubmissionFailed(request.run.id, str(exc)) from exc

        if resp.status_code == 409:
            # Deterministic names make a repeated submission a no-op
            logger.info("PipelineRun %s already exists; treating as submitted", name)
        else:
            logger.info("Created PipelineRun %s for run %s", name, request.run.id)
        return name

    async def _find(self, run_id: str) -> list[dict[str, Any]]:
        resp = await self._request(
            "GET", self._runs_path(), params={"labelSelector": f"{RUN_ID_LABEL}={run_id}"}
        )
        return resp.json().get("items") or []

    async def cancel(self, run_id: str) -> None:
        items = await self._find(run_id)
        if not items:
            logger.info("No PipelineRun found for run %s; nothing to cancel", run_id)
            return
        for item in items:
            name = item["metadata"]["name"]
            await self._request(
                "PATCH",
                self._runs_path(name),
                content=json.dumps({"spec": {"status": "Cancelled"}}),
                headers={"Content-Type": "application/merge-patch+json"},
                allow=(404,),
            )
            logger.info("Requested cancellation of PipelineRun %s (run %s)", name, run_id)

    async def _list_task_runs(self, selector: str) -> list[dict[str, Any]]:
        """TaskRun objects matching ``selector``; empty (logged) on failure."""
        try:
            resp = await self._request(
                "GET", self._task_runs_path(), params={"labelSelector": selector}
            )
        except BackendError as exc:
            logger.warning("Could not list TaskRuns (%s): %s", selector, exc)
            return []
        return resp.json().get("items") or []

    async def _snapshot(self, obj: dict[str, Any]) -> RunSnapshot:
        """Parse a PipelineRun, fetching its child TaskRuns when only referenced."""
        if not _needs_child_task_runs(obj):
            return parse_pipeline_run(obj)
        name = (obj.get("metadata") or {}).get("name", "")
        children = await self._list_task_runs(f"{PIPELINERUN_LABEL}={name}")
        return parse_pipeline_run(obj, children)

    async def status(self, run_id: str) -> RunSnapshot:
        items = await self._find(run_id)
        if not items:
            raise BackendNotFound(f"no PipelineRun labelled {RUN_ID_LABEL}={run_id}")
        return await self._snapshot(items[0])

    async def list_runs(self) -> RunListing:
        resp = await self._request("GET", self._runs_path(), params={"labelSelector": APP_SELECTOR})
        body = resp.json()
        items = body.get("items") or []

        # TaskRuns inherit the PipelineRun's labels, so one call covers every run
        children: dict[str, list[dict[str, Any]]] = {}
        if any(_needs_child_task_runs(item) for item in items):
            for task_run in await self._list_task_runs(APP_SELECTOR):
                owner = ((task_run.get("metadata") or {}).get("labels") or {}).get(
                    PIPELINERUN_LABEL
                )
                if owner:
                    children.setdefault(owner, []).append(task_run)

        return RunListing(
            snapshots=[
                parse_pipeline_run(item, children.get((item.get("metadata") or {}).get("name")))
                for item in items
            ],
            resource_version=(body.get("metadata") or {}).get("resourceVersion"),
        )

    async def watch_events(self, resource_version: str | None = None) -> AsyncIterator[BackendEvent]:
        params = {"watch": "1", "labelSelector": APP_SELECTOR, "allowWatchBookmarks": "true"}
        if resource_version:
            params["resourceVersion"] = resource_version
        timeout = httpx.Timeout(self.config.request_timeout, read=None)
        try:
            async with self.client.stream(
                "GET", self._runs_path(), params=params, timeout=timeout
            ) as resp:
                if resp.status_code == 410:
                    raise WatchExpired("watch resourceVersion expired")
                if resp.is_error:
                    body = await resp.aread()
                    raise BackendError(
                        f"watch returned {resp.status_code}: {body[:300].decode(errors='replace')}"
                    )
                async for line in resp.aiter_lines():
                    parsed = _parse_watch_line(line)
                    if parsed is None:
                        continue
                    event_type, obj = parsed
                    if event_type == EventType.DELETED:
                        # Child TaskRuns are garbage collected with their owner
                        snapshot = parse_pipeline_run(obj)
                    else:
                        snapshot = await self._snapshot(obj)
                    yield BackendEvent(type=event_type, snapshot=snapshot)
        except httpx.TransportError as exc:
            raise BackendUnavailable(f"watch connection failed: {exc}") from exc

    async def health(self) -> None:
        try:
            await self._request("GET", f"/api/v1/namespaces/{self.namespace}")
        except BackendUnavailable:
            raise
        except BackendError as exc:
            raise BackendUnavailable(str(exc)) from exc


# ── Manifest Building ────────────────────────────────────────────────────────


def pipeline_run_name(run_id: str, run_number: int) -> str:
    return f"run-{run_id[:8]}-{run_number}"


def format_duration(seconds: int) -> str:
    """Render seconds the way Kubernetes prints durations, e.g. ``1h0m0s``."""
    if seconds <= 0:
        return "0s"
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def build_pipeline_run(
    request: SubmissionRequest,
    *,
    namespace: str,
    default_service_account: str,
    workspace_size: str = "1Gi",
) -> dict[str, Any]:
    """Build the PipelineRun manifest for a submission."""
    run = request.run
    tasks = []
    for task in request.tasks:
        step: dict[str, Any] = {
            "name": "main",
            "image": task.image,
            "workingDir": task.working_dir or request.workspace,
        }
        if task.command:
            step["command"] = list(task.command)
        if task.args:
            step["args"] = list(task.args)
        if task.env:
            step["env"] = [{"name": k, "value": v} for k, v in sorted(task.env.items())]

        pipeline_task: dict[str, Any] = {
            "name": task.name,
            "taskSpec": {
                "params": [{"name": p, "type": "string"} for p in request.params],
                "workspaces": [{"name": SOURCE_WORKSPACE, "mountPath": request.workspace}],
                "steps": [step],
            },
            "params": [{"name": p, "value": f"$(params.{p})"} for p in request.params],
            "workspaces": [{"name": SOURCE_WORKSPACE, "workspace": SOURCE_WORKSPACE}],
            "timeout": format_duration(task.timeout_seconds),
        }
        if task.depends_on:
            pipeline_task["runAfter"] = list(task.depends_on)
        tasks.append(pipeline_task)

    return {
        "apiVersion": TEKTON_API,
        "kind": "PipelineRun",
        "metadata": {
            "name": pipeline_run_name(run.id, run.run_number),
            "namespace": namespace,
            "labels": {
                **APP_LABELS,
                PIPELINE_ID_LABEL: run.pipeline_id,
                RUN_ID_LABEL: run.id,
            },
        },
        "spec": {
            "pipelineSpec": {
                "params": [{"name": p, "type": "string"} for p in request.params],
                "workspaces": [{"name": SOURCE_WORKSPACE, "description": "Source code workspace"}],
                "tasks": tasks,
            },
            "params": [{"name": k, "value": v} for k, v in request.params.items()],
            "timeout": format_duration(request.timeout_seconds),
            "serviceAccountName": request.service_account or default_service_account,
            "workspaces": [
                {
                    "name": SOURCE_WORKSPACE,
                    "volumeClaimTemplate": {
                        "spec": {
                            "accessModes": ["ReadWriteOnce"],
                            "resources": {"requests": {"storage": workspace_size}},
                        }
                    },
                }
            ],
        },
    }


# ── Parsing ──────────────────────────────────────────────────────────────────


def parse_pipeline_run(
    obj: dict[str, Any], child_task_runs: list[dict[str, Any]] | None = None
) -> RunSnapshot:
    """Convert a PipelineRun object into a RunSnapshot.

    Older Tekton releases embed task results under ``status.taskRuns``.
    Newer ones only list ``childReferences``; for
    those the caller passes the referenced TaskRun objects in
    ``child_task_runs``.
    """
    meta = obj.get("metadata") or {}
    status = obj.get("status") or {}
    embedded = status.get("taskRuns") or {}
    if embedded:
        tasks = [_parse_task_run(name, tr) for name, tr in embedded.items()]
    else:
        task_names = {
            ref.get("name"): ref.get("pipelineTaskName") for ref in _task_run_refs(status)
        }
        tasks = [_parse_child_task_run(tr, task_names) for tr in child_task_runs or []]
    return RunSnapshot(
        name=meta.get("name", ""),
        labels=dict(meta.get("labels") or {}),
        condition=_succeeded_condition(status),
        started_at=_parse_time(status.get("startTime")),
        finished_at=_parse_time(status.get("completionTime")),
        tasks=tasks,
    )


def _task_run_refs(status: dict[str, Any]) -> list[dict[str, Any]]:
    return [ref for ref in status.get("childReferences") or [] if ref.get("kind") == "TaskRun"]


def _needs_child_task_runs(obj: dict[str, Any]) -> bool:
    status = obj.get("status") or {}
    return not status.get("taskRuns") and bool(_task_run_refs(status))


def _parse_child_task_run(obj: dict[str, Any], task_names: dict[str, str]) -> TaskSnapshot:
    meta = obj.get("metadata") or {}
    name = meta.get("name", "")
    pipeline_task = (
        (meta.get("labels") or {}).get(PIPELINE_TASK_LABEL) or task_names.get(name) or name
    )
    return _parse_task_run(name, {"pipelineTaskName": pipeline_task, "status": obj.get("status")})


def _parse_task_run(name: str, entry: dict[str, Any]) -> TaskSnapshot:
    status = entry.get("status") or {}
    exit_codes = [
        step["terminated"].get("exitCode", 0)
        for step in status.get("steps") or []
        if step.get("terminated")
    ]
    exit_code = None
    if exit_codes:
        exit_code = next((c for c in exit_codes if c != 0), 0)
    return TaskSnapshot(
        name=entry.get("pipelineTaskName") or name,
        condition=_succeeded_condition(status),
        started_at=_parse_time(status.get("startTime")),
        finished_at=_parse_time(status.get("completionTime")),
        exit_code=exit_code,
    )


def _succeeded_condition(status: dict[str, Any]) -> Condition | None:
    for cond in status.get("conditions") or []:
        if cond.get("type") == "Succeeded":
            return Condition(
                status=cond.get("status", "Unknown"),
                reason=cond.get("reason", ""),
                message=cond.get("message", ""),
            )
    return None


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_watch_line(line: str) -> tuple[EventType, dict[str, Any]] | None:
    if not line.strip():
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("Dropping undecodable watch line: %.200s", line)
        return None

    kind = payload.get("type")
    obj = payload.get("object") or {}
    if kind == "ERROR":
        if obj.get("code") == 410:
            raise WatchExpired(obj.get("message", "watch expired"))
        raise BackendError(f"watch error: {obj.get('message', obj)}")
    if kind == "BOOKMARK":
        return None
    try:
        event_type = EventType(kind)
    except ValueError:
        logger.warning("Dropping watch event with unknown type %r", kind)
        return None
    return event_type, obj


def _load_token(config: BackendConfig) -> str | None:
    token = os.environ.get(config.token_env, "").strip()
    if token:
        return token
    path = Path(config.token_path)
    if path.is_file():
        return path.read_text().strip() or None
    logger.warning("No Kubernetes token found (env %s, file %s)", config.token_env, path)
    return None


def _ca_path(config: BackendConfig) -> str | None:
    """Explicit CA bundle, else the service-account one when running in a pod."""
    if config.ca_path:
        return config.ca_path
    if config.verify_tls and Path(IN_CLUSTER_CA_PATH).is_file():
        return IN_CLUSTER_CA_PATH
    return None
