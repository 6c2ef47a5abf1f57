"""Pipewright CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path


# ── Default template for `pipewright init` ───────────────────────────────────

_DEFAULT_CONFIG = """\
# pipewright.yaml: Pipewright configuration

server:
  host: 0.0.0.0
  port: 8080

database:
  path: pipewright.db

admission:
  max_concurrent_runs: 10

submission:
  workers: 4
  queue_size: 1000

backend:
  type: tekton            # or "noop" where no cluster is available
  api_url: https://kubernetes.default.svc
  namespace: cicd
  service_account: cicd-service
  default_timeout: 3600

watcher:
  workers: 8
  orphan_grace_seconds: 300

retention:
  interval_seconds: 21600
  pipeline_run_ttl_hours: 168
  task_run_ttl_hours: 24

pipelines:
  - id: build-and-test
    name: Build and test
    max_concurrent_runs: 2
    timeout: 1h
    tasks:
      - name: build
        image: golang:1.22
        command: [go, build, ./...]
      - name: test
        image: golang:1.22
        command: [go, test, ./...]
        depends_on: [build]
"""


def _init_config(path: Path) -> None:
    if path.exists():
        print(f"Error: {path} already exists", file=sys.stderr)
        sys.exit(1)
    path.write_text(_DEFAULT_CONFIG)
    print(f"Wrote {path}")
    print("Edit the pipelines section, then run 'pipewright serve --config <path>'.")


def _sweep_once(config_path: Path | None) -> None:
    from pipewright.config import load_config
    from pipewright.registry import RunRepository
    from pipewright.sweeper import RetentionSweeper

    async def run() -> None:
        config = load_config(config_path)
        repository = RunRepository(config.database.path)
        await repository.initialize()
        try:
            sweeper = RetentionSweeper(
                repository,
                pipeline_run_ttl_hours=config.retention.pipeline_run_ttl_hours,
                task_run_ttl_hours=config.retention.task_run_ttl_hours,
            )
            result = await sweeper.sweep()
        finally:
            await repository.close()
        print(
            f"Deleted {result.pipeline_runs_deleted} pipeline runs, "
            f"{result.task_runs_deleted} task runs ({result.errors} errors)"
        )
        if result.errors:
            sys.exit(1)

    asyncio.run(run())


def main():
    parser = argparse.ArgumentParser(
        prog="pipewright",
        description="Pipewright: pipeline run orchestration engine",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # pipewright init
    init_parser = subparsers.add_parser("init", help="Write a sample configuration file")
    init_parser.add_argument(
        "--config",
        type=Path,
        default=Path("pipewright.yaml"),
        help="Where to write the config (default: ./pipewright.yaml)",
    )

    # pipewright serve
    serve_parser = subparsers.add_parser("serve", help="Start the orchestration server")
    serve_parser.add_argument("--config", type=Path, default=None, help="Path to pipewright.yaml")
    serve_parser.add_argument("--host", default=None, help="Host to bind to (overrides config)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (overrides config)")

    # pipewright sweep
    sweep_parser = subparsers.add_parser("sweep", help="Run one retention sweep and exit")
    sweep_parser.add_argument("--config", type=Path, default=None, help="Path to pipewright.yaml")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "init":
        _init_config(args.config)
        return

    if args.command == "sweep":
        _sweep_once(args.config)
        return

    import uvicorn

    from pipewright.config import load_config
    from pipewright.server import create_app

    config = load_config(args.config)
    app = create_app(config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
