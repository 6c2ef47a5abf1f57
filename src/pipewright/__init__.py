"""Pipewright: pipeline run orchestration engine for Tekton-backed CI/CD."""

__version__ = "0.1.0"
