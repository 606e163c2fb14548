"""
Pipeline infrastructure for varianttriage.

This package provides the core abstractions for running the triage pipeline:
- WorkspaceConfig / validate: Directory layout and input checks
- StageSpec / StageResult: What to run and what happened
- StageRunner: Runs one external tool as a scoped subprocess
- PipelineOrchestrator: Runs stages in order with fail-fast and resume
- RunHistory: Persisted StageResult history
"""

from .error_handling import (
    ConfigError,
    ConfigErrorKind,
    PipelineError,
    QueryError,
    QueryErrorKind,
    StageError,
    StageErrorKind,
    exit_code_for,
)
from .history import RunHistory
from .orchestrator import PipelineOrchestrator
from .runner import StageRunner
from .stage import StageResult, StageSpec
from .workspace import RunLock, WorkspaceConfig, validate

__all__ = [
    "ConfigError",
    "ConfigErrorKind",
    "PipelineError",
    "PipelineOrchestrator",
    "QueryError",
    "QueryErrorKind",
    "RunHistory",
    "RunLock",
    "StageError",
    "StageErrorKind",
    "StageResult",
    "StageRunner",
    "StageSpec",
    "WorkspaceConfig",
    "exit_code_for",
    "validate",
]
