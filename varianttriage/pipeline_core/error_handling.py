"""
Error taxonomy for the triage pipeline.

This module provides:
- PipelineError, the base exception carrying stage name and details
- ConfigError for problems detected before any subprocess runs
- StageError for failures of an external tool invocation
- QueryError for annotated files that cannot be read at query time
- exit_code_for, mapping every error kind to a distinct CLI exit code
"""

import logging
from enum import Enum
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class ConfigErrorKind(str, Enum):
    """Configuration problems detected before the pipeline starts."""

    MISSING_INPUT = "MissingInput"
    MISSING_DIRECTORY = "MissingDirectory"
    PERMISSION_DENIED = "PermissionDenied"
    DEPENDENCY_MISMATCH = "DependencyMismatch"
    STALE_RESUME = "StaleResume"
    MISSING_TOOL = "MissingTool"
    WORKSPACE_LOCKED = "WorkspaceLocked"


class StageErrorKind(str, Enum):
    """Ways an external tool invocation can fail."""

    TOOL_FAILURE = "ToolFailure"
    TIMEOUT = "Timeout"
    OUTPUT_MISSING = "OutputMissing"
    CANCELLED = "Cancelled"


class QueryErrorKind(str, Enum):
    """Failures of the variant query engine."""

    UNREADABLE_FILE = "UnreadableFile"


EXIT_CODES: Dict[Enum, int] = {
    ConfigErrorKind.MISSING_INPUT: 10,
    ConfigErrorKind.MISSING_DIRECTORY: 11,
    ConfigErrorKind.PERMISSION_DENIED: 12,
    ConfigErrorKind.DEPENDENCY_MISMATCH: 13,
    ConfigErrorKind.STALE_RESUME: 14,
    ConfigErrorKind.MISSING_TOOL: 15,
    ConfigErrorKind.WORKSPACE_LOCKED: 16,
    StageErrorKind.TOOL_FAILURE: 20,
    StageErrorKind.TIMEOUT: 21,
    StageErrorKind.OUTPUT_MISSING: 22,
    StageErrorKind.CANCELLED: 23,
    QueryErrorKind.UNREADABLE_FILE: 30,
}


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, stage: Optional[str] = None, details: Optional[Dict] = None):
        """Initialize pipeline error.

        Parameters
        ----------
        message : str
            Error message
        stage : str, optional
            Stage where error occurred
        details : dict, optional
            Additional error details
        """
        super().__init__(message)
        self.stage = stage
        self.details = details or {}

    @property
    def exit_code(self) -> int:
        """CLI exit code for this error (1 when the error has no kind)."""
        kind = getattr(self, "kind", None)
        return EXIT_CODES.get(kind, 1)


class ConfigError(PipelineError):
    """Raised when the workspace or stage configuration is unusable."""

    def __init__(
        self,
        kind: ConfigErrorKind,
        path: Optional[str] = None,
        message: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        """Initialize configuration error naming the offending path."""
        self.kind = kind
        self.path = str(path) if path is not None else None
        if message is None:
            message = f"{kind.value}: {self.path}"
        super().__init__(message, stage, {"kind": kind.value, "path": self.path})


class StageError(PipelineError):
    """Describes how an external stage failed.

    StageError instances are attached to a StageResult rather than raised by
    the runner; the orchestrator halts on them and the CLI raises them.
    """

    def __init__(
        self,
        kind: StageErrorKind,
        stage: str,
        exit_code: Optional[int] = None,
        log_tail: str = "",
        message: Optional[str] = None,
    ):
        """Initialize stage error."""
        self.kind = kind
        self.returncode = exit_code
        self.log_tail = log_tail
        if message is None:
            message = f"Stage '{stage}' failed: {kind.value}"
            if exit_code is not None:
                message += f" (exit code {exit_code})"
        super().__init__(
            message,
            stage,
            {"kind": kind.value, "exit_code": exit_code},
        )

    def __reduce__(self):
        """Custom pickling to keep keyword-only state."""
        return (
            self.__class__,
            (self.kind, self.stage, self.returncode, self.log_tail, str(self)),
        )

    def to_dict(self) -> Dict:
        """Serialise for the run history."""
        return {
            "kind": self.kind.value,
            "stage": self.stage,
            "exit_code": self.returncode,
            "message": str(self),
        }

    @classmethod
    def from_dict(cls, data: Dict, log_tail: str = "") -> "StageError":
        """Rebuild a StageError from its history entry."""
        return cls(
            StageErrorKind(data["kind"]),
            data["stage"],
            exit_code=data.get("exit_code"),
            log_tail=log_tail,
            message=data.get("message"),
        )


class QueryError(PipelineError):
    """Raised when an annotated variant file cannot be read."""

    def __init__(self, path: str, reason: str = ""):
        """Initialize query error."""
        self.kind = QueryErrorKind.UNREADABLE_FILE
        self.path = str(path)
        message = f"{self.kind.value}: {self.path}"
        if reason:
            message += f" ({reason})"
        super().__init__(message, None, {"kind": self.kind.value, "path": self.path})


def exit_code_for(error: BaseException) -> int:
    """Return the CLI exit code for an exception.

    Parameters
    ----------
    error : BaseException
        The error raised while running a command

    Returns
    -------
    int
        Distinct non-zero code per error kind, 1 for anything unexpected
    """
    if isinstance(error, PipelineError):
        return error.exit_code
    return 1
