"""
Stage records - what to run and what happened.

This module provides the two immutable records exchanged between the stage
factory, the Stage Runner and the Pipeline Orchestrator:
- StageSpec describes one external-tool invocation
- StageResult describes the outcome of running a StageSpec
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .error_handling import StageError

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


def check_timeout(timeout: Optional[float], owner: str) -> None:
    """Reject zero or negative timeouts; None means no limit."""
    if timeout is not None and timeout <= 0:
        raise ValueError(f"Timeout of {owner} must be positive, got {timeout}")


@dataclass(frozen=True)
class StageSpec:
    """Immutable description of one external-tool invocation.

    Attributes
    ----------
    name : str
        Unique stage name used in logs, run history and ``--resume-from``
    command : Tuple[str, ...]
        Executable and arguments, run without a shell
    inputs : Tuple[Path, ...]
        Files the tool reads; never written by the pipeline
    output : Path
        File the tool must produce
    resources : Mapping[str, Any]
        Resource hints such as the accelerator count
    env : Mapping[str, str]
        Extra environment variables for the tool
    stdout_to_output : bool
        Write the tool's stdout to ``output`` (tools that print their result)
    timeout : float, optional
        Per-stage timeout in seconds overriding the orchestrator default
    """

    name: str
    command: Tuple[str, ...]
    inputs: Tuple[Path, ...]
    output: Path
    resources: Mapping[str, Any] = field(default_factory=dict, hash=False)
    env: Mapping[str, str] = field(default_factory=dict, hash=False)
    stdout_to_output: bool = False
    timeout: Optional[float] = None

    def __post_init__(self):
        if not self.command:
            raise ValueError(f"Stage '{self.name}' has an empty command")
        check_timeout(self.timeout, f"stage '{self.name}'")
        object.__setattr__(self, "command", tuple(str(c) for c in self.command))
        object.__setattr__(self, "inputs", tuple(Path(p) for p in self.inputs))
        object.__setattr__(self, "output", Path(self.output))
        object.__setattr__(self, "resources", dict(self.resources))
        object.__setattr__(self, "env", {str(k): str(v) for k, v in self.env.items()})

    @property
    def executable(self) -> str:
        """The program launched by this stage."""
        return self.command[0]


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage execution; never mutated after creation."""

    stage: str
    status: str
    log_tail: str = ""
    duration: float = 0.0
    output_path: Optional[Path] = None
    error: Optional[StageError] = None
    exit_code: Optional[int] = None
    started_at: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        """True when the tool exited cleanly and produced its output."""
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "stage": self.stage,
            "status": self.status,
            "log_tail": self.log_tail,
            "duration": self.duration,
            "output_path": str(self.output_path) if self.output_path else None,
            "error": self.error.to_dict() if self.error else None,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        """Create StageResult from dictionary."""
        error = data.get("error")
        log_tail = data.get("log_tail", "")
        return cls(
            stage=data["stage"],
            status=data["status"],
            log_tail=log_tail,
            duration=data.get("duration", 0.0),
            output_path=Path(data["output_path"]) if data.get("output_path") else None,
            error=StageError.from_dict(error, log_tail) if error else None,
            exit_code=data.get("exit_code"),
            started_at=data.get("started_at"),
        )
