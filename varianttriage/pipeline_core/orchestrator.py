"""
PipelineOrchestrator - Executes stages strictly in order.

This module provides the PipelineOrchestrator class that sequences Stage
Runner invocations. It handles:
- Construction-time dependency checks between consecutive stages
- Fail-fast sequential execution
- Resuming from a stage whose predecessors' outputs already exist
- Recording every StageResult in the run history
"""

import logging
import threading
import time
from typing import List, Optional, Protocol, Sequence, Union

from ..utils import is_nonempty_file
from .error_handling import ConfigError, ConfigErrorKind
from .history import RunHistory
from .runner import StageRunner
from .stage import StageResult, StageSpec, check_timeout

logger = logging.getLogger(__name__)


class Runner(Protocol):
    """Anything able to run a StageSpec and report a StageResult."""

    def run(
        self,
        spec: StageSpec,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> StageResult:
        """Run one stage."""
        ...


class PipelineOrchestrator:
    """Runs an ordered sequence of stages, stopping at the first failure.

    Each stage must declare the previous stage's output among its inputs;
    this is checked when the orchestrator is built, before any process runs.

    Attributes
    ----------
    stages : List[StageSpec]
        Stages in execution order
    runner : Runner
        Executes single stages (a StageRunner unless substituted)
    timeout : float, optional
        Default per-stage timeout in seconds
    history : RunHistory, optional
        Receives every StageResult
    cancel_event : threading.Event, optional
        Forwarded to the runner to cancel the running stage
    """

    def __init__(
        self,
        stages: Sequence[StageSpec],
        runner: Optional[Runner] = None,
        timeout: Optional[float] = None,
        history: Optional[RunHistory] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.stages: List[StageSpec] = list(stages)
        self.runner = runner or StageRunner()
        check_timeout(timeout, "the pipeline")
        self.timeout = timeout
        self.history = history
        self.cancel_event = cancel_event
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Verify names are unique and each stage consumes its predecessor's output.

        Raises
        ------
        ConfigError
            DependencyMismatch naming the stage and the expected path
        """
        seen = set()
        for spec in self.stages:
            if spec.name in seen:
                raise ConfigError(
                    ConfigErrorKind.DEPENDENCY_MISMATCH,
                    None,
                    f"Duplicate stage name '{spec.name}'",
                    stage=spec.name,
                )
            seen.add(spec.name)

        for previous, current in zip(self.stages, self.stages[1:]):
            if previous.output not in current.inputs:
                raise ConfigError(
                    ConfigErrorKind.DEPENDENCY_MISMATCH,
                    previous.output,
                    f"Stage '{current.name}' does not consume the output of "
                    f"'{previous.name}' ({previous.output}); inputs are "
                    f"{[str(p) for p in current.inputs]}",
                    stage=current.name,
                )
        logger.debug(f"Dependency check passed for stages {[s.name for s in self.stages]}")

    def resolve_index(self, resume_from: Union[int, str, None]) -> int:
        """Turn a stage index or stage name into an index.

        Raises
        ------
        ValueError
            If the index is out of range or the name is unknown
        """
        if resume_from is None:
            return 0
        if isinstance(resume_from, str):
            for index, spec in enumerate(self.stages):
                if spec.name == resume_from:
                    return index
            raise ValueError(
                f"Unknown stage '{resume_from}'; stages are {[s.name for s in self.stages]}"
            )
        if not 0 <= resume_from < len(self.stages):
            raise ValueError(
                f"Resume index {resume_from} out of range for {len(self.stages)} stages"
            )
        return resume_from

    def _verify_resume(self, start: int) -> None:
        for spec in self.stages[:start]:
            if not is_nonempty_file(spec.output):
                raise ConfigError(
                    ConfigErrorKind.STALE_RESUME,
                    spec.output,
                    f"Cannot resume: output of skipped stage '{spec.name}' is missing or "
                    f"empty: {spec.output}",
                    stage=spec.name,
                )
            logger.info(f"Skipping stage '{spec.name}', reusing {spec.output}")

    def execute(self, resume_from: Union[int, str, None] = None) -> List[StageResult]:
        """Execute the stages in order.

        Parameters
        ----------
        resume_from : int or str, optional
            Index or name of the first stage to run; earlier stages are
            skipped after their outputs are verified

        Returns
        -------
        List[StageResult]
            Results of the stages that ran; on failure the last one carries
            the error and no further stage was started

        Raises
        ------
        ConfigError
            StaleResume when a skipped stage's output is missing or empty
        ValueError
            If ``resume_from`` does not name a stage
        """
        start = self.resolve_index(resume_from)
        self._verify_resume(start)

        if self.history is not None:
            self.history.start_run([s.name for s in self.stages], resume_from=start)

        pipeline_start = time.monotonic()
        logger.info(f"Starting pipeline with {len(self.stages) - start} stage(s)")

        results: List[StageResult] = []
        for spec in self.stages[start:]:
            timeout = spec.timeout if spec.timeout is not None else self.timeout
            result = self.runner.run(spec, timeout=timeout, cancel_event=self.cancel_event)
            results.append(result)
            if self.history is not None:
                self.history.record(result)
            if not result.succeeded:
                logger.error(f"Pipeline halted at stage '{spec.name}'")
                break
        else:
            total = time.monotonic() - pipeline_start
            logger.info(f"Pipeline completed in {total:.1f}s")

        return results
