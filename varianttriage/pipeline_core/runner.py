"""
StageRunner - Executes one external tool as a scoped subprocess.

This module provides the StageRunner class that launches the command of a
StageSpec, captures its log, enforces timeout and cancellation and classifies
the outcome into a StageResult. It handles:
- Removal of stale outputs left by an earlier run
- Bounded log capture (only the log tail is kept in memory)
- Termination of the whole process tree on timeout or cancellation
- Release of the process handle and files on every exit path
"""

import logging
import os
import subprocess
import threading
import time
from contextlib import ExitStack
from pathlib import Path
from typing import Optional, Union

import psutil

from ..utils import format_command, is_nonempty_file, read_tail
from .error_handling import StageError, StageErrorKind
from .stage import STATUS_FAILURE, STATUS_SUCCESS, StageResult, StageSpec, check_timeout

logger = logging.getLogger(__name__)

# Exit code reported when the executable cannot be launched at all
LAUNCH_FAILURE_EXIT_CODE = 127


class StageRunner:
    """Runs StageSpecs one at a time and reports StageResults.

    The runner never retries; a failed stage is reported once and the
    decision to re-run belongs to the caller.

    Attributes
    ----------
    log_dir : Path, optional
        Directory for per-stage log files (default: the stage output directory)
    log_tail_bytes : int
        Number of trailing log bytes kept in the StageResult
    poll_interval : float
        Seconds between checks for timeout and cancellation
    kill_grace : float
        Seconds to wait after SIGTERM before sending SIGKILL
    """

    def __init__(
        self,
        log_dir: Optional[Union[str, Path]] = None,
        log_tail_bytes: int = 16384,
        poll_interval: float = 0.2,
        kill_grace: float = 10.0,
    ):
        self.log_dir = Path(log_dir) if log_dir else None
        self.log_tail_bytes = log_tail_bytes
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def log_path(self, spec: StageSpec) -> Path:
        """Return the log file used for a stage."""
        directory = self.log_dir or spec.output.parent
        return directory / f"{spec.name}.log"

    def run(
        self,
        spec: StageSpec,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> StageResult:
        """Run a stage and classify its outcome.

        Parameters
        ----------
        spec : StageSpec
            The stage to run
        timeout : float, optional
            Seconds before the process tree is terminated (None: no limit)
        cancel_event : threading.Event, optional
            When set, the running process tree is terminated

        Returns
        -------
        StageResult
            Success only if the tool exited with 0 and wrote a non-empty output

        Raises
        ------
        ValueError
            If the timeout is zero or negative
        """
        check_timeout(timeout, f"stage '{spec.name}'")
        log_path = self.log_path(spec)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            spec.output.parent.mkdir(parents=True, exist_ok=True)
            if spec.output.exists() or spec.output.is_symlink():
                logger.warning(f"Stage '{spec.name}': removing stale output {spec.output}")
                spec.output.unlink()
        except OSError as e:
            return self._preparation_failure(spec, e)

        env = dict(os.environ)
        env.update(spec.env)

        logger.info(f"Stage '{spec.name}': starting {spec.executable}")
        logger.debug(f"Stage '{spec.name}' command: {format_command(spec.command)}")
        if spec.resources:
            logger.debug(f"Stage '{spec.name}' resources: {spec.resources}")

        started_at = time.time()
        start = time.monotonic()
        outcome: Optional[StageErrorKind] = None
        returncode: Optional[int] = None

        with ExitStack() as stack:
            log_fh = stack.enter_context(open(log_path, "wb"))
            if spec.stdout_to_output:
                stdout_target = stack.enter_context(open(spec.output, "wb"))
                stderr_target = log_fh
            else:
                stdout_target = log_fh
                stderr_target = subprocess.STDOUT

            try:
                proc = subprocess.Popen(
                    list(spec.command),
                    stdin=subprocess.DEVNULL,
                    stdout=stdout_target,
                    stderr=stderr_target,
                    env=env,
                    start_new_session=True,
                )
            except OSError as e:
                log_fh.write(f"Failed to launch {spec.executable}: {e}\n".encode("utf-8"))
                log_fh.flush()
                logger.error(f"Stage '{spec.name}': could not launch {spec.executable}: {e}")
                returncode = LAUNCH_FAILURE_EXIT_CODE
                outcome = StageErrorKind.TOOL_FAILURE
                proc = None

            if proc is not None:
                stack.callback(self._reap, proc)
                returncode, outcome = self._wait(spec, proc, start, timeout, cancel_event)

        duration = time.monotonic() - start
        log_tail = read_tail(str(log_path), self.log_tail_bytes)

        if outcome is None:
            if returncode != 0:
                outcome = StageErrorKind.TOOL_FAILURE
            elif not is_nonempty_file(spec.output):
                outcome = StageErrorKind.OUTPUT_MISSING

        if outcome is None:
            logger.info(f"Stage '{spec.name}' completed successfully in {duration:.1f}s")
            return StageResult(
                stage=spec.name,
                status=STATUS_SUCCESS,
                log_tail=log_tail,
                duration=duration,
                output_path=spec.output,
                exit_code=returncode,
                started_at=started_at,
            )

        error = StageError(
            outcome,
            spec.name,
            exit_code=returncode if outcome == StageErrorKind.TOOL_FAILURE else None,
            log_tail=log_tail,
        )
        logger.error(f"{error} after {duration:.1f}s (log: {log_path})")
        return StageResult(
            stage=spec.name,
            status=STATUS_FAILURE,
            log_tail=log_tail,
            duration=duration,
            output_path=spec.output if spec.output.exists() else None,
            error=error,
            exit_code=returncode,
            started_at=started_at,
        )

    def _preparation_failure(self, spec: StageSpec, error: OSError) -> StageResult:
        """Report a stage whose output or log location cannot be prepared."""
        message = f"Cannot prepare output of stage '{spec.name}': {error}\n"
        logger.error(message.rstrip())
        return StageResult(
            stage=spec.name,
            status=STATUS_FAILURE,
            log_tail=message,
            error=StageError(StageErrorKind.TOOL_FAILURE, spec.name, log_tail=message),
            started_at=time.time(),
        )

    def _wait(self, spec, proc, start, timeout, cancel_event):
        """Block until the process exits, times out or is cancelled."""
        deadline = start + timeout if timeout is not None else None
        try:
            while True:
                try:
                    return proc.wait(timeout=self.poll_interval), None
                except subprocess.TimeoutExpired:
                    pass
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Stage '{spec.name}': cancellation requested")
                    return self._terminate_tree(proc), StageErrorKind.CANCELLED
                if deadline is not None and time.monotonic() >= deadline:
                    logger.warning(f"Stage '{spec.name}': timed out after {timeout}s")
                    return self._terminate_tree(proc), StageErrorKind.TIMEOUT
        except KeyboardInterrupt:
            logger.warning(f"Stage '{spec.name}': interrupted")
            return self._terminate_tree(proc), StageErrorKind.CANCELLED

    def _terminate_tree(self, proc: subprocess.Popen) -> Optional[int]:
        """Terminate a process and all of its descendants."""
        try:
            children = psutil.Process(proc.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            children = []

        proc.terminate()
        for child in children:
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                pass

        try:
            returncode = proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            logger.debug(f"Killing process {proc.pid} that ignored SIGTERM")
            proc.kill()
            returncode = proc.wait()

        _, alive = psutil.wait_procs(children, timeout=self.kill_grace)
        for child in alive:
            logger.debug(f"Killing process {child.pid} that ignored SIGTERM")
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
        return returncode

    def _reap(self, proc: subprocess.Popen) -> None:
        """Make sure no child outlives the run call."""
        if proc.poll() is None:
            self._terminate_tree(proc)
