"""Run history for the triage pipeline.

This module persists the ordered StageResult history of a workspace so that
``status`` can report past runs and a caller can decide where to resume.
"""

import json
import logging
import os
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from .stage import StageResult

logger = logging.getLogger(__name__)


class RunHistory:
    """Ordered record of stage executions stored next to the outputs."""

    HISTORY_FILE_NAME = ".varianttriage_history.json"
    HISTORY_VERSION = "1.0"

    def __init__(self, output_dir: str):
        """Initialize run history.

        Parameters
        ----------
        output_dir : str
            Directory where the history file is stored
        """
        self.output_dir = str(output_dir)
        self.history_file = os.path.join(self.output_dir, self.HISTORY_FILE_NAME)
        self._lock = threading.Lock()
        self.runs: List[Dict[str, Any]] = []

    def load(self) -> bool:
        """Load existing history from file.

        Returns
        -------
        bool
            True if history was loaded successfully, False otherwise
        """
        if not os.path.exists(self.history_file):
            return False

        try:
            with open(self.history_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load history file {self.history_file}: {e}")
            return False

        if data.get("version") != self.HISTORY_VERSION:
            logger.warning(
                f"History file version mismatch: {data.get('version')} != {self.HISTORY_VERSION}"
            )
            return False

        self.runs = data.get("runs", [])
        logger.debug(f"Loaded {len(self.runs)} runs from {self.history_file}")
        return True

    def start_run(self, stage_names: List[str], resume_from: Optional[int] = None) -> None:
        """Open a new run entry."""
        with self._lock:
            self.runs.append(
                {
                    "start_time": time.time(),
                    "stages": list(stage_names),
                    "resume_from": resume_from,
                    "results": [],
                }
            )
        self.save()

    def record(self, result: StageResult) -> None:
        """Append a StageResult to the current run and persist it."""
        with self._lock:
            if not self.runs:
                self.runs.append({"start_time": time.time(), "stages": [], "results": []})
            self.runs[-1]["results"].append(result.to_dict())
        self.save()

    def results(self, run_index: int = -1) -> List[StageResult]:
        """Return the StageResults of one run (default: the latest)."""
        if not self.runs:
            return []
        return [StageResult.from_dict(r) for r in self.runs[run_index]["results"]]

    def last_successful_stage(self) -> Optional[str]:
        """Name of the last stage that succeeded in the latest run."""
        for result in reversed(self.results()):
            if result.succeeded:
                return result.stage
        return None

    def save(self) -> None:
        """Write the history atomically."""
        with self._lock:
            payload = {"version": self.HISTORY_VERSION, "runs": self.runs}
            os.makedirs(self.output_dir, exist_ok=True)
            temp_file = f"{self.history_file}.tmp.{uuid.uuid4().hex[:8]}"
            try:
                with open(temp_file, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(temp_file, self.history_file)
                logger.debug(f"Saved run history to {self.history_file}")
            except OSError as e:
                if os.path.exists(temp_file):
                    os.remove(temp_file)
                logger.warning(f"Failed to save run history: {e}")
                raise

    def get_summary(self) -> str:
        """Human-readable summary of the latest run."""
        if not self.runs:
            return "No runs recorded."
        run = self.runs[-1]
        started = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(run["start_time"]))
        lines = [f"Run started {started} ({len(self.runs)} run(s) recorded)"]
        if run.get("resume_from"):
            lines.append(f"  resumed from stage index {run['resume_from']}")
        results = {r.stage: r for r in self.results()}
        resume_from = run.get("resume_from") or 0
        names = list(run["stages"]) + [n for n in results if n not in run["stages"]]
        for index, name in enumerate(names):
            result = results.get(name)
            if result is None:
                state = "skipped (output reused)" if index < resume_from else "not run"
                lines.append(f"  {name}: {state}")
                continue
            line = f"  {name}: {result.status} in {result.duration:.1f}s"
            if result.error is not None:
                line += f" [{result.error.kind.value}]"
            lines.append(line)
        return "\n".join(lines)
