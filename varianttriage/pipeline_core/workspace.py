"""
Workspace - Directory layout and input validation for pipeline runs.

This module provides the WorkspaceConfig record describing the input, output
and temporary directories of a run together with the reference and alignment
files, the validate function that checks all of them before any stage runs,
and the RunLock that keeps two runs from sharing a workspace.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from .error_handling import ConfigError, ConfigErrorKind

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class WorkspaceConfig:
    """Immutable description of a pipeline workspace.

    Attributes
    ----------
    input_dir : Path
        Read-only directory holding the reference and alignment
    output_dir : Path
        Directory receiving stage outputs and the run history
    temp_dir : Path
        Scratch directory for tools and stage logs
    reference_path : Path
        Reference genome FASTA
    alignment_path : Path
        Aligned reads (BAM/CRAM) of the sample
    """

    input_dir: Path
    output_dir: Path
    temp_dir: Path
    reference_path: Path
    alignment_path: Path

    def __post_init__(self):
        # Normalise to Path without breaking immutability
        for name in ("input_dir", "output_dir", "temp_dir", "reference_path", "alignment_path"):
            object.__setattr__(self, name, Path(getattr(self, name)))

    @classmethod
    def from_layout(
        cls,
        root: PathLike,
        reference: PathLike,
        alignment: PathLike,
        input_name: str = "input_data",
        output_name: str = "output_data",
        temp_name: str = "temp_data",
    ) -> "WorkspaceConfig":
        """Build a config for the ``input_data/output_data/temp_data`` layout.

        Relative reference and alignment paths resolve against the input
        directory; absolute paths are kept as given.
        """
        root = Path(root).resolve()
        input_dir = root / input_name
        reference = Path(reference)
        alignment = Path(alignment)
        return cls(
            input_dir=input_dir,
            output_dir=root / output_name,
            temp_dir=root / temp_name,
            reference_path=reference if reference.is_absolute() else input_dir / reference,
            alignment_path=alignment if alignment.is_absolute() else input_dir / alignment,
        )


def _require_directory(path: Path, writable: bool, create: bool) -> None:
    if not path.exists():
        if not create:
            raise ConfigError(
                ConfigErrorKind.MISSING_DIRECTORY,
                path,
                f"Required directory does not exist: {path}",
            )
        try:
            path.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            raise ConfigError(
                ConfigErrorKind.PERMISSION_DENIED, path, f"Cannot create directory: {path}"
            )
        logger.info(f"Created directory {path}")
    elif not path.is_dir():
        raise ConfigError(
            ConfigErrorKind.MISSING_DIRECTORY, path, f"Not a directory: {path}"
        )

    mode = os.R_OK | os.X_OK
    if writable:
        mode |= os.W_OK
    if not os.access(path, mode):
        access = "read/write" if writable else "read"
        raise ConfigError(
            ConfigErrorKind.PERMISSION_DENIED, path, f"No {access} access to directory: {path}"
        )


def _require_input_file(path: Path) -> None:
    if not path.is_file():
        raise ConfigError(
            ConfigErrorKind.MISSING_INPUT, path, f"Required input file not found: {path}"
        )
    if path.stat().st_size == 0:
        raise ConfigError(ConfigErrorKind.MISSING_INPUT, path, f"Input file is empty: {path}")
    if not os.access(path, os.R_OK):
        raise ConfigError(
            ConfigErrorKind.PERMISSION_DENIED, path, f"Input file is not readable: {path}"
        )


def validate(config: WorkspaceConfig) -> None:
    """Validate a workspace before any stage runs.

    The input directory must already exist and be readable. The output and
    temporary directories are created when absent and must be writable. The
    reference and alignment files must exist, be non-empty and readable.
    Nothing is deleted or overwritten.

    Parameters
    ----------
    config : WorkspaceConfig
        The workspace to check

    Raises
    ------
    ConfigError
        MissingDirectory, MissingInput or PermissionDenied, naming the path
    """
    _require_directory(config.input_dir, writable=False, create=False)
    _require_directory(config.output_dir, writable=True, create=True)
    _require_directory(config.temp_dir, writable=True, create=True)
    _require_input_file(config.reference_path)
    _require_input_file(config.alignment_path)
    logger.debug(
        f"Workspace validated: input={config.input_dir} output={config.output_dir} "
        f"temp={config.temp_dir}"
    )


class RunLock:
    """Exclusive lock file marking a workspace as in use by one run.

    The lock is a file created with O_EXCL in the output directory; it holds
    the owning PID and start time and is removed on release.
    """

    LOCK_FILE_NAME = ".varianttriage.lock"

    def __init__(self, output_dir: PathLike):
        self.path = Path(output_dir) / self.LOCK_FILE_NAME
        self._held = False

    def acquire(self) -> None:
        """Take the lock or raise ConfigError(WorkspaceLocked)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            owner = self.owner()
            raise ConfigError(
                ConfigErrorKind.WORKSPACE_LOCKED,
                self.path,
                f"Workspace is locked by another run ({owner or 'unknown owner'}): {self.path}",
            )
        with os.fdopen(fd, "w") as fh:
            fh.write(f"{os.getpid()} {datetime.now().isoformat()}\n")
        self._held = True
        logger.debug(f"Acquired workspace lock {self.path}")

    def release(self) -> None:
        """Remove the lock file if this instance holds it."""
        if self._held:
            try:
                self.path.unlink()
            except FileNotFoundError:
                logger.warning(f"Workspace lock already removed: {self.path}")
            self._held = False
            logger.debug(f"Released workspace lock {self.path}")

    def owner(self) -> Optional[str]:
        """Return the contents of an existing lock file, if readable."""
        try:
            return self.path.read_text().strip()
        except OSError:
            return None

    def __enter__(self):
        """Context manager entry."""
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit releasing the lock."""
        self.release()
