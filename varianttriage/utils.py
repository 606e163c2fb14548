# File: varianttriage/utils.py
# Location: varianttriage/varianttriage/utils.py

"""
Utility functions module.

Provides helper functions for opening (optionally gzipped) variant files,
checking tool availability, reading the tail of stage logs and rendering
commands for log messages.
"""

import gzip
import logging
import os
import shlex
import shutil
from typing import Iterable, List

logger = logging.getLogger("varianttriage")


def check_external_tools(tools: Iterable[str]) -> List[str]:
    """
    Check which external tools are missing from PATH.

    Parameters
    ----------
    tools : Iterable[str]
        Tool names (or paths) to check for availability

    Returns
    -------
    List[str]
        Tools that could not be found, empty when all are available
    """
    missing = []
    for tool in tools:
        if not shutil.which(tool):
            logger.error(f"Required tool not found in PATH: {tool}")
            missing.append(tool)
        else:
            logger.debug(f"Found tool in PATH: {tool}")
    return missing


def smart_open(filename: str, mode: str = "r", encoding: str = "utf-8"):
    """
    Open a file with automatic gzip support based on file extension.

    Parameters
    ----------
    filename : str
        Path to the file
    mode : str
        File opening mode ('r', 'w', 'rt', 'wt', etc.)
    encoding : str
        Text encoding (for text modes)

    Returns
    -------
    file object
        Opened file handle
    """
    filename = str(filename)
    if filename.endswith(".gz"):
        if "b" in mode:
            return gzip.open(filename, mode)
        # Ensure text mode for gzip
        if "t" not in mode:
            mode = mode + "t"
        return gzip.open(filename, mode, encoding=encoding)
    else:
        # For regular files, only add encoding for text mode
        if "b" not in mode:
            return open(filename, mode, encoding=encoding)
        else:
            return open(filename, mode)


def read_tail(path: str, max_bytes: int) -> str:
    """
    Return the last ``max_bytes`` bytes of a file decoded as text.

    Only the tail is read, so memory stays bounded regardless of how much a
    tool logged. A cut multi-byte character at the start is replaced.

    Parameters
    ----------
    path : str
        Path to the log file
    max_bytes : int
        Maximum number of bytes to keep

    Returns
    -------
    str
        The decoded tail, or an empty string if the file does not exist
    """
    if not os.path.exists(path):
        return ""
    size = os.path.getsize(path)
    with open(path, "rb") as fh:
        if size > max_bytes:
            fh.seek(size - max_bytes)
        data = fh.read()
    text = data.decode("utf-8", errors="replace")
    if size > max_bytes:
        return f"[... {size - max_bytes} bytes truncated ...]\n{text}"
    return text


def is_nonempty_file(path) -> bool:
    """Return True if ``path`` is an existing regular file with content."""
    return os.path.isfile(path) and os.path.getsize(path) > 0


def format_command(cmd: Iterable[str]) -> str:
    """Render an argument list as a copy-pasteable shell command."""
    return " ".join(shlex.quote(str(part)) for part in cmd)
