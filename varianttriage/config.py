# File: varianttriage/config.py
# Location: varianttriage/varianttriage/config.py

"""
Configuration management module.

The packaged config.json holds every default: the workspace layout, the
stage command templates and the query report settings. A user file given
with ``-c`` only needs the keys it changes; it is merged over the defaults
key by key, so nested sections such as ``workspace`` or a single stage can
be overridden without repeating the rest.
"""

import copy
import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger("varianttriage")

DEFAULT_CONFIG_FILE = os.path.join(os.path.dirname(__file__), "config.json")

REQUIRED_SECTIONS = ("workspace", "stages")
REQUIRED_STAGE_KEYS = ("command", "output")


def _read_json(config_file: str) -> Dict[str, Any]:
    if not os.path.exists(config_file):
        raise FileNotFoundError(f"Configuration file '{config_file}' not found.")

    with open(config_file, "r", encoding="utf-8") as f:
        try:
            config = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Error parsing JSON configuration in '{config_file}': {e}")

    if not isinstance(config, dict):
        raise ValueError(f"Configuration in '{config_file}' must be a JSON object.")
    return config


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge ``override`` over ``base`` and return a new dictionary.

    Nested dictionaries are merged recursively. Any other value, lists
    included, replaces the value in ``base`` as a whole.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: Dict[str, Any]) -> None:
    """
    Check that the sections the pipeline relies on are present.

    Raises
    ------
    ValueError
        If ``workspace`` or ``stages`` is missing or not an object, or a
        stage lacks a command or an output template.
    """
    for section in REQUIRED_SECTIONS:
        if not isinstance(config.get(section), dict):
            raise ValueError(f"Configuration must contain a '{section}' object.")

    for name, stage_cfg in config["stages"].items():
        if not isinstance(stage_cfg, dict):
            raise ValueError(f"Configuration of stage '{name}' must be a JSON object.")
        missing = [key for key in REQUIRED_STAGE_KEYS if not stage_cfg.get(key)]
        if missing:
            raise ValueError(f"Stage '{name}' is missing required key(s): {', '.join(missing)}")
        if not isinstance(stage_cfg["command"], list):
            raise ValueError(f"Command of stage '{name}' must be a list of arguments.")


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the packaged defaults, merged with an optional user configuration.

    Parameters
    ----------
    config_file : str, optional
        Path to a JSON configuration file. Its keys override the packaged
        'config.json'; when None, the defaults are returned as they are.

    Returns
    -------
    dict
        The merged and validated configuration.

    Raises
    ------
    FileNotFoundError
        If the specified configuration file does not exist.
    ValueError
        If a file cannot be parsed, is not a JSON object, or the merged
        configuration lacks a required section.
    """
    config = _read_json(DEFAULT_CONFIG_FILE)
    if config_file:
        logger.debug(f"Merging configuration from {config_file} over the defaults")
        config = merge_config(config, _read_json(config_file))
    validate_config(config)
    return config
