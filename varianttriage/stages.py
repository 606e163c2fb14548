# File: varianttriage/stages.py
# Location: varianttriage/varianttriage/stages.py

"""
Stage factory module.

Builds the StageSpecs of the pipeline (variant calling, then annotation)
from the command templates in the configuration. Templates use str.format
placeholders; the available names are listed in ``template_params``.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .pipeline_core.stage import StageSpec
from .pipeline_core.workspace import WorkspaceConfig

logger = logging.getLogger("varianttriage")

STAGE_ORDER = ("call", "annotate")


def template_params(cfg: Dict[str, Any], workspace: WorkspaceConfig) -> Dict[str, str]:
    """
    Collect the placeholder values shared by all stage templates.

    Parameters
    ----------
    cfg : dict
        Configuration dictionary (see config.json)
    workspace : WorkspaceConfig
        The validated workspace

    Returns
    -------
    dict
        Placeholder name to value
    """
    ws_cfg = cfg.get("workspace", {})
    ann_cfg = cfg.get("annotation", {})
    resources = cfg.get("resources", {})
    return {
        "input_dir": str(workspace.input_dir),
        "output_dir": str(workspace.output_dir),
        "temp_dir": str(workspace.temp_dir),
        "reference": str(workspace.reference_path),
        "alignment": str(workspace.alignment_path),
        "reference_name": workspace.reference_path.name,
        "alignment_name": workspace.alignment_path.name,
        "sample": str(ws_cfg.get("sample", "sample")),
        "genome": str(ann_cfg.get("genome", "")),
        "memory": str(ann_cfg.get("memory", "4g")),
        "gpus": str(resources.get("gpus", 1)),
    }


def render(template: str, params: Dict[str, str], stage: str) -> str:
    """Fill one template string, naming the stage on an unknown placeholder."""
    try:
        return template.format(**params)
    except KeyError as e:
        raise ValueError(f"Unknown placeholder {e} in template of stage '{stage}': {template}")


def build_stage(
    name: str, stage_cfg: Dict[str, Any], params: Dict[str, str], resources: Dict[str, Any]
) -> StageSpec:
    """
    Build one StageSpec from its configuration block.

    The ``inputs`` and ``output`` templates are rendered first; the command
    template can then also use ``{input}`` (first input), ``{output}`` and
    ``{output_name}``.
    """
    if "command" not in stage_cfg or "output" not in stage_cfg:
        raise ValueError(f"Stage '{name}' needs 'command' and 'output' in the configuration")

    inputs = [Path(render(t, params, name)) for t in stage_cfg.get("inputs", [])]
    output = Path(render(stage_cfg["output"], params, name))

    stage_params = dict(params)
    stage_params["input"] = str(inputs[0]) if inputs else ""
    stage_params["output"] = str(output)
    stage_params["output_name"] = output.name

    command = [render(t, stage_params, name) for t in stage_cfg["command"]]
    env = {k: render(str(v), stage_params, name) for k, v in stage_cfg.get("env", {}).items()}
    timeout = stage_cfg.get("timeout_seconds")

    spec = StageSpec(
        name=name,
        command=tuple(command),
        inputs=tuple(inputs),
        output=output,
        resources=dict(resources),
        env=env,
        stdout_to_output=bool(stage_cfg.get("stdout_to_output", False)),
        timeout=float(timeout) if timeout is not None else None,
    )
    logger.debug(f"Built stage '{name}': output={output}, inputs={[str(p) for p in inputs]}")
    return spec


def build_stages(
    cfg: Dict[str, Any],
    workspace: WorkspaceConfig,
    names: Optional[Sequence[str]] = None,
) -> List[StageSpec]:
    """
    Build the StageSpecs of the pipeline in execution order.

    Parameters
    ----------
    cfg : dict
        Configuration dictionary with a ``stages`` block
    workspace : WorkspaceConfig
        The validated workspace
    names : sequence of str, optional
        Subset of stages to build (default: every stage in STAGE_ORDER)

    Returns
    -------
    List[StageSpec]
        Stages ordered as in STAGE_ORDER
    """
    stages_cfg = cfg.get("stages", {})
    wanted = list(names) if names else list(STAGE_ORDER)
    unknown = [n for n in wanted if n not in stages_cfg]
    if unknown:
        raise ValueError(f"No configuration for stage(s): {', '.join(unknown)}")

    params = template_params(cfg, workspace)
    resources = cfg.get("resources", {})
    ordered = [n for n in STAGE_ORDER if n in wanted] + [n for n in wanted if n not in STAGE_ORDER]
    return [build_stage(n, stages_cfg[n], params, resources) for n in ordered]
