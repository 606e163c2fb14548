"""Command-line interface for varianttriage."""

import argparse
import datetime
import logging
import shlex
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import load_config
from .pipeline_core import (
    ConfigError,
    ConfigErrorKind,
    PipelineError,
    PipelineOrchestrator,
    RunHistory,
    RunLock,
    StageRunner,
    WorkspaceConfig,
    exit_code_for,
    validate,
)
from .query import build_predicate, query
from .report import records_to_dataframe, write_html, write_tsv
from .stages import STAGE_ORDER, build_stages
from .utils import check_external_tools, is_nonempty_file
from .version import __version__

logger = logging.getLogger("varianttriage")

LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


def _add_workspace_arguments(parser: argparse.ArgumentParser) -> None:
    ws_group = parser.add_argument_group("Workspace")
    ws_group.add_argument(
        "-w",
        "--workspace",
        help="Workspace root holding input_data/output_data/temp_data (default from config)",
    )
    ws_group.add_argument("--input-dir", help="Override the input directory")
    ws_group.add_argument("--output-dir", help="Override the output directory")
    ws_group.add_argument("--temp-dir", help="Override the temporary directory")
    ws_group.add_argument(
        "-r", "--reference", help="Reference FASTA (relative paths resolve in the input dir)"
    )
    ws_group.add_argument(
        "-b", "--alignment", help="Aligned reads BAM (relative paths resolve in the input dir)"
    )
    ws_group.add_argument("-s", "--sample", help="Sample name used in output file names")


def _add_stage_arguments(parser: argparse.ArgumentParser) -> None:
    stage_group = parser.add_argument_group("Stage Execution")
    stage_group.add_argument(
        "--timeout", type=float, help="Default per-stage timeout in seconds (overrides config)"
    )
    stage_group.add_argument("--gpus", type=int, help="Number of GPUs for the variant caller")
    stage_group.add_argument("--genome", help="snpEff genome database, e.g. GRCh38.99")
    stage_group.add_argument(
        "--skip-tool-check",
        action="store_true",
        help="Do not check that the stage executables are on PATH before running",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create and return the argument parser for the varianttriage CLI."""
    parser = argparse.ArgumentParser(
        description="varianttriage: call, annotate and triage variants."
    )

    # General Options
    general_group = parser.add_argument_group("General Options")
    general_group.add_argument(
        "--version",
        action="version",
        version=f"varianttriage {__version__}",
        help="Show the current version and exit",
    )
    general_group.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARN", "ERROR"],
        default="INFO",
        help="Set the logging level",
    )
    general_group.add_argument(
        "--log-file", help="Path to a file to write logs to (in addition to stderr)."
    )
    general_group.add_argument(
        "-c",
        "--config",
        help="JSON configuration merged over the packaged defaults",
        default=None,
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    call_parser = subparsers.add_parser("call", help="Run the variant calling stage")
    _add_workspace_arguments(call_parser)
    _add_stage_arguments(call_parser)

    annotate_parser = subparsers.add_parser(
        "annotate", help="Annotate the called variants with snpEff"
    )
    _add_workspace_arguments(annotate_parser)
    _add_stage_arguments(annotate_parser)

    run_parser = subparsers.add_parser("run", help="Run calling and annotation in order")
    _add_workspace_arguments(run_parser)
    _add_stage_arguments(run_parser)
    run_parser.add_argument(
        "--resume-from",
        choices=list(STAGE_ORDER),
        help="Skip the stages before this one, reusing their existing outputs",
    )

    query_parser = subparsers.add_parser("query", help="Filter the annotated variants")
    _add_workspace_arguments(query_parser)
    query_group = query_parser.add_argument_group("Query")
    query_group.add_argument(
        "-i",
        "--input",
        help="Annotated VCF to query (default: the annotate stage output of the workspace)",
    )
    query_group.add_argument(
        "--impact",
        action="append",
        help="Impact level to keep (HIGH, MODERATE, LOW, MODIFIER); repeat for several",
    )
    query_group.add_argument(
        "--gene", action="append", help="Gene symbol to keep; repeat for several"
    )
    query_group.add_argument(
        "--consequence",
        action="append",
        help="Consequence term to keep, e.g. missense_variant; repeat for several",
    )
    query_group.add_argument(
        "--filter-status", action="append", help="FILTER value to keep, e.g. PASS"
    )
    query_group.add_argument(
        "--no-split",
        action="store_true",
        help="Report each variant once (first matching annotation) instead of once per "
        "matching annotation",
    )
    query_group.add_argument(
        "-o",
        "--output",
        help="TSV report path, or '-' for stdout (default: output dir, name from config)",
    )
    query_group.add_argument("--html", help="Also write an HTML report to this path")

    status_parser = subparsers.add_parser("status", help="Show the latest run history")
    _add_workspace_arguments(status_parser)

    return parser


def apply_overrides(args: argparse.Namespace, cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Copy CLI values that are set over the configuration."""
    ws_cfg = cfg.setdefault("workspace", {})
    for arg_name, key in (
        ("workspace", "root"),
        ("reference", "reference"),
        ("alignment", "alignment"),
        ("sample", "sample"),
    ):
        value = getattr(args, arg_name, None)
        if value:
            ws_cfg[key] = value

    if getattr(args, "timeout", None) is not None:
        cfg["timeout_seconds"] = args.timeout
    if getattr(args, "gpus", None) is not None:
        cfg.setdefault("resources", {})["gpus"] = args.gpus
    if getattr(args, "genome", None):
        cfg.setdefault("annotation", {})["genome"] = args.genome
    return cfg


def build_workspace(args: argparse.Namespace, cfg: Dict[str, Any]) -> WorkspaceConfig:
    """Build the WorkspaceConfig from config values and CLI overrides."""
    ws_cfg = cfg.get("workspace", {})
    workspace = WorkspaceConfig.from_layout(
        root=ws_cfg.get("root", "."),
        reference=ws_cfg.get("reference", ""),
        alignment=ws_cfg.get("alignment", ""),
        input_name=ws_cfg.get("input_dir", "input_data"),
        output_name=ws_cfg.get("output_dir", "output_data"),
        temp_name=ws_cfg.get("temp_dir", "temp_data"),
    )
    overrides = {}
    for name in ("input_dir", "output_dir", "temp_dir"):
        value = getattr(args, name, None)
        if value:
            overrides[name] = Path(value).resolve()
    if overrides:
        fields = {
            "input_dir": workspace.input_dir,
            "output_dir": workspace.output_dir,
            "temp_dir": workspace.temp_dir,
            "reference_path": workspace.reference_path,
            "alignment_path": workspace.alignment_path,
        }
        fields.update(overrides)
        if "input_dir" in overrides:
            # relative input names follow the input directory
            for key, name in (("reference_path", "reference"), ("alignment_path", "alignment")):
                given = Path(ws_cfg.get(name, ""))
                if not given.is_absolute():
                    fields[key] = overrides["input_dir"] / given
        workspace = WorkspaceConfig(**fields)
    return workspace


def run_stages(
    args: argparse.Namespace,
    cfg: Dict[str, Any],
    names: List[str],
    resume_from: Optional[str] = None,
) -> int:
    """
    Validate the workspace and run the named stages.

    Returns
    -------
    int
        0 on success, otherwise the exit code of the failing stage's error

    Raises
    ------
    ConfigError
        For any problem detected before the first process is launched
    """
    workspace = build_workspace(args, cfg)
    validate(workspace)

    stages = build_stages(cfg, workspace, names)
    runner = StageRunner(
        log_dir=workspace.temp_dir,
        log_tail_bytes=int(cfg.get("log_tail_bytes", 16384)),
    )
    cancel_event = threading.Event()

    with RunLock(workspace.output_dir):
        history = RunHistory(str(workspace.output_dir))
        history.load()
        orchestrator = PipelineOrchestrator(
            stages,
            runner=runner,
            timeout=cfg.get("timeout_seconds"),
            history=history,
            cancel_event=cancel_event,
        )
        start = orchestrator.resolve_index(resume_from)

        to_run = stages[start:]
        if start == 0:
            for path in to_run[0].inputs:
                if not is_nonempty_file(path):
                    raise ConfigError(
                        ConfigErrorKind.MISSING_INPUT,
                        path,
                        f"Input of stage '{to_run[0].name}' is missing or empty: {path}",
                        stage=to_run[0].name,
                    )

        if not args.skip_tool_check:
            missing = check_external_tools(sorted({s.executable for s in to_run}))
            if missing:
                raise ConfigError(
                    ConfigErrorKind.MISSING_TOOL,
                    missing[0],
                    f"Required tool(s) not found in PATH: {', '.join(missing)}",
                )

        previous_handler = _install_sigterm_handler(cancel_event)
        try:
            results = orchestrator.execute(resume_from=start)
        finally:
            if previous_handler is not None:
                signal.signal(signal.SIGTERM, previous_handler)

    last = results[-1]
    if not last.succeeded:
        error = last.error
        logger.error(f"{error}")
        if error.log_tail:
            logger.error(f"Last output of '{last.stage}':\n{error.log_tail.rstrip()}")
        return exit_code_for(error)

    for result in results:
        logger.info(f"{result.stage}: {result.output_path} ({result.duration:.1f}s)")
    return 0


def _install_sigterm_handler(cancel_event: threading.Event):
    """Turn SIGTERM into a cancellation of the running stage."""
    if threading.current_thread() is not threading.main_thread():
        return None

    def _handler(signum, frame):
        logger.warning("Received SIGTERM, cancelling the running stage")
        cancel_event.set()

    return signal.signal(signal.SIGTERM, _handler)


def run_query(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    """Filter the annotated VCF and write the report."""
    workspace = build_workspace(args, cfg)
    input_file = args.input
    if not input_file:
        input_file = str(build_stages(cfg, workspace, ["annotate"])[0].output)

    predicate = build_predicate(
        impact=args.impact,
        gene=args.gene,
        consequence=args.consequence,
        filter_status=args.filter_status,
    )
    logger.info(f"Querying {input_file} for {predicate!r}")

    variants = query(input_file, predicate, split_annotations=not args.no_split)
    df = records_to_dataframe(variants)
    if variants.skipped_lines:
        logger.warning(f"{variants.skipped_lines} malformed line(s) were skipped")

    output = args.output
    if output is None:
        query_cfg = cfg.get("query", {})
        name_template = query_cfg.get("output_name", "{sample}.triage.tsv")
        sample = cfg.get("workspace", {}).get("sample", "sample")
        output = str(workspace.output_dir / name_template.format(sample=sample))
    write_tsv(df, output)

    if args.html:
        summary = {
            "Annotated file": input_file,
            "Filter": repr(predicate),
            "Data lines read": variants.lines_read,
            "Matching records": len(df),
            "Skipped malformed lines": variants.skipped_lines,
        }
        title = cfg.get("query", {}).get("html_title", "Variant triage report")
        write_html(df, args.html, title=title, summary=summary)
    return 0


def show_status(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    """Print the latest run history of the workspace."""
    workspace = build_workspace(args, cfg)
    history = RunHistory(str(workspace.output_dir))
    if not history.load():
        print(f"No run history found in {workspace.output_dir}")
        return 0
    print(history.get_summary())
    print(f"Last successful stage: {history.last_successful_stage() or 'none'}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Run main entry point for the varianttriage CLI.

    Steps:
        1. Parse arguments.
        2. Configure logging and load config.
        3. Apply CLI overrides to the configuration.
        4. Dispatch to the subcommand.

    Every pipeline error is reported with its kind and the offending path or
    stage and mapped to a distinct exit code; tracebacks are only logged at
    DEBUG level.
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    parser = create_parser()
    args: argparse.Namespace = parser.parse_args(argv)

    logging.getLogger("varianttriage").setLevel(LOG_LEVEL_MAP[args.log_level])

    # If a log file is specified, add a file handler
    if args.log_file:
        log_file_path = Path(args.log_file)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        fh = logging.FileHandler(args.log_file)
        fh.setLevel(LOG_LEVEL_MAP[args.log_level])
        fh.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
        )
        logger.addHandler(fh)
        logger.debug(f"Logging to file enabled: {args.log_file}")

    start_time = datetime.datetime.now()
    logger.debug(f"Run started at {start_time.isoformat()}")
    invocation = sys.argv if argv is None else ["varianttriage", *argv]
    command_line = " ".join(shlex.quote(a) for a in invocation)
    logger.debug(f"Command line invocation: {command_line}")
    logger.debug(f"CLI arguments: {args}")

    try:
        cfg: Dict[str, Any] = load_config(args.config)
    except (OSError, ValueError) as e:
        logger.error(f"{e}")
        return 1
    cfg = apply_overrides(args, cfg)
    logger.debug(f"Configuration loaded: {cfg}")

    try:
        if args.command == "call":
            return run_stages(args, cfg, ["call"])
        if args.command == "annotate":
            return run_stages(args, cfg, ["annotate"])
        if args.command == "run":
            return run_stages(args, cfg, list(STAGE_ORDER), resume_from=args.resume_from)
        if args.command == "query":
            return run_query(args, cfg)
        return show_status(args, cfg)
    except PipelineError as e:
        kind = getattr(e, "kind", None)
        label = kind.value if kind is not None else type(e).__name__
        logger.error(f"[{label}] {e}")
        logger.debug("Error details", exc_info=True)
        return exit_code_for(e)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        logger.debug("Error details", exc_info=True)
        return exit_code_for(e)
    except OSError as e:
        location = f" ({e.filename})" if e.filename else ""
        logger.error(f"File system error{location}: {e.strerror or e}")
        logger.debug("Error details", exc_info=True)
        return exit_code_for(e)
    finally:
        elapsed = datetime.datetime.now() - start_time
        logger.debug(f"Finished after {elapsed.total_seconds():.1f}s")


if __name__ == "__main__":
    sys.exit(main())
