"""Tests for the command-line interface and its exit codes."""

import json
import signal
import threading

import pandas as pd
import pytest

from mocks import create_annotated_vcf, create_test_workspace, python_tool, tool_config
from varianttriage.cli import _install_sigterm_handler, create_parser, main
from varianttriage.pipeline_core import RunHistory, RunLock


@pytest.fixture
def project(tmp_path):
    """Workspace, annotated fixture VCF and a matching config file."""
    root = tmp_path / "project"
    workspace = create_test_workspace(root)
    source = create_annotated_vcf(tmp_path / "fixture.ann.vcf")
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps(tool_config(root, source)))
    return workspace, str(config_path)


def write_config(tmp_path, cfg):
    path = tmp_path / "custom_config.json"
    path.write_text(json.dumps(cfg))
    return str(path)


# Sends SIGTERM to the varianttriage process, then keeps running until terminated
SIGNAL_PARENT_THEN_SLEEP = (
    "import os, signal, time\n"
    "os.kill(os.getppid(), signal.SIGTERM)\n"
    "time.sleep(60)\n"
)


class TestParser:
    """Test argument parsing."""

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args([])

    def test_query_filters_repeat(self):
        args = create_parser().parse_args(
            ["query", "--impact", "HIGH", "--impact", "MODERATE", "--gene", "DNMT3B"]
        )
        assert args.impact == ["HIGH", "MODERATE"]
        assert args.gene == ["DNMT3B"]
        assert not args.no_split

    def test_resume_choices(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["run", "--resume-from", "filter"])

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            create_parser().parse_args(["--version"])
        assert exc_info.value.code == 0
        assert "varianttriage" in capsys.readouterr().out


class TestRunExitCodes:
    """Each failure kind maps to its own exit code."""

    def test_success(self, project):
        workspace, config = project
        assert main(["-c", config, "run"]) == 0
        assert (workspace.output_dir / "sample.ann.vcf").stat().st_size > 0

    def test_missing_input_directory(self, tmp_path):
        cfg = tool_config(tmp_path / "nowhere", tmp_path / "x.vcf")
        assert main(["-c", write_config(tmp_path, cfg), "run"]) == 11

    def test_missing_reference(self, project):
        workspace, config = project
        workspace.reference_path.unlink()
        assert main(["-c", config, "run"]) == 10

    def test_missing_tool(self, project, tmp_path):
        workspace, config = project
        cfg = json.loads(open(config).read())
        cfg["stages"]["call"]["command"] = ["varianttriage-no-such-caller", "{reference}"]
        assert main(["-c", write_config(tmp_path, cfg), "run"]) == 15

    def test_skip_tool_check_reports_launch_failure(self, project, tmp_path):
        workspace, config = project
        cfg = json.loads(open(config).read())
        cfg["stages"]["call"]["command"] = ["varianttriage-no-such-caller"]
        assert main(["-c", write_config(tmp_path, cfg), "run", "--skip-tool-check"]) == 20

    def test_tool_failure(self, project, tmp_path, caplog):
        workspace, config = project
        cfg = tool_config(workspace.input_dir.parent, tmp_path / "x.vcf", fail_stage="call")

        code = main(["-c", write_config(tmp_path, cfg), "run"])

        assert code == 20
        assert "fatal: tool crashed" in caplog.text
        assert not (workspace.output_dir / "sample.ann.vcf").exists()

    def test_stale_resume(self, project):
        workspace, config = project
        assert main(["-c", config, "run", "--resume-from", "annotate"]) == 14

    def test_workspace_locked(self, project):
        workspace, config = project
        workspace.output_dir.mkdir()
        with RunLock(workspace.output_dir):
            assert main(["-c", config, "run"]) == 16

    def test_annotate_without_called_vcf(self, project):
        """The annotate subcommand needs the caller's output."""
        workspace, config = project
        assert main(["-c", config, "annotate"]) == 10

    def test_bad_config_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{")
        assert main(["-c", str(path), "status"]) == 1

    def test_config_path_is_directory(self, tmp_path):
        assert main(["-c", str(tmp_path), "status"]) == 1

    def test_config_without_stages(self, tmp_path):
        """A user file that drops the stages is rejected before anything runs."""
        path = write_config(tmp_path, {"stages": None})
        assert main(["-c", path, "run"]) == 1

    @pytest.mark.parametrize("timeout", ["0", "-5"])
    def test_non_positive_timeout(self, project, timeout):
        """A zero or negative --timeout is rejected before any stage runs."""
        workspace, config = project
        assert main(["-c", config, "run", "--timeout", timeout]) == 1
        assert not (workspace.output_dir / "sample.vcf").exists()

    def test_sigterm_cancels_running_stage(self, project, tmp_path):
        """SIGTERM during a stage terminates the tool and exits with Cancelled."""
        workspace, config = project
        cfg = json.loads(open(config).read())
        cfg["stages"]["call"]["command"] = python_tool(SIGNAL_PARENT_THEN_SLEEP)
        handler_before = signal.getsignal(signal.SIGTERM)

        code = main(["-c", write_config(tmp_path, cfg), "run"])

        assert code == 23
        assert signal.getsignal(signal.SIGTERM) is handler_before
        assert not (workspace.output_dir / "sample.ann.vcf").exists()
        history = RunHistory(str(workspace.output_dir))
        assert history.load()
        assert history.results()[-1].error.kind.value == "Cancelled"


class TestStages:
    """Run single stages and resume."""

    def test_call_then_annotate(self, project):
        workspace, config = project
        assert main(["-c", config, "call"]) == 0
        assert (workspace.output_dir / "sample.vcf").read_text().endswith("called\n")
        assert main(["-c", config, "annotate"]) == 0
        assert "DNMT3B" in (workspace.output_dir / "sample.ann.vcf").read_text()

    def test_resume_after_call(self, project):
        workspace, config = project
        assert main(["-c", config, "call"]) == 0
        assert main(["-c", config, "run", "--resume-from", "annotate"]) == 0

        history = RunHistory(str(workspace.output_dir))
        assert history.load()
        assert [r.stage for r in history.results()] == ["annotate"]

    def test_logs_in_temp_dir(self, project):
        workspace, config = project
        main(["-c", config, "run"])
        assert (workspace.temp_dir / "call.log").exists()
        assert (workspace.temp_dir / "annotate.log").exists()


class TestQueryCommand:
    """Test the query subcommand."""

    def test_query_explicit_input(self, project, tmp_path):
        workspace, config = project
        source = create_annotated_vcf(tmp_path / "in.vcf")
        out = tmp_path / "hits.tsv"

        code = main(
            ["-c", config, "query", "-i", str(source), "--impact", "MODERATE",
             "--gene", "DNMT3B", "-o", str(out)]
        )

        assert code == 0
        df = pd.read_csv(out, sep="\t", dtype=str)
        assert len(df) == 1
        assert df.loc[0, "GENE"] == "DNMT3B"
        assert df.loc[0, "HGVS_P"] == "p.Arg365Cys"

    def test_query_defaults_to_workspace_output(self, project):
        workspace, config = project
        assert main(["-c", config, "run"]) == 0

        assert main(["-c", config, "query", "--gene", "BRCA1"]) == 0

        df = pd.read_csv(workspace.output_dir / "sample.triage.tsv", sep="\t", dtype=str)
        assert list(df["GENE"]) == ["BRCA1"]

    def test_query_html(self, project, tmp_path):
        workspace, config = project
        source = create_annotated_vcf(tmp_path / "in.vcf")
        html = tmp_path / "report.html"

        code = main(
            ["-c", config, "query", "-i", str(source), "-o", str(tmp_path / "all.tsv"),
             "--html", str(html)]
        )

        assert code == 0
        text = html.read_text()
        assert "<title>Triage</title>" in text
        assert "Matching records" in text

    def test_query_missing_file(self, project, tmp_path):
        workspace, config = project
        code = main(["-c", config, "query", "-i", str(tmp_path / "absent.vcf")])
        assert code == 30

    def test_query_output_is_directory(self, project, tmp_path, caplog):
        """An unwritable report path is logged and exits with 1, without a traceback."""
        workspace, config = project
        source = create_annotated_vcf(tmp_path / "in.vcf")
        target = tmp_path / "reports"
        target.mkdir()

        code = main(["-c", config, "query", "-i", str(source), "-o", str(target)])

        assert code == 1
        assert "File system error" in caplog.text
        assert str(target) in caplog.text

    def test_query_html_is_directory(self, project, tmp_path):
        workspace, config = project
        source = create_annotated_vcf(tmp_path / "in.vcf")
        html_dir = tmp_path / "report.html"
        html_dir.mkdir()

        code = main(
            ["-c", config, "query", "-i", str(source), "-o", str(tmp_path / "all.tsv"),
             "--html", str(html_dir)]
        )

        assert code == 1
        assert (tmp_path / "all.tsv").exists()


class TestStatusCommand:
    """Test the status subcommand."""

    def test_no_history(self, project, capsys):
        workspace, config = project
        assert main(["-c", config, "status"]) == 0
        assert "No run history" in capsys.readouterr().out

    def test_after_run(self, project, capsys):
        workspace, config = project
        main(["-c", config, "run"])
        capsys.readouterr()

        assert main(["-c", config, "status"]) == 0

        out = capsys.readouterr().out
        assert "call: success" in out
        assert "annotate: success" in out
        assert "Last successful stage: annotate" in out

    def test_after_failure(self, project, tmp_path, capsys):
        """The last successful stage tells where to resume."""
        workspace, config = project
        cfg = tool_config(workspace.input_dir.parent, tmp_path / "x.vcf", fail_stage="annotate")
        assert main(["-c", write_config(tmp_path, cfg), "run"]) == 20
        capsys.readouterr()

        assert main(["-c", config, "status"]) == 0

        assert "Last successful stage: call" in capsys.readouterr().out

    def test_partial_config_uses_defaults(self, project, tmp_path, capsys):
        """A config file holding only the workspace root falls back to the defaults."""
        workspace, _ = project
        path = write_config(tmp_path, {"workspace": {"root": str(workspace.input_dir.parent)}})

        assert main(["-c", path, "status"]) == 0

        assert str(workspace.output_dir) in capsys.readouterr().out


class TestSigtermHandler:
    """Test the SIGTERM to cancellation wiring."""

    def test_handler_sets_cancel_event(self):
        cancel_event = threading.Event()
        previous = _install_sigterm_handler(cancel_event)
        try:
            handler = signal.getsignal(signal.SIGTERM)
            assert handler is not previous
            handler(signal.SIGTERM, None)
            assert cancel_event.is_set()
        finally:
            signal.signal(signal.SIGTERM, previous)

    def test_not_installed_outside_main_thread(self):
        """Signal handlers can only be set from the main thread."""
        installed = []
        thread = threading.Thread(
            target=lambda: installed.append(_install_sigterm_handler(threading.Event()))
        )
        thread.start()
        thread.join()
        assert installed == [None]
