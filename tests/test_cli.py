"""Tests for the command-line interface."""

import json

import pytest
from click.testing import CliRunner

from repro_harness.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


def run_args(workspace, *extra):
    return [
        "run", "--sandbox", "local",
        "--mount", f"{workspace}:/work",
        "--workdir", "/work",
        "--report", "/work/reports/report.json",
        *extra,
    ]


class TestRunCommand:
    """Test the run command end to end through click."""

    def test_passing_command(self, runner, workspace):
        result = runner.invoke(cli, run_args(workspace, "exit 0"))
        assert result.exit_code == 0, result.output
        assert "tests ran, 0 failed" in result.output
        report = json.loads((workspace / "reports" / "report.json").read_text())
        assert report["outcome"] == "passed"

    def test_failing_command(self, runner, workspace):
        result = runner.invoke(cli, run_args(workspace, "exit 4"))
        assert result.exit_code == 1
        assert "tests ran, 1 failed" in result.output

    def test_harness_error_exit_code(self, runner, tmp_path):
        result = runner.invoke(cli, [
            "run", "--sandbox", "local", "--mount", f"{tmp_path / 'missing'}:/work", "true",
        ])
        assert result.exit_code == 3
        assert "harness could not execute tests" in result.output

    def test_env_variables(self, runner, workspace):
        result = runner.invoke(cli, run_args(workspace, "-e", "GREETING=hi", 'test "$GREETING" = hi'))
        assert result.exit_code == 0, result.output

    def test_bad_env_pair_is_usage_error(self, runner, workspace):
        result = runner.invoke(cli, run_args(workspace, "-e", "GREETING", "true"))
        assert result.exit_code == 2

    def test_multiple_words_joined(self, runner, workspace):
        result = runner.invoke(cli, run_args(workspace, "--", "sh", "-c", "exit 0"))
        assert result.exit_code == 0, result.output

    def test_timeout(self, runner, workspace):
        result = runner.invoke(cli, run_args(workspace, "--timeout", "0.3", "sleep 30"))
        assert result.exit_code == 3
        assert "timed out" in result.output

    def test_trace_file(self, runner, workspace, tmp_path):
        trace = tmp_path / "trace.jsonl"
        result = runner.invoke(cli, run_args(workspace, "--trace", str(trace), "true"))
        assert result.exit_code == 0, result.output
        types = [json.loads(line)["type"] for line in trace.read_text().splitlines()]
        assert types[0] == "run_start"
        assert types[-1] == "run_complete"

    def test_config_file(self, runner, workspace):
        config = workspace / "repro-harness.yaml"
        config.write_text(
            "sandbox: local\n"
            "mounts: ['.:/work']\n"
            "workdir: /work\n"
            "report: /work/out/report.json\n"
        )
        result = runner.invoke(cli, ["run", "--config", str(config), "true"])
        assert result.exit_code == 0, result.output
        assert (workspace / "out" / "report.json").exists()


class TestBuildCommand:
    """Test the build command output."""

    def test_local_build(self, runner):
        result = runner.invoke(cli, ["build", "--sandbox", "local"])
        assert result.exit_code == 0, result.output
        assert "0 layer(s) rebuilt" in result.output


class TestGuardsCommand:
    """Test listing guards and the effective policy."""

    def test_lists_guards(self, runner):
        result = runner.invoke(cli, ["guards"])
        assert result.exit_code == 0
        for name in ("network", "env-vars", "feature-flags", "telemetry"):
            assert name in result.output

    def test_flags_change_policy(self, runner):
        result = runner.invoke(cli, ["guards", "--json", "--no-guard", "telemetry", "--allow-host", "pypi.org"])
        data = json.loads(result.output)
        assert data["telemetry"]["enabled"] is False
        assert data["network"]["allow"] == ["pypi.org"]

    def test_unknown_guard_rejected(self, runner):
        result = runner.invoke(cli, ["guards", "--no-guard", "clock"])
        assert result.exit_code == 2
