"""Tests for the RunOrchestrator state machine."""

import json
import time
from dataclasses import replace

import pytest

from repro_harness.cancellation import CancelToken
from repro_harness.capabilities import CapabilityRegistry
from repro_harness.errors import BuildFailed, ErrorReason, SandboxError
from repro_harness.execution import RunOrchestrator
from repro_harness.execution.orchestrator import child_env, effective_spec
from repro_harness.guards import DependencyGuard, SocketBlocker
from repro_harness.logging import TraceLogger, read_trace
from repro_harness.policy import (
    ENV_VARS,
    FEATURE_FLAGS,
    NETWORK,
    POLICY_ENV_VAR,
    SCOPE_ENV_VAR,
    TELEMETRY,
    EnvScope,
    IsolationPolicy,
    NetworkMode,
)
from repro_harness.protocol import Mount, RunSpec, RunState, RunStatus
from repro_harness.report import REPORT_ENV_VAR, TestEntry, TestReport
from repro_harness.sandbox import BuildReport, CommandOutcome, DockerSandbox, LocalSandbox, Sandbox, SandboxImage
from repro_harness.sandbox import docker as docker_module

NO_NETWORK = IsolationPolicy.strict().with_guard(NETWORK, enabled=False)


class FakeSandbox(Sandbox):
    """Scriptable sandbox that records how it was driven."""

    name = "fake"

    def __init__(self, outcome=None, build_error=None, on_run=None):
        super().__init__()
        self.outcome = outcome or CommandOutcome(0)
        self.build_error = build_error
        self.on_run = on_run
        self.calls = []
        self.env = None
        self.close_calls = 0

    def build(self, definition, cancel=None):
        self.calls.append("build")
        if self.build_error:
            raise self.build_error
        image = SandboxImage("fake:test", "digest", self.name)
        self.last_build = BuildReport(image=image, rebuilt_layers=0)
        return image

    def stage(self, spec):
        self.calls.append("stage")
        self._prepare_report_dirs(spec)

    def run(self, image, spec, env, cancel):
        self.calls.append("run")
        self.env = dict(env)
        if self.on_run:
            return self.on_run(spec, env, cancel) or self.outcome
        return self.outcome

    def close(self):
        self.close_calls += 1
        super().close()


@pytest.fixture
def guard():
    registry = CapabilityRegistry({FEATURE_FLAGS: object, TELEMETRY: object})
    return DependencyGuard(registry=registry, blocker=SocketBlocker())


@pytest.fixture
def spec(work_mount):
    return RunSpec(
        command="pytest -q",
        mounts=(work_mount,),
        workdir="/work",
        report_path="/work/reports/report.json",
    )


def orchestrate(sandbox, guard, **kwargs):
    return RunOrchestrator(sandbox_factory=lambda: sandbox, guard=guard, **kwargs)


def write_report(spec, report):
    report.write(spec.to_host_path(spec.report_path))


# ============================================================================
# Terminal outcomes
# ============================================================================

class TestOutcomes:
    """Test how exit codes and reports map to run status."""

    def test_succeeded(self, spec, guard):
        box = FakeSandbox()
        result = orchestrate(box, guard).execute(spec, NO_NETWORK)

        assert result.status == RunStatus.SUCCEEDED
        assert result.ok
        assert result.states == (
            RunState.PENDING, RunState.BUILDING, RunState.STAGING, RunState.GUARDING,
            RunState.RUNNING, RunState.COLLECTING, RunState.SUCCEEDED,
        )
        assert box.calls == ["build", "stage", "run"]
        assert box.close_calls == 1
        assert not guard.installed(FEATURE_FLAGS)

    def test_failed_tests(self, spec, guard):
        def tests_fail(spec, env, cancel):
            report = TestReport(command="pytest")
            report.add(TestEntry("test_a.py::test_ok", "passed"))
            report.add(TestEntry("test_a.py::test_ok2", "passed"))
            report.add(TestEntry(
                "test_a.py::test_flag", "failed",
                violation={"capability": FEATURE_FLAGS, "hint": "mock it", "detail": ""},
            ))
            write_report(spec, report)
            return CommandOutcome(1)

        box = FakeSandbox(on_run=tests_fail)
        result = orchestrate(box, guard).execute(spec, NO_NETWORK)

        assert result.status == RunStatus.FAILED
        assert result.states[-1] == RunState.FAILED
        assert result.tests.failed == 1
        assert result.tests.violations == 1
        assert result.summary() == "tests ran, 1 failed, 2 passed (1 guard violation(s))"
        assert result.message == result.summary()
        assert box.close_calls == 1

    def test_missing_report_written_by_harness(self, spec, guard):
        box = FakeSandbox(outcome=CommandOutcome(2, stderr="usage: pytest"))
        result = orchestrate(box, guard).execute(spec, NO_NETWORK)

        assert result.status == RunStatus.FAILED
        assert result.report_path.exists()
        data = json.loads(result.report_path.read_text())
        assert data["outcome"] == "failed"
        assert data["tests"][0]["message"] == "usage: pytest"

    def test_stale_report_is_not_reused(self, spec, guard):
        stale = TestReport(command="old")
        stale.add(TestEntry("old::test", "failed"))
        write_report(spec, stale)

        result = orchestrate(FakeSandbox(), guard).execute(spec, NO_NETWORK)
        assert result.status == RunStatus.SUCCEEDED
        assert json.loads(result.report_path.read_text())["command"] == "pytest -q"

    def test_restore_failure_in_test_process_is_errored(self, spec, guard):
        def restore_fails(spec, env, cancel):
            report = TestReport(command="pytest")
            report.set_harness_error("restore_failed", "environment differs from snapshot: PATH")
            write_report(spec, report)
            return CommandOutcome(13)

        box = FakeSandbox(on_run=restore_fails)
        result = orchestrate(box, guard).execute(spec, NO_NETWORK)

        assert result.status == RunStatus.ERRORED
        assert result.reason == ErrorReason.RESTORE_FAILED
        assert result.summary().startswith("harness could not execute tests:")
        assert box.close_calls == 1

    def test_coverage_reported_when_present(self, spec, guard):
        spec = replace(spec, coverage_path="/work/reports/.coverage")

        def writes_coverage(spec, env, cancel):
            spec.to_host_path(env["COVERAGE_FILE"]).write_text("data")

        result = orchestrate(FakeSandbox(on_run=writes_coverage), guard).execute(spec, NO_NETWORK)
        assert result.coverage_path == spec.to_host_path("/work/reports/.coverage")


# ============================================================================
# Errored runs and teardown
# ============================================================================

class TestErrored:
    """Test fatal errors at each stage."""

    def test_invalid_spec(self, guard):
        created = []
        orchestrator = RunOrchestrator(sandbox_factory=lambda: created.append(1), guard=guard)
        result = orchestrator.execute(RunSpec(command="  "), NO_NETWORK)
        assert result.status == RunStatus.ERRORED
        assert result.reason == ErrorReason.INVALID_SPEC
        assert created == []

    def test_build_failure(self, spec, guard):
        box = FakeSandbox(build_error=BuildFailed("docker build exited with 1", log="boom"))
        result = orchestrate(box, guard).execute(spec, NO_NETWORK)

        assert result.reason == ErrorReason.BUILD_FAILED
        assert result.states[-2:] == (RunState.BUILDING, RunState.ERRORED)
        assert "run" not in box.calls
        assert box.close_calls == 1

    def test_sandbox_error_during_run(self, spec, guard):
        def explode(spec, env, cancel):
            raise SandboxError("docker run failed")

        box = FakeSandbox(on_run=explode)
        result = orchestrate(box, guard).execute(spec, NO_NETWORK)
        assert result.reason == ErrorReason.SANDBOX_ERROR
        assert box.close_calls == 1
        assert not guard.installed(TELEMETRY)

    def test_guard_install_failure(self, spec):
        class BrokenRegistry(CapabilityRegistry):
            def swap_factory(self, name, factory):
                if name == TELEMETRY and factory is not None:
                    raise RuntimeError("cannot patch")
                return super().swap_factory(name, factory)

        registry = BrokenRegistry({FEATURE_FLAGS: object})
        guard = DependencyGuard(registry=registry, blocker=SocketBlocker())
        box = FakeSandbox()
        result = orchestrate(box, guard).execute(spec, NO_NETWORK)

        assert result.reason == ErrorReason.GUARD_INSTALL_FAILED
        assert result.states[-2:] == (RunState.GUARDING, RunState.ERRORED)
        assert "run" not in box.calls
        assert not guard.installed(FEATURE_FLAGS)
        assert box.close_calls == 1

    def test_unexpected_exception_still_tears_down(self, spec, guard):
        def bug(spec, env, cancel):
            raise KeyError("bug in harness")

        box = FakeSandbox(on_run=bug)
        with pytest.raises(KeyError):
            orchestrate(box, guard).execute(spec, NO_NETWORK)
        assert box.close_calls == 1
        assert not guard.installed(FEATURE_FLAGS)


class TestCancellation:
    """Test timeouts and cancellation teardown."""

    def test_timeout_cancels_run(self, spec, guard):
        def hangs(spec, env, cancel):
            deadline = time.monotonic() + 5
            while not cancel.cancelled and time.monotonic() < deadline:
                time.sleep(0.01)
            return CommandOutcome(None, cancelled=cancel.cancelled)

        box = FakeSandbox(on_run=hangs)
        result = orchestrate(box, guard).execute(replace(spec, timeout=0.2), NO_NETWORK)

        assert result.status == RunStatus.ERRORED
        assert result.reason == ErrorReason.CANCELLED
        assert "timed out" in result.message
        assert box.close_calls == 1
        assert not guard.installed(TELEMETRY)

    def test_cancelled_before_start(self, spec, guard):
        token = CancelToken()
        token.cancel("SIGINT")
        box = FakeSandbox()
        result = orchestrate(box, guard).execute(spec, NO_NETWORK, cancel=token)
        assert result.reason == ErrorReason.CANCELLED
        assert result.states == (RunState.PENDING, RunState.ERRORED)

    def test_local_command_killed(self, workspace, work_mount, guard):
        spec = RunSpec(command="sleep 30", mounts=(work_mount,), timeout=0.3)
        box = LocalSandbox()
        started = time.monotonic()
        result = orchestrate(box, guard).execute(spec, NO_NETWORK)

        assert result.reason == ErrorReason.CANCELLED
        assert time.monotonic() - started < 10
        assert box.closed
        assert box.tmp_dir is None


# ============================================================================
# Process contract
# ============================================================================

class TestChildEnvironment:
    """Test the environment handed to the test command."""

    def test_policy_handed_to_test_process(self, spec, guard):
        box = FakeSandbox()
        orchestrate(box, guard).execute(spec, NO_NETWORK)

        assert IsolationPolicy.from_json(box.env[POLICY_ENV_VAR]).to_dict() == NO_NETWORK.to_dict()
        assert box.env[SCOPE_ENV_VAR] == "test"
        assert box.env[REPORT_ENV_VAR] == "/work/reports/report.json"

    def test_kept_variables_pass_through(self, spec, monkeypatch):
        monkeypatch.setenv("CI", "true")
        monkeypatch.setenv("SECRET", "x")
        policy = IsolationPolicy.strict().with_guard(ENV_VARS, allow=["CI"])
        env = child_env(spec, policy)
        assert env["CI"] == "true"
        assert "SECRET" not in env

    def test_explicit_variables_win(self, spec):
        env = child_env(replace(spec, env={"MODE": "ci"}), NO_NETWORK)
        assert env["MODE"] == "ci"

    def test_env_guard_off_disables_isolation(self, spec):
        policy = IsolationPolicy.strict().with_guard(ENV_VARS, enabled=False)
        assert effective_spec(spec, policy).env_mode == EnvScope.OFF

    def test_allowlist_opens_blocked_network(self, spec):
        policy = IsolationPolicy.strict().with_guard(NETWORK, allow=["pypi.org"])
        assert effective_spec(spec, policy).network == NetworkMode.ALLOWLIST
        assert effective_spec(spec, IsolationPolicy.strict()).network == NetworkMode.BLOCKED


class TestTrace:
    """Test the JSONL trace of a run."""

    def test_lifecycle_events(self, spec, guard, tmp_path):
        trace_path = tmp_path / "trace.jsonl"
        with TraceLogger(output_path=trace_path, run_id="r1") as trace:
            orchestrate(FakeSandbox(), guard, trace=trace).execute(spec, NO_NETWORK)

        events = [r["type"] for r in read_trace(trace_path)]
        assert events[0] == "run_start"
        assert events[-1] == "run_complete"
        assert "build" in events
        assert events.count("guard_installed") == 2
        assert events.count("guard_released") == 2

    def test_records_share_the_trace_run_id(self, spec, guard, tmp_path):
        trace_path = tmp_path / "trace.jsonl"
        with TraceLogger(output_path=trace_path, run_id="r1") as trace:
            orchestrate(FakeSandbox(), guard, trace=trace).execute(spec, NO_NETWORK)

        records = read_trace(trace_path)
        assert {r["run_id"] for r in records} == {"r1"}
        assert all("run" not in r for r in records)
        build = next(r for r in records if r["type"] == "build")
        assert build["sandbox"] == "fake"


class TestEndToEndLocal:
    """Test real runs through the local sandbox."""

    def test_secret_unset_in_test_process(self, workspace, work_mount, guard, monkeypatch):
        monkeypatch.setenv("SECRET", "hunter2")
        spec = RunSpec(
            command='test -z "${SECRET+x}"',
            mounts=(work_mount,),
            workdir="/work",
            report_path="/work/reports/report.json",
        )
        result = orchestrate(LocalSandbox(), guard).execute(spec, NO_NETWORK)
        assert result.status == RunStatus.SUCCEEDED
        assert (workspace / "reports" / "report.json").exists()

    def test_auto_tier_without_image_runs_locally_when_docker_responds(
        self, workspace, work_mount, guard, monkeypatch
    ):
        monkeypatch.setattr(docker_module.shutil, "which", lambda name: "/usr/bin/docker")
        monkeypatch.setattr(DockerSandbox, "available", staticmethod(lambda docker="docker": True))

        spec = RunSpec(command="true", mounts=(work_mount,), workdir="/work")
        result = RunOrchestrator(guard=guard).execute(spec, NO_NETWORK)

        assert result.status == RunStatus.SUCCEEDED
        assert result.build.image.backend == "local"
        assert RunState.STAGING in result.states
