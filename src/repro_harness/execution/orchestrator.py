"""RunOrchestrator - drives one reproducible test run end to end.

State machine::

    pending → building → staging → guarding → running → collecting
                                                         ↘ succeeded | failed
    any stage ─ fatal error / cancellation ────────────→ errored

The orchestrator handles:

1. Image build (``sandbox.build()``) - idempotent, content addressed
2. Staging (``sandbox.stage()``) - mounts, report directories, stale artifacts
3. Guarding - ``DependencyGuard.install(policy)``, plus the policy handed to
   the test process through its environment
4. Running (``sandbox.run()``) - the test command, cancellable
5. Collecting - the structured report and coverage artifact
6. Teardown - guards and sandbox, from this method's own ``finally`` so it
   happens exactly once whatever the test command does
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Optional

from ..cancellation import CancelToken
from ..errors import Cancelled, ErrorReason, HarnessError
from ..guards import DependencyGuard, GuardHandle
from ..logging import TraceLogger
from ..policy import ENV_VARS, POLICY_ENV_VAR, SCOPE_ENV_VAR, EnvScope, IsolationPolicy, NetworkMode
from ..protocol import RunResult, RunSpec, RunState, RunStatus, TestCounts
from ..report import REPORT_ENV_VAR, TestReport, command_report
from ..sandbox import ImageDefinition, Sandbox, SandboxTier, select_sandbox
from ..sandbox.base import BuildReport, CommandOutcome

logger = logging.getLogger(__name__)

COVERAGE_ENV_VAR = "COVERAGE_FILE"


@dataclass
class _RunState:
    """Mutable bookkeeping for one ``execute()`` call."""
    run_id: str
    states: list[RunState] = field(default_factory=lambda: [RunState.PENDING])
    build: Optional[BuildReport] = None
    started: float = field(default_factory=time.monotonic)


class RunOrchestrator:
    """Executes a ``RunSpec`` under an ``IsolationPolicy``.

    Usage::

        orchestrator = RunOrchestrator(image=definition)
        result = orchestrator.execute(spec, IsolationPolicy.strict())
        print(result.summary())
    """

    def __init__(
        self,
        *,
        image: Optional[ImageDefinition] = None,
        sandbox_factory: Optional[Callable[[], Sandbox]] = None,
        tier: SandboxTier | str = SandboxTier.AUTO,
        guard: Optional[DependencyGuard] = None,
        trace: Optional[TraceLogger] = None,
    ):
        self.image = image
        self.sandbox_factory = sandbox_factory or (lambda: select_sandbox(tier, image=image))
        self.guard = guard or DependencyGuard()
        self.trace = trace

    def execute(
        self,
        spec: RunSpec,
        policy: IsolationPolicy,
        cancel: Optional[CancelToken] = None,
    ) -> RunResult:
        """Run ``spec`` through every stage and return its result.

        Never raises for harness failures; those become ``errored`` results.
        """
        cancel = cancel or CancelToken()
        run = _RunState(run_id=self.trace.run_id if self.trace else uuid.uuid4().hex[:8])
        sandbox: Optional[Sandbox] = None
        handles: list[GuardHandle] = []

        self._log("run_start", command=spec.command, policy=policy.to_dict())

        try:
            spec = effective_spec(spec.validate(), policy)
            if spec.timeout:
                cancel.cancel_after(spec.timeout)

            self._enter(run, RunState.BUILDING, cancel)
            sandbox = self.sandbox_factory()
            image = sandbox.build(self.image, cancel)
            run.build = sandbox.last_build
            if run.build is not None:
                self._log(
                    "build",
                    sandbox=sandbox.name,
                    image=run.build.image.tag,
                    digest=run.build.image.digest,
                    rebuilt_layers=run.build.rebuilt_layers,
                    cached=run.build.cached,
                )

            self._enter(run, RunState.STAGING, cancel)
            remove_stale_artifacts(spec)
            sandbox.stage(spec)

            self._enter(run, RunState.GUARDING, cancel)
            handles = self.guard.install(policy)
            for handle in handles:
                self._log("guard_installed", capability=handle.capability)
            env = child_env(spec, policy)

            self._enter(run, RunState.RUNNING, cancel)
            outcome = sandbox.run(image, spec, env, cancel)
            if outcome.cancelled:
                raise Cancelled(cancel.reason or "cancelled")

            self._enter(run, RunState.COLLECTING, cancel)
            result = self._collect(run, spec, outcome)

        except HarnessError as exc:
            logger.error("Run %s errored: %s", run.run_id, exc)
            result = self._errored(run, exc.reason, str(exc))
        except OSError as exc:
            logger.error("Run %s errored: %s", run.run_id, exc)
            result = self._errored(run, ErrorReason.SANDBOX_ERROR, str(exc))
        finally:
            cancel.disarm()
            self._teardown(run, handles, sandbox)

        self._log(
            "run_complete",
            status=result.status.value,
            reason=result.reason.value if result.reason else None,
            exit_code=result.exit_code,
            duration_s=round(result.duration_s, 4),
        )
        logger.info("Run %s: %s", run.run_id, result.summary())
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _enter(self, run: _RunState, state: RunState, cancel: CancelToken) -> None:
        cancel.raise_if_cancelled()
        run.states.append(state)
        logger.debug("Run %s → %s", run.run_id, state.value)
        self._log("state", state=state.value)

    def _collect(self, run: _RunState, spec: RunSpec, outcome: CommandOutcome) -> RunResult:
        report_host: Optional[Path] = None
        coverage_host: Optional[Path] = None
        report: Optional[TestReport] = None

        if spec.report_path:
            report_host = spec.to_host_path(spec.report_path)
            if report_host.exists():
                try:
                    report = TestReport.load(report_host)
                except (ValueError, KeyError, OSError) as exc:
                    logger.warning("Ignoring unreadable report %s: %s", report_host, exc)
            if report is None:
                report = command_report(spec.command, outcome.exit_code, outcome.stderr[-2000:])
                report.write(report_host)

        if spec.coverage_path:
            candidate = spec.to_host_path(spec.coverage_path)
            coverage_host = candidate if candidate.exists() else None
            if coverage_host is None:
                logger.warning("Coverage was configured but %s was not produced", candidate)

        if report is not None and report.harness_error is not None:
            error = report.harness_error
            return self._errored(
                run,
                _reason(error.get("reason")),
                error.get("message", ""),
                outcome=outcome,
                report_path=report_host,
                tests=report.counts,
            )

        tests: Optional[TestCounts] = report.counts if report is not None else None
        failed = outcome.exit_code != 0 or (report is not None and report.outcome == "failed")
        status = RunStatus.FAILED if failed else RunStatus.SUCCEEDED
        state = RunState.FAILED if failed else RunState.SUCCEEDED
        run.states.append(state)
        self._log("state", state=state.value)

        result = RunResult(
            status=status,
            exit_code=outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            report_path=report_host,
            coverage_path=coverage_host,
            states=tuple(run.states),
            build=run.build,
            tests=tests,
            duration_s=time.monotonic() - run.started,
        )
        return replace(result, message=result.summary())

    def _errored(
        self,
        run: _RunState,
        reason: ErrorReason,
        message: str,
        *,
        outcome: Optional[CommandOutcome] = None,
        report_path: Optional[Path] = None,
        tests: Optional[TestCounts] = None,
    ) -> RunResult:
        run.states.append(RunState.ERRORED)
        self._log("state", state=RunState.ERRORED.value, reason=reason.value)
        return RunResult(
            status=RunStatus.ERRORED,
            exit_code=outcome.exit_code if outcome else None,
            stdout=outcome.stdout if outcome else "",
            stderr=outcome.stderr if outcome else "",
            reason=reason,
            message=message,
            report_path=report_path,
            states=tuple(run.states),
            build=run.build,
            tests=tests,
            duration_s=time.monotonic() - run.started,
        )

    def _teardown(self, run: _RunState, handles: list[GuardHandle], sandbox: Optional[Sandbox]) -> None:
        for handle in reversed(handles):
            try:
                handle.release()
                self._log("guard_released", capability=handle.capability)
            except Exception as exc:
                logger.error("Failed to release %s guard: %s", handle.capability, exc)
        if sandbox is not None:
            try:
                sandbox.close()
            except Exception as exc:
                logger.error("Failed to close %s sandbox: %s", sandbox.name, exc)

    def _log(self, event: str, **data) -> None:
        if self.trace:
            self.trace.log(event, **data)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def effective_spec(spec: RunSpec, policy: IsolationPolicy) -> RunSpec:
    """Reconcile the declared run modes with the policy.

    Env isolation needs the ``env-vars`` guard.  A blocked network opens up
    to an allow-list only when the policy names one.
    """
    changes = {}
    if not policy.enabled(ENV_VARS) and spec.env_mode != EnvScope.OFF:
        changes["env_mode"] = EnvScope.OFF
    if spec.network == NetworkMode.BLOCKED and policy.network_mode == NetworkMode.ALLOWLIST:
        changes["network"] = NetworkMode.ALLOWLIST
    return replace(spec, **changes) if changes else spec


def child_env(spec: RunSpec, policy: IsolationPolicy) -> dict[str, str]:
    """Variables handed to the test command on top of the sandbox baseline."""
    env = {
        name: os.environ[name]
        for name in sorted(policy.allow(ENV_VARS))
        if name in os.environ
    }
    env.update(spec.env)
    env[POLICY_ENV_VAR] = policy.to_json()
    env[SCOPE_ENV_VAR] = spec.env_mode.value
    if spec.report_path:
        env[REPORT_ENV_VAR] = spec.report_path
    if spec.coverage_path:
        env[COVERAGE_ENV_VAR] = spec.coverage_path
    return env


def remove_stale_artifacts(spec: RunSpec) -> None:
    """Delete reports left by an earlier run so they are never mistaken for ours."""
    for path in (spec.report_path, spec.coverage_path):
        if path:
            spec.to_host_path(path).unlink(missing_ok=True)


def _reason(value: Optional[str]) -> ErrorReason:
    try:
        return ErrorReason(value)
    except ValueError:
        return ErrorReason.SANDBOX_ERROR


__all__ = ["RunOrchestrator", "effective_spec", "child_env", "remove_stale_artifacts"]
