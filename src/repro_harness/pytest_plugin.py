"""pytest plugin - applies the isolation policy inside the test process.

Registered through the ``pytest11`` entry point.  It does nothing unless the
harness handed it a policy (``REPRO_HARNESS_POLICY``) or ``--repro`` is given,
in which case for the whole session it:

- installs the dependency guards (network, feature flags, telemetry),
- isolates environment variables once per session or around every test,
- records guard violations per test, failing a test even if it swallowed one,
- writes the structured JSON report (``--repro-report`` / ``REPRO_HARNESS_REPORT``).

Fixtures are available whether or not the plugin is active::

    def test_checkout(feature_flags):
        feature_flags.flags["new-checkout"] = True
        assert evaluate_flag("new-checkout") is True
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import pytest

from .capabilities import StaticFlags, registry
from .environment import EnvironmentManager, EnvironmentSnapshot
from .errors import GuardInstallFailed, GuardViolation, HarnessError, RestoreFailed
from .guards import DependencyGuard, GuardHandle, release_all
from .policy import ENV_VARS, FEATURE_FLAGS, POLICY_ENV_VAR, SCOPE_ENV_VAR, EnvScope, IsolationPolicy
from .report import REPORT_ENV_VAR, TestEntry, TestReport
from .sandbox.local import BASELINE_ENV_VARS

logger = logging.getLogger(__name__)

# pytest reserves 0-5; a session the harness itself broke exits with this.
HARNESS_ERROR_EXIT = 13

# Variables the harness itself relies on survive env isolation.
_CONTRACT_ENV_VARS = (POLICY_ENV_VAR, SCOPE_ENV_VAR, REPORT_ENV_VAR, "COVERAGE_FILE")


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("repro", "reproducible test harness")
    group.addoption(
        "--repro",
        action="store_true",
        default=False,
        help="Apply the strict isolation policy even outside the harness.",
    )
    group.addoption(
        "--repro-env-scope",
        choices=[s.value for s in EnvScope],
        default=None,
        help="Environment isolation scope (default: test, or REPRO_HARNESS_ENV_SCOPE).",
    )
    group.addoption(
        "--repro-report",
        default=None,
        help="Write the structured JSON report here (default: REPRO_HARNESS_REPORT).",
    )


def pytest_configure(config: pytest.Config) -> None:
    policy_json = os.environ.get(POLICY_ENV_VAR)
    if not (config.getoption("repro") or policy_json):
        return

    policy = IsolationPolicy.from_json(policy_json) if policy_json else IsolationPolicy.strict()
    scope_value = config.getoption("repro_env_scope") or os.environ.get(SCOPE_ENV_VAR) or EnvScope.TEST.value
    scope = EnvScope(scope_value) if policy.enabled(ENV_VARS) else EnvScope.OFF
    report_path = config.getoption("repro_report") or os.environ.get(REPORT_ENV_VAR)

    session = ReproSession(
        policy=policy,
        scope=scope,
        report_path=Path(report_path) if report_path else None,
    )
    config.pluginmanager.register(session, ReproSession.plugin_name)


def pytest_unconfigure(config: pytest.Config) -> None:
    session = config.pluginmanager.get_plugin(ReproSession.plugin_name)
    if session is not None:
        config.pluginmanager.unregister(session)


class ReproSession:
    """Per-session plugin state, registered only when the harness is active."""

    plugin_name = "repro-harness-session"

    def __init__(
        self,
        policy: IsolationPolicy,
        scope: EnvScope,
        report_path: Optional[Path] = None,
        guard: Optional[DependencyGuard] = None,
        env: Optional[EnvironmentManager] = None,
    ):
        self.policy = policy
        self.scope = scope
        self.report_path = report_path
        self.guard = guard or DependencyGuard()
        self.env = env or EnvironmentManager()
        self.keep = set(BASELINE_ENV_VARS) | set(_CONTRACT_ENV_VARS) | set(policy.allow(ENV_VARS))
        self.report = TestReport(command="pytest")
        self.handles: list[GuardHandle] = []
        self._session_snapshot: Optional[EnvironmentSnapshot] = None
        self._marks: dict[str, int] = {}
        self._entries: dict[str, TestEntry] = {}
        self._violations: dict[str, dict] = {}

    # -- session -----------------------------------------------------------

    @pytest.hookimpl(tryfirst=True)
    def pytest_sessionstart(self, session: pytest.Session) -> None:
        try:
            self.handles = self.guard.install(self.policy)
            if self.scope == EnvScope.SESSION:
                self._session_snapshot = self.env.clear(self.keep)
        except (GuardInstallFailed, RestoreFailed) as exc:
            self._harness_error(exc)
            release_all(self.handles)
            self.handles = []
            self.write_report()
            pytest.exit(str(exc), returncode=HARNESS_ERROR_EXIT)
        logger.debug(
            "Isolation active: guards=%s env scope=%s",
            ",".join(h.capability for h in self.handles) or "none",
            self.scope.value,
        )

    @pytest.hookimpl(trylast=True)
    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int) -> None:
        try:
            release_all(self.handles)
        except HarnessError as exc:
            self._harness_error(exc)
        finally:
            self.handles = []
            self.guard.log.clear()

        if self._session_snapshot is not None:
            try:
                self.env.restore(self._session_snapshot)
            except RestoreFailed as exc:
                self._harness_error(exc)
            self._session_snapshot = None

        if self.report.harness_error is not None:
            session.exitstatus = HARNESS_ERROR_EXIT
        self.write_report()

    def pytest_terminal_summary(self, terminalreporter: Any) -> None:
        counts = self.report.counts
        if counts.violations:
            terminalreporter.write_sep("-", f"{counts.violations} guard violation(s)")
            for entry in self._entries.values():
                if entry.violation:
                    terminalreporter.write_line(
                        f"{entry.nodeid}: unmocked '{entry.violation['capability']}' - {entry.violation['hint']}"
                    )
        if self.report.harness_error is not None:
            terminalreporter.write_line(
                f"harness error ({self.report.harness_error['reason']}): {self.report.harness_error['message']}",
                red=True,
            )

    # -- per test ----------------------------------------------------------

    @pytest.hookimpl(hookwrapper=True)
    def pytest_runtest_protocol(self, item: pytest.Item, nextitem: Optional[pytest.Item]) -> Iterator[None]:
        self._marks[item.nodeid] = self.guard.log.mark()
        if self.scope != EnvScope.TEST:
            yield
            return

        try:
            snapshot = self.env.clear(self.keep)
        except RestoreFailed as exc:
            self._stop(item.session, exc)
            yield
            return
        try:
            yield
        finally:
            try:
                self.env.restore(snapshot)
            except RestoreFailed as exc:
                self._stop(item.session, exc)

    @pytest.hookimpl(hookwrapper=True)
    def pytest_runtest_makereport(self, item: pytest.Item, call: pytest.CallInfo) -> Iterator[None]:
        outcome = yield
        report = outcome.get_result()

        violation = None
        if call.excinfo is not None and call.excinfo.errisinstance(GuardViolation):
            exc = call.excinfo.value
            violation = {"capability": exc.capability, "hint": exc.hint, "detail": exc.detail}
        else:
            swallowed = self.guard.log.since(self._marks.get(item.nodeid, 0))
            if swallowed and call.when == "call":
                violation = swallowed[0].to_dict()
                if report.passed:
                    report.outcome = "failed"
                    report.longrepr = (
                        f"GuardViolation was raised and swallowed: unmocked use of "
                        f"'{violation['capability']}' ({violation['detail']}). {violation['hint']}"
                    )
        if violation is not None:
            self._violations.setdefault(item.nodeid, violation)

    def pytest_runtest_logreport(self, report: pytest.TestReport) -> None:
        violation = self._violations.get(report.nodeid)
        entry = self._entries.get(report.nodeid)

        if report.when == "setup":
            if report.failed:
                self._set(report, "error", violation)
            elif report.skipped:
                self._set(report, "skipped", violation)
        elif report.when == "call":
            outcome = "skipped" if report.skipped else report.outcome
            self._set(report, outcome, violation)
        elif report.when == "teardown" and report.failed:
            if entry is None or entry.outcome == "passed":
                self._set(report, "error", violation)

    # -- helpers -----------------------------------------------------------

    def _set(self, report: pytest.TestReport, outcome: str, violation: Optional[dict]) -> None:
        entry = self._entries.get(report.nodeid)
        if entry is None:
            entry = TestEntry(nodeid=report.nodeid, outcome=outcome)
            self._entries[report.nodeid] = entry
            self.report.add(entry)
        entry.outcome = outcome
        entry.duration += report.duration
        if report.longrepr is not None and outcome != "passed":
            entry.message = report.longreprtext[-2000:]
        if violation is not None and entry.violation is None:
            entry.violation = violation

    def _harness_error(self, exc: HarnessError) -> None:
        logger.error("Harness error in test process: %s", exc)
        self.report.set_harness_error(exc.reason.value, str(exc))

    def _stop(self, session: pytest.Session, exc: HarnessError) -> None:
        self._harness_error(exc)
        session.shouldstop = f"harness error: {exc}"

    def write_report(self) -> Optional[Path]:
        if self.report_path is None:
            return None
        self.report.created = time.time()
        return self.report.write(self.report_path)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def repro_env() -> EnvironmentManager:
    """The environment snapshot manager, for tests that isolate explicitly."""
    return EnvironmentManager()


@pytest.fixture
def mock_capability() -> Iterator[Callable[[str, Any], Any]]:
    """Install a mock for a guarded capability until the test ends.

    ::

        def test_upload(mock_capability):
            session = mock_capability("network", FakeSession())
    """
    with ExitStack() as stack:
        def install(name: str, implementation: Any) -> Any:
            return stack.enter_context(registry.override(name, implementation))

        yield install


@pytest.fixture
def feature_flags() -> Iterator[StaticFlags]:
    """A dict-backed feature-flag client installed as the mock."""
    flags = StaticFlags()
    with registry.override(FEATURE_FLAGS, flags):
        yield flags
