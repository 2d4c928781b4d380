"""Run data model: what to execute (``RunSpec``) and what came out (``RunResult``)."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Optional

from .errors import ErrorReason, InvalidRunSpec
from .policy import EnvScope, NetworkMode


class RunState(Enum):
    """Lifecycle of one orchestrated run."""
    PENDING = "pending"
    BUILDING = "building"
    STAGING = "staging"
    GUARDING = "guarding"
    RUNNING = "running"
    COLLECTING = "collecting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self in (RunState.SUCCEEDED, RunState.FAILED, RunState.ERRORED)


class RunStatus(Enum):
    """Final outcome.  ``FAILED`` = tests ran and some failed;
    ``ERRORED`` = the harness itself could not complete the run."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ERRORED = "errored"


@dataclass(frozen=True)
class Mount:
    """A host directory made visible inside the sandbox."""
    host_path: Path
    sandbox_path: str
    read_only: bool = False

    @classmethod
    def parse(cls, value: str) -> "Mount":
        """Parse ``HOST:SANDBOX[:ro|:rw]``."""
        parts = value.split(":")
        mode = "rw"
        if len(parts) == 3 and parts[2] in ("ro", "rw"):
            mode = parts.pop()
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise InvalidRunSpec(f"Invalid mount '{value}', expected HOST:SANDBOX[:ro]")
        return cls(Path(parts[0]).expanduser().resolve(), parts[1], read_only=(mode == "ro"))

    def contains(self, sandbox_path: str) -> bool:
        root = PurePosixPath(self.sandbox_path)
        path = PurePosixPath(posixpath.normpath(sandbox_path))
        return path == root or root in path.parents


@dataclass(frozen=True)
class RunSpec:
    """Immutable description of one test invocation.

    Paths named here (``workdir``, ``report_path``, ``coverage_path``) are
    sandbox paths; they are translated to host paths through ``mounts``.
    """
    command: str
    mounts: tuple[Mount, ...] = ()
    workdir: Optional[str] = None
    env_mode: EnvScope = EnvScope.TEST
    network: NetworkMode = NetworkMode.BLOCKED
    report_path: Optional[str] = None
    coverage_path: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None

    def validate(self) -> "RunSpec":
        """Return this RunSpec unchanged, or raise ``InvalidRunSpec``."""
        if not self.command or not self.command.strip():
            raise InvalidRunSpec("Run command is empty")

        seen: set[str] = set()
        for mount in self.mounts:
            if not PurePosixPath(mount.sandbox_path).is_absolute():
                raise InvalidRunSpec(f"Sandbox path must be absolute: {mount.sandbox_path}")
            normalized = posixpath.normpath(mount.sandbox_path)
            if normalized in seen:
                raise InvalidRunSpec(f"Sandbox path mounted twice: {mount.sandbox_path}")
            seen.add(normalized)
            if not Path(mount.host_path).exists():
                raise InvalidRunSpec(f"Host path does not exist: {mount.host_path}")

        if self.workdir is not None:
            if not PurePosixPath(self.workdir).is_absolute():
                raise InvalidRunSpec(f"Working directory must be absolute: {self.workdir}")
            if self.mounts and self.mount_for(self.workdir) is None:
                raise InvalidRunSpec(f"Working directory is not inside a mount: {self.workdir}")

        for label, path in (("report", self.report_path), ("coverage", self.coverage_path)):
            if path is None:
                continue
            mount = self.mount_for(path)
            if mount is None:
                raise InvalidRunSpec(f"The {label} path must lie inside a mount: {path}")
            if mount.read_only:
                raise InvalidRunSpec(f"The {label} path is on a read-only mount: {path}")

        if self.timeout is not None and self.timeout <= 0:
            raise InvalidRunSpec(f"Timeout must be positive, got {self.timeout}")
        return self

    def mount_for(self, sandbox_path: str) -> Mount | None:
        """Innermost mount containing ``sandbox_path``."""
        matches = [m for m in self.mounts if m.contains(sandbox_path)]
        if not matches:
            return None
        return max(matches, key=lambda m: len(PurePosixPath(m.sandbox_path).parts))

    def to_host_path(self, sandbox_path: str) -> Path:
        """Translate a sandbox path to the host path it is mounted from."""
        mount = self.mount_for(sandbox_path)
        if mount is None:
            raise InvalidRunSpec(f"Path is not inside any mount: {sandbox_path}")
        rel = PurePosixPath(posixpath.normpath(sandbox_path)).relative_to(mount.sandbox_path)
        return Path(mount.host_path).joinpath(*rel.parts)

    @property
    def env_isolated(self) -> bool:
        return self.env_mode != EnvScope.OFF


@dataclass(frozen=True)
class TestCounts:
    """Counts taken from the structured test report."""
    __test__ = False

    passed: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    violations: int = 0


@dataclass(frozen=True)
class RunResult:
    """Immutable outcome of one run."""
    status: RunStatus
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    reason: Optional[ErrorReason] = None
    message: str = ""
    report_path: Optional[Path] = None
    coverage_path: Optional[Path] = None
    states: tuple[RunState, ...] = ()
    build: Any = None                       # BuildReport (from sandbox.base)
    tests: Optional[TestCounts] = None
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def summary(self) -> str:
        """One-line, user-facing summary."""
        if self.status == RunStatus.ERRORED:
            why = self.message or (self.reason.value if self.reason else "unknown error")
            return f"harness could not execute tests: {why}"
        if self.tests is not None:
            failed = self.tests.failed + self.tests.errors
            line = f"tests ran, {failed} failed"
            if self.tests.passed:
                line += f", {self.tests.passed} passed"
            if self.tests.violations:
                line += f" ({self.tests.violations} guard violation(s))"
            return line
        if self.status == RunStatus.SUCCEEDED:
            return "tests ran, 0 failed"
        return f"tests ran, command exited with {self.exit_code}"


__all__ = ["RunState", "RunStatus", "Mount", "RunSpec", "TestCounts", "RunResult"]
