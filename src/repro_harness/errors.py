"""Error taxonomy for the harness.

Two kinds of errors exist:

* **Local to a test** - ``GuardViolation``.  Raised inside the code under
  test; pytest reports it as that test's failure and the run continues.
* **Fatal for the run** - everything else.  The orchestrator aborts the
  remaining stages, tears down the sandbox and guards, and returns an
  ``errored`` result carrying the matching ``ErrorReason``.
"""

from __future__ import annotations

from enum import Enum


class ErrorReason(Enum):
    """Why a run ended in the ``errored`` state."""
    INVALID_SPEC = "invalid_spec"
    BUILD_FAILED = "build_failed"
    SANDBOX_ERROR = "sandbox_error"
    GUARD_INSTALL_FAILED = "guard_install_failed"
    RESTORE_FAILED = "restore_failed"
    CANCELLED = "cancelled"


class HarnessError(Exception):
    """Base class for every error raised by the harness."""

    reason: ErrorReason = ErrorReason.SANDBOX_ERROR


class InvalidRunSpec(HarnessError, ValueError):
    """A ``RunSpec`` failed validation."""

    reason = ErrorReason.INVALID_SPEC


class ConfigError(HarnessError, ValueError):
    """The harness configuration file or flags are malformed."""

    reason = ErrorReason.INVALID_SPEC


class BuildFailed(HarnessError):
    """The sandbox image could not be built.

    Attributes:
        log: Combined build output, for the user to diagnose the failure.
    """

    reason = ErrorReason.BUILD_FAILED

    def __init__(self, message: str, log: str = "") -> None:
        self.log = log
        super().__init__(message)


class SandboxError(HarnessError):
    """The sandbox could not be staged, started or torn down."""

    reason = ErrorReason.SANDBOX_ERROR


class GuardInstallFailed(HarnessError):
    """A capability could not be intercepted.

    A missing guard silently defeats reproducibility, so this always aborts
    the run before any test executes.
    """

    reason = ErrorReason.GUARD_INSTALL_FAILED

    def __init__(self, capability: str, message: str) -> None:
        self.capability = capability
        super().__init__(f"Could not install '{capability}' guard: {message}")


class GuardViolation(HarnessError):
    """A guarded capability was used without being mocked.

    Attributes:
        capability: Name of the capability that was triggered.
        hint: Human-readable remediation.
    """

    def __init__(self, capability: str, hint: str, detail: str = "") -> None:
        self.capability = capability
        self.hint = hint
        self.detail = detail
        message = f"Unmocked use of guarded capability '{capability}'"
        if detail:
            message += f" ({detail})"
        super().__init__(f"{message}. {hint}")


class RestoreFailed(HarnessError):
    """The process environment could not be restored to its snapshot.

    Subsequent runs in the same process must not be trusted.

    Attributes:
        names: Variables whose value could not be restored.
    """

    reason = ErrorReason.RESTORE_FAILED

    def __init__(self, names: list[str], message: str = "") -> None:
        self.names = list(names)
        detail = message or "environment differs from snapshot"
        super().__init__(f"{detail}: {', '.join(self.names) or '<unknown>'}")


class Cancelled(HarnessError):
    """The run was cancelled from outside (timeout or signal)."""

    reason = ErrorReason.CANCELLED

    def __init__(self, why: str = "cancelled") -> None:
        self.why = why
        super().__init__(why)


__all__ = [
    "ErrorReason",
    "HarnessError",
    "InvalidRunSpec",
    "ConfigError",
    "BuildFailed",
    "SandboxError",
    "GuardInstallFailed",
    "GuardViolation",
    "RestoreFailed",
    "Cancelled",
]
