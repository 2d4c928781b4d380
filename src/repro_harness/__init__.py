"""Repro Harness - run test commands in isolated, reproducible sandboxes."""

__version__ = "0.1.0"

from .policy import IsolationPolicy, EnvScope, NetworkMode
from .protocol import Mount, RunSpec, RunResult, RunState, RunStatus
from .environment import EnvironmentManager, EnvironmentSnapshot
from .capabilities import registry, get_client, evaluate_flag, send_telemetry
from .guards import DependencyGuard, GuardHandle
from .cancellation import CancelToken
from .execution import RunOrchestrator
from .errors import (
    HarnessError, InvalidRunSpec, BuildFailed, SandboxError,
    GuardInstallFailed, GuardViolation, RestoreFailed, Cancelled,
)

__all__ = [
    "IsolationPolicy", "EnvScope", "NetworkMode",
    "Mount", "RunSpec", "RunResult", "RunState", "RunStatus",
    "EnvironmentManager", "EnvironmentSnapshot",
    "registry", "get_client", "evaluate_flag", "send_telemetry",
    "DependencyGuard", "GuardHandle", "CancelToken", "RunOrchestrator",
    "HarnessError", "InvalidRunSpec", "BuildFailed", "SandboxError",
    "GuardInstallFailed", "GuardViolation", "RestoreFailed", "Cancelled",
    "__version__",
]
