"""Abstract base for sandbox backends, plus the image and outcome types.

Backends implement four steps, always driven in this order by the
orchestrator::

    image = sandbox.build(definition)     # idempotent, content addressed
    sandbox.stage(spec)                   # mounts + report directories
    outcome = sandbox.run(image, spec, env, cancel)
    sandbox.close()                       # always, exactly once
"""

from __future__ import annotations

import hashlib
import logging
import os
import signal
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, Sequence

from ..errors import BuildFailed, SandboxError

if TYPE_CHECKING:
    from ..cancellation import CancelToken
    from ..protocol import RunSpec

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT = 1_000_000
POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class ImageDefinition:
    """Recipe for a sandbox image: ``docker build --target <target> -t <tag>``.

    ``inputs`` are the dependency/toolchain files (``requirements.txt``,
    ``pyproject.toml``, lock files) that invalidate the image.  Source and
    test trees are deliberately *not* inputs; they are mounted at run time.
    """
    dockerfile: Path
    context: Path
    target: str = "test"
    tag: str = "repro-harness:test"
    inputs: tuple[Path, ...] = ()
    build_args: Mapping[str, str] = field(default_factory=dict)

    def digest(self) -> str:
        """Content address of everything that affects the built image."""
        h = hashlib.sha256()
        try:
            h.update(Path(self.dockerfile).read_bytes())
            h.update(b"\0target\0" + self.target.encode())
            for key in sorted(self.build_args):
                h.update(f"\0arg\0{key}={self.build_args[key]}".encode())
            for path in sorted(Path(p) for p in self.inputs):
                h.update(b"\0input\0" + path.name.encode() + b"\0")
                h.update(path.read_bytes())
        except OSError as exc:
            raise BuildFailed(f"Cannot read image input: {exc}") from exc
        return h.hexdigest()


@dataclass(frozen=True)
class SandboxImage:
    """A built (or reused) image a sandbox can run."""
    tag: str
    digest: str
    backend: str


@dataclass(frozen=True)
class BuildReport:
    """What ``build()`` did."""
    image: SandboxImage
    rebuilt_layers: int = 0
    cached: bool = True
    log: str = ""


@dataclass(frozen=True)
class CommandOutcome:
    """Raw result of running the test command."""
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    cancelled: bool = False
    truncated: bool = False


class Sandbox(ABC):
    """Base for all sandbox backends."""

    name: str = "abstract"

    def __init__(self, max_output_bytes: int = DEFAULT_MAX_OUTPUT) -> None:
        self.max_output_bytes = max_output_bytes
        self.last_build: Optional[BuildReport] = None
        self._closed = False

    @abstractmethod
    def build(
        self,
        definition: Optional[ImageDefinition],
        cancel: "CancelToken | None" = None,
    ) -> SandboxImage:
        """Build or reuse the image.  Unchanged inputs do no rebuild work.

        The returned image's ``BuildReport`` is left in ``last_build``.
        """
        ...

    @abstractmethod
    def stage(self, spec: "RunSpec") -> None:
        """Prepare mounts and report directories for ``spec``."""
        ...

    @abstractmethod
    def run(
        self,
        image: SandboxImage,
        spec: "RunSpec",
        env: Mapping[str, str],
        cancel: "CancelToken",
    ) -> CommandOutcome:
        """Run ``spec.command`` with exactly the variables in ``env`` added."""
        ...

    def close(self) -> None:
        """Release every resource the sandbox allocated.  Idempotent."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "Sandbox":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # -- shared helpers ----------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise SandboxError(f"{self.name} sandbox has been closed")

    @staticmethod
    def _prepare_report_dirs(spec: "RunSpec") -> None:
        for path in (spec.report_path, spec.coverage_path):
            if path is None:
                continue
            host = spec.to_host_path(path)
            try:
                host.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise SandboxError(f"Cannot create report directory {host.parent}: {exc}") from exc

    def _decode(self, data: bytes | None) -> tuple[str, bool]:
        text = (data or b"").decode("utf-8", errors="replace")
        if len(text) > self.max_output_bytes:
            removed = len(text) - self.max_output_bytes
            return text[: self.max_output_bytes] + f"\n\n[Truncated: {removed} characters removed]", True
        return text, False

    def _run_process(
        self,
        argv: Sequence[str],
        *,
        cancel: "CancelToken",
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        on_cancel: Optional[Callable[[], None]] = None,
    ) -> CommandOutcome:
        """Run ``argv`` in its own process group, polling ``cancel``."""
        try:
            proc = subprocess.Popen(
                list(argv),
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise SandboxError(f"Cannot start {argv[0]}: {exc}") from exc

        cancelled = False
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel.cancelled:
                    cancelled = True
                    logger.info("Cancelling %s: %s", self.name, cancel.reason)
                    if on_cancel is not None:
                        on_cancel()
                    _kill_group(proc)
                    stdout, stderr = proc.communicate()
                    break

        out, out_truncated = self._decode(stdout)
        err, err_truncated = self._decode(stderr)
        return CommandOutcome(
            exit_code=proc.returncode,
            stdout=out,
            stderr=err,
            cancelled=cancelled,
            truncated=out_truncated or err_truncated,
        )


def _kill_group(proc: "subprocess.Popen[Any]") -> None:
    """Kill the process and everything it spawned."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, AttributeError):
        proc.kill()


__all__ = [
    "ImageDefinition",
    "SandboxImage",
    "BuildReport",
    "CommandOutcome",
    "Sandbox",
]
