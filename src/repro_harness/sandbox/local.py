"""Local pass-through sandbox - the fallback when no container runtime exists.

Runs the command directly on the host.  There is no filesystem or network
isolation here: sandbox paths are mapped back to their host directories and
reproducibility rests on the in-process guards (the pytest plugin) plus a
restricted child environment.

What it still guarantees:
- Environment: with env isolation on, the child sees only a small baseline
  (``PATH``, ``HOME``, locale), the policy's kept variables and the run's
  explicit variables.  Nothing else from the host leaks in.
- A fresh ``TMPDIR`` per run, removed at ``close()``.
- The command runs in its own process group, killed as a whole on cancel.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Mapping, Optional

from ..policy import NetworkMode
from .base import BuildReport, CommandOutcome, ImageDefinition, Sandbox, SandboxImage

if TYPE_CHECKING:
    from ..cancellation import CancelToken
    from ..protocol import RunSpec

logger = logging.getLogger(__name__)

BASELINE_ENV_VARS: tuple[str, ...] = ("PATH", "HOME", "LANG", "LC_ALL", "SYSTEMROOT")


class LocalSandbox(Sandbox):
    """Host execution with a restricted environment and an ephemeral TMPDIR.

    Example:
        >>> sandbox = LocalSandbox(keep_env={"CI"})
        >>> image = sandbox.build(None)
        >>> sandbox.stage(spec)
        >>> outcome = sandbox.run(image, spec, env={}, cancel=CancelToken())
        >>> sandbox.close()
    """

    name = "local"

    def __init__(
        self,
        *,
        keep_env: Iterable[str] = (),
        base_env: Optional[Mapping[str, str]] = None,
        max_output_bytes: int = 1_000_000,
    ) -> None:
        """
        Args:
            keep_env: Host variables passed through even when isolated.
            base_env: Host environment to draw from (defaults to ``os.environ``).
            max_output_bytes: Truncate stdout/stderr beyond this size.
        """
        super().__init__(max_output_bytes=max_output_bytes)
        self.keep_env = frozenset(keep_env)
        self._base_env = base_env
        self._tmp_dir: Optional[Path] = None

    @property
    def tmp_dir(self) -> Optional[Path]:
        return self._tmp_dir

    def build(self, definition: Optional[ImageDefinition], cancel: "CancelToken | None" = None) -> SandboxImage:
        """Nothing to build; the host is the image."""
        self._check_open()
        image = SandboxImage(tag="local", digest="local", backend=self.name)
        self.last_build = BuildReport(image=image, rebuilt_layers=0, cached=True)
        return image

    def stage(self, spec: "RunSpec") -> None:
        self._check_open()
        if self._tmp_dir is None:
            self._tmp_dir = Path(tempfile.mkdtemp(prefix="repro-harness-"))
        self._prepare_report_dirs(spec)
        if spec.network != NetworkMode.ALLOWED:
            logger.warning(
                "Local sandbox cannot restrict network at the OS level; "
                "relying on the in-process network guard"
            )

    def run(
        self,
        image: SandboxImage,
        spec: "RunSpec",
        env: Mapping[str, str],
        cancel: "CancelToken",
    ) -> CommandOutcome:
        self._check_open()
        if self._tmp_dir is None:
            self.stage(spec)

        command = translate_paths(spec.command, spec)
        child_env = self.child_env(spec, env)
        cwd = self._host_workdir(spec)
        logger.debug("Running locally in %s: %s", cwd, command)
        return self._run_process(["/bin/sh", "-c", command], cancel=cancel, cwd=cwd, env=child_env)

    def child_env(self, spec: "RunSpec", env: Mapping[str, str]) -> dict[str, str]:
        """Environment the command will see."""
        host = dict(self._base_env if self._base_env is not None else os.environ)
        if spec.env_isolated:
            allowed = set(BASELINE_ENV_VARS) | self.keep_env
            child = {k: v for k, v in host.items() if k in allowed}
        else:
            child = host
        if self._tmp_dir is not None:
            for name in ("TMPDIR", "TEMP", "TMP"):
                child[name] = str(self._tmp_dir)
        child["PYTHONDONTWRITEBYTECODE"] = "1"
        child.update({k: translate_paths(v, spec) for k, v in env.items()})
        return child

    def close(self) -> None:
        if self._tmp_dir is not None:
            shutil.rmtree(self._tmp_dir, ignore_errors=True)
            self._tmp_dir = None
        super().close()

    @staticmethod
    def _host_workdir(spec: "RunSpec") -> Optional[Path]:
        if spec.workdir is None:
            if spec.mounts:
                return Path(spec.mounts[0].host_path)
            return None
        if spec.mount_for(spec.workdir) is not None:
            return spec.to_host_path(spec.workdir)
        return Path(spec.workdir)


def translate_paths(text: str, spec: "RunSpec") -> str:
    """Replace sandbox mount points in ``text`` with their host paths.

    Only whole path prefixes are replaced: ``/src`` matches ``/src`` and
    ``/src/tests`` but not ``/srcfoo``.
    """
    roots = {
        (m.sandbox_path.rstrip("/") or "/"): str(m.host_path)
        for m in spec.mounts
    }
    if not roots:
        return text
    # One pass, longest root first, so replaced host paths are never rescanned.
    alternatives = "|".join(re.escape(r) for r in sorted(roots, key=len, reverse=True))
    pattern = re.compile(r"(?<![\w./-])(" + alternatives + r")(?=/|\s|$|[\"':;,])")
    return pattern.sub(lambda m: roots[m.group(1)], text)


__all__ = ["LocalSandbox", "BASELINE_ENV_VARS", "translate_paths"]
