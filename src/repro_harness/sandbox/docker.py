"""Docker sandbox backend.

Typical lifecycle::

    sandbox = DockerSandbox()
    image = sandbox.build(definition)   # no-op when the digest label matches
    sandbox.stage(spec)                 # report directories on the host
    outcome = sandbox.run(image, spec, env, cancel)
    sandbox.close()                     # docker rm -f anything left behind

Images are content addressed: ``build()`` labels the image with the digest of
its ``ImageDefinition`` and skips the build entirely when the existing image
carries the same label.  Source and test trees are bind-mounted at run time,
so editing them never invalidates the image.

Containers run with ``--network none`` unless the run declares network
access.  Only the variables passed to ``run()`` reach the container; the host
environment never does.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import uuid
from typing import TYPE_CHECKING, Mapping, Optional

from ..cancellation import CancelToken
from ..errors import BuildFailed, Cancelled, SandboxError
from ..policy import NetworkMode
from .base import BuildReport, CommandOutcome, ImageDefinition, Sandbox, SandboxImage

if TYPE_CHECKING:
    from ..protocol import RunSpec

logger = logging.getLogger(__name__)

DIGEST_LABEL = "repro-harness.digest"
CONTAINER_PREFIX = "repro-harness-"

# docker exits 125 when `docker run` itself fails (bad image, bad flags).
DOCKER_RUN_FAILURE = 125

_STEP_RE = re.compile(r"^#(\d+) \[[^\]]*\d+/\d+\]", re.MULTILINE)
_CACHED_RE = re.compile(r"^#(\d+) CACHED", re.MULTILINE)


def count_rebuilt_layers(build_log: str) -> int:
    """Count build steps that were executed rather than taken from cache.

    Parses BuildKit ``--progress=plain`` output::

        #5 [2/4] RUN pip install -r requirements.txt
        #5 CACHED
    """
    steps = set(_STEP_RE.findall(build_log))
    cached = set(_CACHED_RE.findall(build_log))
    return len(steps - cached)


class DockerSandbox(Sandbox):
    """Executes the test command inside an ephemeral Docker container."""

    name = "docker"

    def __init__(
        self,
        *,
        docker: str = "docker",
        cpus: Optional[float] = None,
        memory: Optional[str] = None,
        max_output_bytes: int = 1_000_000,
    ) -> None:
        super().__init__(max_output_bytes=max_output_bytes)
        if shutil.which(docker) is None:
            raise SandboxError(
                "Docker is required for the docker sandbox but was not found on PATH. "
                "Install Docker (https://docs.docker.com/get-docker/) or use --sandbox local."
            )
        self.docker = docker
        self.cpus = cpus
        self.memory = memory
        self._containers: set[str] = set()

    # -- build -------------------------------------------------------------

    def build(self, definition: Optional[ImageDefinition], cancel: Optional[CancelToken] = None) -> SandboxImage:
        self._check_open()
        if definition is None:
            raise BuildFailed("The docker sandbox needs an image definition (--dockerfile)")
        cancel = cancel or CancelToken()

        digest = definition.digest()
        image = SandboxImage(tag=definition.tag, digest=digest, backend=self.name)

        if self.image_digest(definition.tag) == digest:
            logger.info("Image %s is up to date (%s)", definition.tag, digest[:12])
            self.last_build = BuildReport(image=image, rebuilt_layers=0, cached=True)
            return image

        argv = [
            self.docker, "build",
            "--progress=plain",
            "--target", definition.target,
            "--tag", definition.tag,
            "--label", f"{DIGEST_LABEL}={digest}",
            "--file", str(definition.dockerfile),
        ]
        for key in sorted(definition.build_args):
            argv += ["--build-arg", f"{key}={definition.build_args[key]}"]
        argv.append(str(definition.context))

        logger.info("Building image %s (target %s)", definition.tag, definition.target)
        outcome = self._run_process(
            argv,
            cancel=cancel,
            env={**os.environ, "DOCKER_BUILDKIT": "1"},
        )
        log = outcome.stdout + outcome.stderr
        if outcome.cancelled:
            raise Cancelled(cancel.reason or "cancelled during build")
        if outcome.exit_code != 0:
            raise BuildFailed(
                f"docker build exited with {outcome.exit_code} for {definition.tag}",
                log=log,
            )

        rebuilt = count_rebuilt_layers(log)
        self.last_build = BuildReport(image=image, rebuilt_layers=rebuilt, cached=rebuilt == 0, log=log)
        return image

    def image_digest(self, tag: str) -> Optional[str]:
        """Digest label of the local image ``tag``, or None if absent."""
        try:
            result = subprocess.run(
                [
                    self.docker, "image", "inspect",
                    "--format", f'{{{{ index .Config.Labels "{DIGEST_LABEL}" }}}}',
                    tag,
                ],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (subprocess.TimeoutExpired, OSError) as exc:
            logger.warning("docker image inspect failed: %s", exc)
            return None
        if result.returncode != 0:
            return None
        value = result.stdout.strip()
        return value if value and value != "<no value>" else None

    # -- run ---------------------------------------------------------------

    def stage(self, spec: "RunSpec") -> None:
        self._check_open()
        self._prepare_report_dirs(spec)
        if spec.network == NetworkMode.ALLOWLIST:
            logger.warning(
                "Docker sandbox has no egress filter for the host allow-list; "
                "only the in-process network guard enforces it"
            )

    def run(
        self,
        image: SandboxImage,
        spec: "RunSpec",
        env: Mapping[str, str],
        cancel: CancelToken,
    ) -> CommandOutcome:
        self._check_open()
        container = f"{CONTAINER_PREFIX}{uuid.uuid4().hex[:12]}"
        argv = self.run_args(container, image, spec, env)

        self._containers.add(container)
        try:
            outcome = self._run_process(
                argv,
                cancel=cancel,
                on_cancel=lambda: self._remove(container),
            )
        finally:
            self._remove(container)

        if outcome.exit_code == DOCKER_RUN_FAILURE and not outcome.cancelled:
            raise SandboxError(f"docker run failed: {outcome.stderr.strip()[-2000:]}")
        return outcome

    def run_args(
        self,
        container: str,
        image: SandboxImage,
        spec: "RunSpec",
        env: Mapping[str, str],
    ) -> list[str]:
        """Command line for ``docker run``."""
        network = "none" if spec.network == NetworkMode.BLOCKED else "bridge"
        argv = [
            self.docker, "run", "--rm",
            "--name", container,
            "--init",
            f"--network={network}",
            "--tmpfs", "/tmp",
        ]
        if self.cpus is not None:
            argv.append(f"--cpus={self.cpus}")
        if self.memory is not None:
            argv.append(f"--memory={self.memory}")
        for mount in spec.mounts:
            option = f"type=bind,source={mount.host_path},target={mount.sandbox_path}"
            if mount.read_only:
                option += ",readonly"
            argv += ["--mount", option]
        if spec.workdir:
            argv += ["--workdir", spec.workdir]
        for key in sorted(env):
            argv += ["--env", f"{key}={env[key]}"]
        argv += [image.tag, "sh", "-c", spec.command]
        return argv

    # -- teardown ----------------------------------------------------------

    def _remove(self, container: str) -> None:
        """Force-remove ``container``; a container that is already gone is fine."""
        if container not in self._containers:
            return
        try:
            result = subprocess.run(
                [self.docker, "rm", "-f", container],
                capture_output=True,
                text=True,
                timeout=60,
            )
        except (subprocess.TimeoutExpired, OSError) as exc:
            logger.error("Could not remove container %s: %s", container, exc)
            return
        if result.returncode != 0 and "No such container" not in result.stderr:
            logger.error("Could not remove container %s: %s", container, result.stderr.strip())
            return
        self._containers.discard(container)

    def close(self) -> None:
        for container in list(self._containers):
            self._remove(container)
        super().close()

    @property
    def live_containers(self) -> set[str]:
        return set(self._containers)

    @staticmethod
    def available(docker: str = "docker") -> bool:
        """Quick check: is Docker installed and responsive?"""
        if shutil.which(docker) is None:
            return False
        try:
            result = subprocess.run(
                [docker, "info"],
                capture_output=True,
                timeout=10,
            )
            return result.returncode == 0
        except (subprocess.TimeoutExpired, OSError):
            return False


__all__ = ["DockerSandbox", "count_rebuilt_layers", "DIGEST_LABEL"]
