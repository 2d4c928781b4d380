"""
Sandbox module - isolation backends for test execution.

Available tiers:
- LOCAL: Host subprocess, restricted environment, no OS-level isolation
- DOCKER: Full container isolation (requires Docker)

The harness auto-detects available isolation and uses the best available,
unless the caller asks for a specific tier.
"""

import logging
from enum import Enum
from typing import Iterable, Optional

from ..errors import SandboxError
from .base import BuildReport, CommandOutcome, ImageDefinition, Sandbox, SandboxImage
from .docker import DockerSandbox
from .local import LocalSandbox

logger = logging.getLogger(__name__)


class SandboxTier(Enum):
    """Isolation tiers, from least to most isolated."""
    AUTO = "auto"           # Best available
    LOCAL = "local"         # Host pass-through
    DOCKER = "docker"       # Full container


def select_sandbox(
    tier: SandboxTier | str = SandboxTier.AUTO,
    *,
    image: Optional[ImageDefinition] = None,
    keep_env: Iterable[str] = (),
    docker: str = "docker",
) -> Sandbox:
    """Create the sandbox for ``tier``.

    AUTO uses Docker only when there is an image recipe to build and Docker
    responds; otherwise it degrades to the local pass-through.
    """
    tier = SandboxTier(tier)
    if tier == SandboxTier.DOCKER:
        return DockerSandbox(docker=docker)
    if tier == SandboxTier.AUTO and image is not None and DockerSandbox.available(docker):
        try:
            return DockerSandbox(docker=docker)
        except SandboxError as exc:
            logger.warning("Docker unavailable, falling back to local sandbox: %s", exc)
    if tier == SandboxTier.AUTO:
        logger.info("Using local pass-through sandbox")
    return LocalSandbox(keep_env=keep_env)


__all__ = [
    "SandboxTier",
    "select_sandbox",
    "Sandbox",
    "SandboxImage",
    "ImageDefinition",
    "BuildReport",
    "CommandOutcome",
    "LocalSandbox",
    "DockerSandbox",
]
