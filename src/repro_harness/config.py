"""Harness configuration file (``repro-harness.yaml``).

Example::

    sandbox: docker
    timeout: 600
    image:
      dockerfile: Dockerfile
      target: test
      tag: myproject:test
      inputs: [requirements.txt, pyproject.toml]
    mounts:
      - .:/src:ro
      - ./reports:/reports
    workdir: /src
    report: /reports/report.json
    coverage: /reports/.coverage
    env_mode: test
    network: blocked
    policy:
      network: {enabled: true, allow: ["pypi.org"]}
      env-vars: {enabled: true, allow: ["CI"]}
      feature-flags: true
      telemetry: true

Relative host paths are resolved against the directory holding the file.
``REPRO_HARNESS_SANDBOX`` and ``REPRO_HARNESS_TIMEOUT`` override the file;
command-line flags override both.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from .errors import ConfigError
from .policy import EnvScope, IsolationPolicy, NetworkMode
from .protocol import Mount
from .sandbox import ImageDefinition, SandboxTier

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "repro-harness.yaml"
SANDBOX_ENV_VAR = "REPRO_HARNESS_SANDBOX"
TIMEOUT_ENV_VAR = "REPRO_HARNESS_TIMEOUT"

_KNOWN_KEYS = {
    "image", "policy", "mounts", "workdir", "report", "coverage",
    "sandbox", "timeout", "env_mode", "network", "env",
}


@dataclass
class HarnessConfig:
    """Settings read from the config file and the environment."""

    base_dir: Path = field(default_factory=Path.cwd)
    sandbox: SandboxTier = SandboxTier.AUTO
    timeout: Optional[float] = None
    image: dict[str, Any] = field(default_factory=dict)
    policy: Optional[IsolationPolicy] = None
    mounts: list[str] = field(default_factory=list)
    workdir: Optional[str] = None
    report: Optional[str] = None
    coverage: Optional[str] = None
    env_mode: Optional[EnvScope] = None
    network: Optional[NetworkMode] = None
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], base_dir: Path) -> "HarnessConfig":
        unknown = set(data) - _KNOWN_KEYS
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(sorted(unknown))}")

        image = data.get("image") or {}
        if not isinstance(image, Mapping):
            raise ConfigError("'image' must be a mapping")
        mounts = data.get("mounts") or []
        if not isinstance(mounts, list):
            raise ConfigError("'mounts' must be a list of HOST:SANDBOX[:ro] strings")
        env = data.get("env") or {}
        if not isinstance(env, Mapping):
            raise ConfigError("'env' must be a mapping")

        return cls(
            base_dir=base_dir,
            sandbox=_enum(SandboxTier, data.get("sandbox", "auto"), "sandbox"),
            timeout=_timeout(data.get("timeout")),
            image=dict(image),
            policy=IsolationPolicy.from_dict(data["policy"]) if data.get("policy") is not None else None,
            mounts=[str(m) for m in mounts],
            workdir=data.get("workdir"),
            report=data.get("report"),
            coverage=data.get("coverage"),
            env_mode=_enum(EnvScope, data["env_mode"], "env_mode") if "env_mode" in data else None,
            network=_enum(NetworkMode, data["network"], "network") if "network" in data else None,
            env={str(k): str(v) for k, v in env.items()},
        )

    def apply_env(self, environ: Mapping[str, str]) -> "HarnessConfig":
        """Apply ``REPRO_HARNESS_*`` overrides in place."""
        if environ.get(SANDBOX_ENV_VAR):
            self.sandbox = _enum(SandboxTier, environ[SANDBOX_ENV_VAR], SANDBOX_ENV_VAR)
        if environ.get(TIMEOUT_ENV_VAR):
            self.timeout = _timeout(environ[TIMEOUT_ENV_VAR])
        return self

    def resolve(self, path: str | Path) -> Path:
        """Resolve a host path relative to the config file's directory."""
        path = Path(path).expanduser()
        return path if path.is_absolute() else (self.base_dir / path).resolve()

    def parsed_mounts(self) -> list[Mount]:
        mounts = []
        for value in self.mounts:
            host, sep, rest = value.partition(":")
            if not sep:
                raise ConfigError(f"Invalid mount '{value}', expected HOST:SANDBOX[:ro]")
            mounts.append(Mount.parse(f"{self.resolve(host)}:{rest}"))
        return mounts

    def image_definition(self, **overrides: Any) -> Optional[ImageDefinition]:
        """The image recipe, or None when no Dockerfile is configured.

        Keyword overrides (from the command line) win when not None.
        """
        values = {**self.image, **{k: v for k, v in overrides.items() if v is not None}}
        if not values.get("dockerfile"):
            return None
        dockerfile = self.resolve(values["dockerfile"])
        context = self.resolve(values.get("context") or dockerfile.parent)
        build_args = values.get("build_args") or {}
        if not isinstance(build_args, Mapping):
            raise ConfigError("'image.build_args' must be a mapping")
        return ImageDefinition(
            dockerfile=dockerfile,
            context=context,
            target=values.get("target") or "test",
            tag=values.get("tag") or "repro-harness:test",
            inputs=tuple(self.resolve(p) for p in values.get("inputs") or ()),
            build_args={str(k): str(v) for k, v in build_args.items()},
        )


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> HarnessConfig:
    """Load ``path`` (or ``./repro-harness.yaml`` if present) plus env overrides.

    An explicitly named file must exist; the default file is optional.
    """
    environ = os.environ if environ is None else environ
    if path is None:
        candidate = Path.cwd() / DEFAULT_CONFIG_NAME
        config_path = candidate if candidate.exists() else None
    else:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

    if config_path is None:
        return HarnessConfig().apply_env(environ)

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    logger.debug("Loaded config from %s", config_path)
    config = HarnessConfig.from_dict(data, base_dir=config_path.resolve().parent)
    return config.apply_env(environ)


def _enum(enum_cls: Any, value: Any, key: str) -> Any:
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"Invalid {key} '{value}', expected one of: {choices}") from None


def _timeout(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid timeout '{value}'") from None
    if timeout <= 0:
        raise ConfigError(f"Timeout must be positive, got {value}")
    return timeout


__all__ = ["HarnessConfig", "load_config", "DEFAULT_CONFIG_NAME", "SANDBOX_ENV_VAR", "TIMEOUT_ENV_VAR"]
