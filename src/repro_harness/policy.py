"""Isolation policy - what a run must block or neutralize to be reproducible.

A policy is a set of named guards, each enabled or disabled and carrying an
optional allow-list of exceptions::

    policy = IsolationPolicy.strict().with_guard("network", allow={"pypi.org"})

The policy is owned by the caller and read-only during a run.  It crosses
the process boundary as JSON (``REPRO_HARNESS_POLICY``) so the test process
can install the same guards the orchestrator installed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .errors import ConfigError

# Guard names, in install order.  The most specific capability is installed
# last so that its stand-in is the one a caller hits first.
NETWORK = "network"
ENV_VARS = "env-vars"
FEATURE_FLAGS = "feature-flags"
TELEMETRY = "telemetry"

KNOWN_GUARDS: tuple[str, ...] = (NETWORK, ENV_VARS, FEATURE_FLAGS, TELEMETRY)

POLICY_ENV_VAR = "REPRO_HARNESS_POLICY"
SCOPE_ENV_VAR = "REPRO_HARNESS_ENV_SCOPE"


class EnvScope(Enum):
    """Granularity of environment-variable isolation."""
    OFF = "off"            # Ambient environment passes through
    SESSION = "session"    # Cleared once for the whole run
    TEST = "test"          # Cleared and restored around every test case


class NetworkMode(Enum):
    """Network reachability of the sandbox."""
    BLOCKED = "blocked"      # No network at all
    ALLOWLIST = "allowlist"  # Only the policy's allowed hosts
    ALLOWED = "allowed"      # Unrestricted


@dataclass(frozen=True)
class HostAllowlist:
    """Hostnames permitted through the network guard.

    Supports ``*.example.com`` wildcards, which also match ``example.com``.
    """

    hosts: frozenset[str] = frozenset()

    @classmethod
    def of(cls, hosts: Iterable[str]) -> "HostAllowlist":
        return cls(frozenset(h.strip().lower() for h in hosts if h.strip()))

    def matches(self, host: str) -> bool:
        host = host.lower().rstrip(".")
        for pattern in self.hosts:
            if pattern.startswith("*."):
                if host.endswith(pattern[1:]) or host == pattern[2:]:
                    return True
            elif host == pattern:
                return True
        return False

    def __bool__(self) -> bool:
        return bool(self.hosts)


@dataclass(frozen=True)
class GuardSpec:
    """One named guard: on/off plus exceptions."""
    enabled: bool = True
    allow: frozenset[str] = frozenset()

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "allow": sorted(self.allow)}

    @classmethod
    def from_value(cls, name: str, value: Any) -> "GuardSpec":
        """Accept ``true``/``false`` shorthand or a ``{enabled, allow}`` mapping."""
        if isinstance(value, bool):
            return cls(enabled=value)
        if isinstance(value, Mapping):
            allow = value.get("allow") or []
            if isinstance(allow, str) or not isinstance(allow, Iterable):
                raise ConfigError(f"Guard '{name}': 'allow' must be a list")
            return cls(
                enabled=bool(value.get("enabled", True)),
                allow=frozenset(str(a) for a in allow),
            )
        raise ConfigError(f"Guard '{name}': expected a boolean or mapping, got {value!r}")


@dataclass(frozen=True)
class IsolationPolicy:
    """Named guards for a run.  Unknown names are rejected."""

    guards: Mapping[str, GuardSpec] = field(default_factory=dict)

    def __post_init__(self) -> None:
        unknown = set(self.guards) - set(KNOWN_GUARDS)
        if unknown:
            raise ConfigError(
                f"Unknown guard(s): {', '.join(sorted(unknown))}. "
                f"Known guards: {', '.join(KNOWN_GUARDS)}"
            )
        object.__setattr__(self, "guards", MappingProxyType(dict(self.guards)))

    # -- constructors ------------------------------------------------------

    @classmethod
    def strict(cls) -> "IsolationPolicy":
        """Every guard enabled, no exceptions."""
        return cls({name: GuardSpec() for name in KNOWN_GUARDS})

    @classmethod
    def permissive(cls) -> "IsolationPolicy":
        """Every guard disabled."""
        return cls({name: GuardSpec(enabled=False) for name in KNOWN_GUARDS})

    @classmethod
    def from_flags(
        cls,
        *,
        network: NetworkMode = NetworkMode.BLOCKED,
        allow_hosts: Iterable[str] = (),
        env_isolation: bool = True,
        keep_env: Iterable[str] = (),
        disabled: Iterable[str] = (),
    ) -> "IsolationPolicy":
        """Build a policy from command-line style flags."""
        off = set(disabled)
        unknown = off - set(KNOWN_GUARDS)
        if unknown:
            raise ConfigError(f"Unknown guard(s): {', '.join(sorted(unknown))}")
        guards = {
            NETWORK: GuardSpec(
                enabled=network != NetworkMode.ALLOWED and NETWORK not in off,
                allow=frozenset(allow_hosts),
            ),
            ENV_VARS: GuardSpec(
                enabled=env_isolation and ENV_VARS not in off,
                allow=frozenset(keep_env),
            ),
            FEATURE_FLAGS: GuardSpec(enabled=FEATURE_FLAGS not in off),
            TELEMETRY: GuardSpec(enabled=TELEMETRY not in off),
        }
        return cls(guards)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IsolationPolicy":
        if not isinstance(data, Mapping):
            raise ConfigError(f"Policy must be a mapping, got {type(data).__name__}")
        return cls({name: GuardSpec.from_value(name, value) for name, value in data.items()})

    @classmethod
    def from_json(cls, text: str) -> "IsolationPolicy":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Policy is not valid JSON: {exc}") from exc
        return cls.from_dict(data)

    # -- queries -----------------------------------------------------------

    def enabled(self, name: str) -> bool:
        spec = self.guards.get(name)
        return spec is not None and spec.enabled

    def allow(self, name: str) -> frozenset[str]:
        spec = self.guards.get(name)
        return spec.allow if spec is not None else frozenset()

    def enabled_guards(self) -> list[str]:
        """Enabled guard names in install order."""
        return [name for name in KNOWN_GUARDS if self.enabled(name)]

    @property
    def network_mode(self) -> NetworkMode:
        if not self.enabled(NETWORK):
            return NetworkMode.ALLOWED
        return NetworkMode.ALLOWLIST if self.allow(NETWORK) else NetworkMode.BLOCKED

    @property
    def host_allowlist(self) -> HostAllowlist:
        return HostAllowlist.of(self.allow(NETWORK))

    def with_guard(self, name: str, *, enabled: bool = True, allow: Iterable[str] = ()) -> "IsolationPolicy":
        """Return a copy with one guard replaced."""
        guards = dict(self.guards)
        guards[name] = GuardSpec(enabled=enabled, allow=frozenset(allow))
        return replace(self, guards=guards)

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {name: self.guards[name].to_dict() for name in KNOWN_GUARDS if name in self.guards}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


__all__ = [
    "NETWORK",
    "ENV_VARS",
    "FEATURE_FLAGS",
    "TELEMETRY",
    "KNOWN_GUARDS",
    "POLICY_ENV_VAR",
    "SCOPE_ENV_VAR",
    "EnvScope",
    "NetworkMode",
    "HostAllowlist",
    "GuardSpec",
    "IsolationPolicy",
]
