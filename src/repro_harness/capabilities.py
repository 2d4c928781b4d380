"""Capability registry - the single integration point for side-effecting clients.

Application code never constructs its network session, feature-flag client or
telemetry SDK directly.  It asks the registry::

    from repro_harness.capabilities import get_client, evaluate_flag

    session = get_client("network")
    if evaluate_flag("new-checkout", default=False, user="42"):
        ...

Lookup order is: override (a mock installed by a test), then the registered
factory.  Guards swap the factory for a stand-in, so an unmocked call fails
loudly while a mocked one never reaches the stand-in.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping

from .policy import FEATURE_FLAGS, NETWORK, TELEMETRY

Factory = Callable[[], Any]

CAPABILITIES: tuple[str, ...] = (NETWORK, FEATURE_FLAGS, TELEMETRY)


def _requests_session() -> Any:
    import requests
    return requests.Session()


class UnregisteredCapability(LookupError):
    """No factory or override exists for the requested capability."""


class CapabilityRegistry:
    """Holds one factory and an optional override per capability name."""

    def __init__(self, factories: Mapping[str, Factory] | None = None):
        self._lock = threading.RLock()
        self._factories: dict[str, Factory] = dict(factories or {})
        self._overrides: dict[str, list[Any]] = {}

    # -- registration ------------------------------------------------------

    def register(self, name: str, factory: Factory) -> None:
        """Register the real factory for ``name``."""
        with self._lock:
            self._factories[name] = factory

    def factory(self, name: str) -> Factory | None:
        with self._lock:
            return self._factories.get(name)

    def swap_factory(self, name: str, factory: Factory | None) -> Factory | None:
        """Replace the factory for ``name`` and return the previous one.

        Used by guards.  Passing ``None`` unregisters the capability.
        """
        with self._lock:
            previous = self._factories.get(name)
            if factory is None:
                self._factories.pop(name, None)
            else:
                self._factories[name] = factory
            return previous

    # -- lookup ------------------------------------------------------------

    def get(self, name: str) -> Any:
        with self._lock:
            stack = self._overrides.get(name)
            if stack:
                return stack[-1]
            factory = self._factories.get(name)
        if factory is None:
            raise UnregisteredCapability(
                f"No client registered for capability '{name}'. "
                f"Call registry.register({name!r}, factory) at startup."
            )
        return factory()

    def mocked(self, name: str) -> bool:
        with self._lock:
            return bool(self._overrides.get(name))

    @contextmanager
    def override(self, name: str, implementation: Any) -> Iterator[Any]:
        """Install ``implementation`` for ``name`` for the duration of the block.

        Overrides nest; the innermost wins.
        """
        with self._lock:
            self._overrides.setdefault(name, []).append(implementation)
        try:
            yield implementation
        finally:
            with self._lock:
                stack = self._overrides.get(name, [])
                for idx in range(len(stack) - 1, -1, -1):
                    if stack[idx] is implementation:
                        del stack[idx]
                        break
                if not stack:
                    self._overrides.pop(name, None)


class StaticFlags:
    """Dict-backed feature-flag client, handy as a mock."""

    def __init__(self, flags: Mapping[str, Any] | None = None):
        self.flags = dict(flags or {})
        self.evaluations: list[str] = []

    def evaluate(self, key: str, default: Any = None, **context: Any) -> Any:
        self.evaluations.append(key)
        return self.flags.get(key, default)


registry = CapabilityRegistry({NETWORK: _requests_session})


def get_client(name: str) -> Any:
    """Return the client for ``name`` from the default registry."""
    return registry.get(name)


def evaluate_flag(key: str, default: Any = None, **context: Any) -> Any:
    """Evaluate a feature flag through the registry's feature-flag client.

    The client must expose ``evaluate(key, default, **context)``.
    """
    return registry.get(FEATURE_FLAGS).evaluate(key, default, **context)


def send_telemetry(event: str, **fields: Any) -> None:
    """Submit a telemetry event through the registry's telemetry client.

    The client must expose ``capture(event, **fields)``.
    """
    registry.get(TELEMETRY).capture(event, **fields)


__all__ = [
    "CAPABILITIES",
    "CapabilityRegistry",
    "UnregisteredCapability",
    "StaticFlags",
    "registry",
    "get_client",
    "evaluate_flag",
    "send_telemetry",
]
