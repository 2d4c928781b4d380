"""External dependency guard - make unmocked use of side-effecting services fail.

``DependencyGuard.install(policy)`` swaps the registry factory of every
disabled capability (network, feature flags, telemetry) for a stand-in whose
every call raises ``GuardViolation``.  The network guard also blocks outgoing
socket connections from the process, except AF_UNIX sockets and hosts on the
policy's allow-list.

Installation is reference counted per capability, so installing twice hands
back the same stand-in instead of a stand-in wrapping a stand-in, and the
real factory comes back only when the last handle is released::

    guard = DependencyGuard()
    handles = guard.install(IsolationPolicy.strict())
    try:
        run_tests()
    finally:
        for handle in handles:
            handle.release()
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from .capabilities import CAPABILITIES, CapabilityRegistry, registry as default_registry
from .errors import GuardInstallFailed, GuardViolation
from .policy import FEATURE_FLAGS, NETWORK, TELEMETRY, HostAllowlist, IsolationPolicy

logger = logging.getLogger(__name__)

# Violations kept in memory per log and per installed guard.
MAX_VIOLATIONS = 1000

REMEDIATION: dict[str, str] = {
    NETWORK: (
        "Mock the network client with registry.override('network', ...) "
        "or add the host to the network allow-list."
    ),
    FEATURE_FLAGS: (
        "Mock this dependency (e.g. the 'feature_flags' fixture or "
        "registry.override('feature-flags', StaticFlags({...}))) or inject it explicitly."
    ),
    TELEMETRY: (
        "Mock this dependency with registry.override('telemetry', ...) "
        "or inject it explicitly."
    ),
}


# ---------------------------------------------------------------------------
# Violation log
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ViolationRecord:
    """One triggered ``GuardViolation``."""
    capability: str
    hint: str
    detail: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"capability": self.capability, "hint": self.hint, "detail": self.detail}


class ViolationLog:
    """Process-wide record of recent violations.

    Marks are absolute positions, so they stay valid after old records are
    dropped (past ``max_records``) or cleared.
    """

    def __init__(self, max_records: int = MAX_VIOLATIONS) -> None:
        self._lock = threading.Lock()
        self._records: list[ViolationRecord] = []
        self._dropped = 0
        self.max_records = max_records

    def record(self, violation: GuardViolation) -> ViolationRecord:
        entry = ViolationRecord(violation.capability, violation.hint, violation.detail)
        with self._lock:
            self._records.append(entry)
            excess = len(self._records) - self.max_records
            if excess > 0:
                del self._records[:excess]
                self._dropped += excess
        return entry

    def mark(self) -> int:
        """Position to pass to ``since()`` later."""
        with self._lock:
            return self._dropped + len(self._records)

    def since(self, mark: int) -> list[ViolationRecord]:
        with self._lock:
            return list(self._records[max(mark - self._dropped, 0):])

    def clear(self) -> None:
        with self._lock:
            self._dropped += len(self._records)
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


violation_log = ViolationLog()


# ---------------------------------------------------------------------------
# Stand-ins
# ---------------------------------------------------------------------------

class GuardedClient:
    """Stand-in for a guarded client: every call raises ``GuardViolation``."""

    def __init__(self, capability: str, hint: str, on_violation: Callable[[GuardViolation], None]):
        self._capability = capability
        self._hint = hint
        self._on_violation = on_violation

    def __getattr__(self, item: str) -> Any:
        if item.startswith("__"):
            raise AttributeError(item)

        def _blocked(*args: Any, **kwargs: Any) -> Any:
            self._violate(f"{item}()")

        return _blocked

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        self._violate("call")

    def _violate(self, detail: str) -> None:
        violation = GuardViolation(self._capability, self._hint, detail)
        self._on_violation(violation)
        raise violation

    def __repr__(self) -> str:
        return f"<GuardedClient {self._capability}>"


class SocketBlocker:
    """Blocks ``socket.socket.connect`` / ``connect_ex`` for non-allowed hosts.

    Process global and reference counted; the allow-list of the first
    installation is kept until the last release.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._refcount = 0
        self._originals: dict[str, Any] = {}
        self._inherited: set[str] = set()
        self._allowlist = HostAllowlist()
        self._allowed_ips: set[str] = set()
        self._on_violation: Callable[[GuardViolation], None] = lambda v: None

    @property
    def active(self) -> bool:
        return self._refcount > 0

    def acquire(self, allowlist: HostAllowlist, on_violation: Callable[[GuardViolation], None]) -> None:
        with self._lock:
            if self._refcount == 0:
                self._allowlist = allowlist
                self._allowed_ips = self._resolve(allowlist)
                self._on_violation = on_violation
                self._patch()
            self._refcount += 1

    def release(self) -> None:
        with self._lock:
            if self._refcount == 0:
                return
            self._refcount -= 1
            if self._refcount == 0:
                self._unpatch()

    def allowed(self, address: Any, family: int) -> bool:
        if family == getattr(socket, "AF_UNIX", None):
            return True
        if not isinstance(address, tuple) or not address:
            return False
        host = str(address[0])
        return host in self._allowed_ips or self._allowlist.matches(host)

    @staticmethod
    def _resolve(allowlist: HostAllowlist) -> set[str]:
        ips: set[str] = set()
        for host in allowlist.hosts:
            if host.startswith("*."):
                continue
            try:
                for info in socket.getaddrinfo(host, None):
                    ips.add(str(info[4][0]))
            except (socket.gaierror, UnicodeError):
                logger.warning("Allow-listed host %s does not resolve", host)
        return ips

    def _patch(self) -> None:
        blocker = self
        cls = socket.socket
        self._originals = {"connect": cls.connect, "connect_ex": cls.connect_ex}
        self._inherited = {name for name in self._originals if name not in vars(cls)}
        original_connect = self._originals["connect"]
        original_connect_ex = self._originals["connect_ex"]

        def _check(sock: socket.socket, address: Any) -> None:
            if not blocker.allowed(address, sock.family):
                target = ":".join(str(part) for part in address[:2]) if isinstance(address, tuple) else str(address)
                violation = GuardViolation(NETWORK, REMEDIATION[NETWORK], f"connect to {target}")
                blocker._on_violation(violation)
                raise violation

        def guarded_connect(sock: socket.socket, address: Any) -> None:
            _check(sock, address)
            return original_connect(sock, address)

        def guarded_connect_ex(sock: socket.socket, address: Any) -> int:
            _check(sock, address)
            return original_connect_ex(sock, address)

        cls.connect = guarded_connect  # type: ignore[method-assign]
        cls.connect_ex = guarded_connect_ex  # type: ignore[method-assign]

    def _unpatch(self) -> None:
        for name, original in self._originals.items():
            if name in self._inherited:
                delattr(socket.socket, name)
            else:
                setattr(socket.socket, name, original)
        self._originals = {}
        self._inherited = set()
        self._allowed_ips = set()


socket_blocker = SocketBlocker()


# ---------------------------------------------------------------------------
# Handles and the guard itself
# ---------------------------------------------------------------------------

@dataclass
class _Installation:
    original: Callable[[], Any] | None
    stand_in: GuardedClient
    refcount: int = 0
    violations: deque[ViolationRecord] = field(default_factory=lambda: deque(maxlen=MAX_VIOLATIONS))


class GuardHandle:
    """One active interception, released exactly once."""

    def __init__(self, capability: str, guard: "DependencyGuard"):
        self.capability = capability
        self._guard = guard
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released

    @property
    def stand_in(self) -> GuardedClient | None:
        inst = self._guard._lookup(self.capability)
        return inst.stand_in if inst else None

    @property
    def violations(self) -> list[ViolationRecord]:
        inst = self._guard._lookup(self.capability)
        return list(inst.violations) if inst else []

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._guard._release(self.capability)

    def __repr__(self) -> str:
        state = "active" if self.active else "released"
        return f"<GuardHandle {self.capability} {state}>"


# Installations are shared by every DependencyGuard bound to the same
# registry, keyed by (id(registry), capability).
_installations: dict[tuple[int, str], _Installation] = {}
_installations_lock = threading.RLock()


class DependencyGuard:
    """Installs stand-ins for the capabilities a policy disables."""

    def __init__(
        self,
        registry: CapabilityRegistry | None = None,
        log: ViolationLog | None = None,
        blocker: SocketBlocker | None = None,
    ):
        self.registry = registry if registry is not None else default_registry
        self.log = log if log is not None else violation_log
        self.blocker = blocker if blocker is not None else socket_blocker

    def install(self, policy: IsolationPolicy) -> list[GuardHandle]:
        """Install every enabled capability guard in deterministic order.

        Raises:
            GuardInstallFailed: after releasing the guards already installed.
        """
        handles: list[GuardHandle] = []
        for name in policy.enabled_guards():
            if name not in CAPABILITIES:
                continue
            try:
                handles.append(self._install(name, policy))
            except Exception as exc:
                for handle in reversed(handles):
                    handle.release()
                if isinstance(exc, GuardInstallFailed):
                    raise
                raise GuardInstallFailed(name, str(exc)) from exc
        return handles

    def installed(self, capability: str) -> bool:
        return self._lookup(capability) is not None

    # -- internals ---------------------------------------------------------

    def _key(self, capability: str) -> tuple[int, str]:
        return (id(self.registry), capability)

    def _lookup(self, capability: str) -> _Installation | None:
        with _installations_lock:
            return _installations.get(self._key(capability))

    def _install(self, name: str, policy: IsolationPolicy) -> GuardHandle:
        key = self._key(name)
        with _installations_lock:
            inst = _installations.get(key)
            if inst is None:
                stand_in = GuardedClient(name, REMEDIATION[name], self._on_violation)
                if name == NETWORK:
                    self.blocker.acquire(policy.host_allowlist, self._on_violation)
                try:
                    original = self.registry.swap_factory(name, lambda: stand_in)
                except Exception:
                    if name == NETWORK:
                        self.blocker.release()
                    raise
                inst = _Installation(original=original, stand_in=stand_in)
                _installations[key] = inst
                logger.debug("Installed %s guard", name)
            inst.refcount += 1
            return GuardHandle(name, self)

    def _release(self, name: str) -> None:
        key = self._key(name)
        with _installations_lock:
            inst = _installations.get(key)
            if inst is None:
                return
            inst.refcount -= 1
            if inst.refcount > 0:
                return
            del _installations[key]
            self.registry.swap_factory(name, inst.original)
            if name == NETWORK:
                self.blocker.release()
            logger.debug("Released %s guard", name)

    def _on_violation(self, violation: GuardViolation) -> None:
        record = self.log.record(violation)
        inst = self._lookup(violation.capability)
        if inst is not None:
            inst.violations.append(record)
        logger.warning("Guard violation: %s", violation)


def release_all(handles: list[GuardHandle]) -> None:
    """Release handles in reverse install order, continuing past errors."""
    errors: list[BaseException] = []
    for handle in reversed(handles):
        try:
            handle.release()
        except Exception as exc:
            logger.error("Failed to release %r: %s", handle, exc)
            errors.append(exc)
    if errors:
        raise errors[0]


__all__ = [
    "REMEDIATION",
    "ViolationRecord",
    "ViolationLog",
    "violation_log",
    "GuardedClient",
    "SocketBlocker",
    "socket_blocker",
    "GuardHandle",
    "DependencyGuard",
    "release_all",
]
