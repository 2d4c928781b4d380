"""Environment snapshot manager - capture, clear and restore ``os.environ``.

Clearing is always reversible: ``isolated()`` captures the environment,
clears it, and restores the snapshot on every exit path, including variables
the guarded code added or removed in between::

    manager = EnvironmentManager()
    with manager.isolated(keep={"PATH"}):
        run_tests()          # sees only PATH
    # environment is bit-for-bit what it was before

Restoration is verified.  When the platform refuses a value the manager
raises ``RestoreFailed`` rather than leave the environment half-restored
silently.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping, MutableMapping

from .errors import RestoreFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnvironmentSnapshot:
    """Ordered, immutable copy of environment variables at a point in time."""

    items: tuple[tuple[str, str], ...] = ()

    @classmethod
    def of(cls, env: Mapping[str, str]) -> "EnvironmentSnapshot":
        return cls(tuple(env.items()))

    def as_dict(self) -> dict[str, str]:
        return dict(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def diff(self, other: "EnvironmentSnapshot") -> dict[str, list[str]]:
        """Names added, removed and changed going from ``self`` to ``other``."""
        before, after = self.as_dict(), other.as_dict()
        return {
            "added": sorted(set(after) - set(before)),
            "removed": sorted(set(before) - set(after)),
            "changed": sorted(k for k in set(before) & set(after) if before[k] != after[k]),
        }


@dataclass
class EnvironmentManager:
    """Captures, clears and restores a mutable environment mapping.

    ``environ`` defaults to ``os.environ``; tests may pass a plain dict.
    """

    environ: MutableMapping[str, str] = field(default_factory=lambda: os.environ)

    def capture(self) -> EnvironmentSnapshot:
        return EnvironmentSnapshot.of(self.environ)

    def clear(self, keep: Iterable[str] = ()) -> EnvironmentSnapshot:
        """Remove every live variable except ``keep``; return the prior snapshot.

        The clear is verified before returning, so code that runs next can
        rely on the variables being gone.
        """
        snapshot = self.capture()
        kept = set(keep)
        for name in list(self.environ):
            if name not in kept:
                del self.environ[name]

        leftover = [name for name in self.environ if name not in kept]
        if leftover:
            # Roll back so a partial clear never leaks into the caller.
            self.restore(snapshot)
            raise RestoreFailed(leftover, "environment could not be cleared")
        logger.debug("Cleared %d environment variables (kept %d)", len(snapshot), len(kept & set(self.environ)))
        return snapshot

    def restore(self, snapshot: EnvironmentSnapshot) -> None:
        """Make the live environment exactly equal to ``snapshot``."""
        target = snapshot.as_dict()
        failed: list[str] = []

        for name in list(self.environ):
            if name not in target:
                try:
                    del self.environ[name]
                except (OSError, KeyError, ValueError):
                    failed.append(name)

        for name, value in target.items():
            if self.environ.get(name) == value:
                continue
            try:
                self.environ[name] = value
            except (OSError, ValueError, TypeError):
                failed.append(name)

        if not failed:
            live = dict(self.environ)
            if live != target:
                failed = EnvironmentSnapshot.of(live).diff(snapshot)["changed"] or sorted(
                    set(live) ^ set(target)
                )

        if failed:
            logger.error("Environment restore failed for: %s", ", ".join(sorted(set(failed))))
            raise RestoreFailed(sorted(set(failed)))

    @contextmanager
    def isolated(self, keep: Iterable[str] = ()) -> Iterator[EnvironmentSnapshot]:
        """Scoped isolation: acquire = capture + clear, release = restore."""
        snapshot = self.clear(keep)
        try:
            yield snapshot
        finally:
            self.restore(snapshot)


__all__ = ["EnvironmentSnapshot", "EnvironmentManager"]
