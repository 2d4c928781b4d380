"""Structured test report - the JSON artifact a run leaves behind.

Written by the pytest plugin inside the test process, or by the orchestrator
when the command did not produce one.  Schema (version 1)::

    {
      "version": 1,
      "created": 1700000000.0,
      "outcome": "passed" | "failed" | "error",
      "command": "...",
      "summary": {"passed": 3, "failed": 1, "errors": 0, "skipped": 0, "violations": 1},
      "tests": [{"nodeid": "...", "outcome": "failed", "duration": 0.01,
                 "message": "...", "violation": {"capability": "...", "hint": "...", "detail": "..."}}],
      "harness_error": null | {"reason": "restore_failed", "message": "..."}
    }
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .protocol import TestCounts

REPORT_VERSION = 1
REPORT_ENV_VAR = "REPRO_HARNESS_REPORT"


@dataclass
class TestEntry:
    """Outcome of one test case."""
    __test__ = False

    nodeid: str
    outcome: str
    duration: float = 0.0
    message: str = ""
    violation: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeid": self.nodeid,
            "outcome": self.outcome,
            "duration": round(self.duration, 6),
            "message": self.message,
            "violation": self.violation,
        }


@dataclass
class TestReport:
    """In-memory report, serialized with ``write()``."""
    __test__ = False

    command: str = ""
    tests: list[TestEntry] = field(default_factory=list)
    harness_error: Optional[dict[str, str]] = None
    created: float = field(default_factory=time.time)

    def add(self, entry: TestEntry) -> None:
        self.tests.append(entry)

    def set_harness_error(self, reason: str, message: str) -> None:
        # The first fatal error is the one worth reporting.
        if self.harness_error is None:
            self.harness_error = {"reason": reason, "message": message}

    @property
    def counts(self) -> TestCounts:
        outcomes = [t.outcome for t in self.tests]
        return TestCounts(
            passed=outcomes.count("passed"),
            failed=outcomes.count("failed"),
            errors=outcomes.count("error"),
            skipped=outcomes.count("skipped"),
            violations=sum(1 for t in self.tests if t.violation),
        )

    @property
    def outcome(self) -> str:
        if self.harness_error is not None:
            return "error"
        counts = self.counts
        return "failed" if counts.failed or counts.errors else "passed"

    def to_dict(self) -> dict[str, Any]:
        counts = self.counts
        return {
            "version": REPORT_VERSION,
            "created": self.created,
            "outcome": self.outcome,
            "command": self.command,
            "summary": {
                "passed": counts.passed,
                "failed": counts.failed,
                "errors": counts.errors,
                "skipped": counts.skipped,
                "violations": counts.violations,
            },
            "tests": [t.to_dict() for t in self.tests],
            "harness_error": self.harness_error,
        }

    def write(self, path: Path | str) -> Path:
        """Write atomically (temp file + rename) so readers never see half a report."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2))
        os.replace(tmp, path)
        return path

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestReport":
        if data.get("version") != REPORT_VERSION:
            raise ValueError(f"Unsupported report version: {data.get('version')!r}")
        return cls(
            command=data.get("command", ""),
            tests=[
                TestEntry(
                    nodeid=t["nodeid"],
                    outcome=t["outcome"],
                    duration=t.get("duration", 0.0),
                    message=t.get("message", ""),
                    violation=t.get("violation"),
                )
                for t in data.get("tests", [])
            ],
            harness_error=data.get("harness_error"),
            created=data.get("created", time.time()),
        )

    @classmethod
    def load(cls, path: Path | str) -> "TestReport":
        return cls.from_dict(json.loads(Path(path).read_text()))


def command_report(command: str, exit_code: int | None, message: str = "") -> TestReport:
    """Report for a command that produced no structured report of its own.

    The whole command counts as a single test case.
    """
    report = TestReport(command=command)
    outcome = "passed" if exit_code == 0 else "failed"
    report.add(TestEntry(nodeid=command, outcome=outcome, message=message))
    return report


__all__ = ["REPORT_VERSION", "REPORT_ENV_VAR", "TestEntry", "TestReport", "command_report"]
