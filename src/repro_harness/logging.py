"""JSONL trace logging - one line per run lifecycle event.

Every record carries ``timestamp``, ``run_id`` and ``type``.  The orchestrator
emits::

    run_start        command, policy
    state            state                  (one per state transition)
    build            sandbox, image, digest, rebuilt_layers, cached
    guard_installed  capability
    guard_released   capability
    run_complete     status, reason, exit_code, duration_s

Diagnostic messages go through the standard ``logging`` module; the trace is
the machine-readable record of what a run did.
"""

import json
import time
from pathlib import Path
from dataclasses import dataclass, field
from typing import TextIO, Any


@dataclass
class TraceLogger:
    """Writes run traces to a JSONL file."""

    output_path: Path
    run_id: str
    _file: TextIO = field(init=False, repr=False)
    _closed: bool = field(init=False, default=False)

    def __post_init__(self):
        self.output_path = Path(self.output_path)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.output_path, "a")

    def log(self, event_type: str, **data: Any) -> None:
        """Log a harness-generated event."""
        record = {
            "timestamp": time.time(),
            "run_id": self.run_id,
            "type": event_type,
            **data,
        }
        self._write(record)

    def _write(self, record: dict) -> None:
        if self._closed:
            return
        self._file.write(json.dumps(record, default=str) + "\n")
        self._file.flush()

    def close(self) -> None:
        if not self._closed:
            self._file.close()
            self._closed = True

    def __enter__(self) -> "TraceLogger":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def read_trace(path: Path) -> list[dict]:
    """Load every record of a trace file."""
    records = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line:
                records.append(json.loads(line))
    return records
