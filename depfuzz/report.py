"""
Collect dependency records from the report channel and render the verdict.

The ReportAggregator drains the read end of the report pipe on its own
thread while the instrumented shell runs, so a chatty target can never fill
the pipe and stall. The run's verdict depends only on what arrives here,
never on the target's own exit status.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from depfuzz.recorder import DependencyRecord, decode_record, format_record

logger = logging.getLogger(__name__)

EXIT_CLEAN = 0
EXIT_FOUND = 10


class RunStatus(Enum):
    CLEAN = "clean"
    FOUND = "found"


@dataclass(frozen=True)
class Report:
    """Everything one run recorded, in arrival order. No deduplication."""

    records: tuple[DependencyRecord, ...] = ()

    @property
    def count(self) -> int:
        return len(self.records)

    @property
    def status(self) -> RunStatus:
        return RunStatus.FOUND if self.records else RunStatus.CLEAN

    @property
    def exit_code(self) -> int:
        return EXIT_FOUND if self.records else EXIT_CLEAN

    def summary(self) -> str:
        if not self.records:
            return "All clean!"
        return f"Found {self.count} runtime dependencies!"

    def render(self) -> str:
        """Return the summary line followed by one line per record."""
        lines = [self.summary()]
        lines.extend(format_record(record) for record in self.records)
        return "\n".join(lines)


class ReportAggregator(threading.Thread):
    """
    Read wire lines from `read_fd` until end-of-stream.

    The thread owns the descriptor and closes it when done. End-of-stream
    arrives once every process holding the write end (the shell and anything
    it spawned) has exited.
    """

    def __init__(self, read_fd: int, name: str = "report-aggregator") -> None:
        super().__init__(name=name, daemon=True)
        self.read_fd = read_fd
        self._records: list[DependencyRecord] = []
        self.malformed = 0

    def run(self) -> None:
        with open(
            self.read_fd, "r", encoding="utf-8", errors="surrogateescape", newline="\n"
        ) as channel:
            for line in channel:
                self._consume(line)

    def _consume(self, line: str) -> None:
        if not line.strip():
            return
        try:
            self._records.append(decode_record(line))
        except ValueError as e:
            self.malformed += 1
            logger.warning("Dropping malformed report line: %s", e)

    def report(self, timeout: float | None = None) -> Report:
        """Wait for end-of-stream and return the collected Report."""
        self.join(timeout)
        return Report(tuple(self._records))


def summarize_runs(reports: Iterable[Report]) -> Counter[str]:
    """Count how many records each target received across several runs."""
    hits: Counter[str] = Counter()
    for report in reports:
        hits.update(record.target for record in report.records)
    return hits
