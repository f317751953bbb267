"""
This module contains generic helpers for depfuzz: persistent run statistics
and the tee logger used by `--log-file`.
"""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO

from depfuzz.report import Report

RUN_STATS_FILE = Path("depfuzz_run_stats.json")


def _default_run_stats() -> dict[str, Any]:
    """Return the canonical default run statistics structure."""
    return {
        "start_time": datetime.now(timezone.utc).isoformat(),
        "last_update_time": None,
        "total_runs": 0,
        "runs_with_findings": 0,
        "targets": {},
        "modes": {},
    }


def load_run_stats(path: Path = RUN_STATS_FILE) -> dict[str, Any]:
    """
    Load the persistent run statistics from the JSON file.
    Returns a default structure if the file doesn't exist.
    """
    if not path.is_file():
        return _default_run_stats()
    try:
        with open(path, "r", encoding="utf-8") as f:
            stats: dict[str, Any] = json.load(f)
            # Fill in any fields missing from older stats files
            defaults = _default_run_stats()
            for key, value in defaults.items():
                if key != "start_time":
                    stats.setdefault(key, value)
            stats.setdefault("start_time", defaults["start_time"])
            return stats
    except (json.JSONDecodeError, OSError, AttributeError) as e:
        print(
            f"Warning: Could not load run stats file. Starting fresh. Error: {e}",
            file=sys.stderr,
        )
        return _default_run_stats()


def save_run_stats(stats: dict[str, Any], path: Path = RUN_STATS_FILE) -> None:
    """Save the updated run statistics to the JSON file."""
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(stats, f, indent=2, sort_keys=True)
    except (IOError, OSError) as e:
        print(
            f"Warning: Could not save run stats: {e}",
            file=sys.stderr,
        )


def record_run(stats: dict[str, Any], mode: str, report: Report) -> dict[str, Any]:
    """Fold one run's report into the statistics and return them."""
    stats["total_runs"] += 1
    if report.records:
        stats["runs_with_findings"] += 1
    stats["modes"][mode] = stats["modes"].get(mode, 0) + 1
    for record in report.records:
        stats["targets"][record.target] = stats["targets"].get(record.target, 0) + 1
    stats["last_update_time"] = datetime.now(timezone.utc).isoformat()
    return stats


class TeeLogger:
    """
    A file-like object that writes to both a file and another stream
    (like the original stderr), and flushes immediately.

    Consecutive identical lines are collapsed into one line with a (×N)
    suffix. When verbose=False, "[~]" detail lines are dropped.
    """

    QUIET_PREFIX = "[~]"

    def __init__(self, file_path: str | Path, original_stream: TextIO, verbose: bool = True):
        self.original_stream = original_stream
        self.log_file = open(file_path, "w", encoding="utf-8")
        self.verbose = verbose
        self._pending = ""
        self._last_line: str | None = None
        self._repeat_count = 0

    def _emit(self, text: str) -> None:
        self.original_stream.write(text)
        self.log_file.write(text)

    def _flush_repeat(self) -> None:
        """Flush the buffered repeated line, if any."""
        if self._last_line is None:
            return
        suffix = f" (×{self._repeat_count})" if self._repeat_count > 1 else ""
        self._emit(self._last_line + suffix + "\n")
        self._last_line = None
        self._repeat_count = 0

    def _push_line(self, line: str) -> None:
        if not self.verbose and line.lstrip().startswith(self.QUIET_PREFIX):
            return
        if line == self._last_line:
            self._repeat_count += 1
            return
        self._flush_repeat()
        self._last_line = line
        self._repeat_count = 1

    def write(self, message: str) -> int:
        """Buffer partial lines; pass complete lines through the collapser."""
        self._pending += message
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            self._push_line(line)
        return len(message)

    def flush(self) -> None:
        """Flush any buffered repeat and both underlying streams."""
        self._flush_repeat()
        if self._pending:
            self._emit(self._pending)
            self._pending = ""
        self.original_stream.flush()
        self.log_file.flush()

    def close(self) -> None:
        """Flush everything and close the log file."""
        self.flush()
        self.log_file.close()

    @property
    def encoding(self) -> str:
        """Return the encoding of the original stream."""
        return getattr(self.original_stream, "encoding", "utf-8")

    def isatty(self) -> bool:
        """Return whether the original stream is a TTY."""
        return hasattr(self.original_stream, "isatty") and self.original_stream.isatty()

    def fileno(self) -> int:
        """Return the file descriptor of the original stream.

        Raises OSError if the original stream doesn't have a file descriptor.
        """
        if hasattr(self.original_stream, "fileno"):
            return self.original_stream.fileno()
        raise OSError("TeeLogger does not have a file descriptor")
