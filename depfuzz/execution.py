"""
Run one instrumented exploration of a bash script.

ExplorationRun ties the pieces together:

- picks the construct set for the mode;
- rewrites the target into a private work directory;
- opens the report channel and the two decision pipes;
- runs bash on a small runner that installs the hooks and sources the
  rewritten target, with an empty command search path;
- drains the report channel concurrently and returns the Report.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Mapping, Sequence

from depfuzz import hooks
from depfuzz.controller import DecisionController, DecisionFeed
from depfuzz.errors import BashNotFound, ReportChannelError, TargetUnreadable
from depfuzz.modes import ConstructKind, Mode, format_constructs, parse_mode, select_constructs
from depfuzz.report import Report, ReportAggregator
from depfuzz.rewrite import write_rewritten

logger = logging.getLogger(__name__)

# Variables that would make bash run code of the caller's choosing at startup.
SCRUBBED_ENV = ("BASH_ENV", "ENV", "SHELLOPTS", "BASHOPTS")
SCRUBBED_ENV_PREFIX = "BASH_FUNC_"

# Directory holding the depfuzz package, so nested rewrites can import it.
PACKAGE_ROOT = Path(__file__).resolve().parent.parent


def resolve_bash(bash: str | None = None) -> str:
    """Return an executable bash path, raising BashNotFound if there is none."""
    found = shutil.which(bash or "bash")
    if found is None:
        raise BashNotFound(f"Could not find a bash executable ({bash or 'bash'})")
    return found


def build_environment(
    base: Mapping[str, str],
    report_fd: int,
    coin_fd: int,
    repeat_fd: int,
    constructs: frozenset[ConstructKind],
    workdir: Path,
    python: str,
) -> dict[str, str]:
    """Return the environment of the instrumented shell."""
    env = {
        key: value
        for key, value in base.items()
        if key not in SCRUBBED_ENV and not key.startswith(SCRUBBED_ENV_PREFIX)
    }
    python_path = [str(PACKAGE_ROOT)]
    if env.get("PYTHONPATH"):
        python_path.append(env["PYTHONPATH"])
    env.update(
        {
            hooks.REPORT_FD_ENV: str(report_fd),
            hooks.COIN_FD_ENV: str(coin_fd),
            hooks.REPEAT_FD_ENV: str(repeat_fd),
            hooks.PYTHON_ENV: python,
            hooks.CONSTRUCTS_ENV: format_constructs(constructs),
            hooks.WORKDIR_ENV: str(workdir),
            "PYTHONPATH": os.pathsep.join(python_path),
        }
    )
    return env


def _open_pipes(count: int) -> list[tuple[int, int]]:
    pipes: list[tuple[int, int]] = []
    try:
        for _ in range(count):
            pipes.append(os.pipe())
    except OSError as e:
        for read_fd, write_fd in pipes:
            os.close(read_fd)
            os.close(write_fd)
        raise ReportChannelError(f"Could not open the report channel: {e}") from e
    return pipes


class ExplorationRun:
    """
    One run of the target under a freshly chosen construct set.

    Args:
        script_path: The bash script to explore.
        mode: A Mode or its name.
        controller: Source of every random decision; a new unseeded one by
            default.
        script_args: Positional parameters handed to the target.
        bash: bash executable name or path.
        python: Interpreter used by the inclusion hook for nested rewrites.
    """

    def __init__(
        self,
        script_path: str | Path,
        mode: Mode | str,
        controller: DecisionController | None = None,
        script_args: Sequence[str] = (),
        bash: str | None = None,
        python: str | None = None,
    ) -> None:
        self.script_path = str(script_path)
        self.mode = mode
        self.controller = controller or DecisionController()
        self.script_args = list(script_args)
        self.bash = bash
        self.python = python or sys.executable
        self.constructs: frozenset[ConstructKind] = frozenset()
        self.returncode: int | None = None

    def _check_target(self) -> None:
        path = Path(self.script_path)
        if not path.is_file() or not os.access(path, os.R_OK):
            raise TargetUnreadable(f"Cannot read target script: {self.script_path}")

    def run(self) -> Report:
        """
        Execute the target once and return what it recorded.

        Raises:
            InvalidMode: for an unknown mode name.
            TargetUnreadable: if the target cannot be read.
            BashNotFound: if no bash executable is available.
            ReportChannelError: if the pipes cannot be created.
        """
        mode = parse_mode(self.mode)
        self._check_target()
        bash = resolve_bash(self.bash)
        self.constructs = select_constructs(mode, self.controller)
        logger.info("Mode %s, constructs: %s", mode.value, format_constructs(self.constructs))

        with tempfile.TemporaryDirectory(prefix="depfuzz_") as tmp:
            workdir = Path(tmp)
            search_path = workdir / "empty_path"
            rewritten_dir = workdir / "rewritten"
            search_path.mkdir()
            rewritten_dir.mkdir()
            try:
                rewritten = write_rewritten(self.script_path, self.constructs, rewritten_dir)
            except OSError as e:
                raise TargetUnreadable(f"Cannot read target script: {e}") from e
            runner = workdir / "runner.bash"
            runner.write_text(
                hooks.build_runner(str(rewritten), self.script_path, str(search_path)),
                encoding="utf-8",
            )
            return self._execute(bash, runner, rewritten_dir)

    def _execute(self, bash: str, runner: Path, rewritten_dir: Path) -> Report:
        (report_r, report_w), (coin_r, coin_w), (repeat_r, repeat_w) = _open_pipes(3)
        coin_source = self.controller.fork()
        repeat_source = self.controller.fork()
        env = build_environment(
            os.environ, report_w, coin_r, repeat_r, self.constructs, rewritten_dir, self.python
        )
        child_fds = (report_w, coin_r, repeat_r)

        start_time = time.monotonic()
        try:
            process = subprocess.Popen(
                [bash, str(runner), *self.script_args], env=env, pass_fds=child_fds
            )
        except OSError as e:
            for fd in (report_r, report_w, coin_r, coin_w, repeat_r, repeat_w):
                os.close(fd)
            raise BashNotFound(f"Could not start {bash}: {e}") from e
        # The parent keeps only its own ends; EOF on the report channel then
        # means every writer in the child tree is gone.
        for fd in child_fds:
            os.close(fd)

        aggregator = ReportAggregator(report_r)
        feeds = [
            DecisionFeed(
                coin_w,
                lambda: int(coin_source.coin_flip()),
                coin_source.noise,
                name="coin-feed",
            ),
            DecisionFeed(
                repeat_w,
                repeat_source.bounded_repeat_count,
                repeat_source.noise,
                name="repeat-feed",
            ),
        ]
        aggregator.start()
        for feed in feeds:
            feed.start()

        try:
            self.returncode = process.wait()
        except BaseException:
            process.kill()
            process.wait()
            raise
        report = aggregator.report()
        for feed in feeds:
            feed.join(timeout=1)

        duration = time.monotonic() - start_time
        logger.info(
            "Target exited with status %d after %.2fs (%d records)",
            self.returncode,
            duration,
            report.count,
        )
        return report
