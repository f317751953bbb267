"""
Generate and save run metadata for depfuzz explorations.

The metadata captures where and how a script was explored: host identity,
hardware, the bash and Python in use, and the run configuration.
"""

import argparse
import json
import platform
import shutil
import subprocess
import sys
import uuid
from pathlib import Path
from typing import Iterable

import psutil

from depfuzz import __version__
from depfuzz.modes import ConstructKind, format_constructs


def get_bash_version(bash: str | None) -> str:
    """Return the first line of `bash --version`, or "unknown"."""
    executable = shutil.which(bash or "bash")
    if executable is None:
        return "unknown"
    try:
        result = subprocess.run(
            [executable, "--version"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return "unknown"
    if result.returncode != 0 or not result.stdout:
        return "unknown"
    return result.stdout.splitlines()[0].strip()


def generate_run_metadata(
    metadata_path: Path,
    args: argparse.Namespace,
    constructs: Iterable[ConstructKind] = (),
) -> dict:
    """
    Generate run metadata and save it as JSON at `metadata_path`.

    Args:
        metadata_path: File to write.
        args: Parsed command-line arguments.
        constructs: Construct set of the (last) run, if known.

    Returns:
        Dictionary containing all collected metadata.
    """
    bash = getattr(args, "bash", None)
    metadata = {
        "run_id": str(uuid.uuid4()),
        "depfuzz_version": __version__,
        "environment": {
            "hostname": platform.node(),
            "os": platform.platform(),
            "bash_version": get_bash_version(bash),
            "python_version": sys.version,
            "python_executable": sys.executable,
        },
        "hardware": {
            "cpu_count_logical": psutil.cpu_count(logical=True),
            "cpu_count_physical": psutil.cpu_count(logical=False),
            "total_ram_gb": round(psutil.virtual_memory().total / (1024**3), 2),
        },
        "configuration": {
            "args": vars(args),
            "constructs": format_constructs(constructs),
        },
    }

    try:
        metadata_path.parent.mkdir(parents=True, exist_ok=True)
        with open(metadata_path, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2, default=str)
    except OSError as e:
        print(f"[!] Warning: Could not save run metadata: {e}", file=sys.stderr)

    return metadata
