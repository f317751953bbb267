"""
Command-line entry point: `depfuzz <mode> <script> [script args...]`.

Exits 0 when no run recorded anything, 10 when at least one dependency was
found, 1 on fatal errors and 2 on usage errors.
"""

import argparse
import logging
import sys
from pathlib import Path

from depfuzz.controller import DecisionController
from depfuzz.errors import DepfuzzError, InvalidMode
from depfuzz.execution import ExplorationRun
from depfuzz.metadata import generate_run_metadata
from depfuzz.modes import Mode, format_constructs, parse_mode
from depfuzz.report import EXIT_CLEAN, EXIT_FOUND, Report, summarize_runs
from depfuzz.utils import TeeLogger, load_run_stats, record_run, save_run_stats

EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="depfuzz",
        description="depfuzz: find the runtime dependencies of a bash script by "
        "running it with randomized control flow and an empty PATH.",
    )
    parser.add_argument(
        "mode",
        help=f"Which constructs to randomize: {', '.join(m.value for m in Mode)}.",
    )
    parser.add_argument("script", help="The bash script to explore.")
    parser.add_argument(
        "script_args",
        nargs=argparse.REMAINDER,
        help="Arguments passed through to the script.",
    )
    parser.add_argument(
        "--runs",
        type=int,
        default=1,
        help="Explore the script N times and report the union of targets. (Default: 1)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for the decision controller, for reproducible runs.",
    )
    parser.add_argument(
        "--bash",
        type=str,
        default=None,
        help="bash executable to run the script with. (Default: bash from PATH)",
    )
    parser.add_argument(
        "--stats-file",
        type=Path,
        default=None,
        help="Accumulate per-target hit counts across invocations in this JSON file.",
    )
    parser.add_argument(
        "--metadata",
        type=Path,
        default=None,
        help="Write run metadata (host, bash version, configuration) to this JSON file.",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write all tool output to this file.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show construct sets, timings and other details.",
    )
    return parser


def _print_union(reports: list[Report]) -> None:
    hits = summarize_runs(reports)
    found_in = sum(1 for report in reports if report.records)
    print(
        f"[+] {len(hits)} distinct target(s) over {len(reports)} runs "
        f"({found_in} with findings):",
        file=sys.stderr,
    )
    for target, count in hits.most_common():
        print(f"    {target} (×{count})", file=sys.stderr)


def run_exploration(args: argparse.Namespace) -> int:
    """Run every requested exploration and return the process exit code."""
    if args.runs < 1:
        print(f"[!] --runs must be at least 1, got {args.runs}", file=sys.stderr)
        return EXIT_USAGE
    try:
        mode = parse_mode(args.mode)
    except InvalidMode as e:
        print(f"[!] {e}", file=sys.stderr)
        return EXIT_USAGE

    controller = DecisionController(args.seed)
    stats = load_run_stats(args.stats_file) if args.stats_file else None
    reports: list[Report] = []
    run = None

    for index in range(args.runs):
        if args.runs > 1:
            print(f"[*] Run {index + 1}/{args.runs}", file=sys.stderr)
        run = ExplorationRun(
            args.script, mode, controller, script_args=args.script_args, bash=args.bash
        )
        try:
            report = run.run()
        except DepfuzzError as e:
            print(f"[!] {e}", file=sys.stderr)
            return EXIT_FATAL
        if args.verbose:
            print(f"[~] Constructs: {format_constructs(run.constructs)}", file=sys.stderr)
        print(report.render(), file=sys.stderr)
        reports.append(report)
        if stats is not None:
            record_run(stats, mode.value, report)

    if len(reports) > 1:
        _print_union(reports)
    if stats is not None:
        save_run_stats(stats, args.stats_file)
    if args.metadata:
        generate_run_metadata(args.metadata, args, run.constructs if run else ())

    return EXIT_FOUND if any(report.records for report in reports) else EXIT_CLEAN


def main() -> None:
    """Parse command-line arguments and explore the target script."""
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )

    original_stderr = sys.stderr
    tee_logger = None
    if args.log_file:
        try:
            tee_logger = TeeLogger(args.log_file, original_stderr, verbose=args.verbose)
        except OSError as e:
            print(f"[!] Warning: Could not open log file {args.log_file}: {e}", file=sys.stderr)
        else:
            sys.stderr = tee_logger
            for handler in logging.getLogger().handlers:
                if isinstance(handler, logging.StreamHandler):
                    handler.setStream(tee_logger)

    exit_code = EXIT_FATAL
    try:
        exit_code = run_exploration(args)
    except KeyboardInterrupt:
        print("\n[!] Exploration stopped by user.", file=sys.stderr)
        exit_code = EXIT_INTERRUPTED
    finally:
        if tee_logger is not None:
            for handler in logging.getLogger().handlers:
                if isinstance(handler, logging.StreamHandler):
                    handler.setStream(original_stderr)
            sys.stderr = original_stderr
            tee_logger.close()
            print(f"[+] Full log saved to: {args.log_file}", file=sys.stderr)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
