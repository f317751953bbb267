"""
Tests for the command-line entry point (depfuzz/cli.py).

ExplorationRun is patched out in most tests so that argument handling, exit
codes and output can be checked without running bash.
"""

import json
import shutil
import sys
import tempfile
import unittest
from io import StringIO
from pathlib import Path
from unittest.mock import MagicMock, patch

from depfuzz.cli import EXIT_FATAL, EXIT_USAGE, build_parser, main, run_exploration
from depfuzz.errors import TargetUnreadable
from depfuzz.modes import ALWAYS_ACTIVE
from depfuzz.recorder import DependencyRecord, Origin
from depfuzz.report import EXIT_CLEAN, EXIT_FOUND, Report


def found(*targets):
    return Report(
        tuple(DependencyRecord(None, t, (t,), Origin("s.sh", i + 1)) for i, t in enumerate(targets))
    )


def fake_runs(*reports):
    """Return a mock ExplorationRun class whose instances yield `reports` in order."""
    results = iter(reports)

    def make_run(*args, **kwargs):
        run = MagicMock()
        run.constructs = ALWAYS_ACTIVE
        run.run.side_effect = lambda: next(results)
        return run

    return MagicMock(side_effect=make_run)


class TestBuildParser(unittest.TestCase):
    """Tests for argument parsing."""

    def test_script_arguments_pass_through(self):
        """Test that everything after the script goes to the script."""
        args = build_parser().parse_args(["--runs", "3", "all", "s.sh", "-x", "--runs", "9"])
        self.assertEqual(args.mode, "all")
        self.assertEqual(args.script, "s.sh")
        self.assertEqual(args.script_args, ["-x", "--runs", "9"])
        self.assertEqual(args.runs, 3)

    def test_defaults(self):
        """Test default option values."""
        args = build_parser().parse_args(["minimal", "s.sh"])
        self.assertEqual(args.runs, 1)
        self.assertIsNone(args.seed)
        self.assertIsNone(args.stats_file)
        self.assertFalse(args.verbose)


class TestRunExploration(unittest.TestCase):
    """Tests for run_exploration exit codes and output."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.temp_path = Path(self.temp_dir.name)

    def tearDown(self):
        self.temp_dir.cleanup()

    def run_cli(self, argv, runs):
        args = build_parser().parse_args(argv)
        stderr = StringIO()
        with patch("depfuzz.cli.ExplorationRun", runs), patch("sys.stderr", stderr):
            code = run_exploration(args)
        return code, stderr.getvalue()

    def test_clean_run(self):
        """Test that a clean run prints All clean! and exits 0."""
        code, output = self.run_cli(["all", "s.sh"], fake_runs(Report()))
        self.assertEqual(code, EXIT_CLEAN)
        self.assertIn("All clean!", output)

    def test_found_run(self):
        """Test that findings exit 10 with the listing."""
        code, output = self.run_cli(["all", "s.sh"], fake_runs(found("curl")))
        self.assertEqual(code, EXIT_FOUND)
        self.assertIn("Found 1 runtime dependencies!", output)
        self.assertIn("s.sh:1 - runtime dependency on 'curl'", output)

    def test_invalid_mode_is_usage_error(self):
        """Test that an unknown mode exits 2 without running anything."""
        runs = fake_runs()
        code, output = self.run_cli(["sometimes", "s.sh"], runs)
        self.assertEqual(code, EXIT_USAGE)
        self.assertIn("sometimes", output)
        runs.assert_not_called()

    def test_runs_must_be_positive(self):
        """Test that --runs 0 is a usage error."""
        code, _ = self.run_cli(["--runs", "0", "all", "s.sh"], fake_runs())
        self.assertEqual(code, EXIT_USAGE)

    def test_fatal_error(self):
        """Test that a DepfuzzError exits 1 with its message."""
        run = MagicMock()
        run.run.side_effect = TargetUnreadable("Cannot read target script: s.sh")
        code, output = self.run_cli(["all", "s.sh"], MagicMock(return_value=run))
        self.assertEqual(code, EXIT_FATAL)
        self.assertIn("[!] Cannot read target script: s.sh", output)

    def test_multiple_runs_print_union(self):
        """Test the distinct-target summary across runs."""
        runs = fake_runs(found("a"), Report(), found("a", "b"))
        code, output = self.run_cli(["--runs", "3", "random", "s.sh"], runs)
        self.assertEqual(code, EXIT_FOUND)
        self.assertEqual(runs.call_count, 3)
        self.assertIn("[+] 2 distinct target(s) over 3 runs (2 with findings):", output)
        self.assertIn("    a (×2)", output)

    def test_runs_share_one_controller(self):
        """Test that every run draws from the same seeded controller."""
        runs = fake_runs(Report(), Report())
        self.run_cli(["--runs", "2", "--seed", "5", "random", "s.sh"], runs)
        first, second = runs.call_args_list
        self.assertIs(first.args[2], second.args[2])
        self.assertEqual(first.args[2].seed, 5)

    def test_stats_and_metadata_files(self):
        """Test that stats and metadata are written when requested."""
        stats_file = self.temp_path / "stats.json"
        metadata_file = self.temp_path / "meta.json"
        argv = [
            "--stats-file",
            str(stats_file),
            "--metadata",
            str(metadata_file),
            "minimal",
            "s.sh",
        ]
        with patch("depfuzz.metadata.get_bash_version", return_value="GNU bash, version 5.2"):
            code, _ = self.run_cli(argv, fake_runs(found("curl", "curl")))

        self.assertEqual(code, EXIT_FOUND)
        stats = json.loads(stats_file.read_text())
        self.assertEqual(stats["total_runs"], 1)
        self.assertEqual(stats["targets"], {"curl": 2})
        self.assertEqual(stats["modes"], {"minimal": 1})
        metadata = json.loads(metadata_file.read_text())
        self.assertEqual(metadata["environment"]["bash_version"], "GNU bash, version 5.2")


class TestMain(unittest.TestCase):
    """Tests for main()."""

    def test_main_exits_with_verdict(self):
        """Test that main() exits with the run_exploration result."""
        with patch("sys.argv", ["depfuzz", "all", "s.sh"]):
            with patch("depfuzz.cli.run_exploration", return_value=EXIT_FOUND):
                with self.assertRaises(SystemExit) as cm:
                    main()
        self.assertEqual(cm.exception.code, EXIT_FOUND)

    def test_log_file_captures_output(self):
        """Test that --log-file tees stderr and restores it afterwards."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            log_file = Path(tmp_dir) / "run.log"
            stderr = StringIO()
            argv = ["depfuzz", "--log-file", str(log_file), "all", "s.sh"]
            with patch("sys.argv", argv), patch("sys.stderr", stderr):
                with patch("depfuzz.cli.ExplorationRun", fake_runs(Report())):
                    with self.assertRaises(SystemExit) as cm:
                        main()
                self.assertIs(sys.stderr, stderr)

            self.assertEqual(cm.exception.code, EXIT_CLEAN)
            self.assertIn("All clean!", log_file.read_text())
            self.assertIn("All clean!", stderr.getvalue())

    @unittest.skipUnless(shutil.which("bash"), "bash is required for integration tests")
    def test_end_to_end(self):
        """Test a real exploration through main()."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            script = Path(tmp_dir) / "s.sh"
            script.write_text("depfuzz_missing_cli_tool\n")
            stderr = StringIO()
            with patch("sys.argv", ["depfuzz", "minimal", str(script)]):
                with patch("sys.stderr", stderr):
                    with self.assertRaises(SystemExit) as cm:
                        main()
        self.assertEqual(cm.exception.code, EXIT_FOUND)
        self.assertIn("runtime dependency on 'depfuzz_missing_cli_tool'", stderr.getvalue())


if __name__ == "__main__":
    unittest.main()
