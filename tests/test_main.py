#!/usr/bin/env python3
"""
Test the main function and command line interface of preprocess.py.
"""

import io
import logging
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

# Add parent directory to path to import preprocess module
sys.path.insert(0, str(Path(__file__).parent.parent))
import preprocess  # pylint: disable=wrong-import-position


class TestMain(unittest.TestCase):
    def setUp(self) -> None:
        # Create a temporary directory
        self.test_dir = tempfile.mkdtemp()

        self.test_file = os.path.join(self.test_dir, "readme.md")
        with open(self.test_file, "wb") as f:
            f.write(b"# Title\r\n\tcode\r\n")

        self.other_file = os.path.join(self.test_dir, "notes.txt")
        with open(self.other_file, "wb") as f:
            f.write(b"a\tb\rc")

    def tearDown(self) -> None:
        # Clean up the temporary directory
        shutil.rmtree(self.test_dir)
        preprocess.logger.setLevel(logging.CRITICAL)

    def run_main(self, argv, stdin: bytes = b""):
        stdout = SimpleNamespace(buffer=io.BytesIO())
        stdin_stream = SimpleNamespace(buffer=io.BytesIO(stdin))
        with patch("sys.stdout", stdout), patch("sys.stdin", stdin_stream):
            result = preprocess.main(argv)
        return result, stdout.buffer.getvalue()

    def test_stdin_to_stdout(self) -> None:
        result, output = self.run_main([], stdin=b"a\r\nb\rc\nd")
        self.assertEqual(result, 0)
        self.assertEqual(output, b"a\nb\nc\nd\n")

    def test_dash_reads_stdin(self) -> None:
        result, output = self.run_main(["-"], stdin=b"\tx")
        self.assertEqual(result, 0)
        self.assertEqual(output, b"    x\n")

    def test_files_to_stdout(self) -> None:
        result, output = self.run_main([self.test_file, self.other_file])
        self.assertEqual(result, 0)
        self.assertEqual(output, b"# Title\n    code\na   b\nc\n")

        # Files are left untouched
        with open(self.test_file, "rb") as f:
            self.assertEqual(f.read(), b"# Title\r\n\tcode\r\n")

    def test_directory_to_stdout_uses_patterns(self) -> None:
        result, output = self.run_main([self.test_dir])
        self.assertEqual(result, 0)
        self.assertEqual(output, b"# Title\n    code\n")

    def test_missing_file_to_stdout(self) -> None:
        missing = os.path.join(self.test_dir, "missing.md")
        result, output = self.run_main([missing, self.test_file])
        self.assertEqual(result, 1)
        self.assertEqual(output, b"# Title\n    code\n")

    def test_in_place(self) -> None:
        result, output = self.run_main(["--in-place", self.test_file])
        self.assertEqual(result, 0)
        self.assertEqual(output, b"")
        with open(self.test_file, "rb") as f:
            self.assertEqual(f.read(), b"# Title\n    code\n")
        self.assertFalse(os.path.exists(self.test_file + ".bak"))

    def test_in_place_directory_with_pattern(self) -> None:
        result, _ = self.run_main(
            ["--in-place", self.test_dir, "--pattern", ".txt", "--workers", "2"]
        )
        self.assertEqual(result, 0)
        with open(self.other_file, "rb") as f:
            self.assertEqual(f.read(), b"a   b\nc\n")
        # Not matched by the pattern
        with open(self.test_file, "rb") as f:
            self.assertEqual(f.read(), b"# Title\r\n\tcode\r\n")

    def test_in_place_no_files_found(self) -> None:
        result, _ = self.run_main(
            ["--in-place", self.test_dir, "--pattern", ".nonexistent"]
        )
        self.assertEqual(result, 0)

    def test_in_place_missing_path(self) -> None:
        result, _ = self.run_main(["--in-place", "/nonexistent/directory"])
        self.assertEqual(result, 1)

    def test_in_place_rejects_stdin(self) -> None:
        result, _ = self.run_main(["--in-place"])
        self.assertEqual(result, 1)

    def test_invalid_chunk_size(self) -> None:
        result, _ = self.run_main(["--chunk-size", "0", self.test_file])
        self.assertEqual(result, 1)

    def test_small_chunk_size(self) -> None:
        result, output = self.run_main(["--chunk-size", "1", self.test_file])
        self.assertEqual(result, 0)
        self.assertEqual(output, b"# Title\n    code\n")

    def test_invalid_workers_falls_back(self) -> None:
        result, _ = self.run_main(["--in-place", "--workers", "0", self.test_file])
        self.assertEqual(result, 0)
        with open(self.test_file, "rb") as f:
            self.assertEqual(f.read(), b"# Title\n    code\n")

    def test_verbose_and_log_file(self) -> None:
        log_file = os.path.join(self.test_dir, "markprep.log")
        result, _ = self.run_main(
            ["--verbose", "--log-file", log_file, self.test_file]
        )
        try:
            self.assertEqual(result, 0)
            self.assertEqual(preprocess.logger.level, logging.DEBUG)
            self.assertTrue(os.path.exists(log_file))
        finally:
            for handler in list(preprocess.logger.handlers):
                if isinstance(handler, logging.FileHandler):
                    preprocess.logger.removeHandler(handler)
                    handler.close()

    def test_log_file_handler_added_once(self) -> None:
        log_file = os.path.join(self.test_dir, "markprep.log")
        try:
            for _ in range(3):
                result, _ = self.run_main(["--log-file", log_file, self.test_file])
                self.assertEqual(result, 0)
            file_handlers = [
                h
                for h in preprocess.logger.handlers
                if isinstance(h, logging.FileHandler)
            ]
            self.assertEqual(len(file_handlers), 1)
        finally:
            for handler in list(preprocess.logger.handlers):
                if isinstance(handler, logging.FileHandler):
                    preprocess.logger.removeHandler(handler)
                    handler.close()

    def test_version(self) -> None:
        with patch("sys.stdout", new_callable=io.StringIO) as stdout:
            with self.assertRaises(SystemExit) as ctx:
                preprocess.main(["--version"])
        self.assertEqual(ctx.exception.code, 0)
        self.assertIn(preprocess.__version__, stdout.getvalue())

    def test_keyboard_interrupt(self) -> None:
        with patch("preprocess.convert_to_stream", side_effect=KeyboardInterrupt()):
            result, _ = self.run_main([self.test_file])
        self.assertEqual(result, 130)

    def test_unexpected_error(self) -> None:
        with patch("preprocess.collect_files", side_effect=RuntimeError("boom")):
            result, _ = self.run_main(["--verbose", self.test_file])
        self.assertEqual(result, 1)


if __name__ == "__main__":
    unittest.main()
