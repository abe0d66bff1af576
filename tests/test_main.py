#!/usr/bin/env python3
"""
Test the main function and command line interface of crlftool.py.
"""

import io
import json
import logging
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from typing import List
from unittest.mock import patch

# Add parent directory to path to import crlftool module
sys.path.insert(0, str(Path(__file__).parent.parent))
import crlftool  # pylint: disable=wrong-import-position


class TestMain(unittest.TestCase):
    def setUp(self) -> None:
        self.test_dir = os.path.realpath(tempfile.mkdtemp())
        self.tree = os.path.join(self.test_dir, "tree")
        os.makedirs(self.tree)
        self.index_path = os.path.join(self.test_dir, "index.bin")

        self.test_file = os.path.join(self.tree, "test.txt")
        with open(self.test_file, "wb") as f:
            f.write(b"Line 1\r\nLine 2\r\n")

    def tearDown(self) -> None:
        crlftool.logger.setLevel(logging.CRITICAL)
        for handler in list(crlftool.logger.handlers):
            crlftool.logger.removeHandler(handler)
            handler.close()
        shutil.rmtree(self.test_dir)

    def run_main(self, *args: str) -> int:
        argv: List[str] = list(args) + ["--index", self.index_path, "--no-progress"]
        with patch("sys.stderr", new_callable=io.StringIO):
            return crlftool.main(argv)

    def read_test_file(self) -> bytes:
        with open(self.test_file, "rb") as f:
            return f.read()

    def test_fix_unix(self) -> None:
        self.assertEqual(self.run_main("fix", "unix", self.tree), crlftool.EXIT_OK)
        self.assertEqual(self.read_test_file(), b"Line 1\nLine 2\n")

        with open(self.index_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        self.assertTrue(payload["files"][self.test_file]["conformant"])

    def test_validate_failure_exit_code(self) -> None:
        with patch("sys.stdout", new_callable=io.StringIO) as stdout:
            result = self.run_main("validate", "unix", self.tree)
        self.assertEqual(result, crlftool.EXIT_INVALID)
        self.assertIn(f"Invalid line ending in file: {self.test_file}", stdout.getvalue())
        self.assertEqual(self.read_test_file(), b"Line 1\r\nLine 2\r\n")

    def test_validate_success(self) -> None:
        result = self.run_main("validate", "windows", self.tree)
        self.assertEqual(result, crlftool.EXIT_OK)

    def test_fix_then_validate(self) -> None:
        self.assertEqual(self.run_main("fix", "unix", self.tree), crlftool.EXIT_OK)
        with patch("crlftool.read_text") as mock_read:
            result = self.run_main("validate", "unix", self.tree)
            mock_read.assert_not_called()
        self.assertEqual(result, crlftool.EXIT_OK)

    def test_no_index(self) -> None:
        with patch("sys.stderr", new_callable=io.StringIO):
            result = crlftool.main(
                ["fix", "unix", self.tree, "--index", self.index_path, "--no-index",
                 "--no-progress"]
            )
        self.assertEqual(result, crlftool.EXIT_OK)
        self.assertFalse(os.path.exists(self.index_path))

    def test_extension_override(self) -> None:
        result = self.run_main("fix", "unix", self.tree, "--extensions", ".md")
        self.assertEqual(result, crlftool.EXIT_OK)
        self.assertEqual(self.read_test_file(), b"Line 1\r\nLine 2\r\n")

    def test_exclude_folder_override(self) -> None:
        result = self.run_main("fix", "unix", self.tree, "--exclude-folders", "tree")
        self.assertEqual(result, crlftool.EXIT_OK)
        self.assertEqual(self.read_test_file(), b"Line 1\r\nLine 2\r\n")

    def test_config_file(self) -> None:
        config = os.path.join(self.test_dir, "crlftool.toml")
        with open(config, "w", encoding="utf-8") as f:
            f.write('extensions = ".md;.rst"\n')
        result = self.run_main("fix", "unix", self.tree, "--config", config)
        self.assertEqual(result, crlftool.EXIT_OK)
        self.assertEqual(self.read_test_file(), b"Line 1\r\nLine 2\r\n")

    def test_invalid_directory(self) -> None:
        result = self.run_main("fix", "unix", os.path.join(self.test_dir, "missing"))
        self.assertEqual(result, crlftool.EXIT_USAGE)

    def test_path_is_file(self) -> None:
        result = self.run_main("fix", "unix", self.test_file)
        self.assertEqual(result, crlftool.EXIT_USAGE)

    def test_bad_arguments(self) -> None:
        with patch("sys.stderr", new_callable=io.StringIO) as stderr:
            self.assertEqual(crlftool.main(["repair", "unix", self.tree]), crlftool.EXIT_USAGE)
            self.assertEqual(crlftool.main(["fix", "mac", self.tree]), crlftool.EXIT_USAGE)
            self.assertEqual(crlftool.main(["fix"]), crlftool.EXIT_USAGE)
        self.assertIn("usage:", stderr.getvalue())

    def test_version(self) -> None:
        with patch("sys.stdout", new_callable=io.StringIO) as stdout:
            self.assertEqual(crlftool.main(["--version"]), crlftool.EXIT_OK)
        self.assertIn(crlftool.__version__, stdout.getvalue())

    def test_corrupt_index_is_fatal(self) -> None:
        with open(self.index_path, "wb") as f:
            f.write(b"garbage")
        result = self.run_main("fix", "unix", self.tree)
        self.assertEqual(result, crlftool.EXIT_ERROR)
        self.assertEqual(self.read_test_file(), b"Line 1\r\nLine 2\r\n")

    def test_io_error_aborts_without_saving_index(self) -> None:
        with patch("crlftool.read_text", side_effect=PermissionError("denied")):
            result = self.run_main("fix", "unix", self.tree)
        self.assertEqual(result, crlftool.EXIT_ERROR)
        self.assertFalse(os.path.exists(self.index_path))

    def test_keyboard_interrupt(self) -> None:
        with patch("crlftool.Processor.walk", side_effect=KeyboardInterrupt):
            result = self.run_main("fix", "unix", self.tree)
        self.assertEqual(result, crlftool.EXIT_INTERRUPTED)

    def test_log_file(self) -> None:
        log_file = os.path.join(self.test_dir, "crlftool.log")
        result = self.run_main("fix", "unix", self.tree, "--log-file", log_file)
        self.assertEqual(result, crlftool.EXIT_OK)
        for handler in crlftool.logger.handlers:
            handler.flush()
        with open(log_file, "r", encoding="utf-8") as f:
            self.assertIn("CrlfTool - INFO", f.read())

    def test_summary_reports_ignored_files(self) -> None:
        with open(os.path.join(self.tree, "notes.md"), "wb") as f:
            f.write(b"a\r\n")
        log_file = os.path.join(self.test_dir, "crlftool.log")
        result = self.run_main("fix", "unix", self.tree, "--log-file", log_file)
        self.assertEqual(result, crlftool.EXIT_OK)
        for handler in crlftool.logger.handlers:
            handler.flush()
        with open(log_file, "r", encoding="utf-8") as f:
            self.assertIn("Fixed: 1, Valid: 0, Invalid: 0, Unchanged: 0, Ignored: 1", f.read())

    def test_log_file_in_missing_directory(self) -> None:
        log_file = os.path.join(self.test_dir, "missing", "crlftool.log")
        result = self.run_main("fix", "unix", self.tree, "--log-file", log_file)
        self.assertEqual(result, crlftool.EXIT_ERROR)
        self.assertEqual(self.read_test_file(), b"Line 1\r\nLine 2\r\n")

    def test_non_utf8_config_is_fatal(self) -> None:
        config = os.path.join(self.test_dir, "crlftool.toml")
        with open(config, "wb") as f:
            f.write(b'extensions = ["\xff.txt"]\n')
        result = self.run_main("fix", "unix", self.tree, "--config", config)
        self.assertEqual(result, crlftool.EXIT_ERROR)
        self.assertEqual(self.read_test_file(), b"Line 1\r\nLine 2\r\n")
        self.assertFalse(os.path.exists(self.index_path))


if __name__ == "__main__":
    unittest.main()
