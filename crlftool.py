#!/usr/bin/env python3
"""
CrlfTool

A Python script to fix or validate line endings across a directory tree,
remembering already conformant files between runs.
"""

import argparse
import json
import logging
import os
import re
import stat
import sys
import time
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional

from tqdm import tqdm

# Define version
__version__ = "1.0.0"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
logger = logging.getLogger("CrlfTool")

DEFAULT_EXTENSIONS = (".cs", ".cshtml", ".txt", ".js", ".xml")
DEFAULT_EXCLUDE_FOLDERS = (".git", "bin")
CONFIG_FILE_NAME = "crlftool.toml"
INDEX_FILE_NAME = "index.bin"
INDEX_FORMAT_VERSION = 1

FALLBACK_ENCODING = "cp1251"
UTF8_BOM = b"\xef\xbb\xbf"
INVALID_LINE_ENDING_MESSAGE = "Invalid line ending in file: {path}"

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_USAGE = 2
EXIT_ERROR = 3
EXIT_INTERRUPTED = 130

UNIX_LINE_ENDING_RE = re.compile(r"([^\r])\n")
WINDOWS_LINE_ENDING_RE = re.compile(r"\r\n")


class CrlfToolError(Exception):
    """Base class for fatal CrlfTool errors."""


class ConfigError(CrlfToolError):
    """The settings file exists but cannot be used."""


class IndexCorruptError(CrlfToolError):
    """The result index exists but cannot be read back."""


class LineEnding(Enum):
    UNIX = "unix"
    WINDOWS = "windows"


class Action(Enum):
    FIX = "fix"
    VALIDATE = "validate"


@dataclass(frozen=True)
class Settings:
    """File extensions to process and folder names never to descend into."""

    extensions: FrozenSet[str] = frozenset(DEFAULT_EXTENSIONS)
    exclude_folders: FrozenSet[str] = frozenset(DEFAULT_EXCLUDE_FOLDERS)


@dataclass(frozen=True)
class FileRecord:
    last_modified: int
    conformant: bool


@dataclass(frozen=True)
class DecodedText:
    text: str
    encoding: str
    bom: bool = False


@dataclass
class RunStats:
    skipped: int = 0
    fixed: int = 0
    valid: int = 0
    invalid: int = 0
    ignored: int = 0


# --------------------------------------------------------------------------
# Configuration
# --------------------------------------------------------------------------


def _string_list(value: object, key: str, config_path: str) -> List[str]:
    if isinstance(value, str):
        items = value.split(";")
    elif isinstance(value, list) and all(isinstance(item, str) for item in value):
        items = value
    else:
        raise ConfigError(
            f"'{key}' in {config_path} must be a list of strings "
            "or a ';'-separated string"
        )
    return [item.strip() for item in items if item.strip()]


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Load settings from a TOML file.

    When no path is given, ``crlftool.toml`` in the working directory is used
    if present. Keys that are missing or empty keep their defaults.
    """
    explicit = config_path is not None
    path: str = config_path if config_path is not None else CONFIG_FILE_NAME
    if not os.path.isfile(path):
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return Settings()

    try:
        with open(path, "rb") as f:
            payload = tomllib.load(f)
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    extensions = _string_list(
        payload.get("extensions", []), "extensions", path
    ) or list(DEFAULT_EXTENSIONS)
    exclude_folders = _string_list(
        payload.get("exclude_folders", []), "exclude_folders", path
    ) or list(DEFAULT_EXCLUDE_FOLDERS)

    logger.debug("Loaded settings from %s", path)
    return Settings(
        extensions=frozenset(extensions), exclude_folders=frozenset(exclude_folders)
    )


# --------------------------------------------------------------------------
# Reading
# --------------------------------------------------------------------------


def read_text(file_path: str, fallback: bool = True) -> DecodedText:
    """
    Read a file as UTF-8 text.

    If the UTF-8 decode produced any replacement character and ``fallback``
    is set, the same bytes are decoded as Windows-1251 instead. This is a
    best-effort guess for legacy Cyrillic files, not encoding detection.
    """
    with open(file_path, "rb") as f:
        data: bytes = f.read()

    bom = data.startswith(UTF8_BOM)
    if bom:
        data = data[len(UTF8_BOM) :]

    text = data.decode("utf-8", errors="replace")
    if fallback and "\ufffd" in text:
        logger.debug(
            "UTF-8 decoding failed for %s, falling back to %s",
            file_path,
            FALLBACK_ENCODING,
        )
        return DecodedText(
            data.decode(FALLBACK_ENCODING, errors="replace"), FALLBACK_ENCODING, bom
        )
    return DecodedText(text, "utf-8", bom)


# --------------------------------------------------------------------------
# Line endings
# --------------------------------------------------------------------------


def to_unix(text: str) -> str:
    """Replace every CRLF pair with LF. A lone CR is left as it is."""
    return WINDOWS_LINE_ENDING_RE.sub("\n", text)


def to_windows(text: str) -> str:
    """
    Turn LF into CRLF wherever the LF follows a character other than CR.

    Matches do not overlap, so a LF at the very start of the text is never
    converted and only every other LF of a blank-line run is converted in
    one pass.
    """
    return UNIX_LINE_ENDING_RE.sub("\\1\r\n", text)


def has_windows_ending(text: str) -> bool:
    return WINDOWS_LINE_ENDING_RE.search(text) is not None


def has_unix_ending(text: str) -> bool:
    return UNIX_LINE_ENDING_RE.search(text) is not None


def convert(text: str, line_ending: LineEnding) -> str:
    if line_ending is LineEnding.UNIX:
        return to_unix(text)
    return to_windows(text)


def is_conformant(text: str, line_ending: LineEnding) -> bool:
    if line_ending is LineEnding.UNIX:
        return not has_windows_ending(text)
    return not has_unix_ending(text)


# --------------------------------------------------------------------------
# Result index
# --------------------------------------------------------------------------


class ResultIndex:
    """
    Remembers, per absolute file path, the modification time a file had when
    it was last processed and whether it conformed at that point.

    With ``path=None`` the index lives in memory only: ``load`` starts empty
    and ``save`` does nothing.
    """

    def __init__(self, path: Optional[str] = INDEX_FILE_NAME) -> None:
        self.path = path
        self._records: Optional[Dict[str, FileRecord]] = None

    def __len__(self) -> int:
        return len(self._loaded())

    def __contains__(self, file_path: object) -> bool:
        return isinstance(file_path, str) and self.get(file_path) is not None

    def _loaded(self) -> Dict[str, FileRecord]:
        if self._records is None:
            raise RuntimeError("Index is not loaded. Call load() before using it.")
        return self._records

    def load(self) -> None:
        if self.path is None or not os.path.exists(self.path):
            logger.debug("No index at %s, starting empty", self.path)
            self._records = {}
            return

        with open(self.path, "r", encoding="utf-8") as f:
            try:
                payload = json.load(f)
            except ValueError as e:
                raise IndexCorruptError(f"Cannot parse index {self.path}: {e}") from e

        if not isinstance(payload, dict) or payload.get("version") != INDEX_FORMAT_VERSION:
            raise IndexCorruptError(f"Unsupported index format in {self.path}")
        files = payload.get("files")
        if not isinstance(files, dict):
            raise IndexCorruptError(f"Index {self.path} has no file table")

        records: Dict[str, FileRecord] = {}
        for file_path, entry in files.items():
            if (
                not isinstance(entry, dict)
                or not isinstance(entry.get("last_modified"), int)
                or not isinstance(entry.get("conformant"), bool)
            ):
                raise IndexCorruptError(
                    f"Malformed index entry for {file_path} in {self.path}"
                )
            records[file_path] = FileRecord(entry["last_modified"], entry["conformant"])

        self._records = records
        logger.debug("Loaded %d index entries from %s", len(records), self.path)

    def save(self) -> None:
        if self.path is None:
            return
        payload = {
            "version": INDEX_FORMAT_VERSION,
            "files": {
                file_path: {
                    "last_modified": record.last_modified,
                    "conformant": record.conformant,
                }
                for file_path, record in self._loaded().items()
            },
        }
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, sort_keys=True)
            f.write("\n")
        os.replace(tmp, self.path)
        logger.debug("Saved %d index entries to %s", len(payload["files"]), self.path)

    def get(self, file_path: str) -> Optional[FileRecord]:
        return self._loaded().get(file_path)

    def upsert(self, file_path: str, record: FileRecord) -> None:
        self._loaded()[file_path] = record

    def is_fresh(self, file_path: str, last_modified: int) -> bool:
        """True if the file is known to conform and has not changed since."""
        record = self.get(file_path)
        return (
            record is not None
            and record.last_modified == last_modified
            and record.conformant
        )


# --------------------------------------------------------------------------
# Processing
# --------------------------------------------------------------------------


def is_reparse_point(path: str) -> bool:
    """True for symlinks, and on Windows also for junctions and other reparse points."""
    st = os.lstat(path)
    if stat.S_ISLNK(st.st_mode):
        return True
    attributes: int = getattr(st, "st_file_attributes", 0)
    return bool(attributes & getattr(stat, "FILE_ATTRIBUTE_REPARSE_POINT", 0))


@dataclass
class Processor:
    """Walks a directory tree and fixes or validates each eligible file."""

    settings: Settings
    index: ResultIndex
    action: Action
    line_ending: LineEnding
    progress: Optional[tqdm] = None
    stats: RunStats = field(default_factory=RunStats)

    def is_excluded_folder(self, directory: str) -> bool:
        name = os.path.basename(os.path.normpath(directory))
        return name in self.settings.exclude_folders or is_reparse_point(directory)

    def is_eligible_file(self, file_path: str) -> bool:
        extension = os.path.splitext(file_path)[1]
        return extension in self.settings.extensions and not is_reparse_point(
            file_path
        )

    def walk(self, directory: str) -> bool:
        """Process a directory tree. Returns False if any file in it failed."""
        directory = os.path.abspath(directory)
        if self.is_excluded_folder(directory):
            logger.debug("Skipping folder: %s", directory)
            return True

        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda entry: entry.name)
        subdirs = [e.path for e in entries if e.is_dir(follow_symlinks=False)]
        files = [e.path for e in entries if e.is_file(follow_symlinks=False)]

        result = True
        for subdir in subdirs:
            if not self.walk(subdir):
                result = False
        for file_path in files:
            if not self.process_file(file_path):
                result = False
        return result

    def process_file(self, file_path: str) -> bool:
        file_path = os.path.abspath(file_path)
        if not self.is_eligible_file(file_path):
            self.stats.ignored += 1
            return True

        try:
            last_modified = os.stat(file_path).st_mtime_ns
            if self.index.is_fresh(file_path, last_modified):
                logger.debug("Unchanged since last run: %s", file_path)
                self.stats.skipped += 1
                return True

            if self.action is Action.FIX:
                return self.fix_file(file_path)
            return self.validate_file(file_path, last_modified)
        finally:
            if self.progress is not None:
                self.progress.update(1)

    def fix_file(self, file_path: str) -> bool:
        """Rewrite the file as UTF-8, with a BOM only if it already had one."""
        decoded = read_text(file_path, fallback=True)
        content = convert(decoded.text, self.line_ending)

        with open(file_path, "wb") as f:
            if decoded.bom:
                f.write(UTF8_BOM)
            f.write(content.encode("utf-8"))

        self.index.upsert(
            file_path, FileRecord(os.stat(file_path).st_mtime_ns, True)
        )
        self.stats.fixed += 1
        logger.debug("Updated file: %s (read as %s)", file_path, decoded.encoding)
        return True

    def validate_file(self, file_path: str, last_modified: int) -> bool:
        decoded = read_text(file_path, fallback=False)
        if not is_conformant(decoded.text, self.line_ending):
            tqdm.write(INVALID_LINE_ENDING_MESSAGE.format(path=file_path))
            self.index.upsert(file_path, FileRecord(last_modified, False))
            self.stats.invalid += 1
            return False

        self.index.upsert(file_path, FileRecord(last_modified, True))
        self.stats.valid += 1
        return True


# --------------------------------------------------------------------------
# Command line
# --------------------------------------------------------------------------


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crlftool",
        description="Fix or validate line endings of text files in a directory tree",
    )
    parser.add_argument(
        "action", choices=[a.value for a in Action], help="Rewrite files or only check them"
    )
    parser.add_argument(
        "line_ending",
        choices=[e.value for e in LineEnding],
        help="Target line ending convention",
    )
    parser.add_argument("path", help="Root directory to process")
    parser.add_argument(
        "--index",
        default=INDEX_FILE_NAME,
        help=f"Result index file (default: {INDEX_FILE_NAME})",
    )
    parser.add_argument(
        "--no-index",
        action="store_true",
        help="Process every file and do not read or write the result index",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"TOML settings file (default: {CONFIG_FILE_NAME} if present)",
    )
    parser.add_argument(
        "--extensions",
        nargs="+",
        default=None,
        help="File extensions to process "
        f"(default: {' '.join(DEFAULT_EXTENSIONS)})",
    )
    parser.add_argument(
        "--exclude-folders",
        nargs="+",
        default=None,
        help="Folder names never to descend into "
        f"(default: {' '.join(DEFAULT_EXCLUDE_FOLDERS)})",
    )
    parser.add_argument(
        "--no-progress", action="store_true", help="Do not show a progress bar"
    )
    parser.add_argument("--log-file", default=None, help="Also append logs to this file")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--version",
        action="version",
        version=f"CrlfTool v{__version__}",
        help="Show program version and exit",
    )
    return parser


def _apply_overrides(
    settings: Settings,
    extensions: Optional[Iterable[str]],
    exclude_folders: Optional[Iterable[str]],
) -> Settings:
    return Settings(
        extensions=frozenset(extensions) if extensions else settings.extensions,
        exclude_folders=(
            frozenset(exclude_folders) if exclude_folders else settings.exclude_folders
        ),
    )


def _format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.2f} seconds"
    minutes = int(seconds // 60)
    return f"{minutes} minute{'s' if minutes != 1 else ''} {seconds % 60:.2f} seconds"


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as e:
        # --help and --version exit with 0, usage errors with 2
        return e.code if isinstance(e.code, int) else EXIT_USAGE

    try:
        configure_logging(args.verbose, args.log_file)
    except OSError as e:
        configure_logging(args.verbose)
        logger.error("Cannot open log file %s: %s", args.log_file, e)
        return EXIT_ERROR

    if not os.path.isdir(args.path):
        logger.error("Error: '%s' is not a valid directory.", args.path)
        return EXIT_USAGE

    root_dir: str = os.path.abspath(args.path)
    action = Action(args.action)
    line_ending = LineEnding(args.line_ending)

    try:
        settings = _apply_overrides(
            load_settings(args.config), args.extensions, args.exclude_folders
        )
        index = ResultIndex(None if args.no_index else args.index)
        index.load()

        logger.info(
            "CrlfTool v%s: %s %s line endings in %s",
            __version__,
            action.value,
            line_ending.value,
            root_dir,
        )
        logger.info("Extensions: %s", " ".join(sorted(settings.extensions)))
        logger.info("Excluded folders: %s", ", ".join(sorted(settings.exclude_folders)))

        start_time: float = time.time()
        with tqdm(
            desc=f"{action.value.capitalize()} files",
            unit="file",
            disable=args.no_progress,
        ) as pbar:
            processor = Processor(settings, index, action, line_ending, progress=pbar)
            result = processor.walk(root_dir)

        index.save()
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return EXIT_INTERRUPTED
    except (CrlfToolError, OSError) as e:
        logger.error("%s", e)
        logger.debug("Run aborted, index not saved", exc_info=True)
        return EXIT_ERROR

    stats = processor.stats
    logger.info(
        "Fixed: %d, Valid: %d, Invalid: %d, Unchanged: %d, Ignored: %d (%s)",
        stats.fixed,
        stats.valid,
        stats.invalid,
        stats.skipped,
        stats.ignored,
        _format_duration(time.time() - start_time),
    )
    if not result:
        logger.warning("%d file(s) have invalid line endings", stats.invalid)
        return EXIT_INVALID
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
