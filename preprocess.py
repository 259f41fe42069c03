#!/usr/bin/env python3
"""
MarkPrep

Line-ending normalization and tab expansion for CommonMark input.
"""

import argparse
import concurrent.futures
import io
import logging
import os
import re
import shutil
import sys
import threading
import time
from pathlib import Path
from typing import BinaryIO, Iterator, List, NamedTuple, Optional, Set, Union

from tqdm import tqdm

# Define version
__version__ = "1.0.0"
__author__ = "tboy1337"

TAB_STOP = 4
DEFAULT_CHUNK_SIZE = 4096
DEFAULT_PATTERNS = ["*.md", "*.markdown"]
DEFAULT_IGNORE_DIRS = [".git", ".github", "__pycache__", "node_modules", "venv", ".venv"]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("MarkPrep")
# Add a thread lock for logging
log_lock = threading.Lock()

_TERMINATOR = re.compile(b"[\r\n]")

Source = Union[bytes, bytearray, memoryview, BinaryIO]


class ScanResult(NamedTuple):
    """Outcome of one scanner step.

    ``token`` is None when no line is available; ``done`` tells apart
    "need more data" (False) from "input exhausted" (True).
    """

    advance: int
    token: Optional[bytes]
    done: bool = False

    @property
    def needs_more(self) -> bool:
        return self.token is None and not self.done


NEED_MORE = ScanResult(0, None)
DONE = ScanResult(0, None, True)


def scan_line(data: bytes, at_eof: bool, start: int = 0) -> ScanResult:
    """
    Split the next line off the unconsumed remainder ``data``.

    Recognizes LF, CRLF and lone CR. A CR that is the last available byte is
    only taken as a terminator once ``at_eof`` is set, since the LF of a CRLF
    pair may still be in the next chunk.

    ``start`` is where to begin looking for a terminator; ``data[:start]``
    must not contain one.
    """
    if at_eof and not data:
        return DONE

    match = _TERMINATOR.search(data, start)
    if match is None:
        if at_eof:
            return ScanResult(len(data), bytes(data))
        return NEED_MORE

    i = match.start()
    if data[i] == 0x0A:  # LF
        return ScanResult(i + 1, bytes(data[:i]))

    # CR
    if i + 1 < len(data):
        if data[i + 1] == 0x0A:
            return ScanResult(i + 2, bytes(data[:i]))
        return ScanResult(i + 1, bytes(data[:i]))
    if at_eof:
        return ScanResult(i + 1, bytes(data[:i]))
    return NEED_MORE


def scan_lines(
    source: Source, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> Iterator[bytes]:
    """
    Lazily yield the Line Tokens of ``source``.

    ``source`` is either an in-memory bytes-like object or a binary stream
    with a ``read(size)`` method. The stream is read only when the remainder
    holds no complete line; any exception raised by ``read`` propagates.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    if isinstance(source, (bytes, bytearray, memoryview)):
        source = io.BytesIO(bytes(source))

    remainder = bytearray()
    # Bytes before this offset are known to hold no terminator. A trailing CR
    # is left in the search window so it can pair with the next chunk's LF.
    searched = 0
    at_eof = False
    while True:
        result = scan_line(remainder, at_eof, searched)
        if result.done:
            return
        if result.needs_more:
            searched = max(len(remainder) - 1, 0)
            chunk = source.read(chunk_size)
            if chunk:
                remainder += chunk
            else:
                at_eof = True
            continue
        del remainder[: result.advance]
        searched = 0
        yield result.token


def expand_tabs(line: bytes, tab_stop: int = TAB_STOP) -> bytes:
    """
    Replace each tab in ``line`` with spaces up to the next tab stop.

    Columns are counted in codepoints, starting at 0. Returns ``line`` itself
    when there is nothing to expand.
    """
    if tab_stop < 1:
        raise ValueError(f"tab_stop must be positive, got {tab_stop}")
    if isinstance(line, memoryview):
        line = line.tobytes()
    if b"\t" not in line:
        return line

    # bytes.expandtabs would count columns in bytes
    text = line.decode("utf-8", errors="surrogateescape")
    parts: List[str] = []
    column = 0
    for char in text:
        if char == "\t":
            spaces = tab_stop - column % tab_stop
            parts.append(" " * spaces)
            column += spaces
        else:
            parts.append(char)
            column += 1
    return "".join(parts).encode("utf-8", errors="surrogateescape")


def convert(source: Source, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    """
    Normalize line endings to LF and expand tabs.

    Every line of the result, including the last one, ends with a single LF.
    Empty input gives empty output. Errors reading ``source`` propagate and
    no partial output is returned.
    """
    output = bytearray()
    line_count = 0
    for line in scan_lines(source, chunk_size):
        output += expand_tabs(line)
        output += b"\n"
        line_count += 1
    logger.debug("Converted %d lines into %d bytes", line_count, len(output))
    return bytes(output)


def process_file(file_path: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bool:
    """Convert a file in place. Returns True only if the file was rewritten."""
    try:
        if not os.path.exists(file_path):
            with log_lock:
                logger.error("File not found: %s", file_path)
            return False

        with open(file_path, "rb") as f:
            original_content: bytes = f.read()
        modified_content: bytes = convert(original_content, chunk_size)

        if original_content == modified_content:
            with log_lock:
                logger.debug("No changes needed for file: %s", file_path)
            return False

        temp_backup = file_path + ".bak"
        try:
            shutil.copy2(file_path, temp_backup)
        except OSError as e:
            with log_lock:
                logger.warning("Could not create backup of %s: %s", file_path, str(e))

        try:
            with open(file_path, "wb") as f:
                f.write(modified_content)
        except OSError as e:
            if os.path.exists(temp_backup):
                try:
                    shutil.copy2(temp_backup, file_path)
                    os.remove(temp_backup)
                    with log_lock:
                        logger.info(
                            "Restored original file from backup after write error: %s",
                            file_path,
                        )
                except OSError as restore_err:
                    with log_lock:
                        logger.error(
                            "Failed to restore from backup for %s: %s",
                            file_path,
                            str(restore_err),
                        )
            with log_lock:
                logger.error("Error writing to %s: %s", file_path, str(e))
            return False

        if os.path.exists(temp_backup):
            os.remove(temp_backup)

        with log_lock:
            logger.debug("Updated file: %s", file_path)
        return True
    except PermissionError as e:
        with log_lock:
            logger.error("Permission denied accessing %s: %s", file_path, str(e))
        return False
    except OSError as e:
        with log_lock:
            logger.error("Error processing %s: %s", file_path, str(e))
        return False


def find_files(
    root_dir: str,
    file_patterns: Optional[List[str]] = None,
    ignore_dirs: Optional[List[str]] = None,
) -> List[str]:
    """Find all files under ``root_dir`` matching any of the glob patterns."""
    if ignore_dirs is None:
        ignore_dirs = DEFAULT_IGNORE_DIRS
    if not file_patterns:
        file_patterns = DEFAULT_PATTERNS

    ignore_dirs_set: Set[str] = set(ignore_dirs)
    glob_patterns: List[str] = []
    for pattern in file_patterns:
        pattern = pattern.strip()
        if not pattern:
            continue
        # A bare extension such as ".md" means "*.md"
        if pattern.startswith(".") and "/" not in pattern and "\\" not in pattern:
            pattern = f"*{pattern}"
        glob_patterns.append(pattern)

    all_files: List[str] = []
    for root, dirs, files in os.walk(root_dir):
        dirs[:] = sorted(d for d in dirs if d not in ignore_dirs_set)
        for filename in sorted(files):
            if any(Path(filename).match(p) for p in glob_patterns):
                all_files.append(os.path.join(root, filename))
    return all_files


def collect_files(
    paths: List[str],
    file_patterns: Optional[List[str]] = None,
    ignore_dirs: Optional[List[str]] = None,
) -> List[str]:
    """Expand directories in ``paths`` into the matching files they contain."""
    files: List[str] = []
    for path in paths:
        if os.path.isdir(path):
            files.extend(find_files(path, file_patterns, ignore_dirs))
        else:
            files.append(path)
    return files


def process_files_parallel(
    files: List[str],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_workers: Optional[int] = None,
) -> int:
    """Convert files in place using a thread pool. Returns the rewritten count."""
    processed_count: int = 0
    error_count: int = 0
    skipped_count: int = 0

    if not files:
        return 0

    if max_workers is None:
        cpu_count: Optional[int] = os.cpu_count()
        max_workers = min((cpu_count or 2) * 2, 32, len(files))
    else:
        max_workers = min(max_workers, 32, len(files))

    with log_lock:
        logger.debug(
            "Using %d worker threads for processing %d files", max_workers, len(files)
        )

    batch_size = 1000
    for i in range(0, len(files), batch_size):
        batch_files = files[i : i + batch_size]

        with tqdm(
            total=len(batch_files),
            desc=f"Converting files (batch {i // batch_size + 1})",
            unit="file",
            disable=len(files) == 1,
        ) as pbar:
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=max_workers
            ) as executor:
                future_to_file = {
                    executor.submit(process_file, file_path, chunk_size): file_path
                    for file_path in batch_files
                }

                for future in concurrent.futures.as_completed(future_to_file):
                    file_path = future_to_file[future]
                    try:
                        if future.result():
                            processed_count += 1
                        else:
                            skipped_count += 1
                    except Exception as e:  # pylint: disable=broad-exception-caught
                        error_count += 1
                        with log_lock:
                            logger.error(
                                "Unhandled error processing %s: %s", file_path, str(e)
                            )
                    finally:
                        pbar.update(1)

    with log_lock:
        if error_count > 0:
            logger.warning("Encountered errors while processing %d files", error_count)
        logger.info(
            "Processed: %d, Skipped: %d, Errors: %d",
            processed_count,
            skipped_count,
            error_count,
        )

    return processed_count


def convert_to_stream(
    paths: List[str], output: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> bool:
    """Convert each path (``-`` is stdin) and write the results to ``output``."""
    ok = True
    for path in paths:
        try:
            if path == "-":
                converted = convert(sys.stdin.buffer, chunk_size)
            else:
                with open(path, "rb") as f:
                    converted = convert(f, chunk_size)
        except OSError as e:
            logger.error("Error reading %s: %s", path, str(e))
            ok = False
            continue
        output.write(converted)
    output.flush()
    return ok


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    if log_file and not any(
        isinstance(h, logging.FileHandler)
        and h.baseFilename == os.path.abspath(log_file)
        for h in logger.handlers
    ):
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Normalize line endings to LF and expand tabs for CommonMark input"
    )
    parser.add_argument(
        "paths",
        nargs="*",
        default=["-"],
        help="Files or directories to convert, '-' for stdin (default: stdin)",
    )
    parser.add_argument(
        "--in-place",
        action="store_true",
        help="Rewrite files in place instead of writing to stdout",
    )
    parser.add_argument(
        "--pattern",
        nargs="+",
        default=None,
        help="File patterns to match inside directories (default: *.md *.markdown)",
    )
    parser.add_argument(
        "--ignore-dirs",
        nargs="+",
        default=None,
        help="Directories to skip when walking "
        "(default: .git, .github, __pycache__, node_modules, venv, .venv)",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help=f"Bytes to read per chunk (default: {DEFAULT_CHUNK_SIZE})",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of worker threads for --in-place "
        "(default: auto-detect based on CPU count)",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument("--log-file", default=None, help="Also append logs to this file")
    parser.add_argument(
        "--version",
        action="version",
        version=f"MarkPrep v{__version__}",
        help="Show program version and exit",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = build_parser().parse_args(argv)
        setup_logging(args.verbose, args.log_file)

        if args.chunk_size < 1:
            logger.error("Invalid chunk size: %d", args.chunk_size)
            return 1
        if args.workers is not None and args.workers <= 0:
            logger.warning(
                "Invalid worker count (%d), using auto-detection instead", args.workers
            )
            args.workers = None

        if not args.in_place:
            paths = collect_files(args.paths, args.pattern, args.ignore_dirs)
            ok = convert_to_stream(paths, sys.stdout.buffer, args.chunk_size)
            return 0 if ok else 1

        if "-" in args.paths:
            logger.error("Cannot rewrite stdin in place")
            return 1

        missing = [p for p in args.paths if not os.path.exists(p)]
        if missing:
            logger.error("Path not found: %s", ", ".join(missing))
            return 1

        start_time: float = time.time()
        files = collect_files(args.paths, args.pattern, args.ignore_dirs)
        if not files:
            logger.warning("No matching files found.")
            return 0

        logger.info("Found %d files to process.", len(files))
        processed_count = process_files_parallel(
            files, args.chunk_size, max_workers=args.workers
        )
        logger.info(
            "Done! Rewrote %d of %d files in %.2f seconds.",
            processed_count,
            len(files),
            time.time() - start_time,
        )
        return 0
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 130
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("An unexpected error occurred: %s", str(e))
        logger.debug("Traceback:", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
