"""
Shared code for fixity: constants, types, errors, logging, walking, reporting.
"""

import json
import logging
import os
import stat
import sys
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, TextIO, Tuple


VERSION = "1.0.0"

DEFAULT_DB_NAME = ".fixity.sqlite"
DEFAULT_DIGEST_ALGORITHM = "BLAKE2b512"
DEFAULT_CHUNK_SIZE = 400 * 1024
DEFAULT_WORKERS = 1
PROGRESS_EVERY = 1000
HASH_BATCH_SIZE = 100
MISSING_LIST_THRESHOLD = 256
MTIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class ErrorKind(Enum):
    """Closed set of error kinds raised or recorded by fixity."""
    UNREADABLE = "unreadable"
    TYPE_MISMATCH = "type_mismatch"
    MULTIPLE_RECORDS = "multiple_records"
    SCHEMA_INCOMPATIBLE = "schema_incompatible"
    INTEGRITY_CHECK_FAILED = "integrity_check_failed"
    DIGEST_ALGORITHM_UNSUPPORTED = "digest_algorithm_unsupported"
    IO_ERROR = "io_error"


# Kinds that mean the catalog itself cannot be trusted; these abort a run.
FATAL_KINDS = frozenset({
    ErrorKind.MULTIPLE_RECORDS,
    ErrorKind.SCHEMA_INCOMPATIBLE,
    ErrorKind.INTEGRITY_CHECK_FAILED,
    ErrorKind.DIGEST_ALGORITHM_UNSUPPORTED,
})


class FixityError(Exception):
    """Error carrying an ErrorKind."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def fatal(self) -> bool:
        return self.kind in FATAL_KINDS


def error_kind_for(exc: OSError) -> ErrorKind:
    """Map an OSError raised while reading a file onto an ErrorKind."""
    if isinstance(exc, PermissionError):
        return ErrorKind.UNREADABLE
    if isinstance(exc, (IsADirectoryError, NotADirectoryError)):
        return ErrorKind.TYPE_MISMATCH
    return ErrorKind.IO_ERROR


@dataclass
class FileInfo:
    """A file under the scan root, ready to be digested."""
    path: Path
    filename: str
    mtime: str


@dataclass
class HashResult:
    """Result of a digest computation."""
    file_info: FileInfo
    digest: Optional[str] = None
    new_digest: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


def setup_logging(
    log_file: Optional[Path] = None, verbose: bool = False, quiet: bool = False
) -> None:
    """Configure logging to file and console."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def iter_entries(
    root: Path,
    on_error: Callable[[Path, Exception], None],
) -> Iterator[Tuple[Path, os.stat_result]]:
    """Walk root depth-first, yielding (path, lstat) for every non-directory entry.

    Symlinks are never followed or yielded. A directory that cannot be read is
    reported through on_error and skipped; its siblings are still walked.
    """
    try:
        with os.scandir(root) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as exc:
        on_error(root, exc)
        return

    for entry in entries:
        path = Path(entry.path)
        try:
            if entry.is_symlink():
                continue
            if entry.is_dir(follow_symlinks=False):
                if not os.access(path, os.R_OK | os.X_OK):
                    raise PermissionError(f"Directory is not readable: {path}")
                yield from iter_entries(path, on_error)
                continue
            entry_stat = entry.stat(follow_symlinks=False)
        except OSError as exc:
            on_error(path, exc)
            continue
        yield path, entry_stat


def is_regular_file(file_stat: os.stat_result) -> bool:
    """False for devices, pipes, sockets, directories and symlinks."""
    return stat.S_ISREG(file_stat.st_mode)


def normalize_filename(path: Path, root: Path) -> str:
    """Catalog key for path: root-relative, forward slashes, LF newlines, NFKC."""
    relative = path.relative_to(root).as_posix()
    relative = relative.replace("\r\n", "\n").replace("\r", "\n")
    return unicodedata.normalize("NFKC", relative)


def mtime_to_catalog(mtime: float) -> str:
    """UTC modification time with second precision."""
    return datetime.fromtimestamp(int(mtime), tz=timezone.utc).strftime(MTIME_FORMAT)


def run_stamp(when: Optional[datetime] = None) -> str:
    """Timestamp used in the names of per-run error and missing-list files."""
    return (when or datetime.now()).strftime("%Y-%m-%d %H-%M-%S")


class ErrorRecord:
    """Errors for one run: logged, kept in memory, and appended to a file.

    The file is created on the first error only, so a clean run leaves
    nothing behind.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.entries: List[Dict[str, object]] = []

    def add(
        self,
        line: str,
        path: Optional[str] = None,
        kind: Optional[ErrorKind] = None,
    ) -> None:
        entry: Dict[str, object] = {"message": line}
        if path is not None:
            entry["path"] = path
        if kind is not None:
            entry["kind"] = kind.value
        self.entries.append(entry)

        logging.error(line)
        with self.path.open('a', encoding='utf-8') as handle:
            handle.write(line + "\n")

    def __len__(self) -> int:
        return len(self.entries)


def write_lines(lines: List[str], dest: TextIO) -> None:
    for line in lines:
        dest.write(line + "\n")


def build_report(
    root: Path,
    db_path: Path,
    digest_algorithm: str,
    stats: Dict[str, int],
    run_started: int,
    run_finished: int,
    mode: str,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "root": str(root),
        "db": str(db_path),
        "digest_algorithm": digest_algorithm,
        "mode": mode,
        "stats": stats,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
