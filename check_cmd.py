"""
Check command: walk a tree, classify every file against the catalog, then
resolve renames, missing files and any pending digest algorithm migration.
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from catalog import Catalog, catalog_files
from common import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_DB_NAME,
    DEFAULT_WORKERS,
    HASH_BATCH_SIZE,
    MISSING_LIST_THRESHOLD,
    PROGRESS_EVERY,
    ErrorKind,
    ErrorRecord,
    FileInfo,
    HashResult,
    build_report,
    error_kind_for,
    is_regular_file,
    iter_entries,
    mtime_to_catalog,
    normalize_filename,
    run_stamp,
    write_lines,
)
from digests import compute_digests_task
from migration import AlgorithmMigration, resolve_digest_algorithm


ConfirmFn = Callable[[str], Optional[bool]]


def never_confirm(prompt: str) -> Optional[bool]:
    """Confirmation used when nobody can answer: unknown, treated as no."""
    return None


@dataclass
class ScanOptions:
    """Behavior switches for one scan."""
    test_only: bool = False
    accept_fate: bool = False
    auto: bool = False
    digest_algorithm: Optional[str] = None
    workers: int = DEFAULT_WORKERS
    chunk_size: int = DEFAULT_CHUNK_SIZE


@dataclass
class ScanCounters:
    good: int = 0
    updated: int = 0
    new: int = 0
    renamed: int = 0
    missing: int = 0
    likely_damaged: int = 0
    exceptions: int = 0

    @property
    def attention_needed(self) -> bool:
        return bool(self.missing or self.likely_damaged or self.exceptions)

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def resolve_db_path(root: Path, db_path: Optional[Path]) -> Path:
    """Catalog file location; a directory argument gets the default file name inside it."""
    if db_path is None:
        return root / DEFAULT_DB_NAME
    db_path = db_path.resolve()
    if db_path.is_dir():
        return db_path / DEFAULT_DB_NAME
    return db_path


class ScanSession:
    """State and steps of one reconciliation pass over a tree."""

    def __init__(
        self,
        root: Path,
        db_path: Optional[Path] = None,
        options: Optional[ScanOptions] = None,
        confirm: Optional[ConfirmFn] = None,
        extra_skip_paths: Optional[List[Path]] = None,
    ) -> None:
        self.root = root.resolve()
        self.db_path = resolve_db_path(self.root, db_path)
        self.options = options or ScanOptions()
        self.confirm = confirm or never_confirm

        stamp = run_stamp()
        self.error_log_path = self.root / f"fixity errors {stamp}.txt"
        self.missing_list_path = self.root / f"fixity missing files {stamp}.txt"
        self.skip_paths: Set[str] = {str(p) for p in catalog_files(self.db_path)}
        self.skip_paths.update({str(self.error_log_path), str(self.missing_list_path)})
        for path in extra_skip_paths or []:
            self.skip_paths.add(str(path.resolve()))

        self.counters = ScanCounters()
        self.errors = ErrorRecord(self.error_log_path)
        self.user_input_wait = 0.0
        self.processed = 0
        self.likely_damaged: List[str] = []
        self.updated: List[Dict[str, object]] = []
        self.added: List[str] = []
        self.renamed: List[Dict[str, str]] = []
        self.missing: List[str] = []
        self.removed_missing = 0

        self.catalog = Catalog(self.db_path)
        try:
            current, new = resolve_digest_algorithm(self.catalog, self.options.digest_algorithm)
        except BaseException:
            self.catalog.close()
            raise
        self.migration = AlgorithmMigration(self.catalog, current, new)

    def close(self) -> None:
        self.catalog.close()

    def run(self) -> Dict[str, object]:
        """Perform the scan and return a JSON-compatible report."""
        opts = self.options
        run_started = int(time.time())
        started = time.monotonic()
        migrating_from, migrating_to = self.migration.current, self.migration.new

        logging.info(f"Checking file digests in: {self.root}")
        logging.debug(f"Database location: {self.db_path}")
        logging.debug(f"Using {self.migration.current} digest algorithm")

        with self.catalog.transaction("EXCLUSIVE"):
            self.catalog.begin_working_sets()
            self._walk()
            self._resolve_renames()
            self._resolve_missing()
            outcome = self.migration.finish(
                missing=self.counters.missing,
                likely_damaged=self.counters.likely_damaged,
                exceptions=self.counters.exceptions,
                test_only=opts.test_only,
            )

        if self.counters.likely_damaged or self.counters.exceptions:
            logging.error("PLEASE REVIEW THE ERRORS THAT OCCURRED!")
            logging.error(f"A list of errors is also saved in a file: {self.error_log_path}")

        log_counters(self.counters)

        if not opts.test_only:
            self.catalog.maintenance()

        elapsed = time.monotonic() - started - self.user_input_wait
        logging.info(f"Elapsed time: {format_elapsed(elapsed)}")

        details: Dict[str, object] = {
            "likely_damaged": self.likely_damaged,
            "updated": self.updated,
            "new": self.added,
            "renamed": self.renamed,
            "missing": self.missing,
            "removed_missing": self.removed_missing,
            "errors": self.errors.entries,
            "migration": {
                "outcome": outcome.value,
                "from": migrating_from,
                "to": migrating_to,
            },
            "attention_needed": self.counters.attention_needed,
            "elapsed_seconds": round(elapsed, 3),
        }
        if self.errors:
            details["error_log"] = str(self.error_log_path)
        if opts.accept_fate:
            details["accept_fate"] = True
        if opts.workers > 1:
            details["workers"] = opts.workers

        return build_report(
            root=self.root,
            db_path=self.db_path,
            digest_algorithm=self.migration.current,
            stats=self.counters.as_dict(),
            run_started=run_started,
            run_finished=int(time.time()),
            mode="test" if opts.test_only else "check",
            details=details,
        )

    # Walk

    def _walk(self) -> None:
        opts = self.options
        if opts.workers <= 1:
            for path, file_stat in iter_entries(self.root, self._record_walk_error):
                file_info = self._prepare(path, file_stat)
                if file_info is not None:
                    self._process_result(self._hash(file_info))
            return

        logging.info(f"Using {opts.workers} worker threads for hashing")
        batch: List[FileInfo] = []
        with ThreadPoolExecutor(max_workers=opts.workers) as executor:
            for path, file_stat in iter_entries(self.root, self._record_walk_error):
                file_info = self._prepare(path, file_stat)
                if file_info is None:
                    continue
                batch.append(file_info)
                if len(batch) >= HASH_BATCH_SIZE:
                    self._flush(executor, batch)
            self._flush(executor, batch)

    def _flush(self, executor: ThreadPoolExecutor, batch: List[FileInfo]) -> None:
        # Results come back in submission order; catalog writes stay on this thread.
        for result in executor.map(self._hash, batch):
            self._process_result(result)
        batch.clear()

    def _hash(self, file_info: FileInfo) -> HashResult:
        return compute_digests_task(
            file_info,
            self.migration.current,
            self.migration.new,
            self.options.chunk_size,
        )

    def _prepare(self, path: Path, file_stat: os.stat_result) -> Optional[FileInfo]:
        if str(path) in self.skip_paths:
            logging.debug(f"SKIPPING FILE: {path}")
            return None
        if not is_regular_file(file_stat):
            return None
        if not os.access(path, os.R_OK):
            self._record_exception(str(path), "File is not readable", ErrorKind.UNREADABLE)
            return None
        return FileInfo(
            path=path,
            filename=normalize_filename(path, self.root),
            mtime=mtime_to_catalog(file_stat.st_mtime),
        )

    def _record_walk_error(self, path: Path, exc: Exception) -> None:
        kind = error_kind_for(exc) if isinstance(exc, OSError) else ErrorKind.IO_ERROR
        self._record_exception(str(path), str(exc), kind)

    def _record_exception(self, path: str, message: str, kind: Optional[ErrorKind]) -> None:
        self.counters.exceptions += 1
        self.errors.add(f"ERROR: {message}, processing file: {path}", path=path, kind=kind)

    def _process_result(self, result: HashResult) -> None:
        fi = result.file_info
        if result.error:
            self._record_exception(str(fi.path), result.error, result.error_kind)
        else:
            self.migration.record(fi.filename, result.new_digest)
            self._classify(fi.filename, fi.mtime, result.digest)

        self.processed += 1
        if self.processed % PROGRESS_EVERY == 0:
            c = self.counters
            logging.info(
                f"Progress: processed={self.processed}, good={c.good}, "
                f"updated={c.updated}, likely_damaged={c.likely_damaged}, "
                f"exceptions={c.exceptions}"
            )

    # Classification

    def _classify(self, filename: str, mtime: str, digest: str) -> None:
        opts = self.options
        found = self.catalog.get(filename)

        if found is None:
            logging.info(f"NEW: {filename}")
            self.added.append(filename)
            self.catalog.record_new(filename, digest)
            if not opts.test_only:
                self.catalog.insert(filename, mtime, digest)
            return

        self.catalog.mark_seen(filename)

        if found.digest == digest:
            self.counters.good += 1
            logging.debug(f"GOOD: {filename}")
            if not opts.test_only and found.mtime != mtime:
                self.catalog.touch(found, mtime)
            return

        # Same mtime with different content means nobody edited the file
        if found.mtime == mtime and not opts.accept_fate:
            self.counters.likely_damaged += 1
            self.likely_damaged.append(filename)
            self.errors.add(f"LIKELY DAMAGED: {filename}", path=filename)
            return

        self.counters.updated += 1
        fate_accepted = found.mtime == mtime
        logging.info(f"UPDATED{' (FATE ACCEPTED)' if fate_accepted else ''}: {filename}")
        self.updated.append(
            {
                "path": filename,
                "mtime": mtime,
                "digest": digest,
                "previous_mtime": found.mtime,
                "previous_digest": found.digest,
            }
        )
        if not opts.test_only:
            self.catalog.update(found, mtime, digest)

    # End of walk

    def _resolve_renames(self) -> None:
        logging.debug("Tracking renames...")
        resolution = self.catalog.resolve_renames(apply=not self.options.test_only)
        self.counters.renamed = resolution.renamed

        targets = set()
        for old_filename, new_filename in resolution.pairs:
            logging.info(f"RENAMED: {old_filename} -> {new_filename}")
            self.renamed.append({"from": old_filename, "to": new_filename})
            targets.add(new_filename)

        self.added = [filename for filename in self.added if filename not in targets]
        self.counters.new = self.catalog.new_count() - resolution.matched_new

    def _resolve_missing(self) -> None:
        self.missing = self.catalog.missing_filenames()
        if self.missing:
            if self.counters.exceptions:
                logging.error(
                    "Due to previously occurred errors, missing files will not be "
                    "removed from the database."
                )
            else:
                self._report_missing()
                if not self.options.test_only and (
                    self.options.auto or self._confirm("Remove missing files from the database")
                ):
                    logging.debug("Removing missing files...")
                    self.removed_missing = self.catalog.remove_missing()
                    logging.info(f"{self.removed_missing} missing file(s) removed from the database")
        self.counters.missing = self.catalog.missing_count()

    def _report_missing(self) -> None:
        logging.warning("MISSING FILES:")
        for filename in self.missing:
            logging.warning(f"  {filename}")
        if len(self.missing) > MISSING_LIST_THRESHOLD:
            with self.missing_list_path.open('a', encoding='utf-8') as handle:
                write_lines(self.missing, handle)
            logging.warning(
                f"(A list of missing files is also saved in a file: {self.missing_list_path})"
            )

    def _confirm(self, prompt: str) -> bool:
        # Operator think-time is excluded from the elapsed time
        start = time.monotonic()
        try:
            return bool(self.confirm(prompt))
        finally:
            self.user_input_wait += time.monotonic() - start


def log_counters(counters: ScanCounters) -> None:
    """Log the end-of-run summary, skipping zero counters."""
    if counters.good:
        logging.info(f"{counters.good} file(s) passes digest check")
    if counters.updated:
        logging.info(f"{counters.updated} file(s) are updated")
    if counters.new:
        logging.info(f"{counters.new} file(s) are new")
    if counters.renamed:
        logging.info(f"{counters.renamed} file(s) are renamed")
    if counters.missing:
        logging.warning(f"{counters.missing} file(s) are missing")
    if counters.likely_damaged:
        logging.warning(f"{counters.likely_damaged} file(s) are likely damaged (!)")
    if counters.exceptions:
        logging.warning(
            f"{counters.exceptions} file(s) had exceptions occurred during processing (!)"
        )


def format_elapsed(elapsed: float) -> str:
    whole = int(elapsed)
    return f"{whole // 3600}h {(whole % 3600) // 60}m {elapsed % 60:.3f}s"


def check_files(
    root: Path,
    db_path: Optional[Path] = None,
    test_only: bool = False,
    accept_fate: bool = False,
    auto: bool = False,
    digest_algorithm: Optional[str] = None,
    workers: int = DEFAULT_WORKERS,
    confirm: Optional[ConfirmFn] = None,
    report_path: Optional[Path] = None,
    log_path: Optional[Path] = None,
) -> Dict[str, object]:
    """Open a catalog, run one scan over root, and close the catalog.

    report_path and log_path are outputs of this run; when they sit inside
    root they are skipped like the catalog itself.
    """
    options = ScanOptions(
        test_only=test_only,
        accept_fate=accept_fate,
        auto=auto,
        digest_algorithm=digest_algorithm,
        workers=workers,
    )
    session = ScanSession(
        root,
        db_path=db_path,
        options=options,
        confirm=confirm,
        extra_skip_paths=[p for p in (report_path, log_path) if p is not None],
    )
    try:
        return session.run()
    finally:
        session.close()
