"""
Catalog store: SQLite-backed filename -> (mtime, digest) records plus metadata.

Opening a catalog checks the structural integrity of the database file and
migrates its schema to CATALOG_SCHEMA_VERSION. Scan working sets (missing,
new, new digests) live in TEMP tables so they never outlive the connection.
"""

import logging
import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from common import VERSION, ErrorKind, FixityError


CATALOG_SCHEMA_VERSION = 4
SCHEMA_VERSION_KEY = "schema_version"
DIGEST_ALGORITHM_KEY = "digest_algorithm"
SHA512_MARKER_NAME = ".fixity.sha512"
TRANSACTION_MODES = ("DEFERRED", "IMMEDIATE", "EXCLUSIVE")

_CREATE_METADATA = """
    CREATE TABLE metadata (
        key TEXT NOT NULL PRIMARY KEY,
        value TEXT
    )
"""
_CREATE_DIGESTS = """
    CREATE TABLE digests (
        id INTEGER NOT NULL PRIMARY KEY,
        filename TEXT NOT NULL,
        mtime TEXT,
        digest TEXT NOT NULL
    )
"""
_CREATE_DIGESTS_FILENAME_INDEX = "CREATE UNIQUE INDEX digests_filename ON digests(filename)"
_CREATE_DIGESTS_DIGEST_INDEX = "CREATE INDEX IF NOT EXISTS digests_digest ON digests(digest)"

_SET_METADATA = (
    "INSERT INTO metadata (key, value) VALUES (?, ?) "
    "ON CONFLICT (key) DO UPDATE SET value = excluded.value"
)
_GET_METADATA = "SELECT value FROM metadata WHERE key = ?"

_DIGESTS_INSERT = "INSERT INTO digests (filename, mtime, digest) VALUES (?, ?, ?)"
_DIGESTS_UPSERT = (
    "INSERT INTO digests (filename, mtime, digest) VALUES (?, ?, ?) "
    "ON CONFLICT (filename) DO UPDATE SET mtime = excluded.mtime, digest = excluded.digest"
)
_DIGESTS_FIND_BY_FILENAME = "SELECT id, filename, mtime, digest FROM digests WHERE filename = ?"
_DIGESTS_UPDATE_MTIME_AND_DIGEST = "UPDATE digests SET mtime = ?, digest = ? WHERE id = ?"
_DIGESTS_UPDATE_MTIME = "UPDATE digests SET mtime = ? WHERE id = ?"
_DIGESTS_DELETE = "DELETE FROM digests WHERE filename = ?"
_DIGESTS_COUNT = "SELECT count(*) FROM digests"
_DIGESTS_SELECT_ALL = "SELECT id, filename, mtime, digest FROM digests ORDER BY filename"
_DIGESTS_SELECT_DUPLICATES = """
    SELECT digest, filename FROM digests
    WHERE digest IN (SELECT digest FROM digests GROUP BY digest HAVING count(*) > 1)
    ORDER BY digest, filename
"""

_WORKING_SET_TABLES = ("new_files", "missing_files", "new_digests")
_NEW_FILES_INSERT = "INSERT OR REPLACE INTO new_files (filename, digest) VALUES (?, ?)"
_NEW_FILES_COUNT = "SELECT count(*) FROM new_files"
_MISSING_FILES_SEED = "INSERT INTO missing_files (filename, digest) SELECT filename, digest FROM digests"
_MISSING_FILES_DELETE = "DELETE FROM missing_files WHERE filename = ?"
_MISSING_FILES_COUNT = "SELECT count(*) FROM missing_files"
_MISSING_FILES_SELECT_FILENAMES = "SELECT filename FROM missing_files ORDER BY filename"
_MISSING_FILES_DELETE_ALL = "DELETE FROM missing_files"
_RENAME_CANDIDATES = """
    SELECT 'missing' AS side, filename, digest FROM missing_files
    WHERE digest IN (SELECT digest FROM new_files)
    UNION ALL
    SELECT 'new' AS side, filename, digest FROM new_files
    WHERE digest IN (SELECT digest FROM missing_files)
    ORDER BY digest, filename
"""
_DIGESTS_DELETE_RENAMED = """
    DELETE FROM digests WHERE filename IN (
        SELECT filename FROM missing_files WHERE digest IN (SELECT digest FROM new_files)
    )
"""
_MISSING_FILES_DELETE_RENAMED = (
    "DELETE FROM missing_files WHERE digest IN (SELECT digest FROM new_files)"
)
_DIGESTS_DELETE_MISSING = (
    "DELETE FROM digests WHERE filename IN (SELECT filename FROM missing_files)"
)
_NEW_DIGESTS_INSERT = "INSERT OR REPLACE INTO new_digests (filename, digest) VALUES (?, ?)"
_DIGESTS_COUNT_WITHOUT_NEW_DIGEST = (
    "SELECT count(*) FROM digests WHERE filename NOT IN (SELECT filename FROM new_digests)"
)
_DIGESTS_APPLY_NEW_DIGESTS = """
    UPDATE digests
    SET digest = (SELECT nd.digest FROM new_digests nd WHERE nd.filename = digests.filename)
    WHERE filename IN (SELECT filename FROM new_digests)
"""


@dataclass
class CatalogEntry:
    """One known file."""
    id: int
    filename: str
    mtime: Optional[str]
    digest: str


@dataclass
class RenameResolution:
    """Outcome of matching missing entries against new files by digest."""
    renamed: int
    matched_new: int
    pairs: List[Tuple[str, str]]


def catalog_files(db_path: Path) -> List[Path]:
    """The database file and its WAL companions."""
    return [db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")]


class Catalog:
    """Persistent catalog of file digests.

    Transactions are explicit: the connection runs in autocommit mode and
    transaction() issues BEGIN/COMMIT itself. Nested transaction() calls only
    bump a depth counter, so one physical transaction is active at a time.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._depth = 0
        db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(db_path), isolation_level=None)
        except sqlite3.Error as exc:
            raise FixityError(
                ErrorKind.IO_ERROR, f"Unable to open database: {db_path}: {exc}"
            ) from exc
        self._conn.row_factory = sqlite3.Row
        try:
            self._conn.execute("PRAGMA encoding = 'UTF-8'")
            self._conn.execute("PRAGMA locking_mode = EXCLUSIVE")
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.execute("PRAGMA busy_timeout = 5000")
            self.integrity_check()
            self._migrate()
        except sqlite3.OperationalError as exc:
            # Locked by another run, unreadable file, and the like
            self._conn.close()
            raise FixityError(
                ErrorKind.IO_ERROR, f"Unable to use database: {db_path}: {exc}"
            ) from exc
        except sqlite3.DatabaseError as exc:
            self._conn.close()
            raise FixityError(
                ErrorKind.INTEGRITY_CHECK_FAILED, f"Database is unreadable: {db_path}: {exc}"
            ) from exc
        except BaseException:
            self._conn.close()
            raise

    def __enter__(self) -> "Catalog":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._conn.close()

    # Transactions

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self, mode: str = "DEFERRED") -> Iterator[None]:
        """Run the block in a transaction, joining the outer one if already inside."""
        if mode not in TRANSACTION_MODES:
            raise ValueError(f"Unknown transaction mode: {mode}")
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        self._conn.execute(f"BEGIN {mode}")
        self._depth = 1
        try:
            yield
        except BaseException:
            self._depth = 0
            # SQLite may already have rolled back on its own (e.g. disk full)
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise
        self._depth = 0
        self._conn.execute("COMMIT")

    # Integrity and schema

    def integrity_check(self) -> None:
        logging.debug("Checking database integrity...")
        row = self._conn.execute("PRAGMA integrity_check").fetchone()
        if row is None or row[0] != "ok":
            raise FixityError(
                ErrorKind.INTEGRITY_CHECK_FAILED,
                f"Database integrity check failed: {self.db_path}",
            )

    def _table_exists(self, table_name: str) -> bool:
        row = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table_name,),
        ).fetchone()
        return row is not None

    def _column_exists(self, table_name: str, column_name: str) -> bool:
        rows = self._conn.execute(f"PRAGMA table_info({table_name})").fetchall()
        return any(row["name"] == column_name for row in rows)

    def schema_version(self) -> Optional[int]:
        value = self.get_metadata(SCHEMA_VERSION_KEY)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            raise FixityError(
                ErrorKind.SCHEMA_INCOMPATIBLE,
                f"Unrecognized catalog schema version: {value!r}",
            ) from None

    def _migrate(self) -> None:
        with self.transaction("EXCLUSIVE"):
            if not self._table_exists("metadata"):
                self._conn.execute(_CREATE_METADATA)
                self.set_metadata("metadata_table_created_by_version", VERSION)

            # Catalogs from the first schema kept digests but no metadata
            if self.get_metadata(SCHEMA_VERSION_KEY) is None and self._table_exists("digests"):
                self.set_metadata(SCHEMA_VERSION_KEY, "1")

            if not self._table_exists("digests"):
                self._conn.execute(_CREATE_DIGESTS)
                self._conn.execute(_CREATE_DIGESTS_FILENAME_INDEX)
                self._conn.execute(_CREATE_DIGESTS_DIGEST_INDEX)
                self.set_metadata("digests_table_created_by_version", VERSION)

            if self.get_metadata(SCHEMA_VERSION_KEY) is None:
                self.set_metadata(SCHEMA_VERSION_KEY, str(CATALOG_SCHEMA_VERSION))

            for from_version, step in self._migration_steps():
                if self.schema_version() == from_version:
                    logging.info(
                        f"Migrating catalog schema from version {from_version} to {from_version + 1}"
                    )
                    step()
                    self.set_metadata(SCHEMA_VERSION_KEY, str(from_version + 1))

            current = self.schema_version()
            if current != CATALOG_SCHEMA_VERSION:
                raise FixityError(
                    ErrorKind.SCHEMA_INCOMPATIBLE,
                    f"This version of fixity ({VERSION}) is only compatible with catalog "
                    f"schema version {CATALOG_SCHEMA_VERSION}. Current catalog schema "
                    f"version is {current}.",
                )

    def _migration_steps(self) -> List[Tuple[int, Callable[[], None]]]:
        return [
            (1, self._migrate_1_to_2),
            (2, self._migrate_2_to_3),
            (3, self._migrate_3_to_4),
        ]

    def _migrate_1_to_2(self) -> None:
        if self.get_metadata(DIGEST_ALGORITHM_KEY) is None:
            if (self.db_path.parent / SHA512_MARKER_NAME).exists():
                self.set_metadata(DIGEST_ALGORITHM_KEY, "SHA512")
            else:
                self.set_metadata(DIGEST_ALGORITHM_KEY, "SHA256")

    def _migrate_2_to_3(self) -> None:
        self._conn.execute(_CREATE_DIGESTS_DIGEST_INDEX)

    def _migrate_3_to_4(self) -> None:
        if self._column_exists("digests", "digest_check_time"):
            self._conn.execute("ALTER TABLE digests DROP COLUMN digest_check_time")

    # Metadata

    def set_metadata(self, key: str, value: str) -> str:
        self._conn.execute(_SET_METADATA, (key, value))
        logging.debug(f"{key} set to: {value}")
        return value

    def get_metadata(self, key: str) -> Optional[str]:
        row = self._conn.execute(_GET_METADATA, (key,)).fetchone()
        return row["value"] if row else None

    # Records

    def get(self, filename: str) -> Optional[CatalogEntry]:
        rows = self._conn.execute(_DIGESTS_FIND_BY_FILENAME, (filename,)).fetchmany(2)
        if len(rows) > 1:
            raise FixityError(
                ErrorKind.MULTIPLE_RECORDS, f"Multiple records found for: {filename}"
            )
        if not rows:
            return None
        row = rows[0]
        return CatalogEntry(row["id"], row["filename"], row["mtime"], row["digest"])

    def insert(self, filename: str, mtime: str, digest: str) -> None:
        self._conn.execute(_DIGESTS_INSERT, (filename, mtime, digest))

    def upsert(self, filename: str, mtime: str, digest: str) -> None:
        self._conn.execute(_DIGESTS_UPSERT, (filename, mtime, digest))

    def update(self, entry: CatalogEntry, mtime: str, digest: str) -> None:
        self._conn.execute(_DIGESTS_UPDATE_MTIME_AND_DIGEST, (mtime, digest, entry.id))

    def touch(self, entry: CatalogEntry, mtime: str) -> None:
        """Record a new mtime without changing the digest."""
        self._conn.execute(_DIGESTS_UPDATE_MTIME, (mtime, entry.id))

    def delete(self, filename: str) -> int:
        return self._conn.execute(_DIGESTS_DELETE, (filename,)).rowcount

    def count(self) -> int:
        return self._conn.execute(_DIGESTS_COUNT).fetchone()[0]

    def entries(self) -> List[CatalogEntry]:
        return [
            CatalogEntry(row["id"], row["filename"], row["mtime"], row["digest"])
            for row in self._conn.execute(_DIGESTS_SELECT_ALL)
        ]

    def select_duplicates(self) -> List[Tuple[str, str]]:
        """(digest, filename) rows for digests held by two or more files."""
        return [
            (row["digest"], row["filename"])
            for row in self._conn.execute(_DIGESTS_SELECT_DUPLICATES)
        ]

    # Scan working sets

    def begin_working_sets(self) -> None:
        """Create empty new/new-digest sets and seed the missing set from the catalog."""
        for table in _WORKING_SET_TABLES:
            self._conn.execute(f"DROP TABLE IF EXISTS temp.{table}")
            self._conn.execute(
                f"CREATE TEMPORARY TABLE {table} ("
                "filename TEXT NOT NULL PRIMARY KEY, digest TEXT NOT NULL)"
            )
        self._conn.execute("CREATE INDEX temp.new_files_digest ON new_files(digest)")
        self._conn.execute("CREATE INDEX temp.missing_files_digest ON missing_files(digest)")
        self._conn.execute(_MISSING_FILES_SEED)

    def mark_seen(self, filename: str) -> None:
        self._conn.execute(_MISSING_FILES_DELETE, (filename,))

    def record_new(self, filename: str, digest: str) -> None:
        self._conn.execute(_NEW_FILES_INSERT, (filename, digest))

    def record_new_digest(self, filename: str, digest: str) -> None:
        self._conn.execute(_NEW_DIGESTS_INSERT, (filename, digest))

    def new_count(self) -> int:
        return self._conn.execute(_NEW_FILES_COUNT).fetchone()[0]

    def missing_count(self) -> int:
        return self._conn.execute(_MISSING_FILES_COUNT).fetchone()[0]

    def missing_filenames(self) -> List[str]:
        return [row["filename"] for row in self._conn.execute(_MISSING_FILES_SELECT_FILENAMES)]

    def resolve_renames(self, apply: bool) -> RenameResolution:
        """Consume missing entries whose digest reappeared under a new filename.

        Every missing entry sharing a digest with any new file is treated as a
        rename source, so two missing copies of one content both count. Within
        a digest, sources and targets pair up in filename order; new files left
        over once the sources run out stay new. With apply False the catalog is
        left alone and only the working sets change.
        """
        missing_by_digest: Dict[str, List[str]] = defaultdict(list)
        new_by_digest: Dict[str, List[str]] = defaultdict(list)
        for row in self._conn.execute(_RENAME_CANDIDATES):
            if row["side"] == "missing":
                missing_by_digest[row["digest"]].append(row["filename"])
            else:
                new_by_digest[row["digest"]].append(row["filename"])

        pairs: List[Tuple[str, str]] = []
        for digest in sorted(missing_by_digest):
            targets = new_by_digest[digest]
            for index, old_filename in enumerate(missing_by_digest[digest]):
                pairs.append((old_filename, targets[min(index, len(targets) - 1)]))
        matched_new = len({new_filename for _, new_filename in pairs})

        with self.transaction():
            if apply:
                self._conn.execute(_DIGESTS_DELETE_RENAMED)
            renamed = self._conn.execute(_MISSING_FILES_DELETE_RENAMED).rowcount
        return RenameResolution(renamed=renamed, matched_new=matched_new, pairs=pairs)

    def remove_missing(self) -> int:
        with self.transaction():
            removed = self._conn.execute(_DIGESTS_DELETE_MISSING).rowcount
            self._conn.execute(_MISSING_FILES_DELETE_ALL)
        return removed

    def count_without_new_digest(self) -> int:
        return self._conn.execute(_DIGESTS_COUNT_WITHOUT_NEW_DIGEST).fetchone()[0]

    def apply_new_digests(self) -> int:
        """Replace every entry's digest with the one recorded in new_digests."""
        with self.transaction():
            return self._conn.execute(_DIGESTS_APPLY_NEW_DIGESTS).rowcount

    # Maintenance

    def maintenance(self) -> None:
        """Optimize, compact and checkpoint; must run outside a transaction."""
        logging.debug("Performing database maintenance...")
        self._conn.execute("PRAGMA optimize")
        self._conn.execute("VACUUM")
        self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
