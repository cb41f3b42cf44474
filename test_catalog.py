#!/usr/bin/env python3
"""
Unit tests for the catalog store: schema migration, transactions, records,
working sets and duplicate listing.
"""

import logging
import sqlite3
from pathlib import Path

import pytest

from catalog import CATALOG_SCHEMA_VERSION, SHA512_MARKER_NAME, Catalog
from common import ErrorKind, FixityError
from duplicates_cmd import find_duplicates, format_duplicates


logging.basicConfig(level=logging.WARNING)


def _create_legacy_catalog(db_path: Path, rows) -> None:
    """A first-schema catalog: digests with a check-time column, no metadata."""
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute(
            """
            CREATE TABLE digests (
                id INTEGER PRIMARY KEY,
                filename TEXT,
                mtime TEXT,
                digest TEXT,
                digest_check_time TEXT
            )
            """
        )
        conn.executemany(
            "INSERT INTO digests (filename, mtime, digest, digest_check_time) VALUES (?, ?, ?, ?)",
            rows,
        )
        conn.commit()
    finally:
        conn.close()


def _columns(db_path: Path, table: str) -> list:
    conn = sqlite3.connect(str(db_path))
    try:
        return [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]
    finally:
        conn.close()


def _indexes(db_path: Path) -> set:
    conn = sqlite3.connect(str(db_path))
    try:
        return {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
        }
    finally:
        conn.close()


def test_new_catalog_is_created_at_current_schema(tmp_path: Path):
    db_path = tmp_path / "sub" / "catalog.sqlite"

    with Catalog(db_path) as catalog:
        assert catalog.schema_version() == CATALOG_SCHEMA_VERSION
        assert catalog.get_metadata("metadata_table_created_by_version") is not None
        assert catalog.get_metadata("digests_table_created_by_version") is not None
        assert catalog.count() == 0

    assert {"digests_filename", "digests_digest"} <= _indexes(db_path)


def test_record_operations(tmp_path: Path):
    with Catalog(tmp_path / "catalog.sqlite") as catalog:
        assert catalog.get("a.txt") is None

        catalog.insert("a.txt", "2020-01-01 00:00:00", "aaa")
        entry = catalog.get("a.txt")
        assert (entry.filename, entry.mtime, entry.digest) == ("a.txt", "2020-01-01 00:00:00", "aaa")

        catalog.touch(entry, "2021-01-01 00:00:00")
        assert catalog.get("a.txt").mtime == "2021-01-01 00:00:00"
        assert catalog.get("a.txt").digest == "aaa"

        catalog.update(entry, "2022-01-01 00:00:00", "bbb")
        assert catalog.get("a.txt").digest == "bbb"

        catalog.upsert("a.txt", "2023-01-01 00:00:00", "ccc")
        catalog.upsert("b.txt", "2023-01-01 00:00:00", "ddd")
        assert [e.filename for e in catalog.entries()] == ["a.txt", "b.txt"]
        assert catalog.get("a.txt").digest == "ccc"

        assert catalog.delete("a.txt") == 1
        assert catalog.delete("a.txt") == 0
        assert catalog.count() == 1


def test_metadata_upsert(tmp_path: Path):
    with Catalog(tmp_path / "catalog.sqlite") as catalog:
        assert catalog.get_metadata("missing") is None
        catalog.set_metadata("color", "red")
        catalog.set_metadata("color", "blue")
        assert catalog.get_metadata("color") == "blue"


def test_nested_transactions_collapse_into_outer(tmp_path: Path):
    with Catalog(tmp_path / "catalog.sqlite") as catalog:
        with pytest.raises(RuntimeError):
            with catalog.transaction("EXCLUSIVE"):
                with catalog.transaction():
                    catalog.insert("inner.txt", None, "aaa")
                    assert catalog.in_transaction
                assert catalog.in_transaction
                raise RuntimeError("abort outer")

        assert not catalog.in_transaction
        assert catalog.get("inner.txt") is None

        with catalog.transaction():
            with catalog.transaction():
                catalog.insert("kept.txt", None, "bbb")
        assert catalog.get("kept.txt").digest == "bbb"


def test_unknown_transaction_mode_is_rejected(tmp_path: Path):
    with Catalog(tmp_path / "catalog.sqlite") as catalog:
        with pytest.raises(ValueError):
            with catalog.transaction("SOMETIMES"):
                pass


def test_first_schema_catalog_is_migrated(tmp_path: Path):
    db_path = tmp_path / "catalog.sqlite"
    _create_legacy_catalog(db_path, [("a.txt", "2020-01-01 00:00:00", "aaa", "x")])

    with Catalog(db_path) as catalog:
        assert catalog.schema_version() == CATALOG_SCHEMA_VERSION
        assert catalog.get_metadata("digest_algorithm") == "SHA256"
        assert catalog.get("a.txt").digest == "aaa"

    assert "digest_check_time" not in _columns(db_path, "digests")
    assert "digests_digest" in _indexes(db_path)


def test_first_schema_catalog_with_sha512_marker(tmp_path: Path):
    db_path = tmp_path / "catalog.sqlite"
    _create_legacy_catalog(db_path, [])
    (tmp_path / SHA512_MARKER_NAME).write_text("")

    with Catalog(db_path) as catalog:
        assert catalog.get_metadata("digest_algorithm") == "SHA512"


@pytest.mark.parametrize("version", ["5", "not-a-number"])
def test_incompatible_schema_version_is_fatal(tmp_path: Path, version: str):
    db_path = tmp_path / "catalog.sqlite"
    with Catalog(db_path) as catalog:
        catalog.set_metadata("schema_version", version)

    with pytest.raises(FixityError) as excinfo:
        Catalog(db_path)
    assert excinfo.value.kind is ErrorKind.SCHEMA_INCOMPATIBLE
    assert excinfo.value.fatal


def test_corrupt_database_fails_integrity_check(tmp_path: Path):
    db_path = tmp_path / "catalog.sqlite"
    db_path.write_bytes(b"this is not a sqlite database" * 200)

    with pytest.raises(FixityError) as excinfo:
        Catalog(db_path)
    assert excinfo.value.kind is ErrorKind.INTEGRITY_CHECK_FAILED


def test_unopenable_database_is_io_error(tmp_path: Path):
    db_path = tmp_path / "catalog.sqlite"
    db_path.mkdir()

    with pytest.raises(FixityError) as excinfo:
        Catalog(db_path)
    assert excinfo.value.kind is ErrorKind.IO_ERROR
    assert not excinfo.value.fatal


def test_multiple_records_for_one_filename_is_fatal(tmp_path: Path):
    db_path = tmp_path / "catalog.sqlite"
    _create_legacy_catalog(
        db_path,
        [
            ("a.txt", "2020-01-01 00:00:00", "aaa", None),
            ("a.txt", "2020-01-01 00:00:00", "bbb", None),
        ],
    )

    with Catalog(db_path) as catalog:
        with pytest.raises(FixityError) as excinfo:
            catalog.get("a.txt")
    assert excinfo.value.kind is ErrorKind.MULTIPLE_RECORDS


def test_working_sets_resolve_renames_and_missing(tmp_path: Path):
    with Catalog(tmp_path / "catalog.sqlite") as catalog:
        catalog.insert("old.txt", None, "d1")
        catalog.insert("kept.txt", None, "d2")
        catalog.insert("lost.txt", None, "d3")

        with catalog.transaction():
            catalog.begin_working_sets()
            assert catalog.missing_count() == 3

            catalog.mark_seen("kept.txt")
            catalog.insert("new.txt", None, "d1")
            catalog.record_new("new.txt", "d1")
            catalog.record_new("other.txt", "d9")

            resolution = catalog.resolve_renames(apply=True)
            assert resolution.renamed == 1
            assert resolution.matched_new == 1
            assert resolution.pairs == [("old.txt", "new.txt")]
            assert catalog.get("old.txt") is None
            assert catalog.new_count() == 2

            assert catalog.missing_filenames() == ["lost.txt"]
            assert catalog.remove_missing() == 1
            assert catalog.missing_count() == 0

        assert [e.filename for e in catalog.entries()] == ["kept.txt", "new.txt"]


def test_resolve_renames_without_apply_leaves_catalog(tmp_path: Path):
    with Catalog(tmp_path / "catalog.sqlite") as catalog:
        catalog.insert("old.txt", None, "d1")
        catalog.begin_working_sets()
        catalog.record_new("new.txt", "d1")

        resolution = catalog.resolve_renames(apply=False)

        assert resolution.renamed == 1
        assert catalog.missing_count() == 0
        assert catalog.get("old.txt") is not None


def test_resolve_renames_pairs_sources_and_targets_per_digest(tmp_path: Path):
    with Catalog(tmp_path / "catalog.sqlite") as catalog:
        catalog.insert("a.txt", None, "d1")
        catalog.insert("x.txt", None, "d2")
        catalog.insert("y.txt", None, "d2")
        catalog.begin_working_sets()
        catalog.record_new("b.txt", "d1")
        catalog.record_new("c.txt", "d1")
        catalog.record_new("z.txt", "d2")

        resolution = catalog.resolve_renames(apply=True)

        assert resolution.renamed == 3
        assert resolution.matched_new == 2
        assert resolution.pairs == [
            ("a.txt", "b.txt"),
            ("x.txt", "z.txt"),
            ("y.txt", "z.txt"),
        ]
        assert catalog.new_count() - resolution.matched_new == 1
        assert catalog.entries() == []


def test_apply_new_digests(tmp_path: Path):
    with Catalog(tmp_path / "catalog.sqlite") as catalog:
        catalog.insert("a.txt", "m", "old-a")
        catalog.insert("b.txt", "m", "old-b")
        catalog.begin_working_sets()
        catalog.record_new_digest("a.txt", "new-a")
        assert catalog.count_without_new_digest() == 1

        catalog.record_new_digest("b.txt", "new-b")
        assert catalog.count_without_new_digest() == 0
        assert catalog.apply_new_digests() == 2

        assert catalog.get("a.txt").digest == "new-a"
        assert catalog.get("b.txt").digest == "new-b"
        assert catalog.get("b.txt").mtime == "m"


def test_duplicate_listing_groups_by_digest(tmp_path: Path):
    db_path = tmp_path / "catalog.sqlite"
    with Catalog(db_path) as catalog:
        catalog.insert("z.txt", None, "bbb")
        catalog.insert("a.txt", None, "bbb")
        catalog.insert("solo.txt", None, "ccc")
        catalog.insert("m.txt", None, "aaa")
        catalog.insert("n.txt", None, "aaa")
        assert catalog.select_duplicates() == [
            ("aaa", "m.txt"),
            ("aaa", "n.txt"),
            ("bbb", "a.txt"),
            ("bbb", "z.txt"),
        ]

    groups = find_duplicates(db_path)
    assert groups == [
        {"digest": "aaa", "filenames": ["m.txt", "n.txt"]},
        {"digest": "bbb", "filenames": ["a.txt", "z.txt"]},
    ]
    assert format_duplicates(groups) == "aaa:\n  m.txt\n  n.txt\n\nbbb:\n  a.txt\n  z.txt"


def test_duplicate_listing_empty_when_all_unique(tmp_path: Path):
    db_path = tmp_path / "catalog.sqlite"
    with Catalog(db_path) as catalog:
        catalog.insert("a.txt", None, "aaa")
        catalog.insert("b.txt", None, "bbb")

    assert find_duplicates(db_path) == []
    assert format_duplicates([]) == ""
