"""
Digest algorithm migration: compute a second digest per file during a scan and
switch the catalog to the new algorithm only if the whole pass was clean.
"""

import logging
from enum import Enum
from typing import Optional, Tuple

from catalog import DIGEST_ALGORITHM_KEY, Catalog
from common import DEFAULT_DIGEST_ALGORITHM, ErrorKind, FixityError
from digests import (
    canonical_digest_algorithm_name,
    digest_algorithms_list_text,
    is_selectable,
    new_hasher,
)


class MigrationOutcome(Enum):
    NOT_REQUESTED = "not_requested"
    COMMITTED = "committed"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


def resolve_digest_algorithm(
    catalog: Catalog, requested: Optional[str] = None
) -> Tuple[str, Optional[str]]:
    """Return (current algorithm, algorithm to migrate to or None).

    A catalog without a recorded algorithm adopts the requested one, or the
    default, and no migration takes place.
    """
    if requested is not None:
        canonical = canonical_digest_algorithm_name(requested)
        if not is_selectable(canonical):
            raise FixityError(
                ErrorKind.DIGEST_ALGORITHM_UNSUPPORTED,
                f"Unsupported digest algorithm: {requested}. {digest_algorithms_list_text()}",
            )
        requested = canonical
        new_hasher(requested)

    with catalog.transaction("EXCLUSIVE"):
        stored = catalog.get_metadata(DIGEST_ALGORITHM_KEY)
        if stored is None:
            current = requested or DEFAULT_DIGEST_ALGORITHM
            catalog.set_metadata(DIGEST_ALGORITHM_KEY, current)
            return current, None

        current = canonical_digest_algorithm_name(stored)
        if current is None:
            raise FixityError(
                ErrorKind.DIGEST_ALGORITHM_UNSUPPORTED,
                f"Database contains data for unsupported digest algorithm: {stored}",
            )
        if requested and requested != current:
            return current, requested
        return current, None


class AlgorithmMigration:
    """Tracks new-algorithm digests for one scan and commits them all or none."""

    def __init__(self, catalog: Catalog, current: str, new: Optional[str]) -> None:
        self.catalog = catalog
        self.current = current
        self.new = new

    @property
    def active(self) -> bool:
        return self.new is not None

    def record(self, filename: str, new_digest: Optional[str]) -> None:
        if self.active and new_digest is not None:
            self.catalog.record_new_digest(filename, new_digest)

    def finish(
        self,
        missing: int,
        likely_damaged: int,
        exceptions: int,
        test_only: bool = False,
    ) -> MigrationOutcome:
        """Swap the catalog to the new algorithm if every gate is clear."""
        if not self.active:
            return MigrationOutcome.NOT_REQUESTED
        if test_only:
            logging.info(
                f"Test mode: digest algorithm stays {self.current}, "
                f"{self.new} digests were computed but not stored"
            )
            return MigrationOutcome.SKIPPED

        uncovered = self.catalog.count_without_new_digest()
        if missing or likely_damaged or exceptions or uncovered:
            logging.error(
                f"New digest algorithm {self.new} will not be in effect while there are files "
                "that are missing, likely damaged, or processed with an exception."
            )
            return MigrationOutcome.DEFERRED

        logging.info(f"Updating catalog to digest algorithm {self.new}...")
        with self.catalog.transaction():
            self.catalog.apply_new_digests()
            self.catalog.set_metadata(DIGEST_ALGORITHM_KEY, self.new)
        logging.info(f"Transition to a new digest algorithm complete: {self.new}")
        self.current, self.new = self.new, None
        return MigrationOutcome.COMMITTED
