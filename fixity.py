#!/usr/bin/env python3
"""
Fixity – catalog file digests and detect bit rot, updates, renames and deletions.

Walks a directory tree, digests every file, and reconciles the results with a
SQLite catalog kept next to the files (default: .fixity.sqlite in the tree).

Each run classifies files as good, updated, new, renamed, missing or likely
damaged (content changed while the modification time did not).
Use --help for full options and examples.
"""

import argparse
import logging
import sqlite3
import sys
from pathlib import Path
from typing import List, Optional

from check_cmd import check_files, resolve_db_path
from common import DEFAULT_DB_NAME, DEFAULT_WORKERS, FixityError, setup_logging, write_report
from digests import DIGEST_ALGORITHMS, canonical_digest_algorithm_name, digest_algorithms_list_text
from duplicates_cmd import find_duplicates, format_duplicates


EXIT_CLEAN = 0
EXIT_ATTENTION = 1
EXIT_FATAL = 2


def confirm_interactive(prompt: str) -> Optional[bool]:
    """Ask on the terminal; None when stdin/stdout are not a terminal."""
    if not (sys.stdin.isatty() and sys.stdout.isatty()):
        return None
    answer = input(f"{prompt} (y/n)? ")
    return answer.strip().lower() == "y"


def digest_algorithm_arg(value: str) -> str:
    algorithm = canonical_digest_algorithm_name(value)
    if algorithm not in DIGEST_ALGORITHMS:
        raise argparse.ArgumentTypeError(digest_algorithms_list_text())
    return algorithm


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Check file digests under a directory against a SQLite catalog. '
                    'By default the current directory is checked and the catalog '
                    f'is kept in it as {DEFAULT_DB_NAME}.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python fixity.py /path/to/photos
    python fixity.py /path/to/photos /path/to/catalogs/photos.sqlite
    python fixity.py --test /path/to/photos
    python fixity.py --digest SHA3-256 /path/to/photos
    python fixity.py --duplicates /path/to/photos
        """,
    )
    parser.add_argument(
        'directory',
        nargs='?',
        type=Path,
        default=Path('.'),
        help='Directory to check (default: current directory)',
    )
    parser.add_argument(
        'database',
        nargs='?',
        type=Path,
        help=f'Catalog file, or a directory to hold {DEFAULT_DB_NAME} (default: inside directory)',
    )
    parser.add_argument(
        '-a', '--auto',
        action='store_true',
        help='Do not ask for any confirmation',
    )
    parser.add_argument(
        '-d', '--digest',
        type=digest_algorithm_arg,
        help=f'Digest algorithm, one of: {", ".join(DIGEST_ALGORITHMS)} (default: BLAKE2b512). '
             'Stored in the catalog on first run; a different value later starts a '
             'transition that completes only when every file passes the check.',
    )
    parser.add_argument(
        '-f', '--accept-fate',
        action='store_true',
        help='Accept the current state of likely damaged files and update their digests',
    )
    parser.add_argument(
        '-p', '--duplicates',
        action='store_true',
        help='Show duplicate files, based on the catalog contents only',
    )
    parser.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Less verbose output, still report any found issues',
    )
    parser.add_argument(
        '-t', '--test',
        action='store_true',
        help='Compare files with stored digests without modifying the catalog',
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging',
    )
    parser.add_argument(
        '--workers',
        type=int,
        default=DEFAULT_WORKERS,
        help=f'Number of parallel hashing threads (default: {DEFAULT_WORKERS})',
    )
    parser.add_argument(
        '--report',
        type=Path,
        help='Also write a JSON report to this path',
    )
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the script; returns the process exit code."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log, verbose=args.verbose, quiet=args.quiet)

    root = args.directory.resolve()
    if not root.is_dir():
        logging.error(f"Files path must be a readable directory: {root}")
        return EXIT_FATAL

    try:
        if args.duplicates:
            groups = find_duplicates(resolve_db_path(root, args.database))
            if groups:
                print(format_duplicates(groups))
            return EXIT_CLEAN

        report = check_files(
            root=root,
            db_path=args.database,
            test_only=args.test,
            accept_fate=args.accept_fate,
            auto=args.auto,
            digest_algorithm=args.digest,
            workers=args.workers,
            confirm=confirm_interactive,
            report_path=args.report,
            log_path=args.log,
        )
    except FixityError as exc:
        logging.error(f"{exc} ({exc.kind.value})")
        return EXIT_FATAL
    except sqlite3.Error as exc:
        logging.error(f"Database error: {exc}")
        return EXIT_FATAL

    if args.report:
        write_report(report, args.report)

    return EXIT_ATTENTION if report["attention_needed"] else EXIT_CLEAN


if __name__ == "__main__":
    sys.exit(main())
