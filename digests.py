"""
Digest engine: stream file content through one or two hash algorithms.
"""

import hashlib
import os
import stat
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from common import (
    DEFAULT_CHUNK_SIZE,
    ErrorKind,
    FileInfo,
    FixityError,
    HashResult,
    error_kind_for,
)


DIGEST_ALGORITHMS: List[str] = ["BLAKE2b512", "SHA3-256", "SHA512-256"]
# Accepted when reading catalogs written by older versions; never selectable.
LEGACY_DIGEST_ALGORITHMS: List[str] = ["SHA512", "SHA256"]

_CONSTRUCTORS: Dict[str, Callable[[], object]] = {
    "BLAKE2b512": lambda: hashlib.blake2b(digest_size=64),
    "SHA3-256": hashlib.sha3_256,
    "SHA512-256": lambda: hashlib.new("sha512_256"),
    "SHA512": hashlib.sha512,
    "SHA256": hashlib.sha256,
}


def canonical_digest_algorithm_name(name: Optional[str]) -> Optional[str]:
    """Return the canonical spelling of an algorithm name, or None if unknown."""
    if not name:
        return None
    for algorithm in DIGEST_ALGORITHMS + LEGACY_DIGEST_ALGORITHMS:
        if algorithm.lower() == name.lower():
            return algorithm
    return None


def is_selectable(name: Optional[str]) -> bool:
    return name in DIGEST_ALGORITHMS


def digest_algorithms_list_text() -> str:
    return f"Digest algorithm should be one of the following: {', '.join(DIGEST_ALGORITHMS)}"


def new_hasher(algorithm: str):
    """Create a fresh hash object for a canonical algorithm name."""
    constructor = _CONSTRUCTORS.get(algorithm)
    if constructor is None:
        raise FixityError(
            ErrorKind.DIGEST_ALGORITHM_UNSUPPORTED,
            f"Unsupported digest algorithm: {algorithm}",
        )
    try:
        return constructor()
    except ValueError as exc:
        # sha512_256 depends on the OpenSSL build behind hashlib
        raise FixityError(
            ErrorKind.DIGEST_ALGORITHM_UNSUPPORTED,
            f"Digest algorithm {algorithm} is not available: {exc}",
        ) from exc


def compute_digests(
    file_path: Path,
    algorithm: str,
    new_algorithm: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Tuple[str, Optional[str]]:
    """Hash a file under algorithm, and under new_algorithm in the same read."""
    hasher = new_hasher(algorithm)
    new_hasher_ = new_hasher(new_algorithm) if new_algorithm else None
    with file_path.open('rb') as handle:
        if not stat.S_ISREG(os.fstat(handle.fileno()).st_mode):
            raise FixityError(ErrorKind.TYPE_MISMATCH, "Not a regular file")
        for chunk in iter(lambda: handle.read(chunk_size), b''):
            hasher.update(chunk)
            if new_hasher_ is not None:
                new_hasher_.update(chunk)
    return hasher.hexdigest(), (new_hasher_.hexdigest() if new_hasher_ is not None else None)


def compute_digests_task(
    file_info: FileInfo,
    algorithm: str,
    new_algorithm: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> HashResult:
    """Compute digests for a file, returning a HashResult (for use in thread pool)."""
    try:
        digest, new_digest = compute_digests(
            file_info.path, algorithm, new_algorithm, chunk_size
        )
        return HashResult(file_info=file_info, digest=digest, new_digest=new_digest)
    except FixityError as exc:
        if exc.fatal:
            raise
        return HashResult(file_info=file_info, error=str(exc), error_kind=exc.kind)
    except OSError as exc:
        return HashResult(file_info=file_info, error=str(exc), error_kind=error_kind_for(exc))
