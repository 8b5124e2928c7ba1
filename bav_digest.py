#!/usr/bin/env python3
"""
Artifact digest resolution for blob attestation verification.

The subject of a verification is identified by a single digest. It is either
computed by streaming a local file through the hash function under a byte
ceiling, or supplied directly by the caller (digest mode, no I/O).

Algorithm Summary (path mode):
1. Open the file read-only
2. Read fixed-size chunks, counting bytes
3. Fail as soon as the count passes the ceiling, before any digest exists
4. Return the lowercase hex digest

Usage:
    python bav_digest.py path/to/blob
    python bav_digest.py path/to/blob --algorithm sha512 --max-bytes 1MiB

SPDX-License-Identifier: Apache-2.0
"""

from __future__ import annotations

import logging
import string
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from bav_config import (
    canonical_algorithm,
    configure_logging,
    digest_length,
    max_attachment_size,
    new_hasher,
    parse_size,
)
from bav_errors import FormatError, ReadError, SizeLimitExceeded, VerificationError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536

_HEX_DIGITS = frozenset(string.hexdigits)


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class ArtifactRef:
    """Either a local path or a precomputed digest, never both in use."""

    path: Optional[Path] = None
    digest: Optional[str] = None

    @classmethod
    def from_request(cls, path: Optional[str], digest: Optional[str]) -> Optional["ArtifactRef"]:
        """Pick the reference form for a request.

        A supplied path always wins; the digest is used only when no path is
        given. Returns None when neither is available.
        """
        if path:
            return cls(path=Path(path))
        if digest:
            return cls(digest=digest)
        return None

    @property
    def is_digest(self) -> bool:
        return self.path is None


# =============================================================================
# File Hashing
# =============================================================================


def hash_file(filepath: Path, algorithm: str, limit: int, chunk_size: int = CHUNK_SIZE) -> tuple[str, int]:
    """
    Compute the digest of a file, enforcing a byte ceiling.

    Args:
        filepath: Path to file
        algorithm: Canonical digest algorithm name
        limit: Maximum number of bytes accepted
        chunk_size: Read buffer size

    Returns:
        Tuple of (hex digest, file size in bytes)

    Raises:
        SizeLimitExceeded: If the file holds more than ``limit`` bytes
        ReadError: If the file cannot be opened or read
    """
    hasher = new_hasher(algorithm)
    size = 0

    try:
        with open(filepath, "rb") as f:
            while chunk := f.read(chunk_size):
                size += len(chunk)
                if size > limit:
                    raise SizeLimitExceeded(
                        f"Artifact exceeds maximum size of {limit} bytes",
                        f"{filepath}: read {size} bytes so far",
                    )
                hasher.update(chunk)
    except OSError as exc:
        raise ReadError(f"Failed to read artifact: {filepath}", str(exc)) from exc

    return hasher.hexdigest(), size


def validate_digest(value: str, algorithm: str) -> str:
    """Check that ``value`` is hex of the right length for ``algorithm``."""
    expected = digest_length(algorithm)
    if len(value) != expected or not set(value) <= _HEX_DIGITS:
        raise FormatError(
            f"Invalid {algorithm} digest",
            f"expected {expected} hex characters, got {value!r}",
        )
    return value


# =============================================================================
# Resolution
# =============================================================================


def resolve(ref: ArtifactRef, algorithm: str, limit: int) -> str:
    """Resolve an artifact reference to a hex digest.

    Digest mode returns the caller's digest unchanged after checking the
    algorithm tag and the digest shape. Path mode streams the file.
    """
    algorithm = canonical_algorithm(algorithm)

    if ref.is_digest:
        digest = validate_digest(ref.digest or "", algorithm)
        logger.debug("Using supplied %s digest %s", algorithm, digest)
        return digest

    assert ref.path is not None
    digest, size = hash_file(ref.path, algorithm, limit)
    logger.debug("Hashed %s (%d bytes): %s:%s", ref.path, size, algorithm, digest)
    return digest


# =============================================================================
# CLI Interface
# =============================================================================


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        prog="bav digest",
        description="Compute the digest of a blob under the attachment size limit",
    )
    parser.add_argument("artifact", type=Path, help="Path to the blob")
    parser.add_argument(
        "--algorithm",
        "-a",
        default="sha256",
        help="Digest algorithm (sha256, sha384, sha512)",
    )
    parser.add_argument(
        "--max-bytes",
        type=str,
        help="Size ceiling (e.g. 1048576, 64KiB); defaults to BAV_MAX_ATTACHMENT_SIZE",
    )

    parser.add_argument("--verbose", "-v", action="store_true", help="Log each step to stderr")

    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        limit = parse_size(args.max_bytes) if args.max_bytes else max_attachment_size()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        algorithm = canonical_algorithm(args.algorithm)
        digest = resolve(ArtifactRef(path=args.artifact), algorithm, limit)
    except VerificationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    print(f"{algorithm}:{digest}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
