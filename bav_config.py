#!/usr/bin/env python3
"""Configuration for blob attestation verification.

The only environment input is the artifact size ceiling. It is read once,
when a policy is built, and carried as an explicit value from then on.
COSIGN_MAX_ATTACHMENT_SIZE is honoured when BAV_MAX_ATTACHMENT_SIZE is unset.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from bav_errors import DigestAlgorithmUnsupported

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

MAX_ATTACHMENT_SIZE_ENV = "BAV_MAX_ATTACHMENT_SIZE"
COSIGN_MAX_ATTACHMENT_SIZE_ENV = "COSIGN_MAX_ATTACHMENT_SIZE"

# Checked in order; the first non-empty value is used
MAX_ATTACHMENT_SIZE_ENVS = (MAX_ATTACHMENT_SIZE_ENV, COSIGN_MAX_ATTACHMENT_SIZE_ENV)

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

DEFAULT_MAX_ATTACHMENT_SIZE = 128 * 1024 * 1024

DEFAULT_DIGEST_ALGORITHM = "sha256"

# algorithm name -> (hash constructor, hex digest length)
DIGEST_ALGORITHMS: Dict[str, tuple[Callable[[], Any], int]] = {
    "sha256": (hashlib.sha256, 64),
    "sha384": (hashlib.sha384, 96),
    "sha512": (hashlib.sha512, 128),
}

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "kib": 1024,
    "m": 1000**2,
    "mb": 1000**2,
    "mib": 1024**2,
    "g": 1000**3,
    "gb": 1000**3,
    "gib": 1024**3,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


# =============================================================================
# Size ceiling
# =============================================================================


def parse_size(value: str) -> int:
    """Parse a byte count such as ``128``, ``64KiB`` or ``1.5MB``.

    Raises:
        ValueError: If the value is not a recognised size.
    """
    match = _SIZE_RE.match(value)
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"Unknown size unit: {unit!r}")
    return int(float(number) * multiplier)


def max_attachment_size(environ: Optional[Mapping[str, str]] = None) -> int:
    """Resolve the artifact size ceiling from the environment.

    BAV_MAX_ATTACHMENT_SIZE is read first, then COSIGN_MAX_ATTACHMENT_SIZE.
    Unset or unparsable values fall back to DEFAULT_MAX_ATTACHMENT_SIZE.
    """
    if environ is None:
        environ = os.environ
    for name in MAX_ATTACHMENT_SIZE_ENVS:
        raw = environ.get(name, "").strip()
        if raw:
            break
    else:
        return DEFAULT_MAX_ATTACHMENT_SIZE
    try:
        return parse_size(raw)
    except ValueError:
        logger.warning(
            "Ignoring unparsable %s=%r; using default of %d bytes",
            name,
            raw,
            DEFAULT_MAX_ATTACHMENT_SIZE,
        )
        return DEFAULT_MAX_ATTACHMENT_SIZE


# =============================================================================
# Logging
# =============================================================================


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Send log records to stderr; shared by every command-line entry point.

    The first call wins, so a level chosen by the ``bav`` wrapper is kept
    when the subcommand configures logging again.
    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


# =============================================================================
# Digest algorithms
# =============================================================================


def canonical_algorithm(name: Optional[str]) -> str:
    """Return the canonical lowercase algorithm name, or raise if unsupported."""
    algorithm = (name or DEFAULT_DIGEST_ALGORITHM).strip().lower()
    if algorithm not in DIGEST_ALGORITHMS:
        raise DigestAlgorithmUnsupported(
            f"Unsupported digest algorithm: {name}",
            f"Supported: {sorted(DIGEST_ALGORITHMS)}",
        )
    return algorithm


def new_hasher(algorithm: str):
    constructor, _length = DIGEST_ALGORITHMS[canonical_algorithm(algorithm)]
    return constructor()


def digest_length(algorithm: str) -> int:
    return DIGEST_ALGORITHMS[canonical_algorithm(algorithm)][1]


# =============================================================================
# Verification policy
# =============================================================================


@dataclass(frozen=True)
class VerificationPolicy:
    predicate_type: Optional[str] = None
    check_claims: bool = True
    ignore_tlog: bool = False
    max_artifact_bytes: int = DEFAULT_MAX_ATTACHMENT_SIZE

    @classmethod
    def from_env(
        cls,
        predicate_type: Optional[str] = None,
        check_claims: bool = True,
        ignore_tlog: bool = False,
        max_artifact_bytes: Optional[int] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "VerificationPolicy":
        """Build a policy, taking the size ceiling from the environment
        unless one is given explicitly."""
        if max_artifact_bytes is None:
            max_artifact_bytes = max_attachment_size(environ)
        return cls(
            predicate_type=predicate_type or None,
            check_claims=check_claims,
            ignore_tlog=ignore_tlog,
            max_artifact_bytes=max_artifact_bytes,
        )
