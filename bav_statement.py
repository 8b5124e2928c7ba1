#!/usr/bin/env python3
"""Parse in-toto statements and match them against the verification policy.

Checks run in a fixed order once the signature is trusted:

1. The payload parses as an in-toto statement (FormatError otherwise)
2. The predicate type equals the requested one, when a filter is set
3. With claim checking on, some subject carries the artifact's digest
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from bav_config import VerificationPolicy, canonical_algorithm
from bav_envelope import INTOTO_PAYLOAD_TYPE, SignedEnvelope, validate_document
from bav_errors import FormatError, PredicateMismatch, SubjectAbsent, SubjectDigestMismatch

logger = logging.getLogger(__name__)

STATEMENT_SCHEMA = "intoto-statement.schema.json"

# Short names accepted by the predicate-type filter
PREDICATE_TYPE_ALIASES: Dict[str, str] = {
    "custom": "https://cosign.sigstore.dev/attestation/v1",
    "slsaprovenance": "https://slsa.dev/provenance/v0.2",
    "slsaprovenance02": "https://slsa.dev/provenance/v0.2",
    "slsaprovenance1": "https://slsa.dev/provenance/v1",
    "link": "https://in-toto.io/Link/v1",
    "spdx": "https://spdx.dev/Document",
    "spdxjson": "https://spdx.dev/Document",
    "cyclonedx": "https://cyclonedx.org/bom",
    "vuln": "https://cosign.sigstore.dev/attestation/vuln/v1",
    "openvex": "https://openvex.dev/ns",
}


# =============================================================================
# Data types
# =============================================================================


@dataclass(frozen=True)
class Subject:
    name: str
    digest: Mapping[str, str] = field(default_factory=dict)

    def digest_for(self, algorithm: str) -> Optional[str]:
        for key, value in self.digest.items():
            if key.lower() == algorithm:
                return value
        return None


@dataclass(frozen=True)
class Statement:
    type: str
    predicate_type: str
    subjects: Tuple[Subject, ...]
    predicate: Any = None


# =============================================================================
# Parsing
# =============================================================================


def resolve_predicate_type(value: Optional[str]) -> Optional[str]:
    """Expand a predicate-type alias; other values are used literally."""
    if not value:
        return None
    return PREDICATE_TYPE_ALIASES.get(value, value)


def parse_statement(envelope: SignedEnvelope) -> Statement:
    if envelope.payload_type != INTOTO_PAYLOAD_TYPE:
        raise FormatError(
            "Invalid payloadType",
            f"Got: {envelope.payload_type}, expected {INTOTO_PAYLOAD_TYPE}",
            rule_id="FORMAT-002",
        )
    try:
        document = json.loads(envelope.payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FormatError("Failed to decode statement payload", str(exc), rule_id="FORMAT-003") from exc

    validate_document(document, STATEMENT_SCHEMA, "in-toto statement")

    subjects = tuple(
        Subject(name=entry.get("name", ""), digest=dict(entry.get("digest", {})))
        for entry in document.get("subject", [])
    )
    return Statement(
        type=document.get("_type", ""),
        predicate_type=document["predicateType"],
        subjects=subjects,
        predicate=document.get("predicate"),
    )


# =============================================================================
# Policy matching
# =============================================================================


def check_predicate_type(statement: Statement, predicate_filter: Optional[str]) -> None:
    expected = resolve_predicate_type(predicate_filter)
    if expected is None:
        return
    if statement.predicate_type != expected:
        raise PredicateMismatch(
            "Statement predicateType does not match",
            f"expected {expected}, got {statement.predicate_type}",
        )


def check_subjects(statement: Statement, artifact_digest: str, algorithm: str) -> Subject:
    """Return the first subject whose digest matches the artifact.

    Subjects without an entry for ``algorithm`` are skipped.
    """
    if not statement.subjects:
        raise SubjectAbsent("Statement has no subjects")

    wanted = artifact_digest.lower()
    for subject in statement.subjects:
        value = subject.digest_for(algorithm)
        if value is not None and value.lower() == wanted:
            return subject

    raise SubjectDigestMismatch(
        "No subject matches the artifact digest",
        f"{algorithm}:{wanted} not among {len(statement.subjects)} subject(s)",
    )


def match(
    envelope: SignedEnvelope,
    artifact_digest: Optional[str],
    algorithm: str,
    policy: VerificationPolicy,
) -> Statement:
    """Parse the envelope payload and apply the policy to it."""
    statement = parse_statement(envelope)
    check_predicate_type(statement, policy.predicate_type)

    if not policy.check_claims:
        logger.debug("Claim checking disabled; subjects not compared")
        return statement

    if artifact_digest is None:
        raise FormatError("Claim checking requires an artifact digest")
    subject = check_subjects(statement, artifact_digest, canonical_algorithm(algorithm))
    logger.debug("Artifact matches subject %r", subject.name)
    return statement
