#!/usr/bin/env python3
"""Typed failures for blob attestation verification.

Every stage of the pipeline fails with exactly one of these. Callers decide
remediation from the class (or its ``kind``) and map ``exit_code`` onto the
process exit status.

Exit codes:
    0 = Verification passed
    1 = Verification failed
    2 = Error (invalid input, unusable trust material, etc.)
"""

from __future__ import annotations

from typing import Optional

EXIT_SUCCESS = 0
EXIT_VERIFICATION_FAILED = 1
EXIT_INPUT_ERROR = 2


class VerificationError(Exception):
    """Base class for every verification failure."""

    kind = "VerificationError"
    rule_id = "VERIFY-000"
    exit_code = EXIT_VERIFICATION_FAILED

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        rule_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        if rule_id:
            self.rule_id = rule_id

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "rule_id": self.rule_id,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class ReadError(VerificationError):
    """A source (artifact, signature, bundle, key, root) could not be read."""

    kind = "IOError"
    rule_id = "LOAD-001"
    exit_code = EXIT_INPUT_ERROR


class SizeLimitExceeded(VerificationError):
    kind = "SizeLimitExceeded"
    rule_id = "ARTIFACT-002"


class FormatError(VerificationError):
    """Malformed envelope, bundle, statement, base64, or unexpected variant."""

    kind = "FormatError"
    rule_id = "FORMAT-001"
    exit_code = EXIT_INPUT_ERROR


class TrustMaterialError(VerificationError):
    kind = "TrustMaterialError"
    rule_id = "TRUST-001"
    exit_code = EXIT_INPUT_ERROR


class SignatureInvalid(VerificationError):
    """No signature verified, or a required transparency-log check failed."""

    kind = "SignatureInvalid"
    rule_id = "SIG-001"


class PredicateMismatch(VerificationError):
    kind = "PredicateMismatch"
    rule_id = "CLAIM-001"


class SubjectAbsent(VerificationError):
    kind = "SubjectAbsent"
    rule_id = "CLAIM-002"


class SubjectDigestMismatch(VerificationError):
    kind = "SubjectDigestMismatch"
    rule_id = "CLAIM-003"


class DigestAlgorithmUnsupported(VerificationError):
    kind = "DigestAlgorithmUnsupported"
    rule_id = "ARTIFACT-001"
    exit_code = EXIT_INPUT_ERROR
