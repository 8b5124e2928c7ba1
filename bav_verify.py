#!/usr/bin/env python3
"""Verify that a blob is covered by a signed in-toto attestation.

The pipeline is fail-fast and runs in a fixed order:

    START -> ARTIFACT_RESOLVED -> ENVELOPE_LOADED -> SIGNATURE_VERIFIED
          -> STATEMENT_MATCHED

The first failing stage ends the run; its typed error is the result.

Usage:
    # Verify a legacy DSSE signature file against a blob
    python bav_verify.py blob --key cosign.pub --signature blob.att --insecure-ignore-tlog

    # Verify a sigstore bundle
    python bav_verify.py blob --key cosign.pub --bundle blob.sigstore.json \\
        --trusted-root trusted_root.json --insecure-ignore-tlog

    # Verify against a known digest instead of a file
    python bav_verify.py --digest 6587...cc24 --digest-alg sha256 --key cosign.pub \\
        --signature blob.att --type slsaprovenance

Exit codes:
    0 = Verification passed
    1 = Verification failed
    2 = Error (invalid input, etc.)
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import bav_digest
import bav_envelope
import bav_statement
import bav_trust
from bav_config import VerificationPolicy, canonical_algorithm, configure_logging
from bav_errors import EXIT_SUCCESS, FormatError, ReadError, VerificationError
from bav_statement import Statement
from bav_tlog import SigstoreTransparencyLog, TransparencyLog

logger = logging.getLogger(__name__)


# =============================================================================
# Request and report types
# =============================================================================


@dataclass(frozen=True)
class VerifyRequest:
    artifact_path: Optional[str] = None
    key_path: Optional[pathlib.Path] = None
    certificate_chain_path: Optional[pathlib.Path] = None
    signature_path: Optional[pathlib.Path] = None
    bundle_path: Optional[pathlib.Path] = None
    new_bundle_format: bool = False
    trusted_root_path: Optional[pathlib.Path] = None
    ignore_tlog: bool = False
    check_claims: bool = True
    predicate_type: Optional[str] = None
    digest: Optional[str] = None
    digest_alg: str = "sha256"
    max_artifact_bytes: Optional[int] = None
    certificate_identity: Optional[str] = None
    certificate_oidc_issuer: Optional[str] = None
    offline: bool = False

    def policy(self, environ: Optional[Mapping[str, str]] = None) -> VerificationPolicy:
        return VerificationPolicy.from_env(
            predicate_type=self.predicate_type,
            check_claims=self.check_claims,
            ignore_tlog=self.ignore_tlog,
            max_artifact_bytes=self.max_artifact_bytes,
            environ=environ,
        )


class Stage(Enum):
    START = "START"
    ARTIFACT_RESOLVED = "ARTIFACT_RESOLVED"
    ENVELOPE_LOADED = "ENVELOPE_LOADED"
    SIGNATURE_VERIFIED = "SIGNATURE_VERIFIED"
    STATEMENT_MATCHED = "STATEMENT_MATCHED"
    FAILED = "FAILED"


@dataclass
class StageResult:
    rule_id: str
    passed: bool
    message: str
    details: Optional[str] = None


class VerificationReport:
    def __init__(self):
        self.results: List[StageResult] = []
        self.stage = Stage.START
        self.failure: Optional[VerificationError] = None
        self.statement: Optional[Statement] = None
        self.artifact_digest: Optional[str] = None

    def advance(self, stage: Stage, rule_id: str, message: str):
        self.results.append(StageResult(rule_id, True, message))
        self.stage = stage

    def fail(self, error: VerificationError):
        self.results.append(StageResult(error.rule_id, False, error.message, error.details))
        self.stage = Stage.FAILED
        self.failure = error

    @property
    def passed(self) -> bool:
        return self.stage == Stage.STATEMENT_MATCHED

    @property
    def exit_code(self) -> int:
        if self.failure is not None:
            return self.failure.exit_code
        return EXIT_SUCCESS

    def raise_for_failure(self):
        if self.failure is not None:
            raise self.failure

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "stage": self.stage.value,
            "failure": self.failure.to_dict() if self.failure else None,
            "artifactDigest": self.artifact_digest,
            "predicateType": self.statement.predicate_type if self.statement else None,
            "results": [
                {
                    "rule_id": r.rule_id,
                    "passed": r.passed,
                    "message": r.message,
                    "details": r.details,
                }
                for r in self.results
            ],
        }

    def print_report(self, verbose: bool = False):
        print("\n" + "=" * 60)
        print("BLOB ATTESTATION VERIFICATION REPORT")
        print("=" * 60)

        passes = [r for r in self.results if r.passed]
        errors = [r for r in self.results if not r.passed]

        if errors:
            print(f"\n❌ ERRORS ({len(errors)}):")
            for r in errors:
                print(f"  [{r.rule_id}] {r.message}")
                if r.details and verbose:
                    print(f"      Details: {r.details}")

        if verbose and passes:
            print(f"\n✅ PASSED ({len(passes)}):")
            for r in passes:
                print(f"  [{r.rule_id}] {r.message}")

        print("\n" + "-" * 60)
        if self.passed:
            print("RESULT: ✅ VERIFIED")
        else:
            kind = self.failure.kind if self.failure else self.stage.value
            print(f"RESULT: ❌ FAILED ({kind})")
        print("-" * 60 + "\n")


# =============================================================================
# Pipeline
# =============================================================================


def _run_pipeline(
    request: VerifyRequest,
    policy: VerificationPolicy,
    tlog: TransparencyLog,
    report: VerificationReport,
) -> None:
    algorithm = canonical_algorithm(request.digest_alg)

    ref = bav_digest.ArtifactRef.from_request(request.artifact_path, request.digest)
    if ref is not None:
        report.artifact_digest = bav_digest.resolve(ref, algorithm, policy.max_artifact_bytes)
        source = "supplied digest" if ref.is_digest else str(ref.path)
        report.advance(
            Stage.ARTIFACT_RESOLVED,
            "ARTIFACT-000",
            f"Artifact {algorithm}:{report.artifact_digest} ({source})",
        )
    elif policy.check_claims:
        raise ReadError(
            "An artifact path or digest is required to check claims",
            rule_id="ARTIFACT-003",
        )
    else:
        report.advance(Stage.ARTIFACT_RESOLVED, "ARTIFACT-000", "No artifact; claims not checked")

    if request.new_bundle_format and not request.bundle_path:
        raise FormatError("The new bundle format requires a bundle path")
    loaded = bav_envelope.load(
        signature_path=request.signature_path,
        bundle_path=request.bundle_path,
        trusted_root_path=request.trusted_root_path,
    )
    trust = bav_trust.resolve_trust(
        loaded,
        key_path=request.key_path,
        chain_path=request.certificate_chain_path,
    )
    mode = "bundle" if loaded.bundle is not None else "signature"
    report.advance(
        Stage.ENVELOPE_LOADED,
        "LOAD-000",
        f"DSSE envelope loaded from {mode}; trust: {trust.describe()}",
    )

    bav_trust.verify_signatures(
        loaded.envelope,
        trust,
        policy,
        tlog=tlog,
        bundle=loaded.bundle,
        identity=request.certificate_identity,
        issuer=request.certificate_oidc_issuer,
    )
    report.advance(Stage.SIGNATURE_VERIFIED, "SIG-000", "At least one DSSE signature verified")

    report.statement = bav_statement.match(
        loaded.envelope, report.artifact_digest, algorithm, policy
    )
    if policy.check_claims:
        message = "Statement predicate and subject match the artifact"
    else:
        message = "Statement predicate matches; claims not checked"
    report.advance(Stage.STATEMENT_MATCHED, "CLAIM-000", message)


def verify_blob_attestation(
    request: VerifyRequest,
    tlog: Optional[TransparencyLog] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> VerificationReport:
    """Main verification entry point.

    Never raises VerificationError; the first failure is recorded on the
    returned report (see ``VerificationReport.raise_for_failure``).
    """
    report = VerificationReport()
    policy = request.policy(environ)
    if tlog is None:
        tlog = SigstoreTransparencyLog(
            offline=request.offline,
            identity=request.certificate_identity,
            issuer=request.certificate_oidc_issuer,
        )

    try:
        _run_pipeline(request, policy, tlog, report)
    except VerificationError as e:
        logger.info("Verification failed at %s: %s: %s", report.stage.value, e.kind, e)
        report.fail(e)
        return report

    logger.info("Verified OK (%s)", report.statement.predicate_type if report.statement else "")
    return report


# =============================================================================
# CLI
# =============================================================================


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="bav verify",
        description="Verify an in-toto attestation covering a blob",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "artifact",
        nargs="?",
        default="",
        help="Path to the blob (omit when using --digest)",
    )
    parser.add_argument(
        "--key",
        type=pathlib.Path,
        help="PEM public key or certificate used to verify the signature",
    )
    parser.add_argument(
        "--certificate-chain",
        type=pathlib.Path,
        help="PEM intermediates and root for a --key certificate",
    )
    parser.add_argument(
        "--signature",
        type=pathlib.Path,
        help="DSSE envelope file (JSON or base64)",
    )
    parser.add_argument(
        "--bundle",
        type=pathlib.Path,
        help="Sigstore bundle carrying the DSSE envelope",
    )
    parser.add_argument(
        "--new-bundle-format",
        action="store_true",
        help="Expect the sigstore bundle format (implied by --bundle)",
    )
    parser.add_argument(
        "--trusted-root",
        type=pathlib.Path,
        help="Sigstore trusted root document (required with --bundle)",
    )
    parser.add_argument(
        "--insecure-ignore-tlog",
        action="store_true",
        help="Do not require a transparency log entry for certificate signatures",
    )
    parser.add_argument(
        "--check-claims",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Match the artifact digest against the statement subjects",
    )
    parser.add_argument(
        "--type",
        dest="predicate_type",
        help="Required predicate type (URI or alias such as slsaprovenance)",
    )
    parser.add_argument("--digest", help="Artifact digest to use instead of a file")
    parser.add_argument("--digest-alg", default="sha256", help="Algorithm of --digest")
    parser.add_argument(
        "--certificate-identity",
        help="Expected signer identity (email/URI) in the certificate",
    )
    parser.add_argument(
        "--certificate-oidc-issuer",
        help="Expected OIDC issuer in the certificate",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Use cached Sigstore trust data only (no network)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show detailed output including passed checks",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output report as JSON",
    )

    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose)

    request = VerifyRequest(
        artifact_path=args.artifact,
        key_path=args.key,
        certificate_chain_path=args.certificate_chain,
        signature_path=args.signature,
        bundle_path=args.bundle,
        new_bundle_format=args.new_bundle_format or args.bundle is not None,
        trusted_root_path=args.trusted_root,
        ignore_tlog=args.insecure_ignore_tlog,
        check_claims=args.check_claims,
        predicate_type=args.predicate_type,
        digest=args.digest,
        digest_alg=args.digest_alg,
        certificate_identity=args.certificate_identity,
        certificate_oidc_issuer=args.certificate_oidc_issuer,
        offline=args.offline,
    )
    report = verify_blob_attestation(request)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        report.print_report(verbose=args.verbose)

    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
