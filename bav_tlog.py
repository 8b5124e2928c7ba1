#!/usr/bin/env python3
"""Transparency log consultation.

Certificate-based signatures are short-lived identities; they are only
accepted together with a transparency-log inclusion record. The log client
itself belongs to the ``sigstore`` library: this module decides what to ask
it and turns every failure into ``SignatureInvalid``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from bav_envelope import SignedEnvelope, SigstoreBundle
from bav_errors import SignatureInvalid

if TYPE_CHECKING:
    from bav_trust import TrustMaterial

logger = logging.getLogger(__name__)


class TransparencyLog:
    """Interface for the transparency-log collaborator.

    ``verify_inclusion`` returns normally when a log entry consistent with the
    envelope and the signing identity exists, and raises SignatureInvalid
    otherwise.
    """

    def verify_inclusion(
        self,
        envelope: SignedEnvelope,
        trust: "TrustMaterial",
        bundle: Optional[SigstoreBundle] = None,
    ) -> None:
        raise NotImplementedError


class SigstoreTransparencyLog(TransparencyLog):
    """Consult the public-good Sigstore log through the sigstore library.

    The inclusion proof is taken from the sigstore bundle; verification also
    checks the certificate chain against Sigstore's trust root at the log's
    integrated time.
    """

    def __init__(
        self,
        offline: bool = False,
        identity: Optional[str] = None,
        issuer: Optional[str] = None,
    ):
        self.offline = offline
        self.identity = identity
        self.issuer = issuer

    def _policy(self, policy):
        if self.identity:
            return policy.Identity(identity=self.identity, issuer=self.issuer)
        if self.issuer:
            return policy.OIDCIssuer(self.issuer)
        return policy.UnsafeNoOp()

    def verify_inclusion(
        self,
        envelope: SignedEnvelope,
        trust: "TrustMaterial",
        bundle: Optional[SigstoreBundle] = None,
    ) -> None:
        if bundle is None:
            raise SignatureInvalid(
                "Transparency log inclusion is required but no bundle carries a log entry",
                "verify a sigstore bundle or skip the log with --insecure-ignore-tlog",
                rule_id="TLOG-001",
            )

        try:
            from sigstore.models import Bundle
            from sigstore.verify import Verifier, policy
        except ImportError as e:
            raise SignatureInvalid(
                "sigstore library not installed; cannot consult the transparency log",
                str(e),
                rule_id="TLOG-000",
            ) from e

        try:
            sigstore_bundle = Bundle.from_json(bundle.raw)
        except Exception as e:
            raise SignatureInvalid(
                "Failed to parse bundle for transparency log verification",
                str(e),
                rule_id="TLOG-002",
            ) from e

        try:
            verifier = Verifier.production(offline=self.offline)
        except Exception as e:
            raise SignatureInvalid(
                "Failed to initialize Sigstore verifier", str(e), rule_id="TLOG-003"
            ) from e

        try:
            _payload_type, payload = verifier.verify_dsse(sigstore_bundle, self._policy(policy))
        except Exception as e:
            raise SignatureInvalid(
                "Transparency log verification failed", str(e), rule_id="TLOG-004"
            ) from e

        if payload != envelope.payload:
            raise SignatureInvalid(
                "Transparency log entry does not match the envelope payload",
                rule_id="TLOG-005",
            )
        logger.info("Transparency log inclusion verified for %s", trust.describe())
