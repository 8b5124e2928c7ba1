#!/usr/bin/env python3
"""Trust material and DSSE signature verification.

Trust comes from exactly one of three sources, each able to check a
signature over bytes:

- PublicKeyTrust: a raw public key supplied by the caller
- CertificateTrust: a caller-supplied certificate, optionally with its chain
- BundleRootTrust: a certificate chain embedded in a sigstore bundle, which
  must chain to a certificate authority of the trusted root

Certificate-based trust is a short-lived identity. Unless the caller
bypasses the transparency log, a signature made under it is only accepted
with a matching log inclusion record.
"""

from __future__ import annotations

import datetime
import logging
import pathlib
from dataclasses import dataclass
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.x509.oid import ObjectIdentifier

import bav_crypto
from bav_config import VerificationPolicy
from bav_envelope import LoadedEnvelope, Signature, SignedEnvelope, SigstoreBundle, TrustedRoot
from bav_errors import ReadError, SignatureInvalid, TrustMaterialError
from bav_tlog import TransparencyLog

logger = logging.getLogger(__name__)

# Fulcio OIDC issuer extensions (v1 raw string, v2 DER UTF8String)
OIDC_ISSUER_V1 = ObjectIdentifier("1.3.6.1.4.1.57264.1.1")
OIDC_ISSUER_V2 = ObjectIdentifier("1.3.6.1.4.1.57264.1.8")

_DER_UTF8_STRING = 0x0C


# =============================================================================
# Trust material variants
# =============================================================================


class TrustMaterial:
    """Common capability of every trust source."""

    requires_tlog = False

    def verify(self, data: bytes, signature: bytes) -> bool:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError

    def check_identity(self, identity: Optional[str], issuer: Optional[str]) -> None:
        """Raise SignatureInvalid if the signer identity violates the constraints."""

    def check_validity(self, at: datetime.datetime) -> None:
        """Raise SignatureInvalid if the material was not valid at ``at``."""


@dataclass(frozen=True)
class PublicKeyTrust(TrustMaterial):
    key: object

    def verify(self, data: bytes, signature: bytes) -> bool:
        return bav_crypto.verify_with_key(self.key, data, signature)

    def describe(self) -> str:
        return f"public key ({type(self.key).__name__})"

    def check_identity(self, identity: Optional[str], issuer: Optional[str]) -> None:
        if identity or issuer:
            raise TrustMaterialError(
                "Certificate identity constraints require certificate-based trust",
                rule_id="TRUST-005",
            )


def _decode_issuer_extension(oid: ObjectIdentifier, value: bytes) -> str:
    if oid == OIDC_ISSUER_V1:
        return value.decode("utf-8")
    if len(value) < 2 or value[0] != _DER_UTF8_STRING:
        raise ValueError("OIDC issuer extension is not a UTF8String")
    length = value[1]
    offset = 2
    if length & 0x80:
        width = length & 0x7F
        if width == 0 or offset + width > len(value):
            raise ValueError("OIDC issuer extension has a truncated length")
        length = int.from_bytes(value[offset : offset + width], "big")
        offset += width
    if offset + length > len(value):
        raise ValueError("OIDC issuer extension is shorter than its declared length")
    return value[offset : offset + length].decode("utf-8")


@dataclass(frozen=True)
class CertificateTrust(TrustMaterial):
    certificate: x509.Certificate
    chain: Tuple[x509.Certificate, ...] = ()

    requires_tlog = True

    def __post_init__(self) -> None:
        self.verify_chain()

    def verify_chain(self) -> None:
        """Each certificate must be directly issued by the next one."""
        certs = (self.certificate, *self.chain)
        for child, parent in zip(certs, certs[1:]):
            try:
                child.verify_directly_issued_by(parent)
            except (ValueError, TypeError, InvalidSignature) as exc:
                raise TrustMaterialError(
                    "Certificate chain does not verify",
                    f"{child.subject.rfc4514_string()} not issued by "
                    f"{parent.subject.rfc4514_string()}: {exc}",
                    rule_id="TRUST-004",
                ) from exc

    def verify(self, data: bytes, signature: bytes) -> bool:
        return bav_crypto.verify_with_key(self.certificate.public_key(), data, signature)

    def describe(self) -> str:
        names = self.identities()
        if names:
            return f"certificate ({', '.join(names)})"
        return f"certificate ({self.certificate.subject.rfc4514_string()})"

    def identities(self) -> List[str]:
        try:
            san = self.certificate.extensions.get_extension_for_class(
                x509.SubjectAlternativeName
            ).value
        except x509.ExtensionNotFound:
            return []
        return [
            *san.get_values_for_type(x509.RFC822Name),
            *san.get_values_for_type(x509.UniformResourceIdentifier),
        ]

    def oidc_issuer(self) -> Optional[str]:
        for oid in (OIDC_ISSUER_V2, OIDC_ISSUER_V1):
            try:
                ext = self.certificate.extensions.get_extension_for_oid(oid)
            except x509.ExtensionNotFound:
                continue
            return _decode_issuer_extension(oid, ext.value.value)
        return None

    def check_identity(self, identity: Optional[str], issuer: Optional[str]) -> None:
        if identity and identity not in self.identities():
            raise SignatureInvalid(
                "Certificate identity does not match",
                f"expected {identity}, certificate has {self.identities()}",
                rule_id="SIG-003",
            )
        if issuer:
            try:
                actual = self.oidc_issuer()
            except (ValueError, UnicodeDecodeError) as exc:
                raise SignatureInvalid(
                    "Certificate OIDC issuer extension is malformed", str(exc), rule_id="SIG-004"
                ) from exc
            if actual != issuer:
                raise SignatureInvalid(
                    "Certificate OIDC issuer does not match",
                    f"expected {issuer}, got {actual}",
                    rule_id="SIG-004",
                )

    def check_validity(self, at: datetime.datetime) -> None:
        not_before = self.certificate.not_valid_before_utc
        not_after = self.certificate.not_valid_after_utc
        if not (not_before <= at <= not_after):
            raise SignatureInvalid(
                "Certificate is not valid at verification time",
                f"valid {not_before.isoformat()} to {not_after.isoformat()}, now {at.isoformat()}",
                rule_id="SIG-005",
            )


@dataclass(frozen=True)
class BundleRootTrust(CertificateTrust):
    """Certificate chain carried inside the sigstore bundle.

    The top of the chain must be one of ``anchors`` (the trusted root's
    certificate authorities) or be directly issued by one of them.
    """

    anchors: Tuple[x509.Certificate, ...] = ()

    def __post_init__(self) -> None:
        super().__post_init__()
        self.verify_anchor()

    def verify_anchor(self) -> None:
        if not self.anchors:
            raise TrustMaterialError(
                "Trusted root has no certificate authority to anchor the bundle certificate",
                rule_id="TRUST-006",
            )
        top = (self.certificate, *self.chain)[-1]
        for anchor in self.anchors:
            if top == anchor:
                return
            try:
                top.verify_directly_issued_by(anchor)
            except (ValueError, TypeError, InvalidSignature):
                continue
            return
        raise TrustMaterialError(
            "Bundle certificate does not chain to the trusted root",
            f"{top.issuer.rfc4514_string()} is not among {len(self.anchors)} certificate authorities",
            rule_id="TRUST-006",
        )

    def describe(self) -> str:
        return "bundle " + super().describe()


# =============================================================================
# Trust resolution
# =============================================================================


def _read_key_file(path: pathlib.Path, what: str) -> bytes:
    try:
        return pathlib.Path(path).read_bytes()
    except OSError as exc:
        raise ReadError(f"Failed to read {what}: {path}", str(exc)) from exc


def _load_chain(chain_path: Optional[pathlib.Path]) -> Tuple[x509.Certificate, ...]:
    if not chain_path:
        return ()
    try:
        return tuple(bav_crypto.load_certificates(_read_key_file(chain_path, "certificate chain")))
    except ValueError as exc:
        raise TrustMaterialError("Invalid certificate chain", str(exc), rule_id="TRUST-003") from exc


def load_key_material(
    key_path: pathlib.Path, chain_path: Optional[pathlib.Path] = None
) -> TrustMaterial:
    """Load caller-supplied trust: a PEM public key or a PEM certificate."""
    data = _read_key_file(key_path, "key")
    try:
        if bav_crypto.is_pem_certificate(data):
            certs = bav_crypto.load_certificates(data)
            return CertificateTrust(certs[0], (*certs[1:], *_load_chain(chain_path)))
        if chain_path:
            raise TrustMaterialError(
                "A certificate chain requires a certificate, not a public key",
                rule_id="TRUST-003",
            )
        return PublicKeyTrust(bav_crypto.load_public_key(data))
    except ValueError as exc:
        raise TrustMaterialError(f"Failed to load key: {key_path}", str(exc)) from exc


def bundle_trust(
    bundle: SigstoreBundle, trusted_root: Optional[TrustedRoot] = None
) -> BundleRootTrust:
    """Trust the bundle's certificate chain as anchored by ``trusted_root``."""
    try:
        certs = [bav_crypto.load_der_certificate(der) for der in bundle.certificate_chain_der()]
    except ValueError as exc:
        raise TrustMaterialError(
            "Invalid certificate in bundle", str(exc), rule_id="TRUST-003"
        ) from exc

    anchors: Tuple[x509.Certificate, ...] = ()
    if trusted_root is not None:
        try:
            anchors = tuple(
                bav_crypto.load_der_certificate(der)
                for der in trusted_root.certificate_authorities_der()
            )
        except ValueError as exc:
            raise TrustMaterialError(
                "Invalid certificate authority in trusted root", str(exc), rule_id="TRUST-003"
            ) from exc

    return BundleRootTrust(certs[0], tuple(certs[1:]), anchors)


def resolve_trust(
    loaded: LoadedEnvelope,
    key_path: Optional[pathlib.Path] = None,
    chain_path: Optional[pathlib.Path] = None,
) -> TrustMaterial:
    """Pick the trust source for a loaded envelope.

    Caller-supplied key material always wins. Without it, a bundle's embedded
    certificate chain is used if it chains to the trusted root; a bundle that
    only names a public key hint cannot be verified.
    """
    if key_path:
        return load_key_material(pathlib.Path(key_path), chain_path)

    bundle = loaded.bundle
    if bundle is not None:
        if bundle.certificate_chain_der():
            return bundle_trust(bundle, loaded.trusted_root)
        if bundle.public_key_hint is not None:
            raise TrustMaterialError(
                "Bundle references a public key; supply it with --key",
                f"hint: {bundle.public_key_hint!r}",
            )

    raise TrustMaterialError("No key or certificate available to verify the signature")


# =============================================================================
# Signature verification
# =============================================================================


def verify_signatures(
    envelope: SignedEnvelope,
    trust: TrustMaterial,
    policy: VerificationPolicy,
    tlog: Optional[TransparencyLog] = None,
    bundle: Optional[SigstoreBundle] = None,
    identity: Optional[str] = None,
    issuer: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> Signature:
    """Require at least one envelope signature to verify under ``trust``.

    Returns the first signature that verified.
    """
    if not envelope.signatures:
        raise SignatureInvalid("DSSE envelope has no signatures", rule_id="SIG-002")

    pae = bav_crypto.dsse_pae(envelope.payload_type, envelope.payload)
    verified = next((sig for sig in envelope.signatures if trust.verify(pae, sig.sig)), None)
    if verified is None:
        raise SignatureInvalid(
            "No DSSE signatures verified",
            f"{len(envelope.signatures)} signature(s) checked against {trust.describe()}",
        )
    logger.debug("Signature verified with %s (keyid=%r)", trust.describe(), verified.keyid)

    trust.check_identity(identity, issuer)

    if trust.requires_tlog:
        if policy.ignore_tlog:
            logger.warning("Skipping transparency log check for %s", trust.describe())
            trust.check_validity(now or datetime.datetime.now(datetime.timezone.utc))
        else:
            if tlog is None:
                raise SignatureInvalid(
                    "Transparency log inclusion is required but no log client is configured",
                    rule_id="TLOG-001",
                )
            tlog.verify_inclusion(envelope, trust, bundle)

    return verified
