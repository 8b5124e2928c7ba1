#!/usr/bin/env python3
"""Load signed DSSE envelopes from legacy signature files and sigstore bundles.

Both container formats are normalised into one immutable ``SignedEnvelope``.
Bundle mode additionally yields the bundle's verification material and
requires a trusted-root document.

Every document is untrusted input: it is schema-checked before any field is
read, and every failure surfaces as a typed error from bav_errors.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from bav_errors import FormatError, ReadError, TrustMaterialError

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

INTOTO_PAYLOAD_TYPE = "application/vnd.in-toto+json"

BUNDLE_MEDIA_TYPES = frozenset(
    {
        "application/vnd.dev.sigstore.bundle+json;version=0.1",
        "application/vnd.dev.sigstore.bundle+json;version=0.2",
        "application/vnd.dev.sigstore.bundle+json;version=0.3",
        "application/vnd.dev.sigstore.bundle.v0.3+json",
    }
)

TRUSTED_ROOT_MEDIA_TYPES = frozenset(
    {
        "application/vnd.dev.sigstore.trustedroot+json;version=0.1",
        "application/vnd.dev.sigstore.trustedroot.v0.2+json",
    }
)

ENVELOPE_SCHEMA = "dsse-envelope.schema.json"
BUNDLE_SCHEMA = "sigstore-bundle.schema.json"
TRUSTED_ROOT_SCHEMA = "trusted-root.schema.json"


# =============================================================================
# Data types
# =============================================================================


@dataclass(frozen=True)
class Signature:
    keyid: str
    sig: bytes


@dataclass(frozen=True)
class SignedEnvelope:
    payload_type: str
    payload: bytes
    signatures: Tuple[Signature, ...]


@dataclass(frozen=True)
class SigstoreBundle:
    media_type: str
    envelope: SignedEnvelope
    verification_material: Dict[str, Any] = field(default_factory=dict)
    raw: bytes = b""

    @property
    def public_key_hint(self) -> Optional[str]:
        public_key = self.verification_material.get("publicKey")
        if public_key is None:
            return None
        return public_key.get("hint", "")

    def certificate_chain_der(self) -> List[bytes]:
        """DER certificates embedded in the bundle, leaf first."""
        material = self.verification_material
        if "certificate" in material:
            return [decode_b64(material["certificate"]["rawBytes"], "bundle certificate")]
        chain = material.get("x509CertificateChain")
        if chain:
            return [
                decode_b64(cert["rawBytes"], "bundle certificate chain")
                for cert in chain["certificates"]
            ]
        return []


@dataclass(frozen=True)
class TrustedRoot:
    media_type: str
    document: Dict[str, Any] = field(default_factory=dict)

    def certificate_authorities_der(self) -> List[bytes]:
        """DER certificates of every certificate authority in the root."""
        certs = []
        for authority in self.document.get("certificateAuthorities", []):
            chain = authority.get("certChain", {})
            for cert in chain.get("certificates", []):
                certs.append(decode_b64(cert["rawBytes"], "trusted root certificate"))
        return certs


@dataclass(frozen=True)
class LoadedEnvelope:
    """Result of the load stage."""

    envelope: SignedEnvelope
    bundle: Optional[SigstoreBundle] = None
    trusted_root: Optional[TrustedRoot] = None


# =============================================================================
# Schema validation
# =============================================================================


def _format_schema_errors(errors: List[Any]) -> str:
    lines = []
    for err in errors[:5]:
        path = err.json_path or "$"
        lines.append(f"{path}: {err.message}")
    if len(errors) > 5:
        lines.append(f"... {len(errors) - 5} more")
    return "\n".join(lines)


def _load_schema(schema_name: str) -> Dict[str, Any]:
    from importlib import resources

    data = resources.files("bav_schemas").joinpath(schema_name).read_text(encoding="utf-8")
    return json.loads(data)


def validate_document(document: Any, schema_name: str, what: str) -> None:
    """Validate a parsed JSON document against one of the bundled schemas."""
    from jsonschema import Draft202012Validator

    validator = Draft202012Validator(_load_schema(schema_name))
    errors = sorted(validator.iter_errors(document), key=lambda e: e.json_path)
    if errors:
        raise FormatError(f"Invalid {what}", _format_schema_errors(errors))


# =============================================================================
# Decoding helpers
# =============================================================================


def decode_b64(value: str, what: str) -> bytes:
    """Decode standard or URL-safe base64, padded or not."""
    text = "".join(value.split()).replace("-", "+").replace("_", "/")
    text += "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise FormatError(f"Invalid base64 in {what}", str(exc)) from exc


def _read_bytes(path: pathlib.Path, what: str) -> bytes:
    try:
        return pathlib.Path(path).read_bytes()
    except OSError as exc:
        raise ReadError(f"Failed to read {what}: {path}", str(exc)) from exc


def _parse_json(data: bytes, what: str) -> Any:
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FormatError(f"Invalid JSON in {what}", str(exc)) from exc


# =============================================================================
# Envelope parsing
# =============================================================================


def parse_envelope(document: Any, what: str = "DSSE envelope") -> SignedEnvelope:
    """Build a SignedEnvelope from its JSON form."""
    validate_document(document, ENVELOPE_SCHEMA, what)

    signatures = tuple(
        Signature(
            keyid=entry.get("keyid", entry.get("keyId", "")),
            sig=decode_b64(entry["sig"], f"{what} signature"),
        )
        for entry in document["signatures"]
    )
    return SignedEnvelope(
        payload_type=document["payloadType"],
        payload=decode_b64(document["payload"], f"{what} payload"),
        signatures=signatures,
    )


def load_legacy_envelope(signature_path: pathlib.Path) -> SignedEnvelope:
    """Load a detached signature file holding a DSSE envelope.

    The file holds either the envelope JSON itself or base64 text of it.
    """
    raw = _read_bytes(signature_path, "signature")
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        decoded = decode_b64(raw.decode("ascii", errors="replace"), "signature file")
        document = _parse_json(decoded, "signature file")
    return parse_envelope(document)


# =============================================================================
# Bundle and trusted root
# =============================================================================


def parse_bundle(raw: bytes) -> SigstoreBundle:
    document = _parse_json(raw, "bundle")
    validate_document(document, BUNDLE_SCHEMA, "bundle")

    media_type = document["mediaType"]
    if media_type not in BUNDLE_MEDIA_TYPES:
        raise FormatError(
            "Unsupported bundle mediaType",
            f"Got: {media_type}, expected one of {sorted(BUNDLE_MEDIA_TYPES)}",
        )

    has_dsse = "dsseEnvelope" in document
    has_message = "messageSignature" in document
    if has_dsse and has_message:
        raise FormatError("Bundle content must be exactly one of dsseEnvelope or messageSignature")
    if has_message:
        raise FormatError(
            "Bundle carries a messageSignature, not a DSSE envelope",
            "a bare message signature has no statement to check claims against",
        )
    if not has_dsse:
        raise FormatError("Bundle is missing its dsseEnvelope content")

    return SigstoreBundle(
        media_type=media_type,
        envelope=parse_envelope(document["dsseEnvelope"], "bundle DSSE envelope"),
        verification_material=document.get("verificationMaterial", {}),
        raw=raw,
    )


def load_bundle(bundle_path: pathlib.Path) -> SigstoreBundle:
    return parse_bundle(_read_bytes(bundle_path, "bundle"))


def load_trusted_root(trusted_root_path: pathlib.Path) -> TrustedRoot:
    document = _parse_json(_read_bytes(trusted_root_path, "trusted root"), "trusted root")
    validate_document(document, TRUSTED_ROOT_SCHEMA, "trusted root")

    media_type = document["mediaType"]
    if media_type not in TRUSTED_ROOT_MEDIA_TYPES:
        raise FormatError(
            "Unsupported trusted root mediaType",
            f"Got: {media_type}, expected one of {sorted(TRUSTED_ROOT_MEDIA_TYPES)}",
        )
    return TrustedRoot(media_type=media_type, document=document)


# =============================================================================
# Loader entry point
# =============================================================================


def load(
    signature_path: Optional[pathlib.Path] = None,
    bundle_path: Optional[pathlib.Path] = None,
    trusted_root_path: Optional[pathlib.Path] = None,
) -> LoadedEnvelope:
    """Load the signed envelope.

    A bundle path switches to bundle mode, which also requires a trusted root;
    any signature path is then ignored.
    """
    if not signature_path and not bundle_path:
        raise FormatError("A signature or a bundle is required")

    if bundle_path:
        if signature_path:
            logger.debug("Bundle mode; ignoring signature %s", signature_path)
        if not trusted_root_path:
            raise TrustMaterialError(
                "A trusted root is required when verifying a sigstore bundle",
                rule_id="TRUST-002",
            )
        bundle = load_bundle(pathlib.Path(bundle_path))
        trusted_root = load_trusted_root(pathlib.Path(trusted_root_path))
        logger.debug("Loaded bundle %s (%s)", bundle_path, bundle.media_type)
        return LoadedEnvelope(
            envelope=bundle.envelope, bundle=bundle, trusted_root=trusted_root
        )

    assert signature_path is not None
    envelope = load_legacy_envelope(pathlib.Path(signature_path))
    logger.debug("Loaded DSSE envelope from %s", signature_path)
    return LoadedEnvelope(envelope=envelope)
