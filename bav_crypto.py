#!/usr/bin/env python3
"""Cryptographic helpers for DSSE verification.

Covers the DSSE pre-authentication encoding, PEM key and certificate
loading, and single-key signature checks. Trust decisions live in bav_trust.
"""

from __future__ import annotations

from typing import List, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

PublicKey = Union[
    ed25519.Ed25519PublicKey,
    ec.EllipticCurvePublicKey,
    rsa.RSAPublicKey,
]

SUPPORTED_KEY_TYPES = (ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey, rsa.RSAPublicKey)

_CURVE_HASHES = {
    "secp256r1": hashes.SHA256,
    "secp384r1": hashes.SHA384,
    "secp521r1": hashes.SHA512,
}


def dsse_pae(payload_type: str, payload: bytes) -> bytes:
    """DSSE Pre-Authentication Encoding (PAE)."""
    payload_type_bytes = payload_type.encode("utf-8")
    return (
        b"DSSEv1 "
        + str(len(payload_type_bytes)).encode("ascii")
        + b" "
        + payload_type_bytes
        + b" "
        + str(len(payload)).encode("ascii")
        + b" "
        + payload
    )


# =============================================================================
# PEM loading
# =============================================================================


def is_pem_certificate(data: bytes) -> bool:
    return b"-----BEGIN CERTIFICATE-----" in data


def load_public_key(data: bytes) -> PublicKey:
    """Load a PEM public key, rejecting key types we cannot verify with.

    Raises:
        ValueError: If the data is not a supported PEM public key.
    """
    try:
        key = serialization.load_pem_public_key(data)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise ValueError(f"Invalid PEM public key: {exc}") from exc
    if not isinstance(key, SUPPORTED_KEY_TYPES):
        raise ValueError(f"Unsupported public key type: {type(key).__name__}")
    return key


def load_certificates(data: bytes) -> List[x509.Certificate]:
    """Load every certificate from a PEM bundle, leaf first."""
    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as exc:
        raise ValueError(f"Invalid PEM certificate data: {exc}") from exc
    if not certs:
        raise ValueError("No certificates found in PEM data")
    return certs


def load_der_certificate(data: bytes) -> x509.Certificate:
    return x509.load_der_x509_certificate(data)


# =============================================================================
# Signature checks
# =============================================================================


def _ecdsa_hash(key: ec.EllipticCurvePublicKey) -> hashes.HashAlgorithm:
    return _CURVE_HASHES.get(key.curve.name, hashes.SHA256)()


def verify_with_key(key: object, data: bytes, signature: bytes) -> bool:
    """Check one signature over ``data`` with one public key.

    RSA keys are tried with PSS first and PKCS#1 v1.5 second.
    """
    try:
        if isinstance(key, ed25519.Ed25519PublicKey):
            key.verify(signature, data)
            return True

        if isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(signature, data, ec.ECDSA(_ecdsa_hash(key)))
            return True

        if isinstance(key, rsa.RSAPublicKey):
            try:
                key.verify(
                    signature,
                    data,
                    padding.PSS(
                        mgf=padding.MGF1(hashes.SHA256()),
                        salt_length=padding.PSS.AUTO,
                    ),
                    hashes.SHA256(),
                )
                return True
            except InvalidSignature:
                key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
                return True
    except (InvalidSignature, ValueError):
        return False

    return False
