from __future__ import annotations

import base64
import datetime
import json
from pathlib import Path
from typing import Callable, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.x509.oid import NameOID

import bav_crypto
from bav_config import MAX_ATTACHMENT_SIZE_ENVS

SLSA_V02 = "https://slsa.dev/provenance/v0.2"
INTOTO_PAYLOAD_TYPE = "application/vnd.in-toto+json"


@pytest.fixture(autouse=True)
def _clear_size_override(monkeypatch) -> None:
    for name in MAX_ATTACHMENT_SIZE_ENVS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(scope="session")
def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


@pytest.fixture(scope="session")
def vectors(repo_root: Path) -> Path:
    return repo_root / "test-vectors"


@pytest.fixture(scope="session")
def manifest(vectors: Path) -> dict:
    return json.loads((vectors / "manifest.json").read_text(encoding="utf-8"))


@pytest.fixture(scope="session")
def cosign_pub(vectors: Path, manifest: dict) -> Path:
    return vectors / manifest["publicKey"]


@pytest.fixture(scope="session")
def trusted_root(vectors: Path, manifest: dict) -> Path:
    return vectors / manifest["trustedRoot"]


@pytest.fixture
def blobs(tmp_path: Path, manifest: dict) -> dict[str, Path]:
    """Write every manifest blob to disk, keyed by name."""
    paths = {}
    for name, entry in manifest["blobs"].items():
        path = tmp_path / name
        path.write_text(entry["contents"], encoding="utf-8")
        paths[name] = path
    return paths


# =============================================================================
# Signing helpers
# =============================================================================


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _sign(private_key, data: bytes) -> bytes:
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return private_key.sign(data)
    return private_key.sign(data, ec.ECDSA(hashes.SHA256()))


@pytest.fixture
def make_statement() -> Callable[..., dict]:
    def _make(
        digests: Optional[list[dict]] = None,
        predicate_type: str = SLSA_V02,
    ) -> dict:
        subjects = [
            {"name": f"subject-{i}", "digest": digest} for i, digest in enumerate(digests or [])
        ]
        return {
            "_type": "https://in-toto.io/Statement/v1",
            "predicateType": predicate_type,
            "subject": subjects,
            "predicate": {"builder": {"id": "test"}},
        }

    return _make


@pytest.fixture
def make_envelope() -> Callable[..., dict]:
    """Build a DSSE envelope signed by each of ``keys``."""

    def _make(
        statement: dict,
        *keys,
        payload_type: str = INTOTO_PAYLOAD_TYPE,
    ) -> dict:
        payload = json.dumps(statement, separators=(",", ":"), sort_keys=True).encode("utf-8")
        pae = bav_crypto.dsse_pae(payload_type, payload)
        return {
            "payloadType": payload_type,
            "payload": _b64(payload),
            "signatures": [{"keyid": "", "sig": _b64(_sign(key, pae))} for key in keys],
        }

    return _make


@pytest.fixture
def write_json(tmp_path: Path) -> Callable[[str, object], Path]:
    def _write(name: str, document: object) -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(document), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def write_public_key(tmp_path: Path) -> Callable[..., Path]:
    def _write(private_key, name: str = "key.pub") -> Path:
        pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        path = tmp_path / name
        path.write_bytes(pem)
        return path

    return _write


# =============================================================================
# Certificate helpers
# =============================================================================


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


@pytest.fixture
def make_certificate() -> Callable[..., x509.Certificate]:
    """Issue a certificate for ``subject_key``, self-signed unless an issuer is given."""

    def _make(
        subject_key,
        issuer_key=None,
        issuer_cert: Optional[x509.Certificate] = None,
        common_name: str = "signer",
        email: Optional[str] = "signer@example.com",
        oidc_issuer: Optional[str] = None,
        oidc_issuer_v2: Optional[bytes] = None,
        ca: bool = False,
        not_before: Optional[datetime.datetime] = None,
        not_after: Optional[datetime.datetime] = None,
    ) -> x509.Certificate:
        now = datetime.datetime.now(datetime.timezone.utc)
        issuer_name = issuer_cert.subject if issuer_cert is not None else _name(common_name)
        builder = (
            x509.CertificateBuilder()
            .subject_name(_name(common_name))
            .issuer_name(issuer_name)
            .public_key(subject_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before or now - datetime.timedelta(days=1))
            .not_valid_after(not_after or now + datetime.timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        )
        if email:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.RFC822Name(email)]), critical=False
            )
        if oidc_issuer:
            builder = builder.add_extension(
                x509.UnrecognizedExtension(
                    x509.ObjectIdentifier("1.3.6.1.4.1.57264.1.1"),
                    oidc_issuer.encode("utf-8"),
                ),
                critical=False,
            )
        if oidc_issuer_v2 is not None:
            builder = builder.add_extension(
                x509.UnrecognizedExtension(
                    x509.ObjectIdentifier("1.3.6.1.4.1.57264.1.8"), oidc_issuer_v2
                ),
                critical=False,
            )
        return builder.sign(issuer_key or subject_key, hashes.SHA256())

    return _make


@pytest.fixture
def write_certificates(tmp_path: Path) -> Callable[..., Path]:
    def _write(name: str, *certs: x509.Certificate) -> Path:
        path = tmp_path / name
        path.write_bytes(b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs))
        return path

    return _write


@pytest.fixture
def make_trusted_root() -> Callable[..., dict]:
    """Trusted root document listing ``certs`` as one certificate authority."""

    def _make(*certs: x509.Certificate) -> dict:
        document = {"mediaType": "application/vnd.dev.sigstore.trustedroot+json;version=0.1"}
        if certs:
            document["certificateAuthorities"] = [
                {
                    "certChain": {
                        "certificates": [
                            {"rawBytes": _b64(c.public_bytes(serialization.Encoding.DER))}
                            for c in certs
                        ]
                    }
                }
            ]
        return document

    return _make


@pytest.fixture
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def ed_key():
    return ed25519.Ed25519PrivateKey.generate()
